import sys
from typing import Union

from loguru import logger

from order_service.config import LOG_LEVEL

_configured = False


def configure_logging(level: str = LOG_LEVEL):
    """Install the console sink once per process."""
    global _configured
    if _configured:
        return
    logger.remove()
    logger.configure(extra={"module": "order_service"})
    logger.add(
        sys.stdout,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
               "<cyan>{extra[module]}</cyan> | <level>{message}</level>",
        level=level,
    )
    _configured = True


def get_logger(name: Union[str, None] = None):
    return logger.bind(module=name if name else "order_service")
