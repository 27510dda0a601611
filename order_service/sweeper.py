import asyncio
from datetime import datetime, timedelta, timezone

from order_service import config
from order_service.errors import OrderServiceError
from order_service.logger import get_logger

logger = get_logger(__name__)


async def reconcile_unconfirmed_orders(lifecycle, min_age_seconds: int = config.RECONCILE_MIN_AGE_SECONDS) -> dict:
    """Re-verify pending paid orders whose webhook never arrived.

    Returns a count of orders per outcome: confirmed, failed, pending, error.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)
    orders = await lifecycle.store.get_unconfirmed_orders(cutoff)
    summary = {"confirmed": 0, "failed": 0, "pending": 0, "error": 0}

    for order in orders:
        try:
            result = await lifecycle.verify_payment(order.payment_reference)
        except OrderServiceError as e:
            logger.error("Reconciliation of order {} failed: {}", order.id, e.message)
            summary["error"] += 1
            continue

        if result.success:
            summary["confirmed"] += 1
        elif result.order.status is order.status:
            summary["pending"] += 1
        else:
            summary["failed"] += 1

    if orders:
        logger.info("Reconciled {} unconfirmed orders: {}", len(orders), summary)
    return summary


async def run_sweeper(lifecycle, interval_seconds: int = config.RECONCILE_INTERVAL_SECONDS):
    logger.info("Reconciliation sweep running every {}s", interval_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await reconcile_unconfirmed_orders(lifecycle)
        except OrderServiceError as e:
            logger.error("Reconciliation sweep failed: {}", e.message)
        except Exception as e:
            logger.exception("Unexpected error in reconciliation sweep: {}", e)
