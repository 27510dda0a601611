from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine

from order_service.config import DATABASE_URL
from order_service.models import Base


def create_engine(database_url: str = DATABASE_URL) -> AsyncEngine:
    return create_async_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine):
    """Create tables directly; production schemas are managed by alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
