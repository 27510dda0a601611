from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from order_service.errors import NotFoundError, PersistenceError, ValidationError
from order_service.logger import get_logger
from order_service.models import Order, OrderItem, OrderStatus, utcnow
from order_service.state_machine import parse_status

logger = get_logger(__name__)


def _positive_decimal(value) -> Optional[Decimal]:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    return amount if amount.is_finite() and amount > 0 else None


class OrderStore:
    """Transactional persistence for orders and their line items."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str):
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except SQLAlchemyError as e:
                logger.error("Database error during {}: {}", operation, e)
                raise PersistenceError(f"Failed to {operation}") from e

    @staticmethod
    def _with_items():
        return select(Order).options(selectinload(Order.items))

    async def create_order_with_items(self, order_data: dict, items: List[dict]) -> Order:
        """Insert the order and every item in one transaction.

        Any invalid item (or an empty item list) raises ValidationError and
        rolls back the order row as well, so no order exists without items.
        """
        async with self._transaction("create order") as session:
            order = Order(
                user_id=order_data["user_id"],
                total_amount=order_data["total_amount"],
                payment_method=order_data["payment_method"],
                payment_channel=order_data.get("payment_channel"),
                payment_reference=order_data.get("payment_reference"),
                status=order_data.get("status", OrderStatus.PENDING),
                address=order_data["address"],
                approved_by_admin=False,
                items=[],
            )
            session.add(order)
            await session.flush()

            if not items:
                raise ValidationError("Order must contain at least one item", field="items")

            for line_no, item in enumerate(items):
                product_id = item.get("product_id")
                quantity = item.get("quantity")
                price = _positive_decimal(item.get("price"))
                if not product_id or not isinstance(quantity, int) or quantity <= 0 or price is None:
                    raise ValidationError("Invalid item data", field=f"items[{line_no}]")
                order.items.append(
                    OrderItem(product_id=str(product_id), line_no=line_no, quantity=quantity, price=price)
                )
            await session.flush()

        logger.info("Order {} created with {} items", order.id, len(order.items))
        return order

    async def get_order_by_id(self, order_id: str) -> Optional[Order]:
        async with self._transaction("fetch order") as session:
            result = await session.execute(self._with_items().where(Order.id == order_id))
            return result.scalar_one_or_none()

    async def get_order_by_reference(self, reference: str) -> Optional[Order]:
        async with self._transaction("fetch order") as session:
            result = await session.execute(self._with_items().where(Order.payment_reference == reference))
            return result.scalar_one_or_none()

    async def get_orders_by_user(self, user_id: str) -> List[Order]:
        async with self._transaction("fetch orders") as session:
            result = await session.execute(
                self._with_items().where(Order.user_id == user_id).order_by(Order.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_all_orders(self) -> List[Order]:
        async with self._transaction("fetch orders") as session:
            result = await session.execute(self._with_items().order_by(Order.created_at.desc()))
            return list(result.scalars().all())

    async def get_unconfirmed_orders(self, created_before: datetime) -> List[Order]:
        """Pending orders that carry a payment reference and predate ``created_before``."""
        async with self._transaction("fetch orders") as session:
            result = await session.execute(
                self._with_items()
                .where(
                    Order.status == OrderStatus.PENDING,
                    Order.payment_reference.is_not(None),
                    Order.created_at < created_before,
                )
                .order_by(Order.created_at)
            )
            return list(result.scalars().all())

    async def update_order_status(
        self, order_id: str, status, expected_status: Optional[OrderStatus] = None
    ) -> Optional[Order]:
        """Write ``status``; with ``expected_status`` the write only happens if the row still holds it.

        Returns the updated order, or None when the conditional write lost a race.
        Raises NotFoundError if the order does not exist.
        """
        status = parse_status(status)
        async with self._transaction("update order status") as session:
            stmt = update(Order).where(Order.id == order_id)
            if expected_status is not None:
                stmt = stmt.where(Order.status == expected_status)
            stmt = stmt.values(status=status, updated_at=utcnow()).execution_options(synchronize_session=False)
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await self._ensure_exists(session, order_id)
                return None

        logger.info("Order {} status updated to {}", order_id, status.value)
        return await self.get_order_by_id(order_id)

    async def approve_order(self, order_id: str) -> Order:
        async with self._transaction("approve order") as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(approved_by_admin=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self._ensure_exists(session, order_id)

        logger.info("Order {} approved by admin", order_id)
        return await self.get_order_by_id(order_id)

    @staticmethod
    async def _ensure_exists(session: AsyncSession, order_id: str):
        found = await session.scalar(select(Order.id).where(Order.id == order_id))
        if found is None:
            raise NotFoundError("Order not found", field="order_id")
