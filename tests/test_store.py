from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from order_service.errors import NotFoundError, ValidationError
from order_service.models import Order, OrderItem, OrderStatus
from tests.factories import order_row


async def count_rows(session_factory, model):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


@pytest.mark.asyncio
async def test_create_order_with_items(store):
    """
    Test case 1: Order and items are persisted together, items in submitted order.
    """
    items = [
        {"product_id": "prod-A", "quantity": 2, "price": Decimal("10.00")},
        {"product_id": "prod-B", "quantity": 1, "price": Decimal("5.00")},
    ]
    order = await store.create_order_with_items(order_row(), items)

    fetched = await store.get_order_by_id(order.id)
    assert fetched.status == OrderStatus.PENDING
    assert fetched.approved_by_admin is False
    assert [(i.product_id, i.quantity, i.price) for i in fetched.items] == [
        ("prod-A", 2, Decimal("10.00")),
        ("prod-B", 1, Decimal("5.00")),
    ]


@pytest.mark.asyncio
async def test_invalid_item_rolls_back_whole_order(store, session_factory):
    """
    Test case 2: A negative quantity on the second item leaves no order and no items.
    """
    items = [
        {"product_id": "prod-A", "quantity": 2, "price": Decimal("10.00")},
        {"product_id": "prod-B", "quantity": -1, "price": Decimal("5.00")},
    ]
    with pytest.raises(ValidationError) as exc:
        await store.create_order_with_items(order_row(), items)

    assert exc.value.field == "items[1]"
    assert await count_rows(session_factory, Order) == 0
    assert await count_rows(session_factory, OrderItem) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "bad_item",
    [
        {"product_id": "", "quantity": 1, "price": Decimal("1.00")},
        {"product_id": "prod-A", "quantity": 0, "price": Decimal("1.00")},
        {"product_id": "prod-A", "quantity": 1, "price": Decimal("0")},
        {"product_id": "prod-A", "quantity": 1, "price": "not-a-number"},
    ],
)
async def test_structurally_invalid_items_are_rejected(store, session_factory, bad_item):
    with pytest.raises(ValidationError):
        await store.create_order_with_items(order_row(), [bad_item])
    assert await count_rows(session_factory, Order) == 0


@pytest.mark.asyncio
async def test_empty_item_list_creates_nothing(store, session_factory):
    with pytest.raises(ValidationError):
        await store.create_order_with_items(order_row(), [])
    assert await count_rows(session_factory, Order) == 0


@pytest.mark.asyncio
async def test_reads_aggregate_items(store):
    item = [{"product_id": "prod-A", "quantity": 1, "price": Decimal("25.00")}]
    first = await store.create_order_with_items(order_row(user_id="user-1"), item)
    await store.create_order_with_items(order_row(user_id="user-2"), item)
    ref = await store.create_order_with_items(order_row(user_id="user-1", payment_reference="ORD-1"), item)

    mine = await store.get_orders_by_user("user-1")
    assert {o.id for o in mine} == {first.id, ref.id}
    assert all(len(o.items) == 1 for o in mine)

    assert len(await store.get_all_orders()) == 3
    assert (await store.get_order_by_reference("ORD-1")).id == ref.id
    assert await store.get_order_by_reference("ORD-unknown") is None
    assert await store.get_order_by_id("missing") is None


@pytest.mark.asyncio
async def test_update_status_conditional_write(store):
    """
    Test case 3: A write conditioned on a stale status is a no-op.
    """
    item = [{"product_id": "prod-A", "quantity": 1, "price": Decimal("25.00")}]
    order = await store.create_order_with_items(order_row(), item)

    updated = await store.update_order_status(order.id, OrderStatus.PROCESSING, expected_status=OrderStatus.PENDING)
    assert updated.status == OrderStatus.PROCESSING

    lost = await store.update_order_status(order.id, OrderStatus.CANCELLED, expected_status=OrderStatus.PENDING)
    assert lost is None
    assert (await store.get_order_by_id(order.id)).status == OrderStatus.PROCESSING


@pytest.mark.asyncio
async def test_update_status_validates_status_and_existence(store):
    item = [{"product_id": "prod-A", "quantity": 1, "price": Decimal("25.00")}]
    order = await store.create_order_with_items(order_row(), item)

    with pytest.raises(ValidationError):
        await store.update_order_status(order.id, "refunded")
    with pytest.raises(NotFoundError):
        await store.update_order_status("missing", OrderStatus.PROCESSING)

    updated = await store.update_order_status(order.id, "shipped")
    assert updated.status == OrderStatus.SHIPPED


@pytest.mark.asyncio
async def test_approve_order_is_idempotent(store):
    item = [{"product_id": "prod-A", "quantity": 1, "price": Decimal("25.00")}]
    order = await store.create_order_with_items(order_row(), item)

    assert (await store.approve_order(order.id)).approved_by_admin is True
    assert (await store.approve_order(order.id)).approved_by_admin is True
    with pytest.raises(NotFoundError):
        await store.approve_order("missing")


@pytest.mark.asyncio
async def test_unconfirmed_orders_are_pending_with_reference(store):
    item = [{"product_id": "prod-A", "quantity": 1, "price": Decimal("25.00")}]
    paid = await store.create_order_with_items(order_row(payment_reference="ORD-1"), item)
    await store.create_order_with_items(order_row(), item)
    confirmed = await store.create_order_with_items(order_row(payment_reference="ORD-2"), item)
    await store.update_order_status(confirmed.id, OrderStatus.PROCESSING)

    future = datetime.now(timezone.utc) + timedelta(minutes=1)
    assert [o.id for o in await store.get_unconfirmed_orders(future)] == [paid.id]

    past = datetime.now(timezone.utc) - timedelta(hours=1)
    assert await store.get_unconfirmed_orders(past) == []
