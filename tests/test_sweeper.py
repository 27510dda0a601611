import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from order_service.errors import GatewayError
from order_service.gateway import ChargeVerification
from order_service.models import OrderStatus
from order_service.sweeper import reconcile_unconfirmed_orders, run_sweeper
from tests.factories import make_order_request


@pytest.mark.asyncio
async def test_sweep_reverifies_pending_paid_orders(lifecycle, gateway):
    """
    Test case 1: The sweep confirms, cancels or leaves orders according to the gateway.
    """
    confirmed = (await lifecycle.place_order("user-1", make_order_request())).order
    abandoned = (await lifecycle.place_order("user-1", make_order_request())).order
    ongoing = (await lifecycle.place_order("user-1", make_order_request())).order
    statuses = {
        confirmed.payment_reference: "success",
        abandoned.payment_reference: "abandoned",
        ongoing.payment_reference: "ongoing",
    }
    gateway.verify_charge.side_effect = lambda ref: ChargeVerification(reference=ref, gateway_status=statuses[ref])

    summary = await reconcile_unconfirmed_orders(lifecycle, min_age_seconds=-60)

    assert summary == {"confirmed": 1, "failed": 1, "pending": 1, "error": 0}
    assert (await lifecycle.get_order(confirmed.id)).status == OrderStatus.PROCESSING
    assert (await lifecycle.get_order(abandoned.id)).status == OrderStatus.CANCELLED
    assert (await lifecycle.get_order(ongoing.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_sweep_skips_cash_and_recent_orders(lifecycle, gateway):
    await lifecycle.place_order(
        "user-1", make_order_request(payment_method="cod", payment_channel="cod_pickup", phone=None)
    )
    await lifecycle.place_order("user-1", make_order_request())

    summary = await reconcile_unconfirmed_orders(lifecycle, min_age_seconds=3600)

    assert summary == {"confirmed": 0, "failed": 0, "pending": 0, "error": 0}
    gateway.verify_charge.assert_not_called()


@pytest.mark.asyncio
async def test_sweep_counts_gateway_errors(lifecycle, gateway):
    await lifecycle.place_order("user-1", make_order_request())
    gateway.verify_charge = AsyncMock(side_effect=GatewayError("Payment verification failed"))

    summary = await reconcile_unconfirmed_orders(lifecycle, min_age_seconds=-60)

    assert summary["error"] == 1


@pytest.mark.asyncio
async def test_sweeper_survives_unexpected_errors(lifecycle):
    """
    Test case 2: An unexpected exception is logged and the loop keeps running.
    """
    failures = [AttributeError("'list' object has no attribute 'get'"), GatewayError("down")]

    def next_run(_lifecycle):
        if failures:
            raise failures.pop(0)

    sweep = AsyncMock(side_effect=next_run)
    with patch("order_service.sweeper.reconcile_unconfirmed_orders", new=sweep):
        task = asyncio.create_task(run_sweeper(lifecycle, interval_seconds=0))
        while sweep.await_count < 3:
            await asyncio.sleep(0)
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


@pytest.mark.asyncio
async def test_shutdown_awaits_cancelled_sweeper(lifecycle):
    from order_service.main import app, shutdown_event

    task = asyncio.create_task(run_sweeper(lifecycle, interval_seconds=3600))
    await asyncio.sleep(0)
    app.state.sweeper = task
    app.state.gateway = AsyncMock()
    app.state.publisher = AsyncMock()
    app.state.engine = AsyncMock()

    await shutdown_event()

    assert task.cancelled()
    app.state.engine.dispose.assert_awaited_once()
