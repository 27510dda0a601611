import asyncio
import contextlib
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from order_service import config
from order_service.database import create_engine, create_session_factory
from order_service.errors import OrderServiceError
from order_service.gateway import PaystackGateway, SIGNATURE_HEADER
from order_service.logger import configure_logging, get_logger
from order_service.messaging import EventPublisher
from order_service.models import PaymentMethod
from order_service.orchestrator import OrderLifecycle
from order_service.schemas import (
    OrderCreate,
    OrderListResponse,
    OrderRead,
    OrderResponse,
    PaymentInitiation,
    PlaceOrderResponse,
    StatusUpdate,
    VerifyResponse,
    WebhookAck,
)
from order_service.store import OrderStore
from order_service.sweeper import run_sweeper

logger = get_logger(__name__)

app = FastAPI(title="Order Service")


@dataclass
class Caller:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@app.on_event("startup")
async def startup_event():
    configure_logging()
    engine = create_engine()
    publisher = EventPublisher()
    await publisher.connect()
    gateway = PaystackGateway()

    app.state.engine = engine
    app.state.publisher = publisher
    app.state.gateway = gateway
    app.state.lifecycle = OrderLifecycle(OrderStore(create_session_factory(engine)), gateway, publisher)
    app.state.sweeper = None
    if config.RECONCILE_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(run_sweeper(app.state.lifecycle))


@app.on_event("shutdown")
async def shutdown_event():
    if app.state.sweeper is not None:
        app.state.sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await app.state.sweeper
    await app.state.gateway.close()
    await app.state.publisher.close()
    await app.state.engine.dispose()


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.lifecycle


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header("customer"),
) -> Caller:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return Caller(id=x_user_id, role=x_user_role or "customer")


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller


@app.post("/api/orders", response_model=PlaceOrderResponse, status_code=201)
async def create_order(
    order_data: OrderCreate,
    caller: Caller = Depends(get_caller),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    placed = await lifecycle.place_order(caller.id, order_data)
    order = OrderRead.model_validate(placed.order)

    if not placed.requires_payment:
        return PlaceOrderResponse(
            order=order,
            message="Order placed with Cash on Delivery. Pending confirmation.",
        )

    payment = PaymentInitiation(
        method=order_data.payment_method,
        channel=order_data.payment_channel,
        reference=placed.order.payment_reference,
        authorization_url=placed.authorization_url,
        error=placed.payment_error,
    )
    if placed.payment_error:
        response = PlaceOrderResponse(
            success=False,
            order=order,
            payment=payment,
            message="Order saved but payment initialization failed. Retry verification or contact support.",
        )
        return JSONResponse(status_code=502, content=response.model_dump(mode="json"))

    method = "MOMO" if order_data.payment_method is PaymentMethod.MOMO else "CARD"
    return PlaceOrderResponse(
        order=order,
        payment=payment,
        message=f"Proceed to {method} payment via {order_data.payment_channel.upper()}.",
    )


@app.get("/api/orders/mine", response_model=OrderListResponse)
async def list_my_orders(
    caller: Caller = Depends(get_caller),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    orders = await lifecycle.list_user_orders(caller.id)
    return OrderListResponse(orders=[OrderRead.model_validate(o) for o in orders])


@app.get("/api/orders", response_model=OrderListResponse)
async def list_all_orders(
    _admin: Caller = Depends(require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    orders = await lifecycle.list_all_orders()
    return OrderListResponse(orders=[OrderRead.model_validate(o) for o in orders])


@app.get("/api/orders/paystack/verify/{reference}", response_model=VerifyResponse)
async def verify_payment(
    reference: str,
    caller: Caller = Depends(get_caller),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.get_order_by_reference(reference)
    if not caller.is_admin and order.user_id != caller.id:
        raise HTTPException(status_code=403, detail="Forbidden: Access denied")

    result = await lifecycle.verify_payment(reference)
    if result.success:
        return VerifyResponse(
            success=True,
            order_id=result.order.id,
            status=result.order.status,
            message="Payment verified. Order is now processing.",
        )
    response = VerifyResponse(
        success=False,
        order_id=result.order.id,
        status=result.order.status,
        message=f"Payment not confirmed (gateway status: {result.gateway_status or 'unknown'})",
    )
    return JSONResponse(status_code=400, content=response.model_dump(mode="json"))


@app.post("/api/orders/paystack/webhook", response_model=WebhookAck)
async def paystack_webhook(request: Request, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    # Signature covers the exact bytes on the wire, so the body is never re-serialized.
    raw_body = await request.body()
    outcome = await lifecycle.handle_webhook(raw_body, request.headers.get(SIGNATURE_HEADER))
    return WebhookAck(outcome=outcome)


@app.get("/api/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    caller: Caller = Depends(get_caller),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.get_order(order_id)
    if not caller.is_admin and order.user_id != caller.id:
        raise HTTPException(status_code=403, detail="Forbidden: Access denied")
    return OrderResponse(order=OrderRead.model_validate(order))


@app.patch("/api/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: str,
    update: StatusUpdate,
    admin: Caller = Depends(require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.update_order_status(order_id, update.status, actor=admin.id)
    return OrderResponse(order=OrderRead.model_validate(order))


@app.patch("/api/orders/{order_id}/approve", response_model=OrderResponse)
async def approve_order(
    order_id: str,
    admin: Caller = Depends(require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.approve_order(order_id, actor=admin.id)
    return OrderResponse(order=OrderRead.model_validate(order))


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
