"""Order lifecycle: placement, payment initiation and payment reconciliation.

The orchestrator owns no state. It is built once at startup from an
:class:`OrderStore`, a payment gateway and an event publisher, and every
status change it makes goes through :mod:`order_service.state_machine`.
"""
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from order_service import config, state_machine
from order_service.errors import (
    GatewayError,
    NotFoundError,
    SignatureError,
    StateConflictError,
    ValidationError,
)
from order_service.gateway import ChargeRequest, WEBHOOK_EVENT_TARGETS
from order_service.logger import get_logger
from order_service.models import Order, OrderStatus, PaymentMethod, PAYMENT_CHANNELS
from order_service.schemas import OrderCreate

logger = get_logger(__name__)

APPLIED = "applied"
UNCHANGED = "unchanged"
IGNORED = "ignored"

# Lost conditional writes are re-evaluated this many times before giving up.
MAX_TRANSITION_ATTEMPTS = 3


@dataclass
class TransitionResult:
    order: Order
    outcome: str
    previous_status: OrderStatus

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED


@dataclass
class PlacedOrder:
    order: Order
    authorization_url: Optional[str] = None
    payment_error: Optional[str] = None

    @property
    def requires_payment(self) -> bool:
        return self.order.payment_reference is not None


@dataclass
class VerificationResult:
    success: bool
    order: Order
    gateway_status: str


def generate_reference() -> str:
    return f"ORD-{uuid4()}"


def items_total(items) -> Decimal:
    return sum((Decimal(str(i.price)) * i.quantity for i in items), Decimal("0")).quantize(Decimal("0.01"))


class OrderLifecycle:
    def __init__(
        self,
        store,
        gateway,
        publisher,
        currency: str = config.PAYMENT_CURRENCY,
        verify_attempts: int = config.VERIFY_MAX_ATTEMPTS,
        verify_retry_wait: float = config.VERIFY_RETRY_WAIT_SECONDS,
    ):
        self.store = store
        self.gateway = gateway
        self.publisher = publisher
        self.currency = currency
        self.verify_attempts = max(1, verify_attempts)
        self.verify_retry_wait = verify_retry_wait

    # ------------------------------------------------------------------
    # placement

    def validate_order_request(self, request: OrderCreate):
        if not request.items:
            raise ValidationError("Order must have at least one item", field="items")
        if request.total_amount is None or request.total_amount <= 0:
            raise ValidationError("Invalid total amount", field="total_amount")
        if request.payment_channel not in PAYMENT_CHANNELS[request.payment_method]:
            raise ValidationError(
                f"Channel {request.payment_channel} is not valid for {request.payment_method.value}",
                field="payment_channel",
            )
        expected = items_total(request.items)
        if request.total_amount.quantize(Decimal("0.01")) != expected:
            raise ValidationError(
                f"Total amount {request.total_amount} does not match items total {expected}",
                field="total_amount",
            )

    async def place_order(self, user_id: str, request: OrderCreate) -> PlacedOrder:
        """Persist the order with its items, then start payment for non-cash methods.

        Orders always start ``pending``. If the gateway call fails the order
        stays in place, unconfirmed, and the failure is reported on the result.
        """
        self.validate_order_request(request)

        paid = request.payment_method is not PaymentMethod.COD
        reference = generate_reference() if paid else None

        order = await self.store.create_order_with_items(
            {
                "user_id": user_id,
                "total_amount": request.total_amount,
                "payment_method": request.payment_method,
                "payment_channel": request.payment_channel,
                "payment_reference": reference,
                "status": OrderStatus.PENDING,
                "address": request.address,
            },
            [item.model_dump() for item in request.items],
        )
        logger.info("Order {} placed by user {}", order.id, user_id)
        await self.publisher.order_created(order)

        if not paid:
            return PlacedOrder(order=order)

        charge = ChargeRequest(
            amount=request.total_amount,
            currency=self.currency,
            reference=reference,
            email=request.email,
            payment_method=request.payment_method.value,
            channel=request.payment_channel,
            phone=request.phone,
            metadata={"orderId": order.id, "userId": user_id},
        )
        try:
            initiation = await self.gateway.initialize_charge(charge)
        except GatewayError as e:
            logger.error("Payment initialization failed for order {}: {}", order.id, e.message)
            return PlacedOrder(order=order, payment_error=e.message)

        return PlacedOrder(order=order, authorization_url=initiation.authorization_url)

    # ------------------------------------------------------------------
    # transitions

    async def _transition(self, order_id: str, target: OrderStatus, strict: bool) -> TransitionResult:
        """Move an order to ``target`` through the state machine.

        The write is conditional on the status that was read, so a concurrent
        update makes this attempt re-read and decide again. With ``strict``
        false a rejected transition is reported as IGNORED instead of raised.
        """
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            order = await self.store.get_order_by_id(order_id)
            if order is None:
                raise NotFoundError("Order not found", field="order_id")

            current = order.status
            try:
                decision = state_machine.decide(current, target, order.approved_by_admin)
            except StateConflictError as e:
                if strict:
                    raise
                logger.warning("Ignoring transition {} -> {} for order {}: {}",
                               current.value, target.value, order_id, e.message)
                return TransitionResult(order, IGNORED, current)

            if decision == state_machine.NOOP:
                return TransitionResult(order, UNCHANGED, current)

            updated = await self.store.update_order_status(order_id, target, expected_status=current)
            if updated is not None:
                logger.info("Order {} status {} -> {}", order_id, current.value, target.value)
                await self.publisher.order_status_changed(updated, current)
                return TransitionResult(updated, APPLIED, current)

            logger.warning("Order {} changed concurrently, re-evaluating {}", order_id, target.value)

        raise StateConflictError("Order is being updated concurrently, try again", field="status")

    async def update_order_status(self, order_id: str, status, actor: Optional[str] = None) -> Order:
        """Administrative status change; same rules as every other path."""
        target = state_machine.parse_status(status)
        result = await self._transition(order_id, target, strict=True)
        if result.applied:
            logger.info("Order {} moved to {} by {}", order_id, target.value, actor or "system")
        return result.order

    async def approve_order(self, order_id: str, actor: Optional[str] = None) -> Order:
        order = await self.store.approve_order(order_id)
        logger.info("Order {} approved by {}", order_id, actor or "system")
        return order

    # ------------------------------------------------------------------
    # reconciliation

    async def _verify_charge(self, reference: str):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.verify_attempts),
            wait=wait_exponential(multiplier=self.verify_retry_wait, min=0, max=30),
            retry=retry_if_exception_type(GatewayError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.gateway.verify_charge(reference)

    async def verify_payment(self, reference: str) -> VerificationResult:
        """Confirm a charge with the gateway and apply the mapped status."""
        order = await self.store.get_order_by_reference(reference)
        if order is None:
            raise NotFoundError("Unknown payment reference", field="reference")

        verification = await self._verify_charge(reference)
        if verification.order_id and verification.order_id != order.id:
            logger.warning("Reference {} metadata names order {}, local order is {}",
                           reference, verification.order_id, order.id)

        target = verification.target_status
        if target is OrderStatus.PENDING:
            logger.info("Payment {} for order {} still {}", reference, order.id, verification.gateway_status)
            return VerificationResult(False, order, verification.gateway_status)

        result = await self._transition(order.id, target, strict=False)
        # Only a processing order counts as paid; a rejected transition leaves it as it was.
        success = target is OrderStatus.PROCESSING and result.order.status is OrderStatus.PROCESSING
        return VerificationResult(success, result.order, verification.gateway_status)

    async def handle_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> str:
        """Apply a signed gateway event. Replays resolve to UNCHANGED or IGNORED."""
        if not self.gateway.verify_webhook_signature(raw_payload, signature_header):
            logger.warning("Invalid Paystack webhook signature")
            raise SignatureError()

        try:
            event = json.loads(raw_payload)
        except ValueError:
            raise ValidationError("Malformed webhook payload", field="body")
        if not isinstance(event, dict):
            raise ValidationError("Malformed webhook payload", field="body")

        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        order_id = metadata.get("orderId")
        if not order_id:
            raise ValidationError("Missing orderId metadata", field="data.metadata.orderId")

        event_type = event.get("event")
        target = WEBHOOK_EVENT_TARGETS.get(event_type)
        if target is None:
            logger.info("Ignoring webhook event {} for order {}", event_type, order_id)
            return IGNORED

        result = await self._transition(str(order_id), target, strict=False)
        logger.info("Webhook {} for order {}: {}", event_type, order_id, result.outcome)
        return result.outcome

    # ------------------------------------------------------------------
    # reads

    async def get_order_by_reference(self, reference: str) -> Order:
        order = await self.store.get_order_by_reference(reference)
        if order is None:
            raise NotFoundError("Unknown payment reference", field="reference")
        return order

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get_order_by_id(order_id)
        if order is None:
            raise NotFoundError("Order not found", field="order_id")
        return order

    async def list_user_orders(self, user_id: str):
        return await self.store.get_orders_by_user(user_id)

    async def list_all_orders(self):
        return await self.store.get_all_orders()
