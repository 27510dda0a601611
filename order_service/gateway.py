import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx

from order_service import config
from order_service.errors import GatewayError
from order_service.logger import get_logger
from order_service.models import OrderStatus

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"

SUCCESS_STATUSES = frozenset({"success"})
FAILURE_STATUSES = frozenset({"failed", "abandoned", "reversed"})

# Webhook event -> order status it drives the order towards.
WEBHOOK_EVENT_TARGETS = {
    "charge.success": OrderStatus.PROCESSING,
    "charge.failed": OrderStatus.CANCELLED,
    "charge.abandoned": OrderStatus.CANCELLED,
    "charge.reversed": OrderStatus.CANCELLED,
}

CHANNELS_BY_METHOD = {
    "card": ["card"],
    "momo": ["mobile_money"],
}


@dataclass
class ChargeRequest:
    amount: Decimal
    currency: str
    reference: str
    email: str
    payment_method: str
    channel: Optional[str] = None
    phone: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ChargeInitiation:
    authorization_url: str
    reference: str
    access_code: Optional[str] = None


@dataclass
class ChargeVerification:
    reference: str
    gateway_status: str
    metadata: dict = field(default_factory=dict)

    @property
    def order_id(self) -> Optional[str]:
        return self.metadata.get("orderId")

    @property
    def target_status(self) -> OrderStatus:
        return map_gateway_status(self.gateway_status)


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_gateway_status(gateway_status: Optional[str]) -> OrderStatus:
    """success -> processing, failed/abandoned/reversed -> cancelled, anything else -> pending."""
    status = (gateway_status or "").lower()
    if status in SUCCESS_STATUSES:
        return OrderStatus.PROCESSING
    if status in FAILURE_STATUSES:
        return OrderStatus.CANCELLED
    return OrderStatus.PENDING


def compute_signature(raw_payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha512).hexdigest()


def verify_webhook_signature(raw_payload: bytes, signature_header: Optional[str], secret: str) -> bool:
    """HMAC-SHA512 over the exact request bytes, compared in constant time."""
    if not signature_header or not secret:
        return False
    expected = compute_signature(raw_payload, secret)
    return hmac.compare_digest(expected, signature_header.strip().lower())


class PaystackGateway:
    """Client for the Paystack transaction API.

    Network failures and non-success replies raise GatewayError; retrying is
    left to the caller.
    """

    def __init__(
        self,
        secret_key: str = config.PAYSTACK_SECRET_KEY,
        base_url: str = config.PAYSTACK_BASE_URL,
        timeout: float = config.GATEWAY_TIMEOUT_SECONDS,
        callback_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.callback_url = callback_url or f"{config.FRONTEND_URL}/order-success"
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {secret_key}", "Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        return verify_webhook_signature(raw_payload, signature_header, self.secret_key)

    async def _request(self, method: str, url: str, action: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            logger.error("Paystack {} timed out: {}", action, e)
            raise GatewayError(f"Payment {action} failed") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Paystack {} failed: {}", action, e)
            raise GatewayError(f"Payment {action} failed") from e

        if not isinstance(body, dict):
            logger.error("Paystack {} returned an unexpected body", action)
            raise GatewayError(f"Payment {action} failed")
        if not body.get("status") or not isinstance(body.get("data"), dict):
            logger.error("Paystack {} rejected: {}", action, body.get("message"))
            raise GatewayError(f"Payment {action} failed")
        return body["data"]

    async def initialize_charge(self, charge: ChargeRequest) -> ChargeInitiation:
        payload = {
            "email": charge.email,
            "amount": to_minor_units(charge.amount),
            "currency": charge.currency,
            "reference": charge.reference,
            "metadata": charge.metadata,
            "callback_url": self.callback_url,
            "channels": CHANNELS_BY_METHOD.get(charge.payment_method, []),
        }
        if charge.payment_method == "momo":
            payload["mobile_money"] = {"phone": charge.phone, "provider": charge.channel}

        data = await self._request("POST", "/transaction/initialize", "initialization", json=payload)
        if not data.get("authorization_url"):
            raise GatewayError("Payment initialization failed")
        return ChargeInitiation(
            authorization_url=data["authorization_url"],
            reference=data.get("reference", charge.reference),
            access_code=data.get("access_code"),
        )

    async def verify_charge(self, reference: str) -> ChargeVerification:
        data = await self._request("GET", f"/transaction/verify/{reference}", "verification")
        metadata = data.get("metadata")
        return ChargeVerification(
            reference=data.get("reference", reference),
            gateway_status=data.get("status") or "",
            metadata=metadata if isinstance(metadata, dict) else {},
        )
