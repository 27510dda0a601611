"""Typed failures raised by the order and payment core.

Every error carries a ``kind`` so callers can branch on it instead of
matching message text. The HTTP layer maps each kind to one status code.
"""
from typing import Optional

VALIDATION = "validation"
NOT_FOUND = "not_found"
STATE_CONFLICT = "state_conflict"
GATEWAY = "gateway"
SIGNATURE = "signature"
PERSISTENCE = "persistence"

HTTP_STATUS_BY_KIND = {
    VALIDATION: 400,
    NOT_FOUND: 404,
    STATE_CONFLICT: 400,
    GATEWAY: 502,
    SIGNATURE: 401,
    PERSISTENCE: 500,
}


class OrderServiceError(Exception):
    kind = PERSISTENCE

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict:
        return {"success": False, "kind": self.kind, "field": self.field, "message": self.message}


class ValidationError(OrderServiceError):
    kind = VALIDATION


class NotFoundError(OrderServiceError):
    kind = NOT_FOUND


class StateConflictError(OrderServiceError):
    kind = STATE_CONFLICT


class GatewayError(OrderServiceError):
    kind = GATEWAY


class SignatureError(OrderServiceError):
    kind = SIGNATURE

    def __init__(self):
        # Uniform message so a rejection never reveals anything about the payload.
        super().__init__("Invalid signature")


class PersistenceError(OrderServiceError):
    kind = PERSISTENCE
