"""The single authority on order status transitions.

Every mutation path (admin API, payment verification, webhook, sweep) asks
:func:`decide` before writing a status. The table below is the only place
transition rules live.
"""
from order_service.errors import StateConflictError, ValidationError
from order_service.models import OrderStatus

APPLY = "apply"
NOOP = "noop"

# Absorbing states have no outgoing transitions.
ABSORBING = frozenset({OrderStatus.CANCELLED, OrderStatus.FAILED})

# target -> statuses it may be entered from
ALLOWED_SOURCES = {
    OrderStatus.PENDING: frozenset(),
    OrderStatus.PROCESSING: frozenset({OrderStatus.PENDING}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.CANCELLED: frozenset(set(OrderStatus) - ABSORBING),
    OrderStatus.FAILED: frozenset(set(OrderStatus) - ABSORBING),
}

# Accepted on input, never stored.
STATUS_ALIASES = {"delivered": OrderStatus.COMPLETED.value}

_RULE_MESSAGES = {
    OrderStatus.PENDING: "Orders cannot be moved back to pending",
    OrderStatus.PROCESSING: "Only pending orders can move to processing",
    OrderStatus.SHIPPED: "Order must be processing before shipping",
    OrderStatus.COMPLETED: "Order must be shipped before delivery",
}


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    value = STATUS_ALIASES.get(value, value)
    try:
        return OrderStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"Invalid status. Allowed: {allowed}", field="status")


def decide(current: OrderStatus, target: OrderStatus, approved_by_admin: bool) -> str:
    """Return APPLY or NOOP for ``current -> target``, or raise StateConflictError."""
    if target is OrderStatus.COMPLETED and not approved_by_admin:
        raise StateConflictError("Order must be admin-approved before delivery", field="status")

    if current is target:
        return NOOP

    if current in ABSORBING:
        raise StateConflictError(f"Order is already {current.value}", field="status")

    if current not in ALLOWED_SOURCES[target]:
        raise StateConflictError(_RULE_MESSAGES[target], field="status")

    return APPLY


def can_transition(current: OrderStatus, target: OrderStatus, approved_by_admin: bool) -> bool:
    try:
        return decide(current, target, approved_by_admin) == APPLY
    except StateConflictError:
        return False
