from sqlalchemy import Column, String, Numeric, Integer, Boolean, DateTime, Enum, ForeignKey
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from uuid import uuid4
import enum

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid4())


class OrderStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentMethod(enum.Enum):
    COD = "cod"
    CARD = "card"
    MOMO = "momo"


# Channels a payment method may be paired with.
PAYMENT_CHANNELS = {
    PaymentMethod.COD: ("cod_pickup",),
    PaymentMethod.CARD: ("visa", "mastercard", "verve"),
    PaymentMethod.MOMO: ("mtn", "vodafone", "airteltigo", "telecel"),
}


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(
        Enum(PaymentMethod, name="payment_method", values_callable=_enum_values), nullable=False
    )
    payment_channel = Column(String(32), nullable=True)
    payment_reference = Column(String(64), unique=True, index=True, nullable=True)
    status = Column(
        Enum(OrderStatus, name="order_status", values_callable=_enum_values),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    approved_by_admin = Column(Boolean, default=False, nullable=False)
    address = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.line_no",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    # Weak reference, products are deleted independently of orders.
    product_id = Column(String(36), nullable=False)
    line_no = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="items")
