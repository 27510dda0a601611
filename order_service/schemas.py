from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from order_service.models import OrderStatus, PaymentMethod, PAYMENT_CHANNELS


class Item(BaseModel):
    product_id: str = Field(..., min_length=1, examples=["1b4e28ba-2fa1-11d2-883f-0016d3cca427"])
    quantity: int = Field(..., gt=0, examples=[2])
    price: Decimal = Field(..., gt=0, decimal_places=2, examples=["10.00"])


class OrderCreate(BaseModel):
    items: List[Item] = Field(..., min_length=1)
    address: str = Field(..., min_length=1, max_length=255)
    payment_method: PaymentMethod
    payment_channel: str
    total_amount: Decimal = Field(..., gt=0, decimal_places=2)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)

    @model_validator(mode="after")
    def check_channel(self):
        allowed = PAYMENT_CHANNELS[self.payment_method]
        if self.payment_channel not in allowed:
            raise ValueError(
                f"payment_channel must be one of {', '.join(allowed)} for {self.payment_method.value}"
            )
        if self.payment_method is PaymentMethod.MOMO and not self.phone:
            raise ValueError("phone is required for mobile money payments")
        return self


class OrderItemRead(BaseModel):
    id: str
    product_id: str
    quantity: int
    price: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderRead(BaseModel):
    id: str
    user_id: str
    items: List[OrderItemRead]
    total_amount: Decimal
    payment_method: PaymentMethod
    payment_channel: Optional[str]
    payment_reference: Optional[str]
    status: OrderStatus
    approved_by_admin: bool
    address: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentInitiation(BaseModel):
    method: PaymentMethod
    channel: Optional[str]
    reference: str
    authorization_url: Optional[str] = None
    error: Optional[str] = None


class PlaceOrderResponse(BaseModel):
    success: bool = True
    order: OrderRead
    payment: Optional[PaymentInitiation] = None
    message: str


class OrderListResponse(BaseModel):
    success: bool = True
    orders: List[OrderRead]


class OrderResponse(BaseModel):
    success: bool = True
    order: OrderRead


class StatusUpdate(BaseModel):
    status: str = Field(..., examples=["shipped"])


class VerifyResponse(BaseModel):
    success: bool
    order_id: Optional[str]
    status: Optional[OrderStatus]
    message: str


class WebhookAck(BaseModel):
    success: bool = True
    outcome: str
