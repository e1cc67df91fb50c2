from pydantic import BaseModel, Field, AnyHttpUrl
from typing import Optional, Any
from datetime import datetime

from laundryflow.core.states import OrderStatus, PaymentStatus

class OrderCreate(BaseModel):
    customer_id: str
    order_number: Optional[str] = None
    pickup_window: Optional[str] = None
    delivery_window: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)

class TransitionIn(BaseModel):
    to_status: OrderStatus
    expected_status: Optional[OrderStatus] = None
    driver_id: Optional[str] = None
    estimated_time: Optional[datetime] = None
    photo_url: Optional[AnyHttpUrl] = None
    photo_description: Optional[str] = None
    note: Optional[str] = None

class InvoiceIn(BaseModel):
    total: Optional[float] = Field(None, ge=0)
    note: Optional[str] = None

class PaymentIn(BaseModel):
    payment_status: PaymentStatus
    note: Optional[str] = None
