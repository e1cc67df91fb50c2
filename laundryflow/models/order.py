from pydantic import BaseModel, Field
from typing import Optional, List, Any
from datetime import datetime

from laundryflow.core.states import (
    OrderStatus,
    AssignmentStatus,
    AssignmentType,
    PaymentStatus,
)

class HistoryEntry(BaseModel):
    at: datetime
    by_actor: Optional[str] = None
    role: Optional[str] = None
    action: str = "status_change"
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    note: Optional[str] = None
    meta: Optional[dict[str, Any]] = None

class Order(BaseModel):
    id: str
    order_number: str
    customer_id: str
    status: OrderStatus = OrderStatus.ORDER_PLACED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    invoice_unlocked: bool = False
    invoice_generated: bool = False
    invoice_total: Optional[float] = None
    pickup_window: Optional[str] = None
    delivery_window: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    history: List[HistoryEntry] = []
    created_at: datetime
    updated_at: datetime

class Photo(BaseModel):
    id: str
    assignment_id: str
    photo_type: str
    url: str
    description: Optional[str] = None
    created_at: datetime

class DriverAssignment(BaseModel):
    id: str
    order_id: str
    driver_id: str
    assignment_type: AssignmentType
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    notes: Optional[str] = None
    estimated_time: Optional[datetime] = None
    photos: List[Photo] = []
    created_at: datetime
    updated_at: datetime
