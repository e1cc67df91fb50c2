from enum import Enum


class OrderStatus(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    CONFIRMED = "CONFIRMED"
    PICKUP_ASSIGNED = "PICKUP_ASSIGNED"
    PICKUP_IN_PROGRESS = "PICKUP_IN_PROGRESS"
    PICKUP_COMPLETED = "PICKUP_COMPLETED"
    PICKUP_FAILED = "PICKUP_FAILED"
    DROPPED_OFF = "DROPPED_OFF"
    RECEIVED_AT_FACILITY = "RECEIVED_AT_FACILITY"
    PROCESSING_STARTED = "PROCESSING_STARTED"
    PROCESSING_COMPLETED = "PROCESSING_COMPLETED"
    QUALITY_CHECK = "QUALITY_CHECK"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    DELIVERY_ASSIGNED = "DELIVERY_ASSIGNED"
    DELIVERY_IN_PROGRESS = "DELIVERY_IN_PROGRESS"
    DELIVERED = "DELIVERED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class AssignmentStatus(str, Enum):
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DROPPED_OFF = "DROPPED_OFF"
    FAILED = "FAILED"


class AssignmentType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIAL_REFUND = "PARTIAL_REFUND"


S = OrderStatus

# Position on the customer-facing timeline; 0 = off the happy path.
STEPS: dict[OrderStatus, int] = {
    S.ORDER_PLACED: 1,
    S.CONFIRMED: 2,
    S.PICKUP_ASSIGNED: 3,
    S.PICKUP_IN_PROGRESS: 4,
    S.PICKUP_COMPLETED: 5,
    S.PICKUP_FAILED: 0,
    S.DROPPED_OFF: 6,
    S.RECEIVED_AT_FACILITY: 7,
    S.PROCESSING_STARTED: 8,
    S.PROCESSING_COMPLETED: 9,
    S.QUALITY_CHECK: 10,
    S.READY_FOR_DELIVERY: 11,
    S.DELIVERY_ASSIGNED: 12,
    S.DELIVERY_IN_PROGRESS: 13,
    S.DELIVERED: 14,
    S.DELIVERY_FAILED: 0,
    S.CANCELLED: 0,
    S.REFUNDED: 0,
}

TERMINAL = frozenset({S.DELIVERED, S.CANCELLED, S.REFUNDED})
FAILURE = frozenset({S.PICKUP_FAILED, S.DELIVERY_FAILED})

LABELS: dict[OrderStatus, tuple[str, str]] = {
    S.ORDER_PLACED: ("Order Placed", "Order has been placed by customer"),
    S.CONFIRMED: ("Confirmed", "Order has been confirmed by staff"),
    S.PICKUP_ASSIGNED: ("Pickup Assigned", "Driver assigned for pickup"),
    S.PICKUP_IN_PROGRESS: ("Pickup In Progress", "Driver is on the way for pickup"),
    S.PICKUP_COMPLETED: ("Pickup Completed", "Items have been picked up"),
    S.PICKUP_FAILED: ("Pickup Failed", "Pickup was unsuccessful"),
    S.DROPPED_OFF: ("Dropped Off At Facility", "Driver dropped the items at the facility"),
    S.RECEIVED_AT_FACILITY: ("Received at Facility", "Items received at processing facility"),
    S.PROCESSING_STARTED: ("Processing Started", "Items are being processed"),
    S.PROCESSING_COMPLETED: ("Processing Completed", "All items have been processed"),
    S.QUALITY_CHECK: ("Quality Check", "Items undergoing quality inspection"),
    S.READY_FOR_DELIVERY: ("Ready for Delivery", "Items ready for delivery"),
    S.DELIVERY_ASSIGNED: ("Delivery Assigned", "Driver assigned for delivery"),
    S.DELIVERY_IN_PROGRESS: ("Delivery In Progress", "Driver is on the way for delivery"),
    S.DELIVERED: ("Delivered", "Order has been delivered successfully"),
    S.DELIVERY_FAILED: ("Delivery Failed", "Delivery was unsuccessful"),
    S.CANCELLED: ("Cancelled", "Order has been cancelled"),
    S.REFUNDED: ("Refunded", "Payment has been refunded"),
}

# What each back-office team works on
TEAM_QUEUES: dict[str, frozenset[OrderStatus]] = {
    "driver": frozenset({
        S.PICKUP_ASSIGNED, S.PICKUP_IN_PROGRESS, S.PICKUP_COMPLETED,
        S.DELIVERY_ASSIGNED, S.DELIVERY_IN_PROGRESS,
    }),
    "facility": frozenset({
        S.DROPPED_OFF, S.RECEIVED_AT_FACILITY, S.PROCESSING_STARTED,
        S.PROCESSING_COMPLETED, S.QUALITY_CHECK, S.READY_FOR_DELIVERY,
    }),
    "operations": frozenset({
        S.ORDER_PLACED, S.CONFIRMED, S.PICKUP_FAILED, S.DELIVERY_FAILED,
    }),
}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL

def is_failure_status(status: OrderStatus) -> bool:
    return status in FAILURE

def step_of(status: OrderStatus) -> int:
    return STEPS[status]

def label_of(status: OrderStatus) -> str:
    return LABELS[status][0]

def describe(status: OrderStatus) -> dict:
    label, description = LABELS[status]
    return {"value": status.value, "label": label, "description": description, "step": STEPS[status]}

def team_statuses(team: str) -> frozenset[OrderStatus]:
    if team not in TEAM_QUEUES:
        raise KeyError(team)
    return TEAM_QUEUES[team]
