from enum import Enum

from laundryflow.core.states import OrderStatus as S


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    DRIVER = "DRIVER"
    FACILITY_TEAM = "FACILITY_TEAM"
    OPERATION_MANAGER = "OPERATION_MANAGER"
    ADMIN = "ADMIN"


STAFF = {Role.ADMIN, Role.OPERATION_MANAGER}
FACILITY = {Role.FACILITY_TEAM, Role.ADMIN}

# Who may move an order INTO a given status
STATUS_ROLES: dict[S, frozenset[Role]] = {
    S.ORDER_PLACED: frozenset(),
    S.CONFIRMED: frozenset(STAFF),
    S.PICKUP_ASSIGNED: frozenset(STAFF),
    S.PICKUP_IN_PROGRESS: frozenset({Role.DRIVER}),
    S.PICKUP_COMPLETED: frozenset({Role.DRIVER}),
    S.PICKUP_FAILED: frozenset({Role.DRIVER}),
    S.DROPPED_OFF: frozenset({Role.DRIVER}),
    S.RECEIVED_AT_FACILITY: frozenset(FACILITY),
    S.PROCESSING_STARTED: frozenset(FACILITY),
    S.PROCESSING_COMPLETED: frozenset(FACILITY),
    S.QUALITY_CHECK: frozenset(FACILITY),
    S.READY_FOR_DELIVERY: frozenset(FACILITY),
    S.DELIVERY_ASSIGNED: frozenset(STAFF | {Role.FACILITY_TEAM}),
    S.DELIVERY_IN_PROGRESS: frozenset({Role.DRIVER}),
    S.DELIVERED: frozenset({Role.DRIVER}),
    S.DELIVERY_FAILED: frozenset({Role.DRIVER}),
    S.CANCELLED: frozenset(STAFF),
    S.REFUNDED: frozenset(STAFF),
}

# Statuses a driver sets on their own assignment
DRIVER_STATUSES = frozenset(s for s, roles in STATUS_ROLES.items() if roles == {Role.DRIVER})


def roles_for(status: S) -> frozenset[Role]:
    return STATUS_ROLES.get(status, frozenset())

def can_set(role: Role, status: S) -> bool:
    return role in roles_for(status)
