"""
Driver assignment lifecycle.

    ASSIGNED -> IN_PROGRESS -> COMPLETED -> DROPPED_OFF   (pickup)
    ASSIGNED -> IN_PROGRESS -> COMPLETED                  (delivery)
    ASSIGNED | IN_PROGRESS -> FAILED

Hand-off statuses need a photo taken in the same request. Assignments are
never reopened; a re-dispatch gets a new record.
"""
from laundryflow.core.errors import InvalidStepOrder, PhotoRequired, Verdict
from laundryflow.core.states import (
    AssignmentStatus as A,
    AssignmentType,
    OrderStatus as S,
)

PHOTO_GATED = frozenset({A.COMPLETED, A.DROPPED_OFF, A.FAILED})

EDGES: dict[AssignmentType, dict[A, frozenset[A]]] = {
    AssignmentType.PICKUP: {
        A.ASSIGNED: frozenset({A.IN_PROGRESS, A.FAILED}),
        A.IN_PROGRESS: frozenset({A.COMPLETED, A.FAILED}),
        A.COMPLETED: frozenset({A.DROPPED_OFF}),
        A.DROPPED_OFF: frozenset(),
        A.FAILED: frozenset(),
    },
    AssignmentType.DELIVERY: {
        A.ASSIGNED: frozenset({A.IN_PROGRESS, A.FAILED}),
        A.IN_PROGRESS: frozenset({A.COMPLETED, A.FAILED}),
        A.COMPLETED: frozenset(),
        A.DROPPED_OFF: frozenset(),
        A.FAILED: frozenset(),
    },
}

# Order status a driver requests -> the assignment leg and status it moves
HANDOFFS: dict[S, tuple[AssignmentType, A]] = {
    S.PICKUP_IN_PROGRESS: (AssignmentType.PICKUP, A.IN_PROGRESS),
    S.PICKUP_COMPLETED: (AssignmentType.PICKUP, A.COMPLETED),
    S.PICKUP_FAILED: (AssignmentType.PICKUP, A.FAILED),
    S.DROPPED_OFF: (AssignmentType.PICKUP, A.DROPPED_OFF),
    S.DELIVERY_IN_PROGRESS: (AssignmentType.DELIVERY, A.IN_PROGRESS),
    S.DELIVERED: (AssignmentType.DELIVERY, A.COMPLETED),
    S.DELIVERY_FAILED: (AssignmentType.DELIVERY, A.FAILED),
}

# Order statuses that dispatch a driver
DISPATCHES: dict[S, AssignmentType] = {
    S.PICKUP_ASSIGNED: AssignmentType.PICKUP,
    S.DELIVERY_ASSIGNED: AssignmentType.DELIVERY,
}


def is_assignment_terminal(assignment_type: AssignmentType, status: A) -> bool:
    return not EDGES[AssignmentType(assignment_type)][A(status)]


def photo_type(assignment_type: AssignmentType, status: A) -> str:
    return f"{AssignmentType(assignment_type).value}_{A(status).value.lower()}_photo"


def request_assignment_transition(assignment, new_status: A, photo_provided: bool) -> Verdict:
    """Check an assignment move. `assignment` needs `assignment_type` and `status`."""
    new_status = A(new_status)
    if new_status in PHOTO_GATED and not photo_provided:
        return Verdict.reject(PhotoRequired(
            f"A photo is required to mark a {AssignmentType(assignment.assignment_type).value} "
            f"assignment {new_status.value}"
        ))

    allowed = EDGES[AssignmentType(assignment.assignment_type)][A(assignment.status)]
    if new_status not in allowed:
        return Verdict.reject(InvalidStepOrder(
            f"Assignment cannot move from {A(assignment.status).value} to {new_status.value}"
        ))
    return Verdict.accept()
