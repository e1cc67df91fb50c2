"""
Order transition table and validator.

The table is derived from the timeline steps: each status moves to the next
step, failure statuses branch off the driver legs and re-enter the matching
assignment step, and staff may cancel or refund anything not yet terminal.
After DELIVERED or CANCELLED the only way forward is REFUNDED.
"""
from typing import Optional

from laundryflow.core.errors import (
    ActorNotPermitted,
    InvalidStepOrder,
    OrderAlreadyTerminal,
    Verdict,
)
from laundryflow.core.policy import Role, can_set, DRIVER_STATUSES
from laundryflow.core.states import (
    OrderStatus as S,
    STEPS,
    TERMINAL,
    is_terminal,
    label_of,
)

FAILURE_BRANCHES = {
    S.PICKUP_FAILED: (S.PICKUP_ASSIGNED, S.PICKUP_IN_PROGRESS),
    S.DELIVERY_FAILED: (S.DELIVERY_ASSIGNED, S.DELIVERY_IN_PROGRESS),
}

REDISPATCH = {
    S.PICKUP_FAILED: S.PICKUP_ASSIGNED,
    S.DELIVERY_FAILED: S.DELIVERY_ASSIGNED,
}

POST_TERMINAL = {
    S.DELIVERED: {S.REFUNDED},
    S.CANCELLED: {S.REFUNDED},
    S.REFUNDED: set(),
}


def _build_adjacency() -> dict[S, frozenset[S]]:
    by_step = {step: status for status, step in STEPS.items() if step > 0}
    table: dict[S, set[S]] = {s: set() for s in S}

    for status, step in STEPS.items():
        nxt = by_step.get(step + 1) if step > 0 else None
        if nxt is not None:
            table[status].add(nxt)

    for failure, sources in FAILURE_BRANCHES.items():
        for src in sources:
            table[src].add(failure)

    for failure, target in REDISPATCH.items():
        table[failure].add(target)

    for status in S:
        if status in TERMINAL:
            table[status] = set(POST_TERMINAL[status])
        else:
            table[status] |= {S.CANCELLED, S.REFUNDED}

    return {k: frozenset(v) for k, v in table.items()}


ADJACENCY = _build_adjacency()


def is_adjacent(src: S, dst: S) -> bool:
    return dst in ADJACENCY[src]


def _coerce_role(role) -> Optional[Role]:
    try:
        return Role(role)
    except ValueError:
        return None


def validate(
    current: S,
    requested: S,
    role: Role | str,
    *,
    actor_id: Optional[str] = None,
    assigned_driver_id: Optional[str] = None,
) -> Verdict:
    """Decide whether `role` may move an order from `current` to `requested`.

    Step order is checked before role, so an illegal edge is always reported
    as InvalidStepOrder whoever asks. Drivers additionally have to be the
    driver on the order's active assignment.
    """
    if is_terminal(current) and not is_adjacent(current, requested):
        return Verdict.reject(OrderAlreadyTerminal(
            f"Order is {label_of(current)}; it cannot move to {label_of(requested)}"
        ))

    if not is_adjacent(current, requested):
        return Verdict.reject(InvalidStepOrder(
            f"Cannot transition from {label_of(current)} to {label_of(requested)}"
        ))

    actor_role = _coerce_role(role)
    if actor_role is None or not can_set(actor_role, requested):
        return Verdict.reject(ActorNotPermitted(
            f"Role {role} may not set status {label_of(requested)}"
        ))

    if actor_role == Role.DRIVER and requested in DRIVER_STATUSES:
        if assigned_driver_id is None or assigned_driver_id != actor_id:
            return Verdict.reject(ActorNotPermitted(
                "Driver can only update their own assigned orders"
            ))

    return Verdict.accept()


def allowed_transitions(current: S, role: Role | str) -> list[S]:
    """Targets reachable from `current` that `role` may request, in timeline order."""
    actor_role = _coerce_role(role)
    if actor_role is None:
        return []
    targets = [s for s in ADJACENCY[current] if can_set(actor_role, s)]
    return sorted(targets, key=lambda s: (STEPS[s] == 0, STEPS[s], s.value))
