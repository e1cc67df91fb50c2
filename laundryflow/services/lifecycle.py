"""
Order lifecycle service: the one place where a transition request is
validated, written and followed up.

A request reads the order, checks the move (and, for driver hand-offs, the
assignment move and its photo), writes the photo and the assignment, then
compare-and-sets the status together with its history entry and invoice
unlock. If any of those writes fails, the ones before it are undone.
Notifications go out last and never undo the write.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List

from laundryflow.core.assignments import (
    DISPATCHES,
    HANDOFFS,
    PHOTO_GATED,
    photo_type,
    request_assignment_transition,
)
from laundryflow.core.effects import Effect, EffectKind, dispatch, photo_required
from laundryflow.core.errors import (
    ActorNotPermitted,
    AssignmentAlreadyActive,
    ConcurrentModification,
    DriverRequired,
    InvoiceLocked,
    LifecycleError,
    OrderAlreadyTerminal,
)
from laundryflow.core.policy import Role, STAFF
from laundryflow.core.security import Actor
from laundryflow.core.states import OrderStatus, PaymentStatus, describe, team_statuses
from laundryflow.core.transitions import allowed_transitions, validate
from laundryflow.models.order import DriverAssignment, HistoryEntry, Order, Photo

logger = logging.getLogger(__name__)

INVOICE_ROLES = {Role.FACILITY_TEAM, Role.ADMIN, Role.OPERATION_MANAGER}
INVOICE_TEMPLATE = "invoice_generated"


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass
class TransitionResult:
    order: Order
    effects: frozenset = frozenset()
    assignment: Optional[DriverAssignment] = None
    photo: Optional[Photo] = None
    notifications: List[str] = field(default_factory=list)


class LifecycleService:
    def __init__(self, repo, notifier):
        self.repo = repo
        self.notifier = notifier

    # ---------- placement ----------
    async def place_order(self, customer_id: str, order_number: Optional[str] = None, **fields) -> Order:
        number = order_number or f"LF-{uuid.uuid4().hex[:8].upper()}"
        order = await self.repo.create_order(customer_id, number, **fields)
        await self._notify(order, "order_placed")
        return order

    # ---------- transitions ----------
    async def transition(
        self,
        order_id: str,
        to_status: OrderStatus,
        actor: Actor,
        *,
        expected_status: Optional[OrderStatus] = None,
        driver_id: Optional[str] = None,
        estimated_time: Optional[datetime] = None,
        photo_url: Optional[str] = None,
        photo_description: Optional[str] = None,
        note: Optional[str] = None,
    ) -> TransitionResult:
        to_status = OrderStatus(to_status)
        order = await self.repo.get_order(order_id)
        if expected_status is not None and OrderStatus(expected_status) != order.status:
            raise ConcurrentModification(
                f"Order {order.order_number} is {order.status.value}, caller saw {OrderStatus(expected_status).value}"
            )
        current = order.status

        handoff = HANDOFFS.get(to_status)
        assignment = None
        if handoff is not None:
            assignment = await self.repo.active_assignment(order_id, handoff[0])

        verdict = validate(
            current, to_status, actor.role,
            actor_id=actor.id,
            assigned_driver_id=assignment.driver_id if assignment else None,
        )
        if not verdict.ok:
            logger.info("Rejected %s -> %s on order %s by %s: %s",
                        current.value, to_status.value, order.order_number, actor.role.value,
                        verdict.error.code)
            verdict.raise_for_error()

        if handoff is not None:
            request_assignment_transition(assignment, handoff[1], bool(photo_url)).raise_for_error()

        dispatch_type = DISPATCHES.get(to_status)
        if dispatch_type is not None:
            if not driver_id:
                raise DriverRequired(f"A driver is required to set {to_status.value}")
            if await self.repo.active_assignment(order_id, dispatch_type) is not None:
                raise AssignmentAlreadyActive(
                    f"Order {order.order_number} already has an active {dispatch_type.value} driver"
                )

        # assignment side first, order last; earlier writes are undone when a
        # later one fails
        undo = []
        photo = None
        try:
            if handoff is not None and handoff[1] in PHOTO_GATED:
                photo = await self.repo.create_photo(
                    assignment.id,
                    photo_type(handoff[0], handoff[1]),
                    str(photo_url),
                    photo_description or f"Photo taken during {handoff[0].value} ({handoff[1].value.lower()})",
                )
                undo.append(lambda p=photo: self.repo.delete_photo(p.id))

            if handoff is not None:
                previous = assignment.status
                assignment = await self.repo.update_assignment_status(
                    assignment.id, previous, handoff[1], notes=note
                )
                undo.append(lambda a=assignment, s=previous: self.repo.update_assignment_status(
                    a.id, a.status, s))
            elif dispatch_type is not None:
                assignment = await self.repo.create_driver_assignment(
                    order_id, driver_id, dispatch_type, estimated_time=estimated_time, notes=note
                )
                undo.append(lambda a=assignment: self.repo.delete_assignment(a.id))

            effects = dispatch(order, current, to_status)
            fields = {}
            if Effect(EffectKind.UNLOCK_INVOICE) in effects:
                fields["invoice_unlocked"] = True

            entry = HistoryEntry(
                at=_utcnow(), by_actor=actor.id, role=actor.role.value, action="status_change",
                from_value=current.value, to_value=to_status.value, note=note,
                meta={"photo_id": photo.id} if photo else None,
            )
            updated = await self.repo.compare_and_set_status(order_id, current, to_status, entry, fields)
        except LifecycleError as exc:
            logger.warning("Transition %s -> %s on order %s failed (%s); undoing %d write(s)",
                           current.value, to_status.value, order.order_number, exc.code, len(undo))
            await self._undo(undo)
            raise

        logger.info("Order %s: %s -> %s by %s %s",
                    updated.order_number, current.value, to_status.value, actor.role.value, actor.id)

        # the template follows the committed document, not the pre-write read
        effects = frozenset(e for e in effects if e.kind != EffectKind.NOTIFY_CUSTOMER) | frozenset(
            e for e in dispatch(updated, current, to_status) if e.kind == EffectKind.NOTIFY_CUSTOMER
        )
        sent = await self._apply_notifications(updated, effects)
        return TransitionResult(order=updated, effects=effects, assignment=assignment,
                                photo=photo, notifications=sent)

    async def allowed_for(self, order_id: str, actor: Actor) -> dict:
        order = await self.repo.get_order(order_id)
        targets = []
        for status in allowed_transitions(order.status, actor.role):
            handoff = HANDOFFS.get(status)
            if handoff is not None:
                assignment = await self.repo.active_assignment(order_id, handoff[0])
                ok = validate(order.status, status, actor.role, actor_id=actor.id,
                              assigned_driver_id=assignment.driver_id if assignment else None).ok
                if not ok:
                    continue
            targets.append({**describe(status), "photo_required": photo_required(status)})
        return {"current": describe(order.status), "allowed": targets}

    # ---------- invoice / payment / notifications ----------
    async def generate_invoice(self, order_id: str, actor: Actor, *,
                               total: Optional[float] = None, note: Optional[str] = None) -> Order:
        """Mark the invoice generated and send it. Calling again re-sends it."""
        if actor.role not in INVOICE_ROLES:
            raise ActorNotPermitted(f"Role {actor.role.value} may not generate invoices")
        order = await self.repo.get_order(order_id)
        if order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            raise OrderAlreadyTerminal(f"Order {order.order_number} is {order.status.value}")
        if not order.invoice_unlocked:
            raise InvoiceLocked(
                f"Invoice for {order.order_number} unlocks at processing completion"
            )

        action = "invoice_regenerated" if order.invoice_generated else "invoice_generated"
        entry = HistoryEntry(at=_utcnow(), by_actor=actor.id, role=actor.role.value, action=action,
                             from_value=str(order.invoice_generated).lower(), to_value="true", note=note)
        updated = await self.repo.set_invoice_flags(order_id, generated=True, total=total, entry=entry)
        logger.info("Order %s: %s by %s", updated.order_number, action, actor.id)
        await self._notify(updated, INVOICE_TEMPLATE)
        return updated

    async def resend_notification(self, order_id: str, actor: Actor) -> TransitionResult:
        if actor.role not in STAFF:
            raise ActorNotPermitted(f"Role {actor.role.value} may not re-send notifications")
        order = await self.repo.get_order(order_id)
        effects = dispatch(order, order.status, order.status, resend=True)
        if Effect(EffectKind.UNLOCK_INVOICE) in effects:
            order = await self.repo.set_invoice_flags(order_id, unlocked=True)
        await self.repo.append_history(order_id, HistoryEntry(
            at=_utcnow(), by_actor=actor.id, role=actor.role.value,
            action="notification_resent", to_value=order.status.value,
        ))
        sent = await self._apply_notifications(order, effects)
        return TransitionResult(order=order, effects=effects, notifications=sent)

    async def update_payment_status(self, order_id: str, actor: Actor, status: PaymentStatus,
                                    note: Optional[str] = None) -> Order:
        if actor.role not in STAFF:
            raise ActorNotPermitted(f"Role {actor.role.value} may not change payment status")
        order = await self.repo.get_order(order_id)
        status = PaymentStatus(status)
        if status == order.payment_status:
            return order
        entry = HistoryEntry(at=_utcnow(), by_actor=actor.id, role=actor.role.value,
                             action="payment_update", from_value=order.payment_status.value,
                             to_value=status.value, note=note)
        return await self.repo.set_payment_status(order_id, status, entry)

    async def team_queue(self, team: str) -> List[Order]:
        return await self.repo.list_orders_by_status(team_statuses(team))

    # ---------- helpers ----------
    async def _undo(self, steps) -> None:
        for step in reversed(steps):
            try:
                await step()
            except LifecycleError:
                logger.error("Could not undo a partial transition write", exc_info=True)

    async def _apply_notifications(self, order: Order, effects) -> List[str]:
        sent = []
        for effect in effects:
            if effect.kind == EffectKind.NOTIFY_CUSTOMER:
                if await self._notify(order, effect.template):
                    sent.append(effect.template)
        return sent

    async def _notify(self, order: Order, template: str) -> bool:
        context = {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status.value,
            "payment_status": order.payment_status.value,
            "invoice_total": order.invoice_total,
        }
        try:
            await self.notifier.send(order.customer_id, template, context)
        except Exception:
            # best effort: the transition is already committed
            logger.warning("Notification %s for order %s failed", template, order.order_number, exc_info=True)
            return False
        return True
