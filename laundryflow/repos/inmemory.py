# laundryflow/repos/inmemory.py
import asyncio
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Iterable

from laundryflow.core.assignments import is_assignment_terminal
from laundryflow.core.errors import (
    AssignmentAlreadyActive,
    AssignmentNotFound,
    ConcurrentModification,
    OrderNotFound,
    StorageError,
)
from laundryflow.core.states import AssignmentStatus, AssignmentType, OrderStatus, PaymentStatus
from laundryflow.models.order import DriverAssignment, HistoryEntry, Order, Photo

def _id() -> str:
    return uuid.uuid4().hex

def _now() -> datetime:
    return datetime.now(timezone.utc)

class InMemoryRepo:
    def __init__(self):
        self.orders: Dict[str, dict] = {}
        self.order_numbers: Dict[str, str] = {}
        self.assignments: Dict[str, dict] = {}
        self.photos: Dict[str, dict] = {}
        self.outbox: Dict[str, dict] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock(self, key: str) -> asyncio.Lock:
        return self._locks[key]

    # Orders
    async def create_order(self, customer_id: str, order_number: str, **fields) -> Order:
        if order_number in self.order_numbers:
            raise StorageError(f"Order number {order_number} already exists")
        oid, now = _id(), _now()
        entry = HistoryEntry(at=now, by_actor=customer_id, action="status_change",
                             to_value=OrderStatus.ORDER_PLACED.value, note="order placed")
        doc = {
            "id": oid, "order_number": order_number, "customer_id": customer_id,
            "status": OrderStatus.ORDER_PLACED, "payment_status": PaymentStatus.PENDING,
            "invoice_unlocked": False, "invoice_generated": False,
            "history": [entry.model_dump()], "created_at": now, "updated_at": now,
            **fields,
        }
        self.orders[oid] = doc
        self.order_numbers[order_number] = oid
        return Order.model_validate(doc)

    def _order_doc(self, order_id: str) -> dict:
        doc = self.orders.get(order_id)
        if doc is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return doc

    async def get_order(self, order_id: str) -> Order:
        return Order.model_validate(self._order_doc(order_id))

    async def list_orders_by_status(self, statuses: Iterable[OrderStatus]) -> List[Order]:
        wanted = set(statuses)
        docs = [d for d in self.orders.values() if d["status"] in wanted]
        docs.sort(key=lambda d: d["created_at"], reverse=True)
        return [Order.model_validate(d) for d in docs]

    async def compare_and_set_status(self, order_id: str, old: OrderStatus, new: OrderStatus,
                                     entry: Optional[HistoryEntry] = None,
                                     fields: Optional[dict] = None) -> Order:
        async with self._lock(order_id):
            doc = self._order_doc(order_id)
            if doc["status"] != old:
                raise ConcurrentModification(
                    f"Order {order_id} is {OrderStatus(doc['status']).value}, expected {OrderStatus(old).value}"
                )
            doc.update(fields or {})
            doc["status"] = new
            doc["updated_at"] = _now()
            if entry is not None:
                doc["history"].append(entry.model_dump())
            return Order.model_validate(doc)

    async def set_invoice_flags(self, order_id: str, *, unlocked: Optional[bool] = None,
                                generated: Optional[bool] = None, total: Optional[float] = None,
                                entry: Optional[HistoryEntry] = None) -> Order:
        async with self._lock(order_id):
            doc = self._order_doc(order_id)
            # both flags only ever go false -> true
            if unlocked:
                doc["invoice_unlocked"] = True
            if generated:
                doc["invoice_generated"] = True
            if total is not None:
                doc["invoice_total"] = total
            doc["updated_at"] = _now()
            if entry is not None:
                doc["history"].append(entry.model_dump())
            return Order.model_validate(doc)

    async def set_payment_status(self, order_id: str, status: PaymentStatus,
                                 entry: Optional[HistoryEntry] = None) -> Order:
        async with self._lock(order_id):
            doc = self._order_doc(order_id)
            doc["payment_status"] = status
            doc["updated_at"] = _now()
            if entry is not None:
                doc["history"].append(entry.model_dump())
            return Order.model_validate(doc)

    async def append_history(self, order_id: str, entry: HistoryEntry) -> None:
        async with self._lock(order_id):
            self._order_doc(order_id)["history"].append(entry.model_dump())

    # Driver assignments
    async def create_driver_assignment(self, order_id: str, driver_id: str,
                                       assignment_type: AssignmentType,
                                       estimated_time: Optional[datetime] = None,
                                       notes: Optional[str] = None) -> DriverAssignment:
        async with self._lock(f"assign:{order_id}:{AssignmentType(assignment_type).value}"):
            if await self.active_assignment(order_id, assignment_type) is not None:
                raise AssignmentAlreadyActive(
                    f"Order {order_id} already has an active {AssignmentType(assignment_type).value} assignment"
                )
            aid, now = _id(), _now()
            doc = {
                "id": aid, "order_id": order_id, "driver_id": driver_id,
                "assignment_type": AssignmentType(assignment_type), "status": AssignmentStatus.ASSIGNED,
                "notes": notes, "estimated_time": estimated_time,
                "created_at": now, "updated_at": now,
            }
            self.assignments[aid] = doc
            return self._assignment_out(doc)

    def _assignment_out(self, doc: dict) -> DriverAssignment:
        photos = [p for p in self.photos.values() if p["assignment_id"] == doc["id"]]
        photos.sort(key=lambda p: p["created_at"])
        return DriverAssignment.model_validate({**doc, "photos": photos})

    async def get_assignment(self, assignment_id: str) -> DriverAssignment:
        doc = self.assignments.get(assignment_id)
        if doc is None:
            raise AssignmentNotFound(f"Assignment {assignment_id} not found")
        return self._assignment_out(doc)

    async def list_assignments(self, order_id: str) -> List[DriverAssignment]:
        docs = [d for d in self.assignments.values() if d["order_id"] == order_id]
        docs.sort(key=lambda d: d["created_at"])
        return [self._assignment_out(d) for d in docs]

    async def active_assignment(self, order_id: str,
                                assignment_type: AssignmentType) -> Optional[DriverAssignment]:
        for doc in self.assignments.values():
            if (doc["order_id"] == order_id
                    and doc["assignment_type"] == assignment_type
                    and not is_assignment_terminal(doc["assignment_type"], doc["status"])):
                return self._assignment_out(doc)
        return None

    async def update_assignment_status(self, assignment_id: str, old: AssignmentStatus,
                                       new: AssignmentStatus,
                                       notes: Optional[str] = None) -> DriverAssignment:
        async with self._lock(f"assignment:{assignment_id}"):
            doc = self.assignments.get(assignment_id)
            if doc is None:
                raise AssignmentNotFound(f"Assignment {assignment_id} not found")
            if doc["status"] != old:
                raise ConcurrentModification(
                    f"Assignment {assignment_id} is {AssignmentStatus(doc['status']).value}, "
                    f"expected {AssignmentStatus(old).value}"
                )
            doc["status"] = new
            if notes:
                doc["notes"] = notes
            doc["updated_at"] = _now()
            return self._assignment_out(doc)

    async def delete_assignment(self, assignment_id: str) -> None:
        self.assignments.pop(assignment_id, None)
        for pid in [pid for pid, p in self.photos.items() if p["assignment_id"] == assignment_id]:
            del self.photos[pid]

    async def create_photo(self, assignment_id: str, photo_type: str, url: str,
                           description: Optional[str] = None) -> Photo:
        if assignment_id not in self.assignments:
            raise AssignmentNotFound(f"Assignment {assignment_id} not found")
        doc = {
            "id": _id(), "assignment_id": assignment_id, "photo_type": photo_type,
            "url": url, "description": description, "created_at": _now(),
        }
        self.photos[doc["id"]] = doc
        return Photo.model_validate(doc)

    async def delete_photo(self, photo_id: str) -> None:
        self.photos.pop(photo_id, None)

    # Notification outbox
    async def enqueue_outbox(self, doc: dict) -> str:
        rid = _id()
        self.outbox[rid] = {**doc, "_id": rid}
        return rid

    async def claim_outbox(self, now: datetime) -> Optional[dict]:
        for rec in self.outbox.values():
            if rec["status"] == "pending" and rec["next_try_at"] <= now:
                rec["status"] = "delivering"
                return dict(rec)
        return None

    async def update_outbox(self, rid: str, fields: dict) -> None:
        if rid in self.outbox:
            self.outbox[rid].update(fields)
