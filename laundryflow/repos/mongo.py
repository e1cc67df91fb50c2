# laundryflow/repos/mongo.py
import functools
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Iterable

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

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

logger = logging.getLogger(__name__)

def oid() -> str:
    return str(ObjectId())

def _now() -> datetime:
    return datetime.now(timezone.utc)

def _plain(value):
    """Enums -> their values so documents stay plain BSON."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value

def _out(doc: dict) -> dict:
    doc = dict(doc)
    doc["id"] = doc.pop("_id")
    return doc

def storage_guard(func):
    """Surface driver failures as StorageError; lifecycle errors pass through."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except DuplicateKeyError as exc:
            raise StorageError(f"Duplicate key: {exc.details or exc}") from exc
        except PyMongoError as exc:
            logger.error("MongoDB failure in %s: %s", func.__name__, exc)
            raise StorageError(str(exc)) from exc
    return wrapper


class MongoRepo:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    @storage_guard
    async def ensure_indexes(self) -> None:
        await self.db.orders.create_index([("order_number", ASCENDING)], name="order_number_1", unique=True)
        await self.db.orders.create_index([("status", ASCENDING)], name="status_1")
        await self.db.assignments.create_index(
            [("order_id", ASCENDING), ("assignment_type", ASCENDING)], name="order_type_1"
        )
        # at most one live assignment per order and leg
        await self.db.assignments.create_index(
            [("order_id", ASCENDING), ("assignment_type", ASCENDING)],
            name="order_type_active_1",
            unique=True,
            partialFilterExpression={"active": True},
        )
        await self.db.photos.create_index([("assignment_id", ASCENDING)], name="assignment_1")
        await self.db.outbox.create_index(
            [("status", ASCENDING), ("next_try_at", ASCENDING)], name="status_next_try_1"
        )

    # Orders
    @storage_guard
    async def create_order(self, customer_id: str, order_number: str, **fields) -> Order:
        now = _now()
        entry = HistoryEntry(at=now, by_actor=customer_id, action="status_change",
                             to_value=OrderStatus.ORDER_PLACED.value, note="order placed")
        doc = _plain({
            "_id": oid(), "order_number": order_number, "customer_id": customer_id,
            "status": OrderStatus.ORDER_PLACED, "payment_status": PaymentStatus.PENDING,
            "invoice_unlocked": False, "invoice_generated": False,
            "history": [entry.model_dump()], "created_at": now, "updated_at": now,
            **fields,
        })
        await self.db.orders.insert_one(doc)
        return Order.model_validate(_out(doc))

    @storage_guard
    async def get_order(self, order_id: str) -> Order:
        doc = await self.db.orders.find_one({"_id": order_id})
        if not doc:
            raise OrderNotFound(f"Order {order_id} not found")
        return Order.model_validate(_out(doc))

    @storage_guard
    async def list_orders_by_status(self, statuses: Iterable[OrderStatus]) -> List[Order]:
        cur = self.db.orders.find({"status": {"$in": _plain(list(statuses))}}).sort("created_at", -1)
        return [Order.model_validate(_out(d)) async for d in cur]

    async def _update_order(self, query: dict, update: dict) -> Optional[dict]:
        return await self.db.orders.find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER
        )

    @storage_guard
    async def compare_and_set_status(self, order_id: str, old: OrderStatus, new: OrderStatus,
                                     entry: Optional[HistoryEntry] = None,
                                     fields: Optional[dict] = None) -> Order:
        update = {"$set": {**_plain(fields or {}), "status": _plain(new), "updated_at": _now()}}
        if entry is not None:
            update["$push"] = {"history": _plain(entry.model_dump())}
        doc = await self._update_order({"_id": order_id, "status": _plain(old)}, update)
        if doc is None:
            current = await self.db.orders.find_one({"_id": order_id}, {"status": 1})
            if current is None:
                raise OrderNotFound(f"Order {order_id} not found")
            raise ConcurrentModification(
                f"Order {order_id} is {current['status']}, expected {_plain(old)}"
            )
        return Order.model_validate(_out(doc))

    @storage_guard
    async def set_invoice_flags(self, order_id: str, *, unlocked: Optional[bool] = None,
                                generated: Optional[bool] = None, total: Optional[float] = None,
                                entry: Optional[HistoryEntry] = None) -> Order:
        fields = {"updated_at": _now()}
        if unlocked:
            fields["invoice_unlocked"] = True
        if generated:
            fields["invoice_generated"] = True
        if total is not None:
            fields["invoice_total"] = total
        update = {"$set": fields}
        if entry is not None:
            update["$push"] = {"history": _plain(entry.model_dump())}
        doc = await self._update_order({"_id": order_id}, update)
        if doc is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return Order.model_validate(_out(doc))

    @storage_guard
    async def set_payment_status(self, order_id: str, status: PaymentStatus,
                                 entry: Optional[HistoryEntry] = None) -> Order:
        update = {"$set": {"payment_status": _plain(status), "updated_at": _now()}}
        if entry is not None:
            update["$push"] = {"history": _plain(entry.model_dump())}
        doc = await self._update_order({"_id": order_id}, update)
        if doc is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return Order.model_validate(_out(doc))

    @storage_guard
    async def append_history(self, order_id: str, entry: HistoryEntry) -> None:
        res = await self.db.orders.update_one(
            {"_id": order_id}, {"$push": {"history": _plain(entry.model_dump())}}
        )
        if res.matched_count == 0:
            raise OrderNotFound(f"Order {order_id} not found")

    # Driver assignments
    async def _assignment_out(self, doc: dict) -> DriverAssignment:
        photos = [_out(p) async for p in self.db.photos.find({"assignment_id": doc["_id"]}).sort("created_at", 1)]
        return DriverAssignment.model_validate({**_out(doc), "photos": photos})

    @storage_guard
    async def create_driver_assignment(self, order_id: str, driver_id: str,
                                       assignment_type: AssignmentType,
                                       estimated_time: Optional[datetime] = None,
                                       notes: Optional[str] = None) -> DriverAssignment:
        if await self.active_assignment(order_id, assignment_type) is not None:
            raise AssignmentAlreadyActive(
                f"Order {order_id} already has an active {AssignmentType(assignment_type).value} assignment"
            )
        now = _now()
        doc = _plain({
            "_id": oid(), "order_id": order_id, "driver_id": driver_id,
            "assignment_type": assignment_type, "status": AssignmentStatus.ASSIGNED,
            "active": True, "notes": notes, "estimated_time": estimated_time,
            "created_at": now, "updated_at": now,
        })
        try:
            await self.db.assignments.insert_one(doc)
        except DuplicateKeyError as exc:
            # lost the race against another dispatch; order_type_active_1 caught it
            raise AssignmentAlreadyActive(
                f"Order {order_id} already has an active {AssignmentType(assignment_type).value} assignment"
            ) from exc
        return DriverAssignment.model_validate({**_out(doc), "photos": []})

    @storage_guard
    async def delete_assignment(self, assignment_id: str) -> None:
        await self.db.photos.delete_many({"assignment_id": assignment_id})
        await self.db.assignments.delete_one({"_id": assignment_id})

    @storage_guard
    async def get_assignment(self, assignment_id: str) -> DriverAssignment:
        doc = await self.db.assignments.find_one({"_id": assignment_id})
        if not doc:
            raise AssignmentNotFound(f"Assignment {assignment_id} not found")
        return await self._assignment_out(doc)

    @storage_guard
    async def list_assignments(self, order_id: str) -> List[DriverAssignment]:
        cur = self.db.assignments.find({"order_id": order_id}).sort("created_at", 1)
        return [await self._assignment_out(d) async for d in cur]

    @storage_guard
    async def active_assignment(self, order_id: str,
                                assignment_type: AssignmentType) -> Optional[DriverAssignment]:
        cur = self.db.assignments.find(
            {"order_id": order_id, "assignment_type": _plain(assignment_type)}
        ).sort("created_at", -1)
        async for doc in cur:
            if not is_assignment_terminal(doc["assignment_type"], doc["status"]):
                return await self._assignment_out(doc)
        return None

    @storage_guard
    async def update_assignment_status(self, assignment_id: str, old: AssignmentStatus,
                                       new: AssignmentStatus,
                                       notes: Optional[str] = None) -> DriverAssignment:
        current = await self.db.assignments.find_one({"_id": assignment_id}, {"assignment_type": 1})
        if current is None:
            raise AssignmentNotFound(f"Assignment {assignment_id} not found")
        fields = {
            "status": _plain(new),
            "active": not is_assignment_terminal(current["assignment_type"], new),
            "updated_at": _now(),
        }
        if notes:
            fields["notes"] = notes
        doc = await self.db.assignments.find_one_and_update(
            {"_id": assignment_id, "status": _plain(old)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            current = await self.db.assignments.find_one({"_id": assignment_id}, {"status": 1})
            if current is None:
                raise AssignmentNotFound(f"Assignment {assignment_id} not found")
            raise ConcurrentModification(
                f"Assignment {assignment_id} is {current['status']}, expected {_plain(old)}"
            )
        return await self._assignment_out(doc)

    @storage_guard
    async def create_photo(self, assignment_id: str, photo_type: str, url: str,
                           description: Optional[str] = None) -> Photo:
        doc = {
            "_id": oid(), "assignment_id": assignment_id, "photo_type": photo_type,
            "url": url, "description": description, "created_at": _now(),
        }
        await self.db.photos.insert_one(doc)
        return Photo.model_validate(_out(doc))

    @storage_guard
    async def delete_photo(self, photo_id: str) -> None:
        await self.db.photos.delete_one({"_id": photo_id})

    # Notification outbox
    @storage_guard
    async def enqueue_outbox(self, doc: dict) -> str:
        rid = oid()
        await self.db.outbox.insert_one({**_plain(doc), "_id": rid})
        return rid

    @storage_guard
    async def claim_outbox(self, now: datetime) -> Optional[dict]:
        return await self.db.outbox.find_one_and_update(
            {"status": "pending", "next_try_at": {"$lte": now}},
            {"$set": {"status": "delivering"}},
        )

    @storage_guard
    async def update_outbox(self, rid: str, fields: dict) -> None:
        await self.db.outbox.update_one({"_id": rid}, {"$set": fields})
