import asyncio

import pytest

from conftest import ADMIN, CUSTOMER, DRIVER, FACILITY, OPS, OTHER_DRIVER, PHOTO, outbox_templates
from laundryflow.core.errors import (
    ActorNotPermitted,
    AssignmentAlreadyActive,
    ConcurrentModification,
    DriverRequired,
    InvalidStepOrder,
    InvoiceLocked,
    OrderAlreadyTerminal,
    PhotoRequired,
    StorageError,
)
from laundryflow.core.states import (
    AssignmentStatus as A,
    AssignmentType,
    OrderStatus as S,
    PaymentStatus,
)
from laundryflow.repos.inmemory import InMemoryRepo
from laundryflow.services.lifecycle import LifecycleService
from laundryflow.services.notifier import OutboxNotifier

pytestmark = pytest.mark.anyio

HAPPY_PATH = [
    (S.CONFIRMED, OPS, {}),
    (S.PICKUP_ASSIGNED, OPS, {"driver_id": DRIVER.id}),
    (S.PICKUP_IN_PROGRESS, DRIVER, {}),
    (S.PICKUP_COMPLETED, DRIVER, {"photo_url": PHOTO}),
    (S.DROPPED_OFF, DRIVER, {"photo_url": PHOTO}),
    (S.RECEIVED_AT_FACILITY, FACILITY, {}),
    (S.PROCESSING_STARTED, FACILITY, {}),
    (S.PROCESSING_COMPLETED, FACILITY, {}),
    (S.QUALITY_CHECK, FACILITY, {}),
    (S.READY_FOR_DELIVERY, FACILITY, {}),
    (S.DELIVERY_ASSIGNED, OPS, {"driver_id": DRIVER.id}),
    (S.DELIVERY_IN_PROGRESS, DRIVER, {}),
    (S.DELIVERED, DRIVER, {"photo_url": PHOTO}),
]

async def advance(service, order_id, until):
    """Walk the happy path up to and including `until`."""
    res = None
    for status, actor, kwargs in HAPPY_PATH:
        res = await service.transition(order_id, status, actor, **kwargs)
        if status == until:
            return res
    raise AssertionError(f"{until} is not on the happy path")

async def _order(service, **kw):
    return await service.place_order(CUSTOMER.id, **kw)


async def test_place_order(service, repo):
    order = await _order(service)
    assert order.status == S.ORDER_PLACED
    assert order.order_number.startswith("LF-")
    assert order.payment_status == PaymentStatus.PENDING
    assert not order.invoice_unlocked and not order.invoice_generated
    assert len(order.history) == 1
    assert outbox_templates(repo) == ["order_placed"]

async def test_duplicate_order_number(service):
    await _order(service, order_number="LF-1")
    with pytest.raises(StorageError):
        await _order(service, order_number="LF-1")

async def test_confirm_pickup_and_photo_gate(service, repo):
    order = await _order(service)
    res = await service.transition(order.id, S.CONFIRMED, ADMIN)
    assert res.order.status == S.CONFIRMED

    res = await service.transition(order.id, S.PICKUP_ASSIGNED, OPS, driver_id=DRIVER.id)
    assert res.assignment.driver_id == DRIVER.id
    assert res.assignment.assignment_type == AssignmentType.PICKUP
    assert res.assignment.status == A.ASSIGNED

    res = await service.transition(order.id, S.PICKUP_IN_PROGRESS, DRIVER)
    assert res.assignment.status == A.IN_PROGRESS

    with pytest.raises(PhotoRequired):
        await service.transition(order.id, S.PICKUP_COMPLETED, DRIVER)
    assert (await repo.get_order(order.id)).status == S.PICKUP_IN_PROGRESS
    assert repo.photos == {}

    res = await service.transition(order.id, S.PICKUP_COMPLETED, DRIVER, photo_url=PHOTO)
    assert res.order.status == S.PICKUP_COMPLETED
    assert res.photo.photo_type == "pickup_completed_photo"
    assert res.photo.url == PHOTO
    assert res.assignment.status == A.COMPLETED
    assert [p.id for p in res.assignment.photos] == [res.photo.id]
    assert res.order.history[-1].meta == {"photo_id": res.photo.id}

async def test_delivered_after_invoice_sends_payment_completed(service, repo):
    order = await _order(service)
    await advance(service, order.id, S.READY_FOR_DELIVERY)

    invoiced = await service.generate_invoice(order.id, ADMIN, total=42.5)
    assert invoiced.invoice_generated
    assert invoiced.invoice_total == 42.5

    await service.transition(order.id, S.DELIVERY_ASSIGNED, OPS, driver_id=DRIVER.id)
    await service.transition(order.id, S.DELIVERY_IN_PROGRESS, DRIVER)
    res = await service.transition(order.id, S.DELIVERED, DRIVER, photo_url=PHOTO)
    assert res.notifications == ["payment_completed"]
    assert "delivered" not in outbox_templates(repo)
    assert res.photo.photo_type == "delivery_completed_photo"

async def test_delivered_without_invoice_sends_delivered(service):
    order = await _order(service)
    res = await advance(service, order.id, S.DELIVERED)
    assert res.notifications == ["delivered"]

async def test_terminal_order_only_refunds(service):
    order = await _order(service)
    await advance(service, order.id, S.DELIVERED)

    with pytest.raises(OrderAlreadyTerminal):
        await service.transition(order.id, S.CANCELLED, ADMIN)
    res = await service.transition(order.id, S.REFUNDED, ADMIN)
    assert res.order.status == S.REFUNDED
    with pytest.raises(OrderAlreadyTerminal):
        await service.transition(order.id, S.REFUNDED, ADMIN)

async def test_full_path_notifies_every_step(service, repo):
    order = await _order(service)
    res = await advance(service, order.id, S.DELIVERED)
    assert outbox_templates(repo) == ["order_placed"] + [s.value.lower() for s, _, _ in HAPPY_PATH]
    assert [h.to_value for h in res.order.history] == ["ORDER_PLACED"] + [s.value for s, _, _ in HAPPY_PATH]
    assert [a.status for a in await repo.list_assignments(order.id)] == [A.DROPPED_OFF, A.COMPLETED]

async def test_dropped_off_does_not_advance_further(service, repo):
    order = await _order(service)
    res = await advance(service, order.id, S.DROPPED_OFF)
    assert res.order.status == S.DROPPED_OFF
    assert res.assignment.status == A.DROPPED_OFF
    assert res.photo.photo_type == "pickup_dropped_off_photo"

async def test_skipping_a_step_is_rejected(service, repo):
    order = await _order(service)
    with pytest.raises(InvalidStepOrder):
        await service.transition(order.id, S.PICKUP_ASSIGNED, ADMIN, driver_id=DRIVER.id)
    assert (await repo.get_order(order.id)).status == S.ORDER_PLACED
    assert outbox_templates(repo) == ["order_placed"]

async def test_other_driver_cannot_touch_order(service):
    order = await _order(service)
    await advance(service, order.id, S.PICKUP_ASSIGNED)
    with pytest.raises(ActorNotPermitted):
        await service.transition(order.id, S.PICKUP_IN_PROGRESS, OTHER_DRIVER)

async def test_customer_cannot_transition(service):
    order = await _order(service)
    with pytest.raises(ActorNotPermitted):
        await service.transition(order.id, S.CONFIRMED, CUSTOMER)

async def test_dispatch_requires_driver(service, repo):
    order = await _order(service)
    await advance(service, order.id, S.CONFIRMED)
    with pytest.raises(DriverRequired):
        await service.transition(order.id, S.PICKUP_ASSIGNED, OPS)
    assert (await repo.get_order(order.id)).status == S.CONFIRMED

async def test_second_active_assignment_is_refused(service, repo):
    order = await _order(service)
    await advance(service, order.id, S.CONFIRMED)
    await repo.create_driver_assignment(order.id, OTHER_DRIVER.id, AssignmentType.PICKUP)
    with pytest.raises(AssignmentAlreadyActive):
        await service.transition(order.id, S.PICKUP_ASSIGNED, OPS, driver_id=DRIVER.id)
    assert (await repo.get_order(order.id)).status == S.CONFIRMED
    assert len(await repo.list_assignments(order.id)) == 1

async def test_failed_pickup_is_redispatched(service, repo):
    order = await _order(service)
    await advance(service, order.id, S.PICKUP_IN_PROGRESS)

    with pytest.raises(PhotoRequired):
        await service.transition(order.id, S.PICKUP_FAILED, DRIVER)
    res = await service.transition(order.id, S.PICKUP_FAILED, DRIVER, photo_url=PHOTO,
                                   note="nobody home")
    assert res.assignment.status == A.FAILED
    assert res.photo.photo_type == "pickup_failed_photo"
    assert res.order.status == S.PICKUP_FAILED

    res = await service.transition(order.id, S.PICKUP_ASSIGNED, OPS, driver_id=OTHER_DRIVER.id)
    assert res.assignment.driver_id == OTHER_DRIVER.id
    assert len(await repo.list_assignments(order.id)) == 2

    with pytest.raises(ActorNotPermitted):
        await service.transition(order.id, S.PICKUP_IN_PROGRESS, DRIVER)
    res = await service.transition(order.id, S.PICKUP_IN_PROGRESS, OTHER_DRIVER)
    assert res.order.status == S.PICKUP_IN_PROGRESS

async def test_stale_expected_status(service, repo):
    order = await _order(service)
    await service.transition(order.id, S.CONFIRMED, OPS)
    with pytest.raises(ConcurrentModification):
        await service.transition(order.id, S.CANCELLED, OPS, expected_status=S.ORDER_PLACED)
    assert (await repo.get_order(order.id)).status == S.CONFIRMED

async def test_concurrent_requests_one_wins():
    class YieldingRepo(InMemoryRepo):
        # let the other request read the same status before anyone writes
        async def get_order(self, order_id):
            order = await super().get_order(order_id)
            await asyncio.sleep(0)
            return order

    repo = YieldingRepo()
    service = LifecycleService(repo, OutboxNotifier(repo))
    order = await service.place_order(CUSTOMER.id)
    results = await asyncio.gather(
        service.transition(order.id, S.CONFIRMED, OPS),
        service.transition(order.id, S.CANCELLED, ADMIN),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], ConcurrentModification)
    assert len((await repo.get_order(order.id)).history) == 2
    assert len(outbox_templates(repo)) == 2

async def test_compare_and_set_race(repo):
    order = await repo.create_order(CUSTOMER.id, "LF-RACE")
    results = await asyncio.gather(
        repo.compare_and_set_status(order.id, S.ORDER_PLACED, S.CONFIRMED),
        repo.compare_and_set_status(order.id, S.ORDER_PLACED, S.CANCELLED),
        return_exceptions=True,
    )
    assert sum(isinstance(r, ConcurrentModification) for r in results) == 1
    assert (await repo.get_order(order.id)).status in (S.CONFIRMED, S.CANCELLED)

async def test_invoice_unlock_commits_with_status(service, repo):
    order = await _order(service)
    res = await advance(service, order.id, S.PROCESSING_STARTED)
    assert not res.order.invoice_unlocked
    with pytest.raises(InvoiceLocked):
        await service.generate_invoice(order.id, FACILITY)

    res = await service.transition(order.id, S.PROCESSING_COMPLETED, FACILITY)
    assert res.order.invoice_unlocked

    first = await service.generate_invoice(order.id, FACILITY)
    again = await service.generate_invoice(order.id, ADMIN, note="customer asked")
    assert first.history[-1].action == "invoice_generated"
    assert again.history[-1].action == "invoice_regenerated"
    assert outbox_templates(repo).count("invoice_generated") == 2

async def test_invoice_roles_and_terminal(service):
    order = await _order(service)
    await advance(service, order.id, S.PROCESSING_COMPLETED)
    with pytest.raises(ActorNotPermitted):
        await service.generate_invoice(order.id, DRIVER)
    await service.transition(order.id, S.CANCELLED, OPS)
    with pytest.raises(OrderAlreadyTerminal):
        await service.generate_invoice(order.id, ADMIN)

async def test_notifier_failure_keeps_transition(repo):
    class BrokenNotifier:
        async def send(self, customer_id, template_key, context):
            raise RuntimeError("gateway down")

    service = LifecycleService(repo, BrokenNotifier())
    order = await service.place_order(CUSTOMER.id)
    res = await service.transition(order.id, S.CONFIRMED, OPS)
    assert res.order.status == S.CONFIRMED
    assert res.notifications == []
    assert (await repo.get_order(order.id)).status == S.CONFIRMED

async def test_storage_failure_fires_nothing():
    class FlakyRepo(InMemoryRepo):
        async def compare_and_set_status(self, *args, **kwargs):
            raise StorageError("write failed")

    repo = FlakyRepo()
    service = LifecycleService(repo, OutboxNotifier(repo))
    order = await service.place_order(CUSTOMER.id)
    with pytest.raises(StorageError):
        await service.transition(order.id, S.CONFIRMED, OPS)
    stored = await repo.get_order(order.id)
    assert stored.status == S.ORDER_PLACED
    assert len(stored.history) == 1
    assert outbox_templates(repo) == ["order_placed"]

async def test_resend_notification(service, repo):
    order = await _order(service)
    await service.transition(order.id, S.CONFIRMED, OPS)
    res = await service.resend_notification(order.id, ADMIN)
    assert res.notifications == ["confirmed"]
    assert res.order.status == S.CONFIRMED
    assert outbox_templates(repo).count("confirmed") == 2
    assert (await repo.get_order(order.id)).history[-1].action == "notification_resent"
    with pytest.raises(ActorNotPermitted):
        await service.resend_notification(order.id, FACILITY)

async def test_payment_status(service, repo):
    order = await _order(service)
    paid = await service.update_payment_status(order.id, OPS, PaymentStatus.PAID, note="cash")
    assert paid.payment_status == PaymentStatus.PAID
    assert paid.status == S.ORDER_PLACED
    assert paid.history[-1].action == "payment_update"

    same = await service.update_payment_status(order.id, ADMIN, PaymentStatus.PAID)
    assert len(same.history) == len(paid.history)
    with pytest.raises(ActorNotPermitted):
        await service.update_payment_status(order.id, DRIVER, PaymentStatus.REFUNDED)

async def test_allowed_for(service):
    order = await _order(service)
    await advance(service, order.id, S.PICKUP_ASSIGNED)

    mine = await service.allowed_for(order.id, DRIVER)
    assert mine["current"]["value"] == "PICKUP_ASSIGNED"
    assert [(t["value"], t["photo_required"]) for t in mine["allowed"]] == [
        ("PICKUP_IN_PROGRESS", False),
        ("PICKUP_FAILED", True),
    ]
    assert (await service.allowed_for(order.id, OTHER_DRIVER))["allowed"] == []
    assert [t["value"] for t in (await service.allowed_for(order.id, OPS))["allowed"]] == [
        "CANCELLED", "REFUNDED",
    ]

async def test_team_queue(service):
    placed = await _order(service)
    dispatched = await _order(service)
    at_facility = await _order(service)
    await advance(service, dispatched.id, S.PICKUP_ASSIGNED)
    await advance(service, at_facility.id, S.RECEIVED_AT_FACILITY)

    assert [o.id for o in await service.team_queue("operations")] == [placed.id]
    assert [o.id for o in await service.team_queue("driver")] == [dispatched.id]
    assert [o.id for o in await service.team_queue("facility")] == [at_facility.id]

class FaultyRepo(InMemoryRepo):
    """In-memory repo with switchable write failures."""

    def __init__(self):
        super().__init__()
        self.fail_dispatch = False
        self.fail_assignment_status = None
        self.cancel_before_write = False
        self.invoice_before_write = False

    async def create_driver_assignment(self, *args, **kwargs):
        if self.fail_dispatch:
            raise StorageError("assignments unavailable")
        return await super().create_driver_assignment(*args, **kwargs)

    async def update_assignment_status(self, assignment_id, old, new, notes=None):
        if new == self.fail_assignment_status:
            raise StorageError("assignments unavailable")
        return await super().update_assignment_status(assignment_id, old, new, notes)

    async def compare_and_set_status(self, order_id, old, new, entry=None, fields=None):
        if self.cancel_before_write:
            self.cancel_before_write = False
            await super().compare_and_set_status(order_id, old, S.CANCELLED)
        if self.invoice_before_write:
            self.invoice_before_write = False
            await self.set_invoice_flags(order_id, generated=True)
        return await super().compare_and_set_status(order_id, old, new, entry, fields)

@pytest.fixture
def faulty():
    repo = FaultyRepo()
    return repo, LifecycleService(repo, OutboxNotifier(repo))

async def test_failed_dispatch_leaves_order_untouched(faulty):
    repo, service = faulty
    order = await service.place_order(CUSTOMER.id)
    await service.transition(order.id, S.CONFIRMED, OPS)

    repo.fail_dispatch = True
    with pytest.raises(StorageError):
        await service.transition(order.id, S.PICKUP_ASSIGNED, OPS, driver_id=DRIVER.id)
    stored = await repo.get_order(order.id)
    assert stored.status == S.CONFIRMED
    assert len(stored.history) == 2
    assert await repo.list_assignments(order.id) == []
    assert outbox_templates(repo) == ["order_placed", "confirmed"]

    repo.fail_dispatch = False
    res = await service.transition(order.id, S.PICKUP_ASSIGNED, OPS, driver_id=DRIVER.id)
    assert res.assignment.driver_id == DRIVER.id

async def test_failed_handoff_write_removes_photo(faulty):
    repo, service = faulty
    order = await service.place_order(CUSTOMER.id)
    await advance(service, order.id, S.PICKUP_IN_PROGRESS)

    repo.fail_assignment_status = A.COMPLETED
    with pytest.raises(StorageError):
        await service.transition(order.id, S.PICKUP_COMPLETED, DRIVER, photo_url=PHOTO)
    assert (await repo.get_order(order.id)).status == S.PICKUP_IN_PROGRESS
    assert repo.photos == {}

    repo.fail_assignment_status = None
    res = await service.transition(order.id, S.PICKUP_COMPLETED, DRIVER, photo_url=PHOTO)
    assert res.assignment.status == A.COMPLETED
    assert len(repo.photos) == 1

async def test_lost_order_write_rolls_back_handoff(faulty):
    repo, service = faulty
    order = await service.place_order(CUSTOMER.id)
    await advance(service, order.id, S.PICKUP_IN_PROGRESS)

    repo.cancel_before_write = True
    with pytest.raises(ConcurrentModification):
        await service.transition(order.id, S.PICKUP_COMPLETED, DRIVER, photo_url=PHOTO)
    assert (await repo.get_order(order.id)).status == S.CANCELLED
    assert repo.photos == {}
    [assignment] = await repo.list_assignments(order.id)
    assert assignment.status == A.IN_PROGRESS
    assert "pickup_completed" not in outbox_templates(repo)

async def test_lost_order_write_removes_new_assignment(faulty):
    repo, service = faulty
    order = await service.place_order(CUSTOMER.id)
    await service.transition(order.id, S.CONFIRMED, OPS)

    repo.cancel_before_write = True
    with pytest.raises(ConcurrentModification):
        await service.transition(order.id, S.PICKUP_ASSIGNED, OPS, driver_id=DRIVER.id)
    assert await repo.list_assignments(order.id) == []

async def test_delivered_template_reads_committed_order(faulty):
    repo, service = faulty
    order = await service.place_order(CUSTOMER.id)
    await advance(service, order.id, S.DELIVERY_IN_PROGRESS)

    # invoice generated between the read and the status write
    repo.invoice_before_write = True
    res = await service.transition(order.id, S.DELIVERED, DRIVER, photo_url=PHOTO)
    assert res.order.invoice_generated
    assert res.notifications == ["payment_completed"]
