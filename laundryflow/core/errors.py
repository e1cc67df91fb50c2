"""
Typed lifecycle failures. Pure checks hand these back inside a Verdict; the
service raises them and the API turns them into JSON error responses.
"""
from dataclasses import dataclass
from typing import Optional


class LifecycleError(Exception):
    code = "lifecycle_error"
    http_status = 400

    def __init__(self, message: str = ""):
        self.message = message or self.code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidStepOrder(LifecycleError):
    code = "invalid_step_order"
    http_status = 400


class ActorNotPermitted(LifecycleError):
    code = "actor_not_permitted"
    http_status = 403


class PhotoRequired(LifecycleError):
    code = "photo_required"
    http_status = 422


class ConcurrentModification(LifecycleError):
    code = "concurrent_modification"
    http_status = 409


class OrderAlreadyTerminal(LifecycleError):
    code = "order_already_terminal"
    http_status = 409


class StorageError(LifecycleError):
    code = "storage_error"
    http_status = 503


class OrderNotFound(LifecycleError):
    code = "order_not_found"
    http_status = 404


class AssignmentNotFound(LifecycleError):
    code = "assignment_not_found"
    http_status = 404


class InvoiceLocked(LifecycleError):
    code = "invoice_locked"
    http_status = 409


class AssignmentAlreadyActive(LifecycleError):
    code = "assignment_already_active"
    http_status = 409


class DriverRequired(LifecycleError):
    code = "driver_required"
    http_status = 400


@dataclass(frozen=True)
class Verdict:
    error: Optional[LifecycleError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def accept(cls) -> "Verdict":
        return cls()

    @classmethod
    def reject(cls, error: LifecycleError) -> "Verdict":
        return cls(error=error)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error
