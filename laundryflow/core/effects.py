"""
Side effects of an order transition, as a pure function of the order and
the (old, new) status pair. The service applies what comes back.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from laundryflow.core.assignments import HANDOFFS, PHOTO_GATED
from laundryflow.core.states import OrderStatus as S

INVOICE_UNLOCKING = frozenset({S.PROCESSING_COMPLETED, S.READY_FOR_DELIVERY})

PAYMENT_COMPLETED_TEMPLATE = "payment_completed"


class EffectKind(str, Enum):
    NOTIFY_CUSTOMER = "notify_customer"
    UNLOCK_INVOICE = "unlock_invoice"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    template: Optional[str] = None


def template_for(status: S, invoice_generated: bool = False) -> str:
    if status == S.DELIVERED and invoice_generated:
        return PAYMENT_COMPLETED_TEMPLATE
    return S(status).value.lower()


def photo_required(status: S) -> bool:
    handoff = HANDOFFS.get(S(status))
    return handoff is not None and handoff[1] in PHOTO_GATED


def dispatch(order, old: S, new: S, *, resend: bool = False) -> frozenset[Effect]:
    """Effects owed for moving `order` from `old` to `new`.

    old == new is a no-op unless `resend` is set, in which case only the
    notification goes out again. The invoice unlock fires once per order.
    """
    old, new = S(old), S(new)
    if old == new and not resend:
        return frozenset()

    effects = {Effect(EffectKind.NOTIFY_CUSTOMER, template_for(new, order.invoice_generated))}

    if new in INVOICE_UNLOCKING and not order.invoice_unlocked:
        effects.add(Effect(EffectKind.UNLOCK_INVOICE))

    return frozenset(effects)
