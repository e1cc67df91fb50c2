from fastapi import APIRouter, Depends, HTTPException

from laundryflow.core.policy import Role
from laundryflow.core.security import Actor, get_current_actor, require_roles
from laundryflow.core.states import TEAM_QUEUES
from laundryflow.deps import get_service
from laundryflow.models.requests import InvoiceIn, OrderCreate, PaymentIn, TransitionIn
from laundryflow.services.lifecycle import LifecycleService, TransitionResult

router = APIRouter(prefix="/orders", tags=["orders"])

BACK_OFFICE = [Role.ADMIN, Role.OPERATION_MANAGER, Role.FACILITY_TEAM, Role.DRIVER]

def _result_out(res: TransitionResult) -> dict:
    return {
        "order": res.order,
        "assignment": res.assignment,
        "photo": res.photo,
        "notifications": sorted(res.notifications),
    }

def _ensure_visible(order, actor: Actor):
    # customers see their own orders only
    if actor.role == Role.CUSTOMER and order.customer_id != actor.id:
        raise HTTPException(404, "Order not found")

@router.post("/", status_code=201)
async def place_order(body: OrderCreate, actor: Actor = Depends(get_current_actor),
                      svc: LifecycleService = Depends(get_service)):
    if actor.role == Role.DRIVER:
        raise HTTPException(403, "Drivers cannot place orders")
    if actor.role == Role.CUSTOMER and body.customer_id != actor.id:
        raise HTTPException(403, "Customers can only place their own orders")
    order = await svc.place_order(
        body.customer_id, body.order_number,
        pickup_window=body.pickup_window, delivery_window=body.delivery_window, details=body.details,
    )
    return order

@router.get("/queue/{team}")
async def team_queue(team: str, actor: Actor = Depends(require_roles(BACK_OFFICE)),
                     svc: LifecycleService = Depends(get_service)):
    if team not in TEAM_QUEUES:
        raise HTTPException(404, f"Unknown team '{team}'")
    return await svc.team_queue(team)

@router.get("/{order_id}")
async def get_order(order_id: str, actor: Actor = Depends(get_current_actor),
                    svc: LifecycleService = Depends(get_service)):
    order = await svc.repo.get_order(order_id)
    _ensure_visible(order, actor)
    return order

@router.get("/{order_id}/history")
async def order_history(order_id: str, actor: Actor = Depends(get_current_actor),
                        svc: LifecycleService = Depends(get_service)):
    order = await svc.repo.get_order(order_id)
    _ensure_visible(order, actor)
    return order.history

@router.get("/{order_id}/transitions")
async def order_transitions(order_id: str, actor: Actor = Depends(get_current_actor),
                            svc: LifecycleService = Depends(get_service)):
    _ensure_visible(await svc.repo.get_order(order_id), actor)
    return await svc.allowed_for(order_id, actor)

@router.post("/{order_id}/transition")
async def transition_status(order_id: str, body: TransitionIn,
                            actor: Actor = Depends(get_current_actor),
                            svc: LifecycleService = Depends(get_service)):
    res = await svc.transition(
        order_id, body.to_status, actor,
        expected_status=body.expected_status,
        driver_id=body.driver_id,
        estimated_time=body.estimated_time,
        photo_url=str(body.photo_url) if body.photo_url else None,
        photo_description=body.photo_description,
        note=body.note,
    )
    return _result_out(res)

@router.post("/{order_id}/invoice")
async def generate_invoice(order_id: str, body: InvoiceIn | None = None,
                           actor: Actor = Depends(get_current_actor),
                           svc: LifecycleService = Depends(get_service)):
    body = body or InvoiceIn()
    return await svc.generate_invoice(order_id, actor, total=body.total, note=body.note)

@router.post("/{order_id}/notifications/resend")
async def resend_notification(order_id: str, actor: Actor = Depends(get_current_actor),
                              svc: LifecycleService = Depends(get_service)):
    return _result_out(await svc.resend_notification(order_id, actor))

@router.patch("/{order_id}/payment")
async def update_payment(order_id: str, body: PaymentIn,
                         actor: Actor = Depends(get_current_actor),
                         svc: LifecycleService = Depends(get_service)):
    return await svc.update_payment_status(order_id, actor, body.payment_status, note=body.note)

@router.get("/{order_id}/assignments")
async def order_assignments(order_id: str, actor: Actor = Depends(require_roles(BACK_OFFICE)),
                            svc: LifecycleService = Depends(get_service)):
    await svc.repo.get_order(order_id)
    assignments = await svc.repo.list_assignments(order_id)
    if actor.role == Role.DRIVER:
        assignments = [a for a in assignments if a.driver_id == actor.id]
    return assignments
