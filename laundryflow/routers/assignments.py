from fastapi import APIRouter, Depends, HTTPException

from laundryflow.core.assignments import is_assignment_terminal
from laundryflow.core.policy import Role
from laundryflow.core.security import Actor, require_roles
from laundryflow.deps import get_service
from laundryflow.services.lifecycle import LifecycleService

router = APIRouter(prefix="/assignments", tags=["assignments"])

@router.get("/{assignment_id}")
async def get_assignment(
    assignment_id: str,
    actor: Actor = Depends(require_roles([Role.ADMIN, Role.OPERATION_MANAGER, Role.FACILITY_TEAM, Role.DRIVER])),
    svc: LifecycleService = Depends(get_service),
):
    assignment = await svc.repo.get_assignment(assignment_id)
    # Drivers can only read their own assignments
    if actor.role == Role.DRIVER and assignment.driver_id != actor.id:
        raise HTTPException(403, "Driver can only view assigned orders")
    return {
        **assignment.model_dump(mode="json"),
        "terminal": is_assignment_terminal(assignment.assignment_type, assignment.status),
    }
