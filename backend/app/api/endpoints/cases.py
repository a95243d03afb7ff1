"""
Endpoints de estado de casos y comisiones.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...db.database import get_db
from ...models.models import User, UserRole, RefundBranch
from ...schemas.schemas import (
    StatusUpdateRequest, UpdateOutcomeResponse, CaseTransitionsResponse,
    CommissionPaidResponse, RefundConfirmResponse, UnpaidCommissionsResponse
)
from ...services.commission import CommissionService
from ...services.status_coordinator import StatusUpdateCoordinator
from ...services.status_transitions import valid_transitions_for
from .auth import require_admin, require_role

router = APIRouter(tags=["Casos"])


# ===================== ESTADOS =====================

@router.patch("/cases/{case_id}/status", response_model=UpdateOutcomeResponse)
async def update_case_status(
    case_id: int,
    data: StatusUpdateRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """
    Actualiza el estado del caso (interno, federal y/o estatal).
    Responde 400 con la lista de transiciones permitidas si la transición se rechaza.
    """
    outcome = StatusUpdateCoordinator(db).update_status(case_id, data, changed_by_id=current_user.id)
    return UpdateOutcomeResponse(**outcome.__dict__)


@router.get("/cases/{case_id}/transitions", response_model=CaseTransitionsResponse)
async def get_case_transitions(
    case_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Siguientes estados sugeridos para cada dimensión."""
    case = StatusUpdateCoordinator(db).load_case(case_id)
    return valid_transitions_for(case)


# ===================== COMISIONES =====================

@router.post("/cases/{case_id}/commission/{branch}/paid", response_model=CommissionPaidResponse)
async def mark_commission_paid(
    case_id: int,
    branch: RefundBranch,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Marca como cobrada la comisión de una rama."""
    return CommissionService(db).mark_commission_paid(case_id, branch, admin_id=current_user.id)


@router.get("/commissions/unpaid", response_model=UnpaidCommissionsResponse)
async def list_unpaid_commissions(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return CommissionService(db).unpaid_commissions()


@router.post("/me/refund/{branch}/confirm", response_model=RefundConfirmResponse)
async def confirm_refund_received(
    branch: RefundBranch,
    current_user: User = Depends(require_role([UserRole.CLIENT])),
    db: Session = Depends(get_db)
):
    """
    El cliente confirma que recibió su reembolso.
    Devuelve el monto y la comisión a pagar.
    """
    return CommissionService(db).confirm_refund_received(current_user.id, branch)
