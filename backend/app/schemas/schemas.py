"""
Esquemas Pydantic para validación de datos.
Cada dimensión de estado tiene su propio tipo de parche, con solo los campos
que le corresponden.
"""
from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal

from ..models.models import (
    CaseStatus, RefundStatus, CheckResult, CheckTrigger, DocumentType
)


# ===================== ACTUALIZACIÓN DE ESTADO =====================

class CaseStatusPatch(BaseModel):
    """Cambio del estado interno del caso."""
    status: CaseStatus


class RefundBranchPatch(BaseModel):
    """
    Cambio de una rama de reembolso (federal o estatal).
    Todos los campos son opcionales; solo se aplica lo que llega.
    """
    status: Optional[RefundStatus] = None
    comment: Optional[str] = Field(None, max_length=2000)
    internal_comment: Optional[str] = Field(None, max_length=2000)
    estimated_date: Optional[datetime] = None
    actual_refund: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)
    deposit_date: Optional[datetime] = None
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=1, max_digits=5, decimal_places=4)


class StatusUpdateRequest(BaseModel):
    """
    Solicitud de actualización de estado.
    `force_transition` + `override_reason` permiten saltar la validación de
    transiciones; el motivo queda registrado en el historial.
    """
    case: Optional[CaseStatusPatch] = None
    federal: Optional[RefundBranchPatch] = None
    state: Optional[RefundBranchPatch] = None
    comment: Optional[str] = Field(None, max_length=2000)
    force_transition: bool = False
    override_reason: Optional[str] = Field(None, max_length=500)

    @validator('override_reason')
    def strip_reason(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


class UpdateOutcomeResponse(BaseModel):
    tax_case_id: int
    changed: List[str]
    history_id: Optional[int] = None
    previous_status: str
    new_status: str
    problem_resolved: bool = False


class StatusDimensionTransitions(BaseModel):
    current: Optional[str] = None
    valid_transitions: List[str]


class CaseTransitionsResponse(BaseModel):
    tax_case_id: int
    case: StatusDimensionTransitions
    federal: StatusDimensionTransitions
    state: StatusDimensionTransitions


# ===================== COMISIONES =====================

class CommissionPaidResponse(BaseModel):
    tax_case_id: int
    branch: str
    refund_amount: Decimal
    commission: Decimal
    commission_paid_at: datetime
    commission_paid: bool


class RefundConfirmResponse(BaseModel):
    tax_case_id: int
    branch: str
    refund_amount: Decimal
    commission: Decimal
    refund_received_at: datetime


class BranchCommission(BaseModel):
    refund_amount: Decimal
    commission: Decimal


class UnpaidCommissionCase(BaseModel):
    tax_case_id: int
    client_name: Optional[str] = None
    branches: Dict[str, BranchCommission]
    total_commission: Decimal


class UnpaidCommissionsResponse(BaseModel):
    cases: List[UnpaidCommissionCase]
    total_commission: Decimal
    count: int


# ===================== AUTOMATIZACIÓN =====================

class ProgressEventRequest(BaseModel):
    """Evento de progreso emitido al subir documentos o completar el perfil."""
    type: str = Field(..., min_length=1, max_length=50)
    tax_case_id: int
    user_id: int
    document_type: Optional[DocumentType] = None
    details: Optional[Dict[str, Any]] = None


class MissingDocsCronStatus(BaseModel):
    enabled: bool
    last_updated: Optional[datetime] = None


class MissingDocsCronUpdate(BaseModel):
    enabled: bool


class MissingDocsRunResult(BaseModel):
    notified: int
    skipped: int


# ===================== MONITOR ESTATAL =====================

class ExternalCheckResponse(BaseModel):
    id: int
    tax_case_id: int
    raw_status: str
    details: Optional[Dict[str, Any]] = None
    mapped_status: Optional[RefundStatus] = None
    previous_status: Optional[RefundStatus] = None
    status_changed: bool
    check_result: CheckResult
    triggered_by: CheckTrigger
    triggered_by_user_id: Optional[int] = None
    error_message: Optional[str] = None
    screenshot_path: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CheckRunResponse(BaseModel):
    success: bool
    check_id: int
    raw_status: str
    mapped_status: Optional[RefundStatus] = None
    status_changed: bool
    error_message: Optional[str] = None


class CheckAllResponse(BaseModel):
    total: int
    succeeded: int
    failed: int


class CheckPage(BaseModel):
    checks: List[ExternalCheckResponse]
    next_cursor: Optional[int] = None
    has_more: bool


class ApproveCheckResponse(BaseModel):
    applied: bool
    reason: Optional[str] = None
    previous_status: Optional[RefundStatus] = None
    new_status: Optional[RefundStatus] = None


class DismissCheckResponse(BaseModel):
    dismissed: bool


class MonitorStatsResponse(BaseModel):
    total_checks: int
    total_clients: int
    changes_last_24h: int
    pending_approvals: int
    last_check_at: Optional[datetime] = None


class FiledClientResponse(BaseModel):
    tax_case_id: int
    user_id: int
    client_name: str
    ssn_masked: Optional[str] = None
    state_actual_refund: Optional[Decimal] = None
    state_status: Optional[RefundStatus] = None
    payment_method: Optional[str] = None
    last_check: Optional[ExternalCheckResponse] = None


# ===================== GENERAL =====================

class MessageResponse(BaseModel):
    """Respuesta genérica con mensaje."""
    message: str
    success: bool = True
