"""
Cálculo y cobro de comisiones sobre reembolsos.

La comisión de cada rama (federal/estatal) se calcula y se cobra por separado:

    comisión = reembolso * tasa, redondeado a 2 decimales (ROUND_HALF_UP)

Una rama solo puede marcarse como pagada si el cliente confirmó haber
recibido el reembolso y el monto es positivo.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..core.config import settings, utc_now, redact_id
from ..core.exceptions import NotFoundError, PreconditionFailedError
from ..models.models import (
    AuditAction, ClientProfile, RefundBranch, RefundStatus, StatusHistory, TaxCase,
    POSITIVE_PROGRESS_STATUSES, branch_field,
)
from .audit import AuditLogService

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, float, str]

TWO_PLACES = Decimal("0.01")


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() evita arrastrar el error binario de los float
    return Decimal(str(value))


def commission(refund_amount: Optional[Number], rate: Optional[Number] = None) -> Decimal:
    """
    Comisión de una rama. Determinista y siempre con exactamente 2 decimales.

    >>> commission(1000, 0.11)
    Decimal('110.00')
    """
    if rate is None:
        rate = settings.DEFAULT_COMMISSION_RATE
    return (to_decimal(refund_amount) * to_decimal(rate)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _get(case, branch, name):
    return getattr(case, branch_field(branch, name))


def can_mark_commission_paid(case: TaxCase, branch) -> bool:
    """Reembolso recibido, monto positivo y comisión aún no pagada."""
    refund = _get(case, branch, "actual_refund")
    return (
        bool(_get(case, branch, "refund_received"))
        and refund is not None
        and to_decimal(refund) > 0
        and not _get(case, branch, "commission_paid")
    )


def both_commissions_settled(case: TaxCase, paying_branch) -> bool:
    """
    Indica si, tras pagar `paying_branch`, ambas ramas quedan saldadas.
    La otra rama cuenta como saldada si ya pagó o si no tiene reembolso.
    """
    other = RefundBranch.STATE if RefundBranch(paying_branch) == RefundBranch.FEDERAL else RefundBranch.FEDERAL
    other_refund = _get(case, other, "actual_refund")
    return bool(_get(case, other, "commission_paid")) or other_refund is None or to_decimal(other_refund) <= 0


class CommissionService:
    """Operaciones persistentes sobre comisiones y confirmación de reembolsos."""

    def __init__(self, db: Session, audit: Optional[AuditLogService] = None):
        self.db = db
        self.audit = audit or AuditLogService(db)

    def _load_case(self, case_id: int) -> TaxCase:
        case = self.db.query(TaxCase).filter(TaxCase.id == case_id).first()
        if not case:
            raise NotFoundError("Caso no encontrado")
        return case

    def mark_commission_paid(self, case_id: int, branch, admin_id: Optional[int] = None) -> Dict[str, Any]:
        branch = RefundBranch(branch)
        case = self._load_case(case_id)
        label = "federal" if branch == RefundBranch.FEDERAL else "estatal"

        if not _get(case, branch, "refund_received"):
            raise PreconditionFailedError(
                f"El cliente aún no confirmó la recepción del reembolso {label}"
            )
        if _get(case, branch, "commission_paid"):
            raise PreconditionFailedError(f"La comisión {label} ya fue marcada como pagada")
        refund = _get(case, branch, "actual_refund")
        if refund is None or to_decimal(refund) <= 0:
            raise PreconditionFailedError(f"No hay monto de reembolso {label} registrado")

        now = utc_now()
        setattr(case, branch_field(branch, "commission_paid"), True)
        setattr(case, branch_field(branch, "commission_paid_at"), now)
        if both_commissions_settled(case, branch):
            case.commission_paid = True
        self.db.commit()

        amount = commission(refund, _get(case, branch, "commission_rate"))
        logger.info(f"Commission {branch.value} marked paid for case {redact_id(case.id)}")

        user = case.user
        self.audit.log(
            AuditAction.COMMISSION_PAID,
            user_id=admin_id,
            target_user_id=user.id if user else None,
            details={
                "tax_case_id": case.id,
                "branch": branch.value,
                "refund": str(to_decimal(refund)),
                "commission": str(amount),
            },
        )

        return {
            "tax_case_id": case.id,
            "branch": branch.value,
            "refund_amount": to_decimal(refund),
            "commission": amount,
            "commission_paid_at": now,
            "commission_paid": bool(case.commission_paid),
        }

    def confirm_refund_received(self, user_id: int, branch) -> Dict[str, Any]:
        """
        El cliente confirma que recibió el reembolso de una rama.
        La rama pasa a comision_pendiente con una entrada de historial del sistema.
        """
        branch = RefundBranch(branch)
        case = (
            self.db.query(TaxCase)
            .join(ClientProfile, TaxCase.client_profile_id == ClientProfile.id)
            .filter(ClientProfile.user_id == user_id)
            .order_by(TaxCase.tax_year.desc())
            .first()
        )
        if not case:
            raise NotFoundError("Caso no encontrado")

        status_attr = f"{branch.value}_status_new"
        current = getattr(case, status_attr)
        if current not in POSITIVE_PROGRESS_STATUSES:
            raise PreconditionFailedError("El reembolso aún no ha sido enviado")
        refund = _get(case, branch, "actual_refund")
        if refund is None or to_decimal(refund) <= 0:
            raise PreconditionFailedError("No hay monto de reembolso registrado")
        if _get(case, branch, "refund_received"):
            raise PreconditionFailedError("La recepción del reembolso ya fue confirmada")

        now = utc_now()
        setattr(case, branch_field(branch, "refund_received"), True)
        setattr(case, branch_field(branch, "refund_received_at"), now)

        if current != RefundStatus.comision_pendiente:
            previous = current.value if current else None
            setattr(case, status_attr, RefundStatus.comision_pendiente)
            setattr(case, f"{status_attr}_changed_at", now)
            case.status_updated_at = now
            self.db.add(StatusHistory(
                tax_case_id=case.id,
                previous_status=f"{branch.value}Status: {previous}",
                new_status=f"{branch.value}Status: {RefundStatus.comision_pendiente.value}",
                changed_by_id=None,
                comment="Cliente confirmó recepción del reembolso",
            ))
        self.db.commit()

        fee = commission(refund, _get(case, branch, "commission_rate"))
        logger.info(f"Refund {branch.value} confirmed by user {redact_id(user_id)}")
        return {
            "tax_case_id": case.id,
            "branch": branch.value,
            "refund_amount": to_decimal(refund),
            "commission": fee,
            "refund_received_at": now,
        }

    def unpaid_commissions(self) -> Dict[str, Any]:
        """Casos con alguna rama recibida y comisión pendiente de cobro."""
        cases = self.db.query(TaxCase).filter(
            or_(
                (TaxCase.federal_refund_received.is_(True)) & (TaxCase.federal_commission_paid.is_(False)),
                (TaxCase.state_refund_received.is_(True)) & (TaxCase.state_commission_paid.is_(False)),
            )
        ).order_by(TaxCase.id).all()

        items: List[Dict[str, Any]] = []
        total = Decimal("0.00")
        for case in cases:
            branches = {}
            for branch in RefundBranch:
                if not _get(case, branch, "refund_received") or _get(case, branch, "commission_paid"):
                    continue
                refund = _get(case, branch, "actual_refund")
                fee = commission(refund, _get(case, branch, "commission_rate"))
                branches[branch.value] = {"refund_amount": to_decimal(refund), "commission": fee}
                total += fee
            user = case.user
            items.append({
                "tax_case_id": case.id,
                "client_name": user.full_name if user else None,
                "branches": branches,
                "total_commission": sum((b["commission"] for b in branches.values()), Decimal("0.00")),
            })

        return {"cases": items, "total_commission": total, "count": len(items)}
