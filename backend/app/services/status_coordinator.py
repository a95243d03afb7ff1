"""
Coordinador de actualizaciones de estado.

Un cambio autoritativo de estado pasa siempre por aquí:

1. Carga el caso y toma una foto de las tres dimensiones antes de mutar.
2. Valida cada dimensión que cambia (salvo override con motivo).
3. Aplica los campos; al entrar por primera vez en taxes_filed completa las
   fechas estimadas de depósito (+42 / +63 días) sin sobrescribirlas.
4. Resuelve automáticamente el problema abierto si alguna rama avanza a un
   estado positivo.
5. Guarda el caso y su fila de historial en una única transacción.
6. Después del commit dispara los efectos secundarios (notificaciones,
   referidos, auditoría). Cada uno es independiente: un fallo se registra
   en el log y nunca deshace el paso 5 ni llega al llamador.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings, utc_now, redact_id
from ..core.exceptions import NotFoundError
from ..models.models import (
    AuditAction, CaseStatus, NotificationType, RefundBranch, RefundStatus,
    StatusHistory, TaxCase, POSITIVE_PROGRESS_STATUSES, branch_field,
)
from ..schemas.schemas import RefundBranchPatch, StatusUpdateRequest
from .audit import AuditLogService
from .commission import to_decimal
from .notifications import NotificationService, format_usd
from .referrals import ReferralService
from .status_transitions import CASE, FEDERAL, STATE, build_rejection, is_valid_transition

logger = logging.getLogger(__name__)

# Atributo del modelo por dimensión
STATUS_ATTRS = {
    CASE: "case_status",
    FEDERAL: "federal_status_new",
    STATE: "state_status_new",
}

_SNAPSHOT_LABELS = {
    CASE: "caseStatus",
    FEDERAL: "federalStatus",
    STATE: "stateStatus",
}

_BRANCH_COMMENT_LABELS = {
    FEDERAL: "Federal",
    STATE: "Estatal",
}

# Plantilla de notificación por estado de rama ({branch} = federal | state)
_BRANCH_TEMPLATE_SUFFIX = {
    RefundStatus.taxes_en_proceso: "processing",
    RefundStatus.deposito_directo: "approved",
    RefundStatus.cheque_en_camino: "approved",
    RefundStatus.comision_pendiente: "approved",
    RefundStatus.problemas: "rejected",
    RefundStatus.taxes_completados: "deposited",
}


def branch_template_key(branch: str, status: RefundStatus) -> Optional[str]:
    suffix = _BRANCH_TEMPLATE_SUFFIX.get(RefundStatus(status))
    if suffix is None:
        return None
    return f"notifications.status_{branch}_{suffix}"


def _value(status) -> Optional[str]:
    return getattr(status, "value", status)


def status_snapshot(case: TaxCase) -> str:
    """Foto de las tres dimensiones: 'caseStatus: X, federalStatus: Y, stateStatus: Z'."""
    parts = []
    for dimension, label in _SNAPSHOT_LABELS.items():
        value = _value(getattr(case, STATUS_ATTRS[dimension]))
        if value:
            parts.append(f"{label}: {value}")
    return ", ".join(parts)


@dataclass
class UpdateOutcome:
    """Resultado de una actualización: dimensiones cambiadas y fila de historial."""
    tax_case_id: int
    changed: List[str] = field(default_factory=list)
    history_id: Optional[int] = None
    previous_status: str = ""
    new_status: str = ""
    problem_resolved: bool = False


class StatusUpdateCoordinator:

    def __init__(
        self,
        db: Session,
        notifications: Optional[NotificationService] = None,
        referrals: Optional[ReferralService] = None,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.notifications = notifications or NotificationService(db)
        self.referrals = referrals or ReferralService(db)
        self.audit = audit or AuditLogService(db)

    # ------------------------------------------------------------------
    # Carga
    # ------------------------------------------------------------------

    def load_case(self, case_id: int) -> TaxCase:
        case = self.db.query(TaxCase).filter(TaxCase.id == case_id).first()
        if not case:
            raise NotFoundError("Caso no encontrado")
        return case

    # ------------------------------------------------------------------
    # Pasos internos
    # ------------------------------------------------------------------

    def _validate(self, case: TaxCase, changes: Dict[str, object], override: bool):
        for dimension, attempted in changes.items():
            current = getattr(case, STATUS_ATTRS[dimension])
            if is_valid_transition(dimension, current, attempted):
                continue
            if override:
                logger.warning(
                    f"Forced {dimension} transition on case {redact_id(case.id)}: "
                    f"{_value(current)} -> {_value(attempted)}"
                )
                continue
            raise build_rejection(dimension, current, attempted)

    def _set_status(self, case: TaxCase, dimension: str, new_status, now):
        attr = STATUS_ATTRS[dimension]
        setattr(case, attr, new_status)
        setattr(case, f"{attr}_changed_at", now)

    def _enter_taxes_filed(self, case: TaxCase, now) -> bool:
        """Primera entrada en taxes_filed: marca y fechas estimadas solo si faltan."""
        first_time = not case.taxes_filed
        if first_time:
            case.taxes_filed = True
            case.taxes_filed_at = now
        if case.federal_estimated_date is None:
            case.federal_estimated_date = now + timedelta(days=settings.FEDERAL_ESTIMATE_DAYS)
        if case.state_estimated_date is None:
            case.state_estimated_date = now + timedelta(days=settings.STATE_ESTIMATE_DAYS)
        return first_time

    def _resolve_problem(self, case: TaxCase, submitted: Dict[str, object], now) -> bool:
        """Un estado positivo enviado (aunque no cambie) limpia el problema."""
        if not case.has_problem:
            return False
        if not any(submitted.get(b) in POSITIVE_PROGRESS_STATUSES for b in (FEDERAL, STATE)):
            return False
        case.has_problem = False
        case.problem_type = None
        case.problem_description = None
        case.problem_step = None
        case.problem_resolved_at = now
        return True

    def _apply_branch_fields(self, case: TaxCase, branch: str, patch: RefundBranchPatch) -> Dict[str, bool]:
        """Aplica los campos no-estado de una rama. Devuelve qué cambió."""
        touched = {"refund": False, "deposit": False, "fields": False}

        def put(name, value):
            attr = branch_field(branch, name)
            if getattr(case, attr) != value:
                setattr(case, attr, value)
                touched["fields"] = True
                return True
            return False

        if patch.comment:
            put("last_comment", patch.comment)
        if patch.internal_comment:
            put("internal_comment", patch.internal_comment)
        if patch.estimated_date is not None:
            put("estimated_date", patch.estimated_date)
        if patch.deposit_date is not None:
            touched["deposit"] = put("deposit_date", patch.deposit_date)
        if patch.commission_rate is not None:
            put("commission_rate", patch.commission_rate)
        if patch.actual_refund is not None:
            current = getattr(case, branch_field(branch, "actual_refund"))
            if current is None or to_decimal(current) != to_decimal(patch.actual_refund):
                setattr(case, branch_field(branch, "actual_refund"), patch.actual_refund)
                touched["refund"] = True
                touched["fields"] = True
        return touched

    @staticmethod
    def _history_comment(request: StatusUpdateRequest, override: bool) -> Optional[str]:
        parts = []
        if request.comment:
            parts.append(request.comment)
        for branch in (FEDERAL, STATE):
            patch = getattr(request, branch)
            if patch and patch.comment:
                parts.append(f"{_BRANCH_COMMENT_LABELS[branch]}: {patch.comment}")
        comment = " | ".join(parts)
        if override:
            prefix = f"[ADMIN OVERRIDE] Razon: {request.override_reason}"
            comment = f"{prefix} | {comment}" if comment else prefix
        return comment or None

    @staticmethod
    def _history_internal_comment(request: StatusUpdateRequest) -> Optional[str]:
        parts = []
        for branch in (FEDERAL, STATE):
            patch = getattr(request, branch)
            if patch and patch.internal_comment:
                parts.append(f"{_BRANCH_COMMENT_LABELS[branch]}: {patch.internal_comment}")
        return " | ".join(parts) or None

    def _commit(self, case: TaxCase, history: StatusHistory):
        """Caso + historial, todo o nada."""
        try:
            self.db.add(history)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(case)

    def _best_effort(self, name: str, fn: Callable[[], object]):
        try:
            fn()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Side effect '{name}' failed: {e}")

    # ------------------------------------------------------------------
    # Operaciones públicas
    # ------------------------------------------------------------------

    def update_status(self, case_id: int, request: StatusUpdateRequest,
                      changed_by_id: Optional[int] = None) -> UpdateOutcome:
        case = self.load_case(case_id)
        previous = {d: getattr(case, STATUS_ATTRS[d]) for d in STATUS_ATTRS}
        previous_snapshot = status_snapshot(case)
        previous_deposit_set = bool(case.federal_deposit_date or case.state_deposit_date)
        previous_refunds = {
            b: _value(getattr(case, branch_field(b, "actual_refund"))) for b in (FEDERAL, STATE)
        }

        changes: Dict[str, object] = {}
        if request.case is not None and request.case.status != previous[CASE]:
            changes[CASE] = request.case.status
        for branch in (FEDERAL, STATE):
            patch = getattr(request, branch)
            if patch is not None and patch.status is not None and patch.status != previous[branch]:
                changes[branch] = patch.status

        override = bool(request.force_transition and request.override_reason)
        self._validate(case, changes, override)

        now = utc_now()
        for dimension, new_status in changes.items():
            self._set_status(case, dimension, new_status, now)
        if changes:
            case.status_updated_at = now

        entered_filed = changes.get(CASE) == CaseStatus.taxes_filed
        if entered_filed:
            self._enter_taxes_filed(case, now)

        refund_changed = False
        deposit_supplied = False
        fields_changed = False
        for branch in (FEDERAL, STATE):
            patch = getattr(request, branch)
            if patch is None:
                continue
            touched = self._apply_branch_fields(case, branch, patch)
            refund_changed = refund_changed or touched["refund"]
            deposit_supplied = deposit_supplied or touched["deposit"]
            fields_changed = fields_changed or touched["fields"]

        submitted = {
            b: getattr(request, b).status for b in (FEDERAL, STATE)
            if getattr(request, b) is not None and getattr(request, b).status is not None
        }
        problem_resolved = self._resolve_problem(case, submitted, now)

        new_summary = ", ".join(
            f"{_SNAPSHOT_LABELS[d]}: {_value(s)}" for d, s in changes.items()
        ) or "status update"
        outcome = UpdateOutcome(
            tax_case_id=case.id,
            changed=list(changes),
            previous_status=previous_snapshot,
            new_status=new_summary,
            problem_resolved=problem_resolved,
        )

        comment = self._history_comment(request, override)
        if not changes and not fields_changed and not comment and not problem_resolved:
            logger.info(f"No changes to apply for case {redact_id(case.id)}")
            return outcome

        history = StatusHistory(
            tax_case_id=case.id,
            previous_status=previous_snapshot or None,
            new_status=new_summary,
            changed_by_id=changed_by_id,
            comment=comment,
            internal_comment=self._history_internal_comment(request),
        )
        self._commit(case, history)
        outcome.history_id = history.id
        logger.info(
            f"Case {redact_id(case.id)} updated ({new_summary}) by {redact_id(changed_by_id)}"
        )

        self._dispatch_side_effects(
            case, previous, changes, changed_by_id,
            problem_resolved=problem_resolved,
            entered_filed=entered_filed,
            first_deposit=deposit_supplied and not previous_deposit_set,
            refund_changed=refund_changed,
            previous_refunds=previous_refunds,
        )
        return outcome

    def apply_branch_status(
        self,
        case: TaxCase,
        branch: str,
        new_status: RefundStatus,
        changed_by_id: Optional[int],
        comment: Optional[str] = None,
        internal_comment: Optional[str] = None,
        last_comment: Optional[str] = None,
    ) -> UpdateOutcome:
        """
        Cambia el estado de una sola rama (ruta de aprobación del monitor).
        Misma validación, resolución de problemas y transacción que update_status;
        la notificación al cliente queda a cargo del llamador.
        """
        branch = RefundBranch(branch).value
        previous_snapshot = status_snapshot(case)
        changes: Dict[str, object] = {}
        if getattr(case, STATUS_ATTRS[branch]) != new_status:
            changes[branch] = new_status
        self._validate(case, changes, override=False)

        now = utc_now()
        for dimension, status in changes.items():
            self._set_status(case, dimension, status, now)
        case.status_updated_at = now
        setattr(case, branch_field(branch, "last_reviewed_at"), now)
        if last_comment:
            setattr(case, branch_field(branch, "last_comment"), last_comment)
        problem_resolved = self._resolve_problem(case, {branch: new_status}, now)

        new_summary = f"{_SNAPSHOT_LABELS[branch]}: {_value(new_status)}"
        history = StatusHistory(
            tax_case_id=case.id,
            previous_status=previous_snapshot or None,
            new_status=new_summary,
            changed_by_id=changed_by_id,
            comment=comment,
            internal_comment=internal_comment,
        )
        self._commit(case, history)

        if problem_resolved:
            self._best_effort("problem_resolved", lambda: self._notify_problem_resolved(case))

        return UpdateOutcome(
            tax_case_id=case.id,
            changed=list(changes),
            history_id=history.id,
            previous_status=previous_snapshot,
            new_status=new_summary,
            problem_resolved=problem_resolved,
        )

    # ------------------------------------------------------------------
    # Efectos secundarios
    # ------------------------------------------------------------------

    def _notify_problem_resolved(self, case: TaxCase):
        user = case.user
        if not user:
            return
        self.notifications.create_from_template(
            user.id, NotificationType.STATUS_CHANGE, "notifications.problem_resolved",
            {"firstName": user.first_name or ""},
        )

    def _notify_branch_status(self, case: TaxCase, branch: str, status: RefundStatus):
        user = case.user
        key = branch_template_key(branch, status)
        if not user or not key:
            return
        variables = {"firstName": user.first_name or ""}
        estimated = getattr(case, branch_field(branch, "estimated_date"))
        variables["estimatedDate"] = estimated.strftime("%d/%m/%Y") if estimated else "próximamente"
        if RefundStatus(status) == RefundStatus.taxes_completados:
            refund = getattr(case, branch_field(branch, "actual_refund"))
            variables["amount"] = format_usd(refund) if refund is not None else ""
        notification_type = (
            NotificationType.PROBLEM_ALERT if RefundStatus(status) == RefundStatus.problemas
            else NotificationType.STATUS_CHANGE
        )
        self.notifications.create_from_template(user.id, notification_type, key, variables)

    def _audit_refund(self, case: TaxCase, changed_by_id, previous_refunds: Dict[str, object]):
        user = case.user
        current = {
            b: getattr(case, branch_field(b, "actual_refund")) for b in (FEDERAL, STATE)
        }
        self.audit.log(
            AuditAction.REFUND_UPDATE,
            user_id=changed_by_id,
            target_user_id=user.id if user else None,
            details={
                "tax_case_id": case.id,
                "previous": {b: None if v is None else str(v) for b, v in previous_refunds.items()},
                "new": {b: None if v is None else str(Decimal(v)) for b, v in current.items()},
            },
        )

    def _dispatch_side_effects(self, case: TaxCase, previous, changes, changed_by_id, *,
                               problem_resolved, entered_filed, first_deposit,
                               refund_changed, previous_refunds):
        user = case.user

        if problem_resolved:
            self._best_effort("problem_resolved", lambda: self._notify_problem_resolved(case))

        for branch in (FEDERAL, STATE):
            if branch in changes:
                status = changes[branch]
                self._best_effort(
                    f"notify_{branch}_status",
                    lambda b=branch, s=status: self._notify_branch_status(case, b, s),
                )

        first_completed = any(
            changes.get(b) == RefundStatus.taxes_completados
            and previous[b] != RefundStatus.taxes_completados
            for b in (FEDERAL, STATE)
        )
        if user and (first_deposit or first_completed):
            self._best_effort(
                "referral_success",
                lambda: self.referrals.mark_referral_successful(user.id, case.id),
            )

        if user and entered_filed and not user.referral_code:
            self._best_effort("referral_code", lambda: self.referrals.generate_code(user.id))

        if refund_changed:
            self._best_effort(
                "refund_audit",
                lambda: self._audit_refund(case, changed_by_id, previous_refunds),
            )
