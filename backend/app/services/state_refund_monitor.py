"""
Monitor del portal estatal de reembolsos.

Cada consulta queda registrada como ExternalCheck. Un cambio detectado es
solo una recomendación: el caso no se toca hasta que un admin aprueba la
consulta (approve_check), que aplica el estado a través del coordinador.

El barrido completo (run_all_checks) se protege con una bandera local al
proceso; no excluye barridos en otras instancias.
"""
import asyncio
import csv
import io
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..core.config import settings, utc_now, redact_id
from ..core.exceptions import NotFoundError
from ..core.security import safe_decrypt, mask_ssn
from ..models.models import (
    CaseStatus, CheckResult, CheckTrigger, ExternalCheck, NotificationType, TaxCase,
)
from .notifications import NotificationService
from .refund_scraper import RefundStatusScraper, ScrapeRequest, ScrapeResponse, UnconfiguredScraper
from .refund_status_mapper import map_refund_status
from .status_coordinator import StatusUpdateCoordinator
from .status_transitions import STATE

logger = logging.getLogger(__name__)

ELIGIBLE_CASE_STATUSES = (CaseStatus.taxes_filed, CaseStatus.case_issues)

MAX_PAGE_SIZE = 100

CSV_HEADERS = [
    "Fecha", "Cliente", "Email", "Estado en portal", "Estado mapeado",
    "Cambio detectado", "Estado anterior", "Resultado", "Origen", "Error",
]


def expected_refund_amount(amount) -> Optional[int]:
    """Monto del reembolso estatal en dólares enteros (medio hacia arriba)."""
    if amount is None:
        return None
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StateRefundMonitor:

    # Compartida por todas las instancias del proceso
    _is_running_check_all = False

    def __init__(
        self,
        db: Session,
        scraper: Optional[RefundStatusScraper] = None,
        coordinator: Optional[StatusUpdateCoordinator] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.db = db
        self.scraper = scraper or UnconfiguredScraper()
        self.notifications = notifications or NotificationService(db)
        self.coordinator = coordinator or StatusUpdateCoordinator(db, notifications=self.notifications)

    @classmethod
    def is_running_check_all(cls) -> bool:
        return cls._is_running_check_all

    # ===================== CONSULTAS =====================

    def _eligible_cases_query(self):
        work_states = [s.lower() for s in settings.state_monitor_work_states]
        return self.db.query(TaxCase).filter(
            TaxCase.case_status.in_(ELIGIBLE_CASE_STATUSES),
            func.lower(TaxCase.work_state).in_(work_states),
        )

    def _record(self, case: TaxCase, trigger: CheckTrigger, user_id: Optional[int], **fields) -> ExternalCheck:
        check = ExternalCheck(
            tax_case_id=case.id,
            triggered_by=trigger,
            triggered_by_user_id=user_id,
            **fields,
        )
        self.db.add(check)
        self.db.commit()
        self.db.refresh(check)
        return check

    def _failed(self, case, trigger, user_id, raw_status: str, error: str) -> Dict[str, Any]:
        check = self._record(
            case, trigger, user_id,
            raw_status=raw_status,
            check_result=CheckResult.ERROR,
            status_changed=False,
            error_message=error,
        )
        return {
            "success": False,
            "status_changed": False,
            "previous_status": case.state_status_new,
            "new_status": None,
            "raw_status": raw_status,
            "error": error,
            "check": check,
        }

    async def _scrape(self, request: ScrapeRequest) -> ScrapeResponse:
        """Un reintento tras un fallo transitorio; nunca más de uno."""
        response = await self.scraper.check_refund_status(request)
        if response.is_transient_failure:
            delay = settings.STATE_MONITOR_RETRY_DELAY_SECONDS
            logger.warning(
                f"State check {response.result.value} for case {redact_id(request.case_id)}, "
                f"retrying in {delay}s"
            )
            await asyncio.sleep(delay)
            response = await self.scraper.check_refund_status(request)
            logger.info(f"Retry result: {response.result.value} ({response.raw_status})")
        return response

    async def run_check(
        self,
        tax_case_id: int,
        triggered_by_user_id: Optional[int] = None,
        trigger: CheckTrigger = CheckTrigger.MANUAL,
    ) -> Dict[str, Any]:
        """
        Consulta el portal para un caso y registra el resultado.
        Las precondiciones incumplidas y los fallos del portal quedan como
        consultas con error; no se lanzan.
        """
        case = self.db.query(TaxCase).filter(TaxCase.id == tax_case_id).first()
        if not case:
            raise NotFoundError("Caso no encontrado")
        user = case.user

        ssn = safe_decrypt(case.client_profile.ssn if case.client_profile else None, "ssn")
        if not ssn:
            return self._failed(
                case, trigger, triggered_by_user_id,
                "No SSN on file", "El cliente no tiene SSN registrado",
            )

        amount = expected_refund_amount(case.state_actual_refund)
        if not amount or amount <= 0:
            return self._failed(
                case, trigger, triggered_by_user_id,
                "No state refund amount on file",
                "Registra el monto del reembolso estatal antes de consultar el portal",
            )

        request = ScrapeRequest(
            ssn=ssn,
            expected_refund_amount=amount,
            case_id=str(case.id),
            client_name=user.full_name if user else "",
        )
        logger.info(f"State refund check for case {redact_id(case.id)}")
        try:
            response = await self._scrape(request)
        except Exception as e:
            logger.error(f"Unexpected scraper error for case {redact_id(case.id)}: {e}")
            return self._failed(case, trigger, triggered_by_user_id, "Error", str(e) or "Error inesperado del scraper")

        previous = case.state_status_new
        mapped = map_refund_status(response.raw_status, case.payment_method)
        changed = mapped is not None and mapped != previous

        check = self._record(
            case, trigger, triggered_by_user_id,
            raw_status=response.raw_status,
            details=response.details,
            screenshot_path=response.screenshot_path,
            mapped_status=mapped,
            previous_status=previous,
            status_changed=changed,
            check_result=response.result,
            error_message=response.error_message,
        )
        if changed:
            logger.info(
                f"Recommendation for case {redact_id(case.id)}: "
                f"{getattr(previous, 'value', previous)} -> {mapped.value} (pending approval)"
            )

        return {
            "success": response.result == CheckResult.SUCCESS,
            "status_changed": changed,
            "previous_status": previous,
            "new_status": mapped,
            "raw_status": response.raw_status,
            "error": response.error_message,
            "check": check,
        }

    async def run_all_checks(
        self,
        trigger: CheckTrigger = CheckTrigger.SCHEDULE,
        admin_id: Optional[int] = None,
    ) -> Dict[str, int]:
        """Consulta secuencialmente todos los casos elegibles."""
        cls = type(self)
        if cls._is_running_check_all:
            logger.warning("State refund sweep already running, skipping")
            return {"total": 0, "succeeded": 0, "failed": 0}

        cls._is_running_check_all = True
        succeeded = 0
        failed = 0
        try:
            case_ids = [
                row.id for row in self._eligible_cases_query()
                .with_entities(TaxCase.id)
                .order_by(TaxCase.created_at, TaxCase.id)
                .all()
            ]
            logger.info(f"Starting state refund sweep over {len(case_ids)} cases ({trigger.value})")

            for case_id in case_ids:
                try:
                    result = await self.run_check(case_id, admin_id, trigger)
                    if result["success"] or result["status_changed"]:
                        succeeded += 1
                    else:
                        failed += 1
                except Exception as e:
                    self.db.rollback()
                    failed += 1
                    logger.error(f"State check failed for case {redact_id(case_id)}: {e}")

            logger.info(f"State refund sweep complete: {succeeded} succeeded, {failed} failed")
            return {"total": len(case_ids), "succeeded": succeeded, "failed": failed}
        finally:
            cls._is_running_check_all = False

    # ===================== APROBACIÓN =====================

    def _load_check(self, check_id: int) -> ExternalCheck:
        check = self.db.query(ExternalCheck).filter(ExternalCheck.id == check_id).first()
        if not check:
            raise NotFoundError("Consulta no encontrada")
        return check

    def approve_check(self, check_id: int, admin_id: int) -> Dict[str, Any]:
        check = self._load_check(check_id)
        if not check.status_changed or not check.mapped_status:
            return {"applied": False, "reason": "No status change to approve"}

        case = check.tax_case
        previous = case.state_status_new
        if check.mapped_status == previous:
            return {"applied": False, "reason": "Status already matches recommendation"}

        self.coordinator.apply_branch_status(
            case,
            STATE,
            check.mapped_status,
            changed_by_id=admin_id,
            comment=f"Monitor estatal (aprobado por admin): {check.raw_status}",
            internal_comment=f"Admin {admin_id} approved check {check.id}",
            last_comment=f"Monitor estatal (aprobado): {check.raw_status}",
        )
        logger.info(
            f"Check {check.id} approved for case {redact_id(case.id)}: "
            f"{getattr(previous, 'value', previous)} -> {check.mapped_status.value}"
        )

        user = case.user
        if user:
            try:
                self.notifications.create(
                    user.id,
                    NotificationType.STATUS_CHANGE,
                    "Estado de tu reembolso actualizado",
                    f"Tu estado estatal fue actualizado a: {check.mapped_status.value.replace('_', ' ')}",
                )
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to notify client about approved check {check.id}: {e}")

        return {
            "applied": True,
            "previous_status": previous,
            "new_status": check.mapped_status,
        }

    def dismiss_check(self, check_id: int) -> Dict[str, bool]:
        check = self._load_check(check_id)
        check.status_changed = False
        self.db.commit()
        return {"dismissed": True}

    # ===================== LISTADOS =====================

    def get_filed_clients(self) -> List[Dict[str, Any]]:
        cases = self._eligible_cases_query().order_by(TaxCase.created_at, TaxCase.id).all()
        clients = []
        for case in cases:
            user = case.user
            profile = case.client_profile
            clients.append({
                "tax_case_id": case.id,
                "user_id": user.id if user else None,
                "client_name": user.full_name if user else "",
                "ssn_masked": mask_ssn(profile.ssn) if profile and profile.ssn else None,
                "state_actual_refund": case.state_actual_refund,
                "state_status": case.state_status_new,
                "payment_method": case.payment_method.value if case.payment_method else None,
                "last_check": case.external_checks[0] if case.external_checks else None,
            })
        return clients

    def get_checks(self, cursor: Optional[int] = None, limit: int = 20) -> Dict[str, Any]:
        """Página de consultas, más recientes primero. `cursor` es el último id recibido."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        query = self.db.query(ExternalCheck)
        if cursor is not None:
            query = query.filter(ExternalCheck.id < cursor)
        rows = query.order_by(ExternalCheck.id.desc()).limit(limit + 1).all()

        has_more = len(rows) > limit
        checks = rows[:limit]
        return {
            "checks": checks,
            "next_cursor": checks[-1].id if has_more else None,
            "has_more": has_more,
        }

    def get_checks_for_case(self, tax_case_id: int) -> List[ExternalCheck]:
        return self.db.query(ExternalCheck).filter(
            ExternalCheck.tax_case_id == tax_case_id
        ).order_by(ExternalCheck.id.desc()).all()

    def get_stats(self) -> Dict[str, Any]:
        since = utc_now() - timedelta(hours=24)
        return {
            "total_checks": self.db.query(func.count(ExternalCheck.id)).scalar() or 0,
            "total_clients": self.db.query(func.count(func.distinct(ExternalCheck.tax_case_id))).scalar() or 0,
            "changes_last_24h": self.db.query(func.count(ExternalCheck.id)).filter(
                ExternalCheck.status_changed.is_(True),
                ExternalCheck.created_at >= since,
            ).scalar() or 0,
            # Pendiente: recomendación aún no reflejada en el caso
            "pending_approvals": self.db.query(func.count(ExternalCheck.id)).select_from(ExternalCheck).join(
                TaxCase, ExternalCheck.tax_case_id == TaxCase.id
            ).filter(
                ExternalCheck.status_changed.is_(True),
                or_(
                    TaxCase.state_status_new.is_(None),
                    TaxCase.state_status_new != ExternalCheck.mapped_status,
                ),
            ).scalar() or 0,
            "last_check_at": self.db.query(func.max(ExternalCheck.created_at)).scalar(),
        }

    def export_csv(self) -> str:
        checks = self.db.query(ExternalCheck).order_by(ExternalCheck.id.desc()).all()
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for check in checks:
            user = check.tax_case.user
            writer.writerow([
                check.created_at.isoformat() if check.created_at else "",
                user.full_name if user else "",
                user.email if user else "",
                check.raw_status,
                check.mapped_status.value if check.mapped_status else "",
                "SI" if check.status_changed else "no",
                check.previous_status.value if check.previous_status else "",
                check.check_result.value,
                check.triggered_by.value,
                check.error_message or "",
            ])
        return buffer.getvalue()
