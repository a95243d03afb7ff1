"""
Automatización del progreso del caso.

Reacciona a eventos del cliente (perfil completado, documentos subidos) y
avanza el estado del caso cuando se cumplen las condiciones. Ningún handler
propaga errores: la automatización nunca rompe la petición que la originó.

También expone el recordatorio diario de documentos faltantes, controlado por
la bandera persistente `cron_missing_docs_enabled`.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings, utc_now, redact_id
from ..models.models import (
    CaseStatus, ClientProfile, DocumentType, NotificationType, SystemSetting,
    TaxCase, User, UserRole, EARLY_CASE_STATUSES,
)
from ..schemas.schemas import CaseStatusPatch, StatusUpdateRequest
from .notifications import NotificationService
from .status_coordinator import StatusUpdateCoordinator

logger = logging.getLogger(__name__)

MISSING_DOCS_CRON_KEY = "cron_missing_docs_enabled"

AUTO_PREPARING_COMMENT = (
    "Transición automática: documentos requeridos subidos y declaración enviada"
)


class ProgressEventType(str, enum.Enum):
    PROFILE_COMPLETED = "PROFILE_COMPLETED"
    W2_UPLOADED = "W2_UPLOADED"
    PAYMENT_PROOF_UPLOADED = "PAYMENT_PROOF_UPLOADED"
    DOCUMENT_UPLOADED = "DOCUMENT_UPLOADED"
    ALL_DOCS_COMPLETE = "ALL_DOCS_COMPLETE"


@dataclass
class ProgressEvent:
    type: ProgressEventType
    tax_case_id: int
    user_id: int
    metadata: Dict[str, Any] = field(default_factory=dict)


def missing_items(profile_complete: bool, has_w2: bool) -> List[str]:
    items = []
    if not profile_complete:
        items.append("completar tu perfil")
    if not has_w2:
        items.append("subir tu documento W2")
    return items


class ProgressAutomationEngine:

    def __init__(
        self,
        db: Session,
        notifications: Optional[NotificationService] = None,
        coordinator: Optional[StatusUpdateCoordinator] = None,
    ):
        self.db = db
        self.notifications = notifications or NotificationService(db)
        self.coordinator = coordinator or StatusUpdateCoordinator(db, notifications=self.notifications)
        self._handlers = {
            ProgressEventType.PROFILE_COMPLETED: self._handle_profile_completed,
            ProgressEventType.W2_UPLOADED: self._handle_w2_uploaded,
            ProgressEventType.PAYMENT_PROOF_UPLOADED: self._handle_payment_proof_uploaded,
            ProgressEventType.DOCUMENT_UPLOADED: self._handle_document_uploaded,
            ProgressEventType.ALL_DOCS_COMPLETE: self._handle_all_docs_complete,
        }

    # ===================== EVENTOS =====================

    def process_event(self, event: ProgressEvent) -> None:
        """Despacha el evento a su handler. Nunca lanza."""
        logger.info(
            f"Processing progress event {getattr(event.type, 'value', event.type)} "
            f"(user {redact_id(event.user_id)}, case {redact_id(event.tax_case_id)})"
        )
        try:
            handler = self._handlers.get(ProgressEventType(event.type))
            if handler is None:
                logger.warning(f"No handler for progress event {event.type}")
                return
            handler(event)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error processing progress event {event.type}: {e}")

    def _client_name(self, event: ProgressEvent) -> str:
        name = event.metadata.get("clientName") if event.metadata else None
        if name:
            return name
        user = self.db.query(User).filter(User.id == event.user_id).first()
        return (user.full_name if user else "") or "Desconocido"

    def _handle_profile_completed(self, event: ProgressEvent):
        case = self.db.query(TaxCase).filter(TaxCase.id == event.tax_case_id).first()
        if case and case.case_status == CaseStatus.awaiting_form:
            self.coordinator.update_status(
                case.id,
                StatusUpdateRequest(case=CaseStatusPatch(status=CaseStatus.awaiting_docs)),
                changed_by_id=None,
            )
            logger.info(f"Case {redact_id(case.id)} advanced to awaiting_docs")

        self.notify_admins(
            "Perfil completado",
            f"El cliente {self._client_name(event)} completó su perfil y está listo para revisión.",
        )

    def _handle_w2_uploaded(self, event: ProgressEvent):
        self.notify_admins(
            "Documento W2 subido",
            f"El cliente {self._client_name(event)} subió su documento W2: "
            f"{event.metadata.get('fileName', 'sin nombre')}",
        )
        self.check_documentation_complete_and_transition(event.tax_case_id, event.user_id)

    def _handle_payment_proof_uploaded(self, event: ProgressEvent):
        case = self.db.query(TaxCase).filter(TaxCase.id == event.tax_case_id).first()
        if case and not case.payment_received:
            case.payment_received = True
            self.db.commit()
            logger.info(f"payment_received set for case {redact_id(case.id)}")

        self.notify_admins(
            "Comprobante de pago recibido",
            f"El cliente {self._client_name(event)} subió su comprobante de pago.",
        )

    def _handle_document_uploaded(self, event: ProgressEvent):
        self.notify_admins(
            "Nuevo documento subido",
            f"El cliente {self._client_name(event)} subió un documento: "
            f"{event.metadata.get('fileName', 'sin nombre')} "
            f"({event.metadata.get('documentType', 'other')})",
        )

    def _handle_all_docs_complete(self, event: ProgressEvent):
        self.notify_admins(
            "Documentación completa",
            f"El cliente {self._client_name(event)} completó toda la documentación requerida. "
            f"Listo para revisión.",
        )

    # ===================== NOTIFICACIÓN A ADMINS =====================

    def notify_admins(self, title: str, message: str) -> int:
        """Una notificación por admin, en un único INSERT. Devuelve cuántas creó."""
        try:
            admin_ids = [
                row.id for row in self.db.query(User.id).filter(
                    User.role == UserRole.ADMIN, User.is_active.is_(True)
                ).all()
            ]
            if not admin_ids:
                logger.warning("No admin users found to notify")
                return 0
            count = self.notifications.create_many(admin_ids, NotificationType.SYSTEM, title, message)
            logger.info(f"Created {count} admin notifications in batch")
            return count
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error notifying admins: {e}")
            return 0

    # ===================== COMPLETITUD DE DOCUMENTACIÓN =====================

    def _load_case_with_profile(self, tax_case_id: int) -> Optional[TaxCase]:
        return self.db.query(TaxCase).filter(TaxCase.id == tax_case_id).first()

    def check_all_docs_complete(self, tax_case_id: int, user_id: int) -> bool:
        case = self._load_case_with_profile(tax_case_id)
        if not case:
            return False
        complete = (
            case.has_document(DocumentType.W2)
            and case.has_document(DocumentType.PAYMENT_PROOF)
            and bool(case.client_profile and case.client_profile.profile_complete)
        )
        if complete:
            self.process_event(ProgressEvent(
                type=ProgressEventType.ALL_DOCS_COMPLETE,
                tax_case_id=tax_case_id,
                user_id=user_id,
            ))
        return complete

    def check_documentation_complete_and_transition(self, tax_case_id: int, user_id: int) -> bool:
        """
        Pasa el caso de awaiting_docs a preparing cuando hay W2, comprobante de
        pago y la declaración fue enviada (perfil completo y no borrador).
        Devuelve True solo si hizo la transición; repetirlo no tiene efecto.
        """
        case = self._load_case_with_profile(tax_case_id)
        if not case:
            logger.warning(f"Tax case {redact_id(tax_case_id)} not found for completion check")
            return False

        profile = case.client_profile
        has_w2 = case.has_document(DocumentType.W2)
        has_payment_proof = case.has_document(DocumentType.PAYMENT_PROOF)
        submitted = bool(profile and profile.profile_complete and not profile.is_draft)
        logger.info(
            f"Documentation check for case {redact_id(tax_case_id)}: w2={has_w2}, "
            f"payment_proof={has_payment_proof}, submitted={submitted}, status={case.case_status.value}"
        )

        if not (has_w2 and has_payment_proof and submitted):
            return False
        if case.case_status != CaseStatus.awaiting_docs:
            return False

        self.coordinator.update_status(
            case.id,
            StatusUpdateRequest(
                case=CaseStatusPatch(status=CaseStatus.preparing),
                comment=AUTO_PREPARING_COMMENT,
            ),
            changed_by_id=None,
        )
        user = self.db.query(User).filter(User.id == user_id).first()
        client_name = (user.full_name if user else "") or "Desconocido"
        self.notify_admins(
            "Documentación completa - preparando declaración",
            f"El cliente {client_name} completó toda la documentación requerida. "
            f'El estado cambió automáticamente a "Preparando declaración".',
        )
        logger.info(f"Case {redact_id(tax_case_id)} auto-transitioned to preparing")
        return True

    # ===================== RECORDATORIO DE DOCUMENTOS =====================

    def get_missing_docs_cron_status(self) -> Dict[str, Any]:
        setting = self.db.query(SystemSetting).filter(SystemSetting.key == MISSING_DOCS_CRON_KEY).first()
        return {
            "enabled": bool(setting and setting.value == "true"),
            "last_updated": setting.updated_at if setting else None,
        }

    def set_missing_docs_cron_enabled(self, enabled: bool, admin_id: Optional[int] = None) -> Dict[str, bool]:
        setting = self.db.query(SystemSetting).filter(SystemSetting.key == MISSING_DOCS_CRON_KEY).first()
        value = "true" if enabled else "false"
        if setting:
            setting.value = value
            setting.updated_by = admin_id
        else:
            self.db.add(SystemSetting(
                key=MISSING_DOCS_CRON_KEY,
                value=value,
                description="Activa el recordatorio diario de documentos faltantes",
                updated_by=admin_id,
            ))
        self.db.commit()
        logger.info(f"Missing docs reminder {'enabled' if enabled else 'disabled'} by admin {redact_id(admin_id)}")
        return {"enabled": enabled}

    def handle_missing_documents_cron(self) -> Optional[Dict[str, int]]:
        """Entrada diaria. No hace nada si la bandera está desactivada."""
        if not self.get_missing_docs_cron_status()["enabled"]:
            logger.info("Missing documents reminder is disabled, skipping")
            return None
        return self.check_and_notify_missing_documents()

    def check_and_notify_missing_documents(
        self,
        days_threshold: Optional[int] = None,
        max_notifications_per_client: Optional[int] = None,
    ) -> Dict[str, int]:
        """
        Recuerda a los clientes en etapa temprana qué les falta.
        El tope por cliente es un conteo previo al envío, sin bloqueo atómico.
        """
        if days_threshold is None:
            days_threshold = settings.MISSING_DOCS_DAYS_THRESHOLD
        if max_notifications_per_client is None:
            max_notifications_per_client = settings.MISSING_DOCS_MAX_NOTIFICATIONS

        notified = 0
        skipped = 0
        now = utc_now()
        threshold = now - timedelta(days=days_threshold)
        window_start = now - timedelta(days=settings.MISSING_DOCS_WINDOW_DAYS)

        try:
            cases = self.db.query(TaxCase).filter(
                TaxCase.case_status.in_(list(EARLY_CASE_STATUSES)),
                TaxCase.created_at <= threshold,
            ).order_by(TaxCase.id).all()
            logger.info(f"Found {len(cases)} early-stage cases to check for missing documents")

            for case in cases:
                user = case.user
                if not user:
                    continue
                missing = missing_items(
                    bool(case.client_profile.profile_complete), case.has_document(DocumentType.W2)
                )
                if not missing:
                    continue

                sent = self.notifications.count_recent(user.id, NotificationType.DOCS_MISSING, window_start)
                if sent >= max_notifications_per_client:
                    logger.info(f"Skipping client {redact_id(user.id)}: {sent} reminders already sent")
                    skipped += 1
                    continue

                self.notifications.create_from_template(
                    user.id, NotificationType.DOCS_MISSING, "notifications.docs_missing",
                    {"firstName": user.first_name or "", "missingDocs": " y ".join(missing)},
                )
                notified += 1
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error checking for missing documents: {e}")

        logger.info(f"Missing documents check complete: {notified} notified, {skipped} skipped")
        return {"notified": notified, "skipped": skipped}

    def send_missing_docs_notification(self, user_id: int) -> bool:
        """Recordatorio individual disparado por un admin."""
        try:
            user = self.db.query(User).filter(User.id == user_id).first()
            if not user:
                logger.warning(f"User {redact_id(user_id)} not found for docs reminder")
                return False
            profile = self.db.query(ClientProfile).filter(ClientProfile.user_id == user_id).first()
            if not profile:
                logger.warning(f"Client profile not found for user {redact_id(user_id)}")
                return False

            case = profile.tax_cases[0] if profile.tax_cases else None
            missing = missing_items(
                bool(profile.profile_complete),
                case.has_document(DocumentType.W2) if case else False,
            )
            if not missing:
                logger.info(f"No missing documents for user {redact_id(user_id)}")
                return False

            self.notifications.create_from_template(
                user.id, NotificationType.DOCS_MISSING, "notifications.docs_missing",
                {"firstName": user.first_name or "", "missingDocs": " y ".join(missing)},
            )
            return True
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error sending docs reminder to user {redact_id(user_id)}: {e}")
            return False
