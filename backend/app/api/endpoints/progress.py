"""
Endpoints de automatización del progreso y recordatorios de documentos.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ...db.database import get_db, SessionLocal
from ...models.models import ClientProfile, TaxCase, User, UserRole
from ...schemas.schemas import (
    ProgressEventRequest, MessageResponse,
    MissingDocsCronStatus, MissingDocsCronUpdate, MissingDocsRunResult
)
from ...services.background import run_background_task
from ...services.progress_automation import (
    ProgressAutomationEngine, ProgressEvent, ProgressEventType
)
from .auth import require_admin, require_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/progress", tags=["Progreso"])


def process_event_in_new_session(event: ProgressEvent) -> None:
    """Corre fuera de la petición, con su propia sesión."""
    db = SessionLocal()
    try:
        engine = ProgressAutomationEngine(db)
        engine.process_event(event)
        engine.check_documentation_complete_and_transition(event.tax_case_id, event.user_id)
    finally:
        db.close()


def _owns_case(db: Session, user_id: int, data: ProgressEventRequest) -> bool:
    if data.user_id != user_id:
        return False
    case = db.query(TaxCase).join(ClientProfile).filter(
        TaxCase.id == data.tax_case_id,
        ClientProfile.user_id == user_id,
    ).first()
    return case is not None


@router.post("/events", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_progress_event(
    data: ProgressEventRequest,
    current_user: User = Depends(require_role([UserRole.CLIENT, UserRole.ADMIN])),
    db: Session = Depends(get_db),
):
    """
    Recibe un evento de progreso y lo procesa en segundo plano.
    La respuesta no espera a la automatización.

    Lo emite la app del cliente tras completar el perfil o subir un
    documento (solo sobre su propio caso); un admin puede emitirlo por
    cualquier caso, p. ej. al cargar documentos en nombre del cliente.
    """
    try:
        event_type = ProgressEventType(data.type)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Tipo de evento no soportado: {data.type}"
        )

    if current_user.role == UserRole.CLIENT and not _owns_case(db, current_user.id, data):
        logger.warning(f"User {current_user.id} denied progress event for case {data.tax_case_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No tiene permisos sobre este caso"
        )

    metadata = dict(data.details or {})
    if data.document_type:
        metadata.setdefault("documentType", data.document_type.value)
    event = ProgressEvent(
        type=event_type,
        tax_case_id=data.tax_case_id,
        user_id=data.user_id,
        metadata=metadata,
    )
    run_background_task(
        f"progress:{event_type.value}",
        lambda: process_event_in_new_session(event),
    )
    return MessageResponse(message="Evento recibido")


# ===================== RECORDATORIO DE DOCUMENTOS =====================

@router.get("/missing-docs/cron", response_model=MissingDocsCronStatus)
async def get_missing_docs_cron(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return ProgressAutomationEngine(db).get_missing_docs_cron_status()


@router.put("/missing-docs/cron", response_model=MissingDocsCronStatus)
async def set_missing_docs_cron(
    data: MissingDocsCronUpdate,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Activa o desactiva el recordatorio diario."""
    engine = ProgressAutomationEngine(db)
    engine.set_missing_docs_cron_enabled(data.enabled, admin_id=current_user.id)
    return engine.get_missing_docs_cron_status()


@router.post("/missing-docs/run", response_model=MissingDocsRunResult)
async def run_missing_docs_check(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Ejecuta el recordatorio ahora, sin importar la bandera."""
    return ProgressAutomationEngine(db).check_and_notify_missing_documents()


@router.post("/missing-docs/notify/{user_id}", response_model=MessageResponse)
async def notify_missing_docs(
    user_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    sent = ProgressAutomationEngine(db).send_missing_docs_notification(user_id)
    if not sent:
        return MessageResponse(message="No se envió el recordatorio", success=False)
    return MessageResponse(message="Recordatorio enviado")
