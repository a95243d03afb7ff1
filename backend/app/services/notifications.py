"""
Servicio de notificaciones in-app.
Plantillas en español indexadas por clave (p.ej. "notifications.docs_missing").
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.models import Notification, NotificationType

logger = logging.getLogger(__name__)


NOTIFICATION_TEMPLATES: Dict[str, Dict[str, str]] = {
    "notifications.problem_resolved": {
        "title": "Problema resuelto",
        "message": "Hola {firstName}, el problema con tu caso fue resuelto y tu trámite sigue avanzando.",
    },
    "notifications.status_federal_processing": {
        "title": "Reembolso federal en proceso",
        "message": "Hola {firstName}, tu declaración federal está siendo procesada por el IRS.",
    },
    "notifications.status_federal_approved": {
        "title": "Reembolso federal aprobado",
        "message": "Hola {firstName}, tu reembolso federal fue aprobado. Fecha estimada: {estimatedDate}.",
    },
    "notifications.status_federal_rejected": {
        "title": "Problema con tu reembolso federal",
        "message": "Hola {firstName}, detectamos un problema con tu reembolso federal. Nuestro equipo te contactará.",
    },
    "notifications.status_federal_deposited": {
        "title": "Reembolso federal completado",
        "message": "Hola {firstName}, tu reembolso federal de {amount} fue completado.",
    },
    "notifications.status_state_processing": {
        "title": "Reembolso estatal en proceso",
        "message": "Hola {firstName}, tu declaración estatal está siendo procesada.",
    },
    "notifications.status_state_approved": {
        "title": "Reembolso estatal aprobado",
        "message": "Hola {firstName}, tu reembolso estatal fue aprobado. Fecha estimada: {estimatedDate}.",
    },
    "notifications.status_state_rejected": {
        "title": "Problema con tu reembolso estatal",
        "message": "Hola {firstName}, detectamos un problema con tu reembolso estatal. Nuestro equipo te contactará.",
    },
    "notifications.status_state_deposited": {
        "title": "Reembolso estatal completado",
        "message": "Hola {firstName}, tu reembolso estatal de {amount} fue completado.",
    },
    "notifications.docs_missing": {
        "title": "Documentos pendientes",
        "message": "Hola {firstName}, para continuar con tu declaración necesitas {missingDocs}.",
    },
}


class _Defaults(dict):
    """Variables ausentes quedan vacías en lugar de romper el formato."""

    def __missing__(self, key):
        return ""


def render_template(template_key: str, variables: Optional[Dict[str, Union[str, int, float]]] = None):
    """Devuelve (title, message) para una clave de plantilla."""
    template = NOTIFICATION_TEMPLATES.get(template_key)
    if template is None:
        raise KeyError(f"Unknown notification template: {template_key}")
    values = _Defaults(variables or {})
    return (
        template["title"].format_map(values),
        template["message"].format_map(values),
    )


def format_usd(amount) -> str:
    return f"${float(amount):,.2f}"


class NotificationService:
    """
    Crea notificaciones para usuarios. Cada operación confirma su propia
    transacción; los llamadores que la usan como efecto secundario capturan
    cualquier error.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: int, type: NotificationType, title: str, message: str) -> Notification:
        notification = Notification(user_id=user_id, type=type, title=title, message=message)
        self.db.add(notification)
        self.db.commit()
        return notification

    def create_many(self, user_ids: Iterable[int], type: NotificationType,
                    title: str, message: str) -> int:
        """Inserta una notificación por usuario en un único INSERT."""
        user_ids = list(user_ids)
        if not user_ids:
            return 0
        self.db.execute(
            Notification.__table__.insert(),
            [
                {"user_id": uid, "type": type, "title": title, "message": message, "is_read": False}
                for uid in user_ids
            ],
        )
        self.db.commit()
        return len(user_ids)

    def create_from_template(self, user_id: int, type: NotificationType, template_key: str,
                             variables: Optional[Dict[str, Union[str, int, float]]] = None) -> Notification:
        title, message = render_template(template_key, variables)
        return self.create(user_id, type, title, message)

    def count_recent(self, user_id: int, type: NotificationType, since: datetime) -> int:
        return self.db.query(func.count(Notification.id)).filter(
            Notification.user_id == user_id,
            Notification.type == type,
            Notification.created_at >= since,
        ).scalar() or 0
