"""
Registro de auditoría. Un fallo al auditar nunca bloquea la operación que lo origina.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..models.models import AuditAction, AuditLog

logger = logging.getLogger(__name__)


class AuditLogService:

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: AuditAction,
        user_id: Optional[int] = None,
        target_user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        try:
            self.db.add(AuditLog(
                action=action,
                user_id=user_id,
                target_user_id=target_user_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
            ))
            self.db.commit()
            return True
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to create audit log ({action.value}): {e}")
            return False
