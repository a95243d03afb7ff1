"""
Referidos: generación de códigos y cierre de referidos exitosos.
"""
import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import utc_now, redact_id
from ..core.exceptions import NotFoundError
from ..models.models import Referral, ReferralStatus, User

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 10


class ReferralService:

    def __init__(self, db: Session):
        self.db = db

    def _candidate_code(self, user: User) -> str:
        letters = "".join(ch for ch in (user.first_name or "") if ch.isalpha()).upper()
        prefix = (letters + "XXX")[:3]
        return f"{prefix}-{secrets.randbelow(10000):04d}"

    def generate_code(self, user_id: int) -> str:
        """Asigna un código de referido único al usuario (o devuelve el existente)."""
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("Usuario no encontrado")
        if user.referral_code:
            return user.referral_code

        for _ in range(MAX_CODE_ATTEMPTS):
            code = self._candidate_code(user)
            taken = self.db.query(User.id).filter(User.referral_code == code).first()
            if not taken:
                user.referral_code = code
                self.db.commit()
                return code
        raise RuntimeError(f"Could not generate a unique referral code for user {redact_id(user_id)}")

    def mark_referral_successful(self, user_id: int, tax_case_id: Optional[int] = None) -> bool:
        """Marca como exitoso el referido pendiente del usuario, si existe."""
        referral = self.db.query(Referral).filter(
            Referral.referred_user_id == user_id,
            Referral.status == ReferralStatus.PENDING,
        ).first()
        if not referral:
            return False

        referral.status = ReferralStatus.SUCCESSFUL
        referral.completed_at = utc_now()
        if tax_case_id is not None:
            referral.tax_case_id = tax_case_id
        self.db.commit()
        logger.info(f"Referral {referral.id} marked successful for user {redact_id(user_id)}")
        return True
