"""
Módulo de seguridad - tokens JWT y cifrado de datos sensibles (SSN).
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from fastapi import HTTPException, status
from jose import JWTError, jwt

from .config import settings

logger = logging.getLogger(__name__)


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Crea un token JWT de acceso.
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access"
    })
    return jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )


def decode_token(token: str) -> dict:
    """
    Decodifica y valida un token JWT.
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token inválido o expirado",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _fernet(key: Optional[str] = None) -> Fernet:
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise RuntimeError("ENCRYPTION_KEY no está configurada")
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_sensitive_data(data: str, key: Optional[str] = None) -> str:
    """Cifrado de datos sensibles en reposo (Fernet)."""
    return _fernet(key).encrypt(data.encode()).decode()


def decrypt_sensitive_data(encrypted_data: str, key: Optional[str] = None) -> str:
    """Descifrado de datos sensibles. Lanza InvalidToken si el texto no es válido."""
    return _fernet(key).decrypt(encrypted_data.encode()).decode()


def safe_decrypt(encrypted_data: Optional[str], field: str = "value",
                 key: Optional[str] = None) -> Optional[str]:
    """
    Descifra sin lanzar excepciones: devuelve None si no hay dato,
    si falta la clave o si el texto cifrado es inválido.
    """
    if not encrypted_data:
        return None
    try:
        return decrypt_sensitive_data(encrypted_data, key)
    except (InvalidToken, RuntimeError, ValueError) as e:
        logger.warning(f"Could not decrypt {field}: {type(e).__name__}")
        return None


def mask_ssn(encrypted_ssn: Optional[str]) -> Optional[str]:
    """SSN enmascarado (***-**-1234) para listados administrativos."""
    ssn = safe_decrypt(encrypted_ssn, "ssn")
    if not ssn:
        return None
    digits = "".join(ch for ch in ssn if ch.isdigit())
    return f"***-**-{digits[-4:]}" if len(digits) >= 4 else "***-**-****"
