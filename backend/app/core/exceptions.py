"""
Errores de dominio del motor de estados.

Los servicios lanzan estas excepciones; `main.py` las traduce a respuestas
HTTP, de modo que la capa de servicios no depende de FastAPI.

    EngineError
    +-- NotFoundError              (404)
    +-- InvalidTransitionError     (400, payload estructurado)
    +-- PreconditionFailedError    (400)
"""
from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base de los errores del motor."""

    code: str = "ENGINE_ERROR"
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class NotFoundError(EngineError):
    code = "NOT_FOUND"
    status_code = 404


class PreconditionFailedError(EngineError):
    code = "PRECONDITION_FAILED"
    status_code = 400


class InvalidTransitionError(EngineError):
    """Transición de estado rechazada, con la lista de transiciones permitidas."""

    code = "INVALID_STATUS_TRANSITION"
    status_code = 400

    def __init__(
        self,
        status_type: str,
        current_status: Optional[str],
        attempted_status: str,
        allowed_transitions: List[str],
        message: str,
    ):
        super().__init__(message)
        self.status_type = status_type
        self.current_status = current_status
        self.attempted_status = attempted_status
        self.allowed_transitions = allowed_transitions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "statusType": self.status_type,
            "currentStatus": self.current_status,
            "attemptedStatus": self.attempted_status,
            "allowedTransitions": self.allowed_transitions,
            "message": self.message,
        }
