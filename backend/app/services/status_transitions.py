"""
Grafos de transición de las tres dimensiones de estado.

Los grafos alimentan la lista de "siguiente estado sugerido" y el payload de
rechazo. Mientras ENFORCE_STATUS_TRANSITIONS esté desactivado toda transición
se acepta; el motivo de un override forzado se registra igual en el historial.
"""
from typing import Dict, FrozenSet, List, Optional, Set, Type

from ..core.config import settings
from ..core.exceptions import InvalidTransitionError
from ..models.models import CaseStatus, RefundStatus

CASE = "case"
FEDERAL = "federal"
STATE = "state"

DIMENSIONS = (CASE, FEDERAL, STATE)

_C = CaseStatus
_R = RefundStatus

CASE_STATUS_TRANSITIONS: Dict[CaseStatus, FrozenSet[CaseStatus]] = {
    _C.awaiting_form: frozenset({_C.awaiting_docs, _C.case_issues}),
    _C.awaiting_docs: frozenset({_C.awaiting_form, _C.documentos_enviados, _C.preparing, _C.case_issues}),
    _C.documentos_enviados: frozenset({_C.awaiting_docs, _C.preparing, _C.case_issues}),
    _C.preparing: frozenset({_C.awaiting_docs, _C.documentos_enviados, _C.taxes_filed, _C.case_issues}),
    _C.taxes_filed: frozenset({_C.case_issues}),
    _C.case_issues: frozenset({
        _C.awaiting_form, _C.awaiting_docs, _C.documentos_enviados, _C.preparing, _C.taxes_filed,
    }),
}

# Federal y estatal comparten vocabulario y grafo
REFUND_STATUS_TRANSITIONS: Dict[RefundStatus, FrozenSet[RefundStatus]] = {
    _R.taxes_en_proceso: frozenset({
        _R.en_verificacion, _R.deposito_directo, _R.cheque_en_camino, _R.problemas,
    }),
    _R.en_verificacion: frozenset({
        _R.verificacion_en_progreso, _R.deposito_directo, _R.cheque_en_camino, _R.problemas,
    }),
    _R.verificacion_en_progreso: frozenset({
        _R.verificacion_rechazada, _R.deposito_directo, _R.cheque_en_camino, _R.problemas,
    }),
    _R.verificacion_rechazada: frozenset({_R.deposito_directo, _R.cheque_en_camino, _R.problemas}),
    _R.deposito_directo: frozenset({_R.comision_pendiente, _R.taxes_completados, _R.problemas}),
    _R.cheque_en_camino: frozenset({_R.comision_pendiente, _R.taxes_completados, _R.problemas}),
    _R.comision_pendiente: frozenset({_R.taxes_completados, _R.problemas}),
    _R.taxes_completados: frozenset({_R.problemas}),
    _R.problemas: frozenset({
        _R.taxes_en_proceso, _R.en_verificacion, _R.verificacion_en_progreso,
        _R.deposito_directo, _R.cheque_en_camino, _R.comision_pendiente,
    }),
}

_GRAPHS = {
    CASE: (CaseStatus, CASE_STATUS_TRANSITIONS),
    FEDERAL: (RefundStatus, REFUND_STATUS_TRANSITIONS),
    STATE: (RefundStatus, REFUND_STATUS_TRANSITIONS),
}

_DIMENSION_LABELS = {
    CASE: "Estado del caso",
    FEDERAL: "Estado federal",
    STATE: "Estado estatal",
}


def _graph(dimension: str):
    try:
        return _GRAPHS[dimension]
    except KeyError:
        raise ValueError(f"Unknown status dimension: {dimension}")


def _coerce(enum_cls: Type, value) -> Optional[object]:
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return value


def allowed_next(dimension: str, current) -> Set[str]:
    """
    Estados permitidos a partir de `current`, incluyendo siempre el propio estado.
    Un estado fuera del grafo solo puede quedarse donde está; sin estado previo
    se permite cualquiera.
    """
    enum_cls, transitions = _graph(dimension)
    current = _coerce(enum_cls, current)
    if current is None:
        return {s.value for s in enum_cls}
    targets = transitions.get(current)
    current_value = current.value if isinstance(current, enum_cls) else str(current)
    if targets is None:
        return {current_value}
    return {current_value} | {s.value for s in targets}


def _ordered(dimension: str, statuses: Set[str]) -> List[str]:
    enum_cls, _ = _graph(dimension)
    order = [s.value for s in enum_cls]
    return sorted(statuses, key=lambda s: order.index(s) if s in order else len(order))


def is_valid_transition(dimension: str, current, attempted, enforce: Optional[bool] = None) -> bool:
    """
    Indica si la transición está permitida. Con la validación desactivada
    (configuración por defecto) toda transición es válida.
    """
    if enforce is None:
        enforce = settings.ENFORCE_STATUS_TRANSITIONS
    if not enforce:
        return True
    if current is None:
        return True
    enum_cls, _ = _graph(dimension)
    attempted = _coerce(enum_cls, attempted)
    attempted_value = attempted.value if isinstance(attempted, enum_cls) else str(attempted)
    return attempted_value in allowed_next(dimension, current)


def build_rejection(dimension: str, current, attempted) -> InvalidTransitionError:
    """Construye el error estructurado de transición no permitida."""
    enum_cls, _ = _graph(dimension)
    current = _coerce(enum_cls, current)
    attempted = _coerce(enum_cls, attempted)
    current_value = getattr(current, "value", current)
    attempted_value = getattr(attempted, "value", attempted)

    allowed = _ordered(
        dimension, {s for s in allowed_next(dimension, current) if s != current_value}
    )
    message = (
        f'Transicion de {_DIMENSION_LABELS[dimension]} no permitida: '
        f'de "{current_value or "sin estado"}" a "{attempted_value}". '
        f'Transiciones permitidas: {", ".join(allowed) or "ninguna"}'
    )
    return InvalidTransitionError(
        status_type=dimension,
        current_status=current_value,
        attempted_status=attempted_value,
        allowed_transitions=allowed,
        message=message,
    )


def valid_transitions_for(tax_case) -> dict:
    """Estados sugeridos para las tres dimensiones de un caso."""
    current = {
        CASE: tax_case.case_status,
        FEDERAL: tax_case.federal_status_new,
        STATE: tax_case.state_status_new,
    }
    return {
        "tax_case_id": tax_case.id,
        **{
            dimension: {
                "current": getattr(value, "value", value),
                "valid_transitions": _ordered(dimension, allowed_next(dimension, value)),
            }
            for dimension, value in current.items()
        },
    }
