"""
Traducción del texto del portal estatal de reembolsos al vocabulario interno.

Las reglas se evalúan en orden y gana la primera que coincide (subcadena,
sin distinguir mayúsculas). "Return Not Received" contiene "Return Received",
por eso la regla de "no recibido" va primero.
"""
from typing import Callable, List, Optional, Tuple

from ..models.models import PaymentMethod, RefundStatus


def _any(*needles: str) -> Callable[[str], bool]:
    return lambda text: any(n in text for n in needles)


def _all(*needles: str) -> Callable[[str], bool]:
    return lambda text: all(n in text for n in needles)


def _issued(payment_method) -> RefundStatus:
    if payment_method is not None and PaymentMethod(payment_method) == PaymentMethod.CHECK:
        return RefundStatus.cheque_en_camino
    return RefundStatus.deposito_directo


# (condición, resultado); el resultado puede depender del método de pago
_NOT_FOUND = None

MAPPING_RULES: List[Tuple[Callable[[str], bool], object]] = [
    # El estado aún no recibió la declaración: no hay nada que actualizar
    (_any("return not received", "not yet processed"), _NOT_FOUND),
    (_any("return received", "being processed"), RefundStatus.taxes_en_proceso),
    (_any("refund reviewed"), RefundStatus.taxes_en_proceso),
    (_all("direct deposit", "redeemed"), RefundStatus.taxes_completados),
    (_all("paper check", "redeemed"), RefundStatus.taxes_completados),
    (_any("refund issued", "refund approved and sent"), _issued),
    (_all("paper check", "issued"), RefundStatus.cheque_en_camino),
    (_all("direct deposit", "refund"), RefundStatus.deposito_directo),
]


def map_refund_status(raw_text: Optional[str], payment_method=None) -> Optional[RefundStatus]:
    """
    Estado interno para el texto del portal, o None si no hay que actualizar.
    None no es un error: significa que el texto no indica un cambio.
    """
    if not raw_text:
        return None
    text = raw_text.lower()
    for matches, result in MAPPING_RULES:
        if matches(text):
            return result(payment_method) if callable(result) else result
    return None
