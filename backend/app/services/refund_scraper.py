"""
Contrato del scraper del portal estatal de reembolsos.

La automatización del navegador vive fuera de este servicio; aquí solo se
define qué recibe y qué devuelve. Un scraper nunca debe lanzar por fallos del
portal: los reporta con `result=error` o `result=timeout`.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from ..models.models import CheckResult

logger = logging.getLogger(__name__)


@dataclass
class ScrapeRequest:
    ssn: str
    expected_refund_amount: int
    case_id: str
    client_name: str


@dataclass
class ScrapeResponse:
    result: CheckResult
    raw_status: str
    details: Optional[Dict[str, Any]] = None
    screenshot_path: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_transient_failure(self) -> bool:
        return self.result in (CheckResult.ERROR, CheckResult.TIMEOUT)


class RefundStatusScraper(Protocol):

    async def check_refund_status(self, request: ScrapeRequest) -> ScrapeResponse:
        ...


class UnconfiguredScraper:
    """Scraper por defecto cuando no hay integración instalada."""

    async def check_refund_status(self, request: ScrapeRequest) -> ScrapeResponse:
        logger.warning("State refund scraper is not configured")
        return ScrapeResponse(
            result=CheckResult.ERROR,
            raw_status="Scraper not configured",
            error_message="No hay un scraper del portal estatal configurado",
        )
