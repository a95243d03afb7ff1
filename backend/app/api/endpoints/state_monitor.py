"""
Endpoints del monitor del portal estatal de reembolsos.
Los cambios detectados quedan pendientes hasta que un admin los aprueba.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ...db.database import get_db
from ...models.models import User, CheckTrigger
from ...schemas.schemas import (
    CheckRunResponse, CheckAllResponse, CheckPage, ExternalCheckResponse,
    ApproveCheckResponse, DismissCheckResponse, MonitorStatsResponse, FiledClientResponse
)
from ...services.refund_scraper import RefundStatusScraper, UnconfiguredScraper
from ...services.state_refund_monitor import StateRefundMonitor
from .auth import require_admin

router = APIRouter(prefix="/state-monitor", tags=["Monitor estatal"])


def get_refund_scraper(request: Request) -> RefundStatusScraper:
    """Scraper instalado en app.state.refund_scraper, o el que reporta error."""
    return getattr(request.app.state, "refund_scraper", None) or UnconfiguredScraper()


def get_monitor(
    db: Session = Depends(get_db),
    scraper: RefundStatusScraper = Depends(get_refund_scraper),
) -> StateRefundMonitor:
    return StateRefundMonitor(db, scraper=scraper)


@router.get("/clients", response_model=List[FiledClientResponse])
async def list_filed_clients(
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    """Casos presentados en el estado monitoreado, con su última consulta."""
    return monitor.get_filed_clients()


@router.post("/check/{case_id}", response_model=CheckRunResponse)
async def run_check(
    case_id: int,
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    result = await monitor.run_check(case_id, current_user.id, CheckTrigger.MANUAL)
    return CheckRunResponse(
        success=result["success"],
        check_id=result["check"].id,
        raw_status=result["raw_status"],
        mapped_status=result["new_status"],
        status_changed=result["status_changed"],
        error_message=result["error"],
    )


@router.post("/check-all", response_model=CheckAllResponse)
async def run_all_checks(
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    """
    Consulta todos los casos elegibles.
    Si ya hay un barrido en curso responde con conteos en cero.
    """
    return await monitor.run_all_checks(CheckTrigger.MANUAL, current_user.id)


@router.get("/checks", response_model=CheckPage)
async def list_checks(
    cursor: Optional[int] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    return monitor.get_checks(cursor, limit)


@router.get("/checks/{case_id}", response_model=List[ExternalCheckResponse])
async def list_checks_for_case(
    case_id: int,
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    return monitor.get_checks_for_case(case_id)


@router.get("/stats", response_model=MonitorStatsResponse)
async def get_stats(
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    return monitor.get_stats()


@router.get("/export")
async def export_checks(
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    """Historial completo de consultas en CSV."""
    return Response(
        content=monitor.export_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=state-refund-checks.csv"},
    )


@router.post("/checks/{check_id}/approve", response_model=ApproveCheckResponse)
async def approve_check(
    check_id: int,
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    return monitor.approve_check(check_id, current_user.id)


@router.post("/checks/{check_id}/dismiss", response_model=DismissCheckResponse)
async def dismiss_check(
    check_id: int,
    current_user: User = Depends(require_admin),
    monitor: StateRefundMonitor = Depends(get_monitor)
):
    return monitor.dismiss_check(check_id)
