"""
Aplicación principal FastAPI del motor de seguimiento de casos y reembolsos.
"""
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.exceptions import EngineError, InvalidTransitionError
from .db.database import init_db, SessionLocal
from .models.models import CheckTrigger
from .api.endpoints import cases, progress, state_monitor
from .api.middleware.security import (
    SecurityHeadersMiddleware,
    RateLimitMiddleware,
    RequestLogMiddleware
)
from .services.background import DailyJobScheduler
from .services.progress_automation import ProgressAutomationEngine
from .services.state_refund_monitor import StateRefundMonitor

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Crear aplicación
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    ## Seguimiento de casos y reembolsos

    Motor de estados de los casos de declaración de impuestos.

    ### Funcionalidades:
    - Actualización coordinada de estado interno, federal y estatal
    - Automatización del avance por documentos y perfil
    - Recordatorio diario de documentos faltantes
    - Cálculo y cobro de comisiones por rama
    - Monitor del portal estatal con aprobación manual de cambios
    """,
    version=settings.APP_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# Configurar CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Agregar middleware de seguridad
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestLogMiddleware)

# Incluir routers
app.include_router(cases.router, prefix="/api/v1")
app.include_router(progress.router, prefix="/api/v1")
app.include_router(state_monitor.router, prefix="/api/v1")

scheduler = DailyJobScheduler()


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    """Traduce los errores de dominio a respuestas HTTP."""
    if isinstance(exc, InvalidTransitionError):
        detail = exc.to_dict()
    else:
        detail = exc.message
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


def run_missing_docs_job():
    db = SessionLocal()
    try:
        ProgressAutomationEngine(db).handle_missing_documents_cron()
    finally:
        db.close()


async def run_state_monitor_job():
    db = SessionLocal()
    try:
        monitor = StateRefundMonitor(db, scraper=getattr(app.state, "refund_scraper", None))
        await monitor.run_all_checks(CheckTrigger.SCHEDULE)
    finally:
        db.close()


@app.on_event("startup")
async def startup_event():
    """Inicialización al arrancar la aplicación."""
    init_db()

    scheduler.add_job("missing_docs_reminder", settings.MISSING_DOCS_RUN_HOUR, run_missing_docs_job)
    if settings.STATE_MONITOR_SCHEDULE_ENABLED:
        scheduler.add_job("state_refund_sweep", settings.STATE_MONITOR_RUN_HOUR, run_state_monitor_job)
    app.state.scheduler_task = asyncio.create_task(scheduler.start())

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} started")


@app.on_event("shutdown")
async def shutdown_event():
    """Limpieza al cerrar la aplicación."""
    scheduler.stop()
    task = getattr(app.state, "scheduler_task", None)
    if task:
        task.cancel()
    logger.info("Application stopped")


@app.get("/")
async def root():
    """Endpoint raíz."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }


@app.get("/health")
async def health_check():
    """Health check para monitoreo."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "state_sweep_running": StateRefundMonitor.is_running_check_all(),
    }


def run():
    """Servidor de desarrollo: `python -m app.main` desde backend/."""
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
