"""
Middleware de seguridad.
Headers de seguridad, rate limiting por IP y registro de peticiones.
"""
import logging
import time
from collections import defaultdict
from typing import Callable, Dict

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ...core.config import settings

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Agrega headers de seguridad a todas las respuestas.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting por IP en ventana deslizante.
    Configurable via RATE_LIMIT_REQUESTS / RATE_LIMIT_PERIOD.
    """

    def __init__(self, app, requests_limit: int = None, period: int = None):
        super().__init__(app)
        self.requests_limit = requests_limit or settings.RATE_LIMIT_REQUESTS
        self.period = period or settings.RATE_LIMIT_PERIOD
        self.request_counts: Dict[str, list] = defaultdict(list)

    async def dispatch(self, request: Request, call_next: Callable):
        # El health check no cuenta contra el límite
        if request.url.path == "/health":
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        current_time = time.time()

        self.request_counts[client_ip] = [
            t for t in self.request_counts[client_ip]
            if current_time - t < self.period
        ]

        if len(self.request_counts[client_ip]) >= self.requests_limit:
            logger.warning(f"Rate limit exceeded for {client_ip}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Demasiadas solicitudes. Intente más tarde."}
            )

        self.request_counts[client_ip].append(current_time)
        return await call_next(request)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """
    Registra método, ruta, código y duración de cada petición.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} - {response.status_code} - {process_time:.3f}s"
        )
        return response
