"""
FastAPI application entry point with health check and metrics routes.
"""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from carwash.api.routes import bookings, crew, notifications, admin_dashboard
from carwash.api.middleware.error_handler import (
    AppException,
    app_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
)
from carwash.lib.logging import get_logger, set_correlation_id
from carwash.lib.metrics import get_metrics_collector
from carwash.lib.settings import settings

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation_id to all requests for distributed tracing.
    Accepts X-Correlation-ID from incoming requests or generates a new one.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())

        # Request state for exception handlers, context var for log records
        request.state.correlation_id = correlation_id
        set_correlation_id(correlation_id)

        logger.info(
            "Incoming request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client": request.client.host if request.client else None,
            }
        )

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id

        logger.info("Response sent", extra={"status_code": response.status_code})
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup/shutdown events.
    Schema is owned by Alembic; nothing is created here.
    """
    logger.info(f"{settings.app_name} starting up...")
    yield
    logger.info(f"{settings.app_name} shutting down...")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Booking lifecycle, crew dispatch and notifications for car wash branches",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)


app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


app.include_router(bookings.router)
app.include_router(crew.router)
app.include_router(notifications.router)
app.include_router(admin_dashboard.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False, response_class=PlainTextResponse)
def metrics_endpoint():
    """
    Prometheus-compatible metrics endpoint.

    Metrics exposed:
    - booking_status_transitions_total: Status changes by from/to status
    - booking_status_conflicts_total: Writes rejected as concurrent modifications
    - crew_assignments_total: Assignment outcomes (assigned, accepted, rejected, refused)
    - notifications_created_total: Notifications by type
    """
    return PlainTextResponse(
        content=get_metrics_collector().export_prometheus(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
