# api/server.py
# ============================================================================
# BOOKING PAYMENT SERVICE v1.0 — FASTAPI SERVER
# ============================================================================
# Internal payment API with header auth, a single error-mapping layer,
# the expiry reaper, and health checks
# ============================================================================

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.payment_routes import router as payment_router
from database import Database, close_database, init_database
from exceptions import PaymentServiceError
from schemas.payment_definitions import PaymentResponse
from services.gateway_client import GatewayClient, stripe_config
from services.session_manager import UNEXPECTED_MESSAGE, SessionManager
from storage.payment_store import create_payment_store
from tasks.reaper import PaymentReaper

VERSION = "1.0.0"


# ============================================================================
# CONFIGURATION
# ============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")

    # "postgres" or "memory"
    PAYMENT_STORE = os.getenv("PAYMENT_STORE", "postgres")

    # "console" or "json"
    LOG_FORMAT = os.getenv("LOG_FORMAT", "console")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


config = ServerConfig()


# ============================================================================
# LOGGING
# ============================================================================

def configure_logging(log_format: str = config.LOG_FORMAT, log_level: str = config.LOG_LEVEL):
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
    )


configure_logging()
logger = structlog.get_logger().bind(component="server")


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    store_backend: str
    database_connected: bool
    reaper: Dict[str, Any]


START_TIME = datetime.now(timezone.utc)


# ============================================================================
# ERROR MAPPING
# ============================================================================

def _error_body(status_code: int, payment_status: str, message: str) -> JSONResponse:
    body = PaymentResponse.error(payment_status, message).model_dump(by_alias=True)
    return JSONResponse(status_code=status_code, content=body)


async def handle_payment_error(request: Request, exc: PaymentServiceError):
    logger.warning(
        "Payment request failed",
        path=request.url.path,
        status_code=exc.status_code,
        payment_status=exc.payment_status,
        error=exc.message,
    )
    return _error_body(exc.status_code, exc.payment_status, exc.message)


async def handle_validation_error(request: Request, exc: RequestValidationError):
    message = ", ".join(
        f"{error['loc'][-1] if error.get('loc') else 'request'}: {error['msg']}"
        for error in exc.errors()
    )
    logger.warning("Request validation failed", path=request.url.path, errors=message)
    return _error_body(400, "VALIDATION_ERROR", message)


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.error(
        "Unhandled error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return _error_body(500, "ERROR", UNEXPECTED_MESSAGE)


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    session_manager: Optional[SessionManager] = None,
    reaper: Optional[PaymentReaper] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Without an injected manager the lifespan wires the configured store,
    the Stripe client and the reaper itself.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.ENV, store=config.PAYMENT_STORE)
        owns_database = False

        if app.state.session_manager is None:
            stripe_config.validate()
            store = create_payment_store(config.PAYMENT_STORE)
            if store.backend_name == "postgres":
                await init_database()
                owns_database = True
            app.state.session_manager = SessionManager(store, GatewayClient(stripe_config))

        if app.state.reaper is None:
            app.state.reaper = PaymentReaper(app.state.session_manager)
        app.state.reaper.start()

        yield

        logger.info("server_shutting_down")
        await app.state.reaper.stop()
        if owns_database:
            await close_database()

    app = FastAPI(
        title="Booking Payment Service",
        description="Internal hosted-checkout payment API for the booking service",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.session_manager = session_manager
    app.state.reaper = reaper

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = request.headers.get("X-Request-ID") or str(uuid4())[:8]
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(PaymentServiceError, handle_payment_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(payment_router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        manager = request.app.state.session_manager
        reaper_ = request.app.state.reaper
        uptime = (datetime.now(timezone.utc) - START_TIME).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            store_backend=manager.store.backend_name if manager else "uninitialized",
            database_connected=Database.is_connected(),
            reaper=reaper_.get_stats() if reaper_ else {},
        )

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.ENV == "development",
        log_level="info",
    )
