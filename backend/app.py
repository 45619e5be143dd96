import logging
import time
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from agents.dunning.clients import ChatClient, EmailSender
from agents.dunning.errors import DunningError
from agents.dunning.payments import PaymentProcessor
from backend.apps.licenses.api import router as licenses_router
from backend.apps.notifications.api import router as jobs_router
from backend.apps.notifications.api_internal import router as internal_jobs_router
from backend.core.config import Settings, settings as default_settings
from backend.core.database import create_db_engine, get_engine
from backend.core.observability import init_observability, set_trace_id
from backend.core.observability.health import router as health_router
from backend.core.observability.logging import set_request_id
from backend.core.observability.metrics import record_request_duration
from backend.core.services import build_services

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


async def dunning_error_handler(request: Request, exc: DunningError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request_failed",
            extra={"path": request.url.path, "error": exc.code, "detail": exc.message},
        )
    else:
        logger.info(
            "request_rejected",
            extra={"path": request.url.path, "error": exc.code, "status": exc.status_code},
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": {"error": "validation_error", "detail": _validation_message(exc)}},
    )


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    *,
    email_sender: EmailSender | None = None,
    chat_client: ChatClient | None = None,
    payment_processor: PaymentProcessor | None = None,
    clock: Callable[[], datetime] | None = None,
) -> FastAPI:
    settings = settings or default_settings
    init_observability(enable_metrics=settings.enable_metrics)

    if engine is None:
        engine = get_engine() if settings is default_settings else create_db_engine(
            settings.database_url
        )

    app = FastAPI(title="License Billing & Dunning")
    app.state.settings = settings
    app.state.engine = engine
    app.state.services = build_services(
        settings,
        engine,
        email_sender=email_sender,
        chat_client=chat_client,
        payment_processor=payment_processor,
        clock=clock,
    )

    app.add_exception_handler(DunningError, dunning_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.middleware("http")
    async def trace_context(request: Request, call_next):
        trace_id = set_trace_id(request.headers.get("X-Trace-ID"))
        set_request_id(request.headers.get("X-Request-ID"))
        start = time.time()
        response = await call_next(request)
        route = request.scope.get("route")
        record_request_duration(
            (time.time() - start) * 1000, getattr(route, "path", request.url.path)
        )
        response.headers["X-Trace-ID"] = trace_id
        return response

    # Routers
    app.include_router(health_router)
    app.include_router(licenses_router)
    app.include_router(jobs_router)
    app.include_router(internal_jobs_router)

    return app


# ASGI app instance
app = create_app()
