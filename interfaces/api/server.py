"""
CBS Books API Server

Builds the FastAPI app that serves the /api/v1 router. The InvoiceService,
config and activity log live on ``app.state`` so routes can reach them
without circular imports.

Run with:
    uvicorn interfaces.api.server:create_app --factory --host 127.0.0.1 --port 8080
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from core.config import get_config
from core.event_logger import EventLogger
from interfaces.api.routes import router as api_router
from tools.cbsbooks.errors import (
    BooksError,
    DispatchError,
    NotFoundError,
    PaymentLinkError,
    RenderError,
    SyncError,
    TransitionError,
    ValidationError,
)
from tools.cbsbooks.service import InvoiceService

logger = logging.getLogger("cbs.server")


# ---------------------------------------------------------------------------
# Error → HTTP mapping
# ---------------------------------------------------------------------------

def _error_body(code: str, exc: Exception, **extra) -> dict:
    return {"ok": False, "error": code, "message": str(exc), **extra}


async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content=_error_body(
        "validation_error", exc, fields=[e.to_dict() for e in exc.errors]))


async def _transition_error(request: Request, exc: TransitionError):
    return JSONResponse(status_code=409, content=_error_body(
        "invalid_transition", exc, current=exc.current, target=exc.target))


async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content=_error_body(
        "not_found", exc, kind=exc.kind, id=exc.entity_id))


async def _sync_error(request: Request, exc: SyncError):
    logger.warning("Sync failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content=_error_body(
        "sync_failed", exc, retryable=exc.retryable, email_sent=exc.email_sent,
        remote_status=exc.status_code))


async def _dispatch_error(request: Request, exc: DispatchError):
    logger.warning("Email failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content=_error_body(
        "email_failed", exc, recipient=exc.recipient, retryable=True))


async def _payment_link_error(request: Request, exc: PaymentLinkError):
    return JSONResponse(status_code=502, content=_error_body("payment_link_failed", exc))


async def _render_error(request: Request, exc: RenderError):
    logger.error("Render failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content=_error_body("render_failed", exc))


async def _books_error(request: Request, exc: BooksError):
    logger.error("Unhandled ledger error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content=_error_body("internal_error", exc))


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(TransitionError, _transition_error)
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(SyncError, _sync_error)
    app.add_exception_handler(DispatchError, _dispatch_error)
    app.add_exception_handler(PaymentLinkError, _payment_link_error)
    app.add_exception_handler(RenderError, _render_error)
    app.add_exception_handler(BooksError, _books_error)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(config=None, service: InvoiceService | None = None,
               load_on_startup: bool = True) -> FastAPI:
    """Build the API app.

    Args:
        config:          BooksConfig; defaults to the global singleton.
        service:         Pre-built service (tests). Built from config if None.
        load_on_startup: Load the ledger when the app starts.
    """
    config = config or get_config()
    if service is None:
        service = InvoiceService.from_config(
            config, events=EventLogger(max_events=config.events.max_events))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Load the ledger on startup, release HTTP clients on shutdown."""
        logger.info("CBS Books API starting up")
        service.events.info("system", "CBS Books API starting up")
        if load_on_startup:
            try:
                await service.load()
            except SyncError as e:
                # Still serve; /refresh retries once the remote is back
                logger.error("Initial ledger load failed: %s", e)
                service.events.error("sync", "Initial ledger load failed", error=str(e))
        yield
        await service.close()
        logger.info("CBS Books API shutting down")

    app = FastAPI(title="CBS Books", lifespan=lifespan)

    app.state.config = config
    app.state.service = service
    app.state.event_logger = service.events

    register_error_handlers(app)
    app.include_router(api_router)
    return app
