from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.audit_api import router as audit_router
from api.billing_api import router as billing_router
from api.billing_orchestrator import BillingOrchestrator
from api.budget_api import router as budget_router
from api.cast_api import router as cast_router
from api.cast_engine import CastEngine
from api.config import DATABASE_URL, HTTP_RUNTIME_TIMEOUT_SEC
from api.payments import StripeProcessor
from api.runtimes import build_dispatcher
from api.spells_api import router as spells_router
from api.telemetry import configure_logging
from api.webhook_api import router as webhook_router
from api.webhook_reconciler import WebhookReconciler
from db.budget_db import BudgetLedger
from db.database import create_tables, make_engine, make_sessionmaker
from sdk.handler_registry import HandlerRegistry, default_registry

logger = structlog.get_logger()


def create_app(
    database_url: Optional[str] = None,
    processor=None,
    http_client: Optional[httpx.AsyncClient] = None,
    handlers: Optional[HandlerRegistry] = None,
    ledger: Optional[BudgetLedger] = None,
    reconciler: Optional[WebhookReconciler] = None,
) -> FastAPI:
    """
    Every collaborator is built once here and kept on app.state:
    store engine, payment processor, outbound HTTP client, handler registry.
    Tests pass their own fakes for any of them.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()

        engine = make_engine(database_url or DATABASE_URL)
        await create_tables(engine)
        client = http_client or httpx.AsyncClient(timeout=HTTP_RUNTIME_TIMEOUT_SEC)
        proc = processor or StripeProcessor()

        app.state.engine = engine
        app.state.sessionmaker = make_sessionmaker(engine)
        app.state.processor = proc
        app.state.ledger = ledger or BudgetLedger()
        app.state.reconciler = reconciler or WebhookReconciler()
        app.state.dispatcher = build_dispatcher(handlers or default_registry(), client)
        app.state.cast_engine = CastEngine(
            ledger=app.state.ledger,
            billing=BillingOrchestrator(proc),
            dispatcher=app.state.dispatcher,
        )
        logger.info("app.started", runtimes=app.state.dispatcher.kinds())
        try:
            yield
        finally:
            if http_client is None:
                await client.aclose()
            await engine.dispose()
            logger.info("app.stopped")

    app = FastAPI(title="Spellcast API", lifespan=lifespan)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        # full detail goes to the log only
        logger.exception("http.unhandled", path=request.url.path, method=request.method, exc_info=exc)
        return JSONResponse(status_code=500, content={"ok": False, "code": "INTERNAL_ERROR",
                                                      "error": "Internal server error"})

    @app.get("/health")
    def health():
        return {"ok": True}

    app.include_router(cast_router)
    app.include_router(spells_router)
    app.include_router(budget_router)
    app.include_router(billing_router)
    app.include_router(audit_router)
    app.include_router(webhook_router)
    return app


app = create_app()
