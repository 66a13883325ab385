"""FastAPI application exposing patronage state to the app's support screen."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.env import env_csv
from core.logging import get_logger, setup_logging
from database import build_engine, build_session_factory, create_schema
from services.patronage import PatronageSettings, PurchaseCoordinator, load_patronage_settings
from services.patronage.capabilities import Ledger, Store
from services.patronage.sandbox_store import SandboxStore
from services.patronage.sql_ledger import SqlLedger
from web import routers

logger = get_logger(__name__)

_DEFAULT_ORIGINS = ["http://localhost:3000"]


def create_app(
    *,
    settings: Optional[PatronageSettings] = None,
    store: Optional[Store] = None,
    ledger: Optional[Ledger] = None,
) -> FastAPI:
    """Build the API around an explicitly constructed coordinator.

    Without injected collaborators the app runs against the sandbox store and a
    SQL ledger at ``PATRONAGE_DATABASE_URL``, identified as ``PATRONAGE_USER_ID``.
    """
    setup_logging()
    resolved = settings or load_patronage_settings()
    engine = None
    if ledger is None:
        engine = build_engine(resolved.database_url)
        ledger = SqlLedger(build_session_factory(engine), user_id_provider=lambda: resolved.user_id)
    if store is None:
        store = SandboxStore.from_settings(resolved)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if engine is not None:
            create_schema(engine)
        coordinator = PurchaseCoordinator(store=store, ledger=ledger, settings=resolved)
        app.state.patronage_coordinator = coordinator
        logger.info("Patronage coordinator ready with %d product(s).", len(resolved.product_identifiers))
        try:
            yield
        finally:
            coordinator.close()
            app.state.patronage_coordinator = None
            if engine is not None:
                engine.dispose()

    app = FastAPI(
        title="PatronKit API",
        description="Patronage purchases, expiration and patron counts.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=env_csv("PATRONAGE_CORS_ORIGINS") or _DEFAULT_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", summary="Health Check", tags=["Default"])
    def health_check():
        return {"status": "ok", "message": "PatronKit API is running."}

    @app.get("/healthz", include_in_schema=False)
    def readiness_check():
        ready = getattr(app.state, "patronage_coordinator", None) is not None
        return {"status": "ok" if ready else "starting"}

    app.include_router(routers.patronage.router, prefix="/api/v1")
    return app
