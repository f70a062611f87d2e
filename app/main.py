from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.routes.api import router as api_router
from app.routes.health import router as health_router
from app.store.chart_store import ChartStore, PersistentChartStore


def _parse_cors_origins(raw: Optional[str]) -> list[str]:
    if not raw:
        return ["*"]
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _setup_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(*, chart_store: Optional[ChartStore] = None) -> FastAPI:
    """Build the app. Pass ``chart_store`` to bypass backend selection (tests)."""
    _setup_logging()
    store: ChartStore = chart_store or PersistentChartStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(store, PersistentChartStore):
            await store.initialize()
        try:
            yield
        finally:
            await store.close()

    app = FastAPI(title="Skin Chart Agent", version="0.1.0", lifespan=lifespan)
    app.state.chart_store = store

    origins = _parse_cors_origins(os.getenv("CORS_ORIGINS"))
    allow_all = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )

    app.include_router(health_router)
    app.include_router(api_router, prefix="/api")

    return app


app = create_app()
