from __future__ import annotations

import os

from fastapi import APIRouter, Request

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in (
        "RAILWAY_GIT_COMMIT_SHA",
        "GITHUB_SHA",
        "COMMIT_SHA",
        "GIT_SHA",
    ):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz(request: Request):
    store = request.app.state.chart_store
    return {
        "ok": True,
        "service": "skin-chart-agent",
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("ENVIRONMENT"),
        "chart_store_backend": getattr(store, "backend_kind", "unknown"),
    }
