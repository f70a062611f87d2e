from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Awaitable, Optional, TypeVar

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from app.services.advice import AdviceError, request_advice
from app.services.chart_extractor import ChartFacts
from app.services.medical_chart import (
    MedicalChart,
    MedicalChartUpdate,
    apply_chart_updates,
    new_medical_chart,
    update_chart_from_text,
)
from app.store.chart_store import ChartStore, ChartStoreUnavailable


router = APIRouter()

logger = logging.getLogger("skin-chart-agent.api")

PERPLEXITY_API_URL = (os.getenv("PERPLEXITY_API_URL") or "https://api.perplexity.ai/chat/completions").strip()
PERPLEXITY_API_KEY = (os.getenv("PERPLEXITY_API_KEY") or "").strip() or None
PERPLEXITY_MODEL = (os.getenv("PERPLEXITY_MODEL") or "sonar").strip()


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


ADVICE_TIMEOUT_S = _env_float("ADVICE_TIMEOUT_S", 30.0)

T = TypeVar("T")


def get_chart_store(request: Request) -> ChartStore:
    return request.app.state.chart_store


def _clean_user_id(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    uid = value.strip()
    if not uid or len(uid) > 200:
        return None
    return uid


def _require_text(body: dict[str, Any], user_key: str, text_key: str, label: str) -> tuple[str, str]:
    uid = _clean_user_id(body.get(user_key))
    text = body.get(text_key)
    if not uid or not isinstance(text, str) or not text.strip():
        raise HTTPException(status_code=400, detail=f"User ID and {label} are required")
    return uid, text


async def _guard_store(awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except (ChartStoreUnavailable, OSError) as exc:
        logger.error("chart_store_io_failed err=%s", exc)
        raise HTTPException(status_code=503, detail="Chart store unavailable") from exc


async def _require_chart(store: ChartStore, uid: str) -> MedicalChart:
    chart = await _guard_store(store.get(uid))
    if chart is None:
        raise HTTPException(status_code=404, detail="User not found")
    return chart


@router.post("/session")
async def session(
    body: Optional[dict[str, Any]] = Body(default=None),
    store: ChartStore = Depends(get_chart_store),
):
    uid = _clean_user_id((body or {}).get("userId"))
    if uid:
        existing = await _guard_store(store.get(uid))
        if existing is not None:
            return {"userId": uid, "medicalChart": existing.to_wire()}

    new_uid = str(uuid.uuid4())
    chart = new_medical_chart()
    await _guard_store(store.set(new_uid, chart))
    logger.info("session_created uid=%s", new_uid)
    return {"userId": new_uid, "medicalChart": chart.to_wire()}


@router.post("/update-chart")
async def update_chart(
    body: dict[str, Any],
    store: ChartStore = Depends(get_chart_store),
):
    uid, user_input = _require_text(body, "userId", "userInput", "input")

    extracted: list[ChartFacts] = []

    def _mutate(chart: MedicalChart) -> MedicalChart:
        updated, facts = update_chart_from_text(chart, user_input)
        extracted.append(facts)
        return updated

    updated = await _guard_store(store.update(uid, _mutate))
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")

    facts = extracted[-1]
    logger.info(
        "chart_updated uid=%s skin_type=%s concerns=%s allergens=%d",
        uid,
        facts.skin_type,
        ",".join(facts.concerns),
        len(facts.allergens),
    )
    return {
        "medicalChart": updated.to_wire(),
        "extracted": facts.model_dump(mode="json", by_alias=True),
    }


@router.post("/advice")
async def advice(
    body: dict[str, Any],
    store: ChartStore = Depends(get_chart_store),
):
    uid, question = _require_text(body, "userId", "question", "question")
    chart = await _require_chart(store, uid)

    try:
        answer = await request_advice(
            question=question.strip(),
            chart=chart,
            api_url=PERPLEXITY_API_URL,
            api_key=PERPLEXITY_API_KEY,
            model=PERPLEXITY_MODEL,
            timeout_s=ADVICE_TIMEOUT_S,
        )
    except AdviceError as exc:
        raise HTTPException(status_code=502, detail={"upstream": "perplexity", "error": str(exc)}) from exc

    return {"advice": answer}


@router.get("/chart/{user_id}")
async def get_chart(user_id: str, store: ChartStore = Depends(get_chart_store)):
    uid = _clean_user_id(user_id)
    if not uid:
        raise HTTPException(status_code=404, detail="User not found")
    chart = await _require_chart(store, uid)
    return {"medicalChart": chart.to_wire()}


@router.put("/chart/{user_id}")
async def put_chart(
    user_id: str,
    updates: MedicalChartUpdate,
    store: ChartStore = Depends(get_chart_store),
):
    uid = _clean_user_id(user_id)
    if not uid:
        raise HTTPException(status_code=404, detail="User not found")

    updated = await _guard_store(store.update(uid, lambda chart: apply_chart_updates(chart, updates)))
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")

    logger.info("chart_edited uid=%s fields=%s", uid, ",".join(sorted(updates.model_fields_set)))
    return {"medicalChart": updated.to_wire()}
