from __future__ import annotations

import logging
from typing import Any

import httpx

from app.services.medical_chart import MedicalChart

logger = logging.getLogger("skin-chart-agent.advice")

ADVICE_FAILED_MESSAGE = "Failed to get skincare advice. Please try again."

SYSTEM_PROMPT = (
    "You are a professional dermatologist and skincare expert with extensive knowledge of skin conditions, "
    "treatments, and product recommendations."
)


class AdviceError(Exception):
    pass


def build_chart_summary(chart: MedicalChart) -> str:
    lines = ["PATIENT SKIN PROFILE:"]
    if chart.skin_type:
        lines.append(f"- Skin Type: {chart.skin_type}")

    for label, values in (
        ("Primary Concerns", chart.skin_concerns),
        ("Known Allergies/Reactions", chart.allergies),
        ("Current Products", chart.current_products),
        ("Environmental Factors", chart.environmental_factors),
        ("Lifestyle Factors", chart.lifestyle_factors),
    ):
        if values:
            lines.append(f"- {label}: {', '.join(values)}")

    return "\n".join(lines) + "\n"


def build_advice_prompt(question: str, chart: MedicalChart) -> str:
    return (
        "You are a professional dermatologist and skincare expert. Use the following patient information "
        "to provide personalized, evidence-based skincare advice:\n\n"
        f"{build_chart_summary(chart)}\n"
        f"PATIENT QUESTION: {question}\n\n"
        "Please provide:\n"
        "1. A personalized response based on the patient's skin profile\n"
        "2. Specific product recommendations (if applicable)\n"
        "3. Lifestyle and routine suggestions\n"
        "4. Any warnings or contraindications based on their allergies/sensitivities\n"
        "5. When to consult a dermatologist\n\n"
        "Keep your response professional, informative, and tailored to their specific skin concerns."
    )


async def request_advice(
    *,
    question: str,
    chart: MedicalChart,
    api_url: str,
    api_key: str | None,
    model: str,
    timeout_s: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    payload: dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_advice_prompt(question, chart)},
        ],
        "max_tokens": 1000,
        "temperature": 0.7,
    }
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            res = await client.post(api_url, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        logger.error("advice_request_failed err=%s", getattr(exc, "message", str(exc)))
        raise AdviceError(ADVICE_FAILED_MESSAGE) from exc

    try:
        data = res.json()
    except ValueError:
        data = {"raw": res.text}

    if res.status_code >= 400:
        logger.error("advice_request_failed status=%s body=%s", res.status_code, str(data)[:500])
        raise AdviceError(ADVICE_FAILED_MESSAGE)

    content = _first_choice_content(data)
    if content is None:
        logger.error("advice_response_unexpected body=%s", str(data)[:500])
        raise AdviceError(ADVICE_FAILED_MESSAGE)
    return content


def _first_choice_content(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None
