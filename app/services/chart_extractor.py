from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.services.chart_keywords import (
    ALLERGEN_TRIGGERS,
    ALLERGY_INDICATORS,
    AVOIDANCE_TRIGGERS,
    CONCERN_KEYWORDS,
    SKIN_TYPE_KEYWORDS,
    SkinConcern,
    SkinType,
)


def _alternation(phrases: tuple[str, ...]) -> str:
    return "|".join(re.escape(p) for p in phrases)


# Triggers only count at a word start. A capture runs to the next comma/period,
# or to where another capture phrase starts
# ("allergic to fragrance and cannot use retinol" -> fragrance, retinol).
_CAPTURE_END = rf"(?=\s*(?:[.,]|$|\b(?:and\s+)?(?:{_alternation(ALLERGEN_TRIGGERS + AVOIDANCE_TRIGGERS)})\b))"

ALLERGEN_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"\b(?:{_alternation(ALLERGEN_TRIGGERS)})\s+([^.,]+?){_CAPTURE_END}", re.IGNORECASE),
    re.compile(rf"\b(?:{_alternation(AVOIDANCE_TRIGGERS)})\s+([^.,]+?){_CAPTURE_END}", re.IGNORECASE),
)


class ChartFacts(BaseModel):
    """Structured facts pulled out of one piece of free text."""

    model_config = ConfigDict(populate_by_name=True)

    skin_type: Optional[SkinType] = Field(default=None, alias="skinType")
    concerns: list[SkinConcern] = Field(default_factory=list)
    allergens: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return self.skin_type is None and not self.concerns and not self.allergens


def extract_chart_facts(text: Optional[str]) -> ChartFacts:
    """
    Derive skin type, concerns and allergens from free text.

    Matching is literal: trigger phrases are case-insensitive substrings with
    no word-boundary awareness, so "dryness" also counts as "dry". Allergen
    capture is a best-effort regex heuristic, not entity recognition.
    """
    raw = text or ""
    lowered = raw.lower()

    return ChartFacts(
        skin_type=_extract_skin_type(lowered),
        concerns=_extract_concerns(lowered),
        allergens=_extract_allergens(raw, lowered),
    )


def _extract_skin_type(lowered: str) -> Optional[SkinType]:
    for label, triggers in SKIN_TYPE_KEYWORDS:
        if any(t in lowered for t in triggers):
            return label
    return None


def _extract_concerns(lowered: str) -> list[SkinConcern]:
    return [label for label, triggers in CONCERN_KEYWORDS.items() if any(t in lowered for t in triggers)]


def _extract_allergens(raw: str, lowered: str) -> list[str]:
    if not any(k in lowered for k in ALLERGY_INDICATORS):
        return []

    allergens: list[str] = []
    for pattern in ALLERGEN_PATTERNS:
        for match in pattern.finditer(raw):
            allergen = match.group(1).strip().lower()
            if allergen and allergen not in allergens:
                allergens.append(allergen)
    return allergens
