from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.services.chart_extractor import ChartFacts, extract_chart_facts
from app.services.chart_keywords import SkinConcern, SkinType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MedicalChart(BaseModel):
    """Accumulated skin profile for one user. Serialized with camelCase keys."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    skin_type: Optional[SkinType] = Field(default=None, alias="skinType")
    skin_concerns: list[SkinConcern] = Field(default_factory=list, alias="skinConcerns")
    allergies: list[str] = Field(default_factory=list)
    current_products: list[str] = Field(default_factory=list, alias="currentProducts")
    skin_history: list[str] = Field(default_factory=list, alias="skinHistory")
    environmental_factors: list[str] = Field(default_factory=list, alias="environmentalFactors")
    lifestyle_factors: list[str] = Field(default_factory=list, alias="lifestyleFactors")
    last_updated: datetime = Field(default_factory=_utcnow, alias="lastUpdated")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class MedicalChartUpdate(BaseModel):
    """Direct field overwrites from the chart-editing interface."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    skin_type: Optional[SkinType] = Field(default=None, alias="skinType")
    skin_concerns: Optional[list[SkinConcern]] = Field(default=None, alias="skinConcerns")
    allergies: Optional[list[str]] = None
    current_products: Optional[list[str]] = Field(default=None, alias="currentProducts")
    skin_history: Optional[list[str]] = Field(default=None, alias="skinHistory")
    environmental_factors: Optional[list[str]] = Field(default=None, alias="environmentalFactors")
    lifestyle_factors: Optional[list[str]] = Field(default=None, alias="lifestyleFactors")


_TEXT_LIST_FIELDS = ("current_products", "skin_history", "environmental_factors", "lifestyle_factors")


def new_medical_chart(*, now: Optional[datetime] = None) -> MedicalChart:
    return MedicalChart(last_updated=_as_utc(now or _utcnow()))


def merge_chart_facts(chart: MedicalChart, facts: ChartFacts, *, now: Optional[datetime] = None) -> MedicalChart:
    """
    Fold extracted facts into a chart and return the new chart.

    Accumulation is monotonic: skin type is only ever replaced by a new match,
    concerns and allergies are only appended. Merging the same facts twice
    leaves the lists unchanged. ``lastUpdated`` always advances, even when
    nothing else changed, and never moves backwards.
    """
    skin_concerns = list(chart.skin_concerns)
    for concern in facts.concerns:
        if concern not in skin_concerns:
            skin_concerns.append(concern)

    allergies = list(chart.allergies)
    known = {a.lower() for a in allergies}
    for allergen in facts.allergens:
        key = allergen.strip().lower()
        if key and key not in known:
            allergies.append(key)
            known.add(key)

    return chart.model_copy(
        deep=True,
        update={
            "skin_type": facts.skin_type or chart.skin_type,
            "skin_concerns": skin_concerns,
            "allergies": allergies,
            "last_updated": _next_timestamp(chart.last_updated, now),
        },
    )


def update_chart_from_text(chart: MedicalChart, text: Optional[str], *, now: Optional[datetime] = None) -> tuple[MedicalChart, ChartFacts]:
    facts = extract_chart_facts(text)
    return merge_chart_facts(chart, facts, now=now), facts


def apply_chart_updates(
    chart: MedicalChart,
    updates: MedicalChartUpdate | Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
) -> MedicalChart:
    if not isinstance(updates, MedicalChartUpdate):
        updates = MedicalChartUpdate.model_validate(updates)

    patch = updates.model_dump(exclude_unset=True)
    if "skin_concerns" in patch:
        patch["skin_concerns"] = _dedupe(patch["skin_concerns"] or [])
    if "allergies" in patch:
        patch["allergies"] = _dedupe(_clean_text_list(patch["allergies"], lower=True))
    for key in _TEXT_LIST_FIELDS:
        if key in patch:
            patch[key] = _dedupe(_clean_text_list(patch[key]))

    patch["last_updated"] = _next_timestamp(chart.last_updated, now)
    return chart.model_copy(deep=True, update=patch)


def _clean_text_list(values: Optional[list[str]], *, lower: bool = False) -> list[str]:
    cleaned: list[str] = []
    for v in values or []:
        s = str(v).strip()
        if not s:
            continue
        cleaned.append(s.lower() if lower else s)
    return cleaned


def _dedupe(values: list[Any]) -> list[Any]:
    out: list[Any] = []
    for v in values:
        if v not in out:
            out.append(v)
    return out


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _next_timestamp(previous: Optional[datetime], now: Optional[datetime]) -> datetime:
    candidate = _as_utc(now or _utcnow())
    if previous is None:
        return candidate
    return max(candidate, _as_utc(previous))
