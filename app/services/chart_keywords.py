from __future__ import annotations

from typing import Literal

SkinType = Literal["oily", "dry", "combination", "sensitive", "normal"]
SkinConcern = Literal["acne", "aging", "hyperpigmentation", "rosacea", "eczema", "dryness", "sensitivity"]


# Order matters: the first skin type with a hit wins.
SKIN_TYPE_KEYWORDS: tuple[tuple[SkinType, tuple[str, ...]], ...] = (
    ("oily", ("oily", "greasy", "shiny", "acne-prone")),
    ("dry", ("dry", "flaky", "tight", "rough")),
    ("combination", ("combination", "t-zone", "mixed")),
    ("sensitive", ("sensitive", "redness", "irritation", "burning")),
    ("normal", ("normal", "balanced", "healthy")),
)

CONCERN_KEYWORDS: dict[SkinConcern, tuple[str, ...]] = {
    "acne": ("acne", "pimples", "breakouts", "zits"),
    "aging": ("aging", "wrinkles", "fine lines", "anti-aging"),
    "hyperpigmentation": ("dark spots", "hyperpigmentation", "melasma", "sun spots"),
    "rosacea": ("rosacea", "redness", "flushing"),
    "eczema": ("eczema", "dermatitis", "itchy"),
    "dryness": ("dry", "dehydrated", "flaky"),
    "sensitivity": ("sensitive", "irritation", "burning", "stinging"),
}

ALLERGY_INDICATORS: tuple[str, ...] = ("allergic", "allergy", "reaction", "break out")

ALLERGEN_TRIGGERS: tuple[str, ...] = ("allergic to", "allergy to", "reacts to")
AVOIDANCE_TRIGGERS: tuple[str, ...] = ("can't use", "cannot use", "avoid")

SKIN_TYPES: tuple[SkinType, ...] = tuple(label for label, _ in SKIN_TYPE_KEYWORDS)
SKIN_CONCERNS: tuple[SkinConcern, ...] = tuple(CONCERN_KEYWORDS)
