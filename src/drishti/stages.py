"""Stage configuration and the scripted label-analysis backend."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from drishti.accumulator import StageUpdate
from drishti.errors import MalformedInputError
from drishti.models import ProductData, StructuredResult, UserProfile, Verdict
from drishti.pipeline import Stage

SCAN = "scan"
EXTRACT = "extract"
REASON = "reason"
SEARCH = "search"
VERDICT = "verdict"

STAGE_LABELS: dict[str, str] = {
    SCAN: "SCANNING IMAGE PIXELS...",
    EXTRACT: "EXTRACTING LABEL ENTITIES...",
    REASON: "CROSS-REFERENCING HEALTH PROFILE...",
    SEARCH: "VERIFYING SAFETY REFERENCES...",
    VERDICT: "GENERATING SAFETY VERDICT...",
}

DEFAULT_DELAYS: dict[str, float] = {
    SCAN: 1.0,
    EXTRACT: 0.8,
    REASON: 1.0,
    SEARCH: 1.2,
    VERDICT: 0.8,
}

DEMO_PRODUCT = ProductData(
    product_name="Crunchy Nut & Honey Bar",
    company_name="Nature's Fuel",
    ingredients=(
        "Whole Grain Oats",
        "Roasted Peanuts",
        "Almond Butter",
        "High Fructose Corn Syrup",
        "Soy Lecithin",
        "Salt",
    ),
    nutrition_facts={"Calories": "240", "Total Fat": "12g", "Added Sugars": "14g"},
    marketing_claims=("Natural Energy", "Heart Healthy"),
)

# ingredient -> why it matters for a goal or condition
FLAGGED_INGREDIENTS: dict[str, str] = {
    "high fructose corn syrup": "raises glycemic load",
    "hydrogenated": "adds trans fat",
    "aspartame": "is an artificial sweetener",
}


class AnalysisBackend(Protocol):
    """What a real analysis service has to provide, one coroutine per stage."""

    async def extract(self, result: StructuredResult) -> StageUpdate: ...

    async def reason(self, result: StructuredResult) -> StageUpdate: ...

    async def search(self, result: StructuredResult) -> StageUpdate: ...

    async def decide(self, result: StructuredResult) -> StageUpdate: ...


def build_stages(backend: AnalysisBackend, delays: Mapping[str, float] | None = None) -> list[Stage]:
    """Return the scan/extract/reason/search/verdict stage list for ``backend``."""
    delays = {**DEFAULT_DELAYS, **(delays or {})}
    return [
        Stage(SCAN, STAGE_LABELS[SCAN], None, delays[SCAN]),
        Stage(EXTRACT, STAGE_LABELS[EXTRACT], backend.extract, delays[EXTRACT]),
        Stage(REASON, STAGE_LABELS[REASON], backend.reason, delays[REASON]),
        Stage(SEARCH, STAGE_LABELS[SEARCH], backend.search, delays[SEARCH]),
        Stage(VERDICT, STAGE_LABELS[VERDICT], backend.decide, delays[VERDICT]),
    ]


def matching_allergens(profile: UserProfile | None, product: ProductData) -> list[tuple[str, str]]:
    """Pair every profile allergy with the first ingredient that contains it."""
    if profile is None:
        return []
    matches: list[tuple[str, str]] = []
    for allergy in profile.allergies:
        needle = _stem(allergy)
        if not needle:
            continue
        for ingredient in product.ingredients:
            if needle in ingredient.casefold():
                matches.append((allergy, ingredient))
                break
    return matches


def flagged_ingredients(product: ProductData) -> list[tuple[str, str]]:
    found: list[tuple[str, str]] = []
    for ingredient in product.ingredients:
        lowered = ingredient.casefold()
        for marker, concern in FLAGGED_INGREDIENTS.items():
            if marker in lowered:
                found.append((ingredient, concern))
                break
    return found


def _stem(term: str) -> str:
    term = term.strip().casefold()
    if len(term) > 3 and term.endswith("s"):
        return term[:-1]
    return term


def _product(result: StructuredResult) -> ProductData:
    if result.extracted is None:
        raise RuntimeError("no extracted product data; extract stage must run first")
    return result.extracted


class ScriptedBackend:
    """Deterministic stand-in for the analysis service.

    Extraction always returns the configured product; the later stages
    compute their fields from what has been accumulated so far.
    """

    def __init__(self, product: ProductData = DEMO_PRODUCT) -> None:
        self._product = product

    async def extract(self, result: StructuredResult) -> StageUpdate:
        if result.input_image is not None and not result.input_image:
            raise MalformedInputError("image payload is empty")
        return {"extracted": self._product}

    async def reason(self, result: StructuredResult) -> StageUpdate:
        product = _product(result)
        allergens = matching_allergens(result.user_profile, product)
        flagged = flagged_ingredients(product)
        lines: list[str] = []
        for allergy, ingredient in allergens:
            lines.append(
                f"DETECTED ALLERGEN: '{allergy}' in '{ingredient}'. "
                f"User profile lists an allergy to {allergy}."
            )
        if allergens:
            others = [item for item in product.ingredients if item not in {i for _, i in allergens}]
            if others:
                lines.append(f"Checking cross-contamination risks with {', '.join(repr(i) for i in others[:2])}.")
        for ingredient, concern in flagged:
            lines.append(f"'{ingredient}' {concern}; comparing against profile goals and conditions.")
        if not lines:
            lines.append(f"No profile conflicts found across {len(product.ingredients)} ingredients.")
        return {"plan": " ".join(lines)}

    async def search(self, result: StructuredResult) -> StageUpdate:
        product = _product(result)
        allergens = matching_allergens(result.user_profile, product)
        queries = [f"{allergy.casefold()} allergy severity thresholds" for allergy, _ in allergens]
        if queries and product.company_name:
            queries.append(f"{product.company_name} manufacturing cross-contamination")
        if not queries:
            return {"search_needed": False, "search_queries": []}
        return {
            "search_needed": True,
            "search_queries": queries,
            "search_results": f"{len(queries)} reference lookups queued for verification.",
        }

    async def decide(self, result: StructuredResult) -> StageUpdate:
        product = _product(result)
        profile = result.user_profile or UserProfile()
        allergens = matching_allergens(profile, product)
        flagged = flagged_ingredients(product) if (profile.goals or profile.conditions) else []
        name = product.product_name or "This product"

        if allergens:
            verdict = Verdict.AVOID
            names = ", ".join(sorted({allergy for allergy, _ in allergens}))
            rationale = (
                f"CRITICAL ALERT: {name} contains {names}. Your profile lists an allergy to {names}. "
                "Consuming this poses a high risk of a severe allergic reaction."
            )
            follow_ups = [
                f"Find {allergens[0][0].casefold()}-free alternative",
                "Report incorrect labeling",
                "View emergency protocol",
            ]
        elif flagged:
            verdict = Verdict.CAUTION
            rationale = f"{name} has no listed allergens for your profile, but " + "; ".join(
                f"'{ingredient}' {concern}" for ingredient, concern in flagged
            ) + "."
            follow_ups = ["Compare lower-sugar options", "Check portion size"]
        else:
            verdict = Verdict.SAFE
            rationale = f"No ingredient in {name} conflicts with the supplied profile."
            follow_ups = ["Scan another product"]

        if allergens and flagged:
            goal = (profile.goals or profile.conditions)[0]
            rationale += f" Additionally, '{flagged[0][0]}' conflicts with your goal: {goal}."

        return {
            "verdict": verdict,
            "rationale": rationale,
            "follow_ups": follow_ups,
            "conversation_summary": f"{result.query or 'Label scan'} -> {verdict}",
        }
