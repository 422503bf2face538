"""Conversation turns and the progressively populated analysis result."""

from __future__ import annotations

import types
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

IMAGE_ONLY_PROMPT = "Scanning uploaded label..."


class Role(StrEnum):
    USER = "user"
    AGENT = "agent"


class Verdict(StrEnum):
    SAFE = "SAFE"
    CAUTION = "CAUTION"
    AVOID = "AVOID"


class TurnOutcome(StrEnum):
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class UserProfile:
    """Known user attributes supplied by the caller."""

    allergies: tuple[str, ...] = ()
    conditions: tuple[str, ...] = ()
    goals: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("allergies", "conditions", "goals"):
            object.__setattr__(self, name, tuple(getattr(self, name)))


@dataclass(frozen=True)
class ProductData:
    """Structured data read off a product label."""

    ingredients: tuple[str, ...] = ()
    nutrition_facts: Mapping[str, str] = field(default_factory=dict)
    marketing_claims: tuple[str, ...] = ()
    product_name: str | None = None
    company_name: str | None = None

    def __post_init__(self) -> None:
        # shared across sessions and snapshots, so nothing nested may stay mutable
        object.__setattr__(self, "ingredients", tuple(self.ingredients))
        object.__setattr__(self, "marketing_claims", tuple(self.marketing_claims))
        object.__setattr__(self, "nutrition_facts", types.MappingProxyType(dict(self.nutrition_facts)))


@dataclass(frozen=True)
class StructuredResult:
    """Output of one agent turn, filled in stage by stage."""

    query: str
    user_profile: UserProfile | None = None
    input_image: bytes | str | None = None
    extracted: ProductData | None = None
    plan: str | None = None
    search_needed: bool | None = None
    search_queries: tuple[str, ...] | None = None
    search_results: str | None = None
    verdict: Verdict | None = None
    rationale: str | None = None
    follow_ups: tuple[str, ...] | None = None
    conversation_summary: str | None = None

    def populated_fields(self) -> list[str]:
        return [name for name in STAGE_FIELDS if getattr(self, name) is not None]

    @property
    def is_final(self) -> bool:
        return self.verdict is not None


SEED_FIELDS: frozenset[str] = frozenset({"query", "user_profile", "input_image"})
STAGE_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(StructuredResult) if f.name not in SEED_FIELDS)


def new_turn_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Turn:
    """One entry in the conversation log."""

    role: Role
    text: str
    id: str = field(default_factory=new_turn_id)
    created_at: datetime = field(default_factory=utcnow)
    result: StructuredResult | None = None
    in_flight: bool = False
    outcome: TurnOutcome | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": str(self.role),
            "text": self.text,
            "created_at": self.created_at.isoformat(),
            "in_flight": self.in_flight,
            "outcome": str(self.outcome) if self.outcome else None,
            "error": self.error,
            "result": _result_to_dict(self.result) if self.result else None,
        }


def _result_to_dict(result: StructuredResult) -> dict[str, Any]:
    data: dict[str, Any] = {"query": result.query}
    if result.user_profile is not None:
        profile = result.user_profile
        data["user_profile"] = {
            "allergies": list(profile.allergies),
            "conditions": list(profile.conditions),
            "goals": list(profile.goals),
        }
    data["has_image"] = result.input_image is not None
    if result.extracted is not None:
        product = result.extracted
        data["extracted"] = {
            "product_name": product.product_name,
            "company_name": product.company_name,
            "ingredients": list(product.ingredients),
            "nutrition_facts": dict(product.nutrition_facts),
            "marketing_claims": list(product.marketing_claims),
        }
    for name in STAGE_FIELDS:
        if name == "extracted":
            continue
        value = getattr(result, name)
        if value is None:
            continue
        data[name] = list(value) if isinstance(value, tuple) else str(value) if isinstance(value, Verdict) else value
    return data
