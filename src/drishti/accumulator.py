"""Additive merging of partial stage updates into a result."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any, TypeAlias

from drishti.errors import FieldAlreadySetError, UnknownFieldError
from drishti.models import STAGE_FIELDS, StructuredResult

StageUpdate: TypeAlias = Mapping[str, Any]

_WRITABLE = frozenset(STAGE_FIELDS)


def merge(existing: StructuredResult, partial: StageUpdate) -> StructuredResult:
    """Return ``existing`` with the fields of ``partial`` filled in.

    Only fields that are still unset may be written. ``None`` values in
    ``partial`` are treated as absent, so an empty update is a no-op.
    """

    changes: dict[str, Any] = {}
    for name, value in partial.items():
        if name not in _WRITABLE:
            raise UnknownFieldError(name)
        if value is None:
            continue
        if getattr(existing, name) is not None:
            raise FieldAlreadySetError(name)
        changes[name] = _freeze(value)
    if not changes:
        return existing
    return dataclasses.replace(existing, **changes)


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value
