"""Field-level precedence for activity enrichment.

All writes to an existing Activity go through fill_fields(). Sources are given
in precedence order (device summary before locally derived values) and the
first non-null candidate wins.

Rules:
- Fill mode (default): the prior value on the record outranks every source,
  so populated columns are never overwritten
- Replace mode: sources outrank the prior value, which is only kept when no
  source has a value (explicit re-derivation)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any


def coalesce(*values: Any) -> Any:
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def resolve_field(prior: Any, sources: Iterable[Mapping[str, Any]], field: str, *, replace: bool = False) -> Any:
    candidates = [source.get(field) for source in sources]
    if replace:
        return coalesce(*candidates, prior)
    return coalesce(prior, *candidates)


def fill_fields(
    target: Any,
    sources: Iterable[Mapping[str, Any]],
    fields: Iterable[str],
    *,
    replace: bool = False,
) -> dict[str, Any]:
    """Apply precedence-resolved values to attributes of target.

    Args:
        target: Object whose attributes are updated (usually an Activity)
        sources: Mappings in precedence order
        fields: Attribute names to resolve
        replace: Let sources overwrite populated attributes

    Returns:
        Mapping of attribute name to the new value, for attributes that changed
    """
    sources = list(sources)
    changed: dict[str, Any] = {}
    for field in fields:
        prior = getattr(target, field)
        value = resolve_field(prior, sources, field, replace=replace)
        if value != prior:
            setattr(target, field, value)
            changed[field] = value
    return changed


def plan_fill(
    target: Any,
    sources: Iterable[Mapping[str, Any]],
    fields: Iterable[str],
) -> dict[str, Any]:
    """Fill-mode changes fill_fields() would make, without touching target."""
    sources = list(sources)
    planned: dict[str, Any] = {}
    for field in fields:
        prior = getattr(target, field)
        if prior is not None:
            continue
        value = resolve_field(prior, sources, field)
        if value is not None:
            planned[field] = value
    return planned
