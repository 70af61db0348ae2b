"""Activity persistence with fill-only enrichment.

Rules:
- One Activity per (user_id, provider, provider_activity_id)
- An existing row is enriched, never overwritten (unless replace=True)
- Losing an insert race on the unique constraint falls back to enrichment
  of the row the other writer created
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models import Activity
from app.ingestion.merge import fill_fields

ACTIVITY_FIELDS: tuple[str, ...] = (
    "name",
    "activity_type",
    "start_date",
    "distance",
    "moving_time",
    "elapsed_time",
    "total_elevation_gain",
    "average_speed",
    "max_speed",
    "average_watts",
    "max_watts",
    "normalized_power",
    "intensity_factor",
    "training_stress_score",
    "threshold_power",
    "kilojoules",
    "power_curve",
    "average_heartrate",
    "max_heartrate",
    "average_cadence",
    "calories",
    "map_summary_polyline",
    "trainer",
)


def find_activity(session: Session, user_id: str, provider: str, provider_activity_id: str) -> Activity | None:
    return session.execute(
        select(Activity).where(
            Activity.user_id == user_id,
            Activity.provider == provider,
            Activity.provider_activity_id == provider_activity_id,
        )
    ).scalar_one_or_none()


def attach_raw_data(activity: Activity, key: str, raw: Mapping[str, Any] | None) -> None:
    """Keep the original payload under its provenance key, first write wins."""
    if raw is None:
        return
    data = dict(activity.raw_data or {})
    if key in data:
        return
    data[key] = dict(raw)
    activity.raw_data = data


def enrich_activity(
    activity: Activity,
    sources: Sequence[Mapping[str, Any]],
    *,
    raw_key: str | None = None,
    raw: Mapping[str, Any] | None = None,
    replace: bool = False,
    fields: Sequence[str] = ACTIVITY_FIELDS,
) -> dict[str, Any]:
    """Fill missing columns of an existing activity from sources in precedence order.

    Returns:
        The columns that changed
    """
    changed = fill_fields(activity, sources, fields, replace=replace)
    if raw_key:
        attach_raw_data(activity, raw_key, raw)
    if changed:
        logger.debug(f"[ACTIVITY_STORE] Enriched activity {activity.id}: {sorted(changed)}")
    return changed


def upsert_activity(
    session: Session,
    *,
    user_id: str,
    provider: str,
    provider_activity_id: str,
    sources: Sequence[Mapping[str, Any]],
    imported_from: str,
    raw: Mapping[str, Any] | None = None,
) -> tuple[Activity, bool]:
    """Insert an activity, or enrich the existing one.

    Args:
        session: Active session; the insert runs inside a SAVEPOINT
        user_id: Owner
        provider: Provider name ("garmin", ...)
        provider_activity_id: Provider-side activity id
        sources: Column value mappings in precedence order
        imported_from: Provenance tag, also the raw_data key
        raw: Original payload to preserve

    Returns:
        (activity, created)
    """
    existing = find_activity(session, user_id, provider, provider_activity_id)
    if existing is None:
        activity = Activity(
            user_id=user_id,
            provider=provider,
            provider_activity_id=provider_activity_id,
            imported_from=imported_from,
        )
        fill_fields(activity, sources, ACTIVITY_FIELDS)
        attach_raw_data(activity, imported_from, raw)
        try:
            with session.begin_nested():
                session.add(activity)
        except IntegrityError:
            logger.info(
                f"[ACTIVITY_STORE] Concurrent insert for {provider}:{provider_activity_id} "
                f"(user_id={user_id}), enriching existing row"
            )
            existing = find_activity(session, user_id, provider, provider_activity_id)
            if existing is None:
                raise
        else:
            logger.info(f"[ACTIVITY_STORE] Created activity {activity.id} for {provider}:{provider_activity_id}")
            return activity, True

    enrich_activity(existing, sources, raw_key=imported_from, raw=raw)
    return existing, False
