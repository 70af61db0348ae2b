"""Cross-provider duplicate detection and merge.

The same ride is often uploaded by several providers (bike computer, watch,
Strava). This module finds those clusters and folds them into one record.

Rules:
- Candidates: starts within 5 minutes AND distances within
  max(1% of either distance, 100 m); rows without start or distance never match
- One pass in ascending (start_date, id) order; each group is anchored on its
  earliest activity and an activity already grouped is not evaluated again
- The kept record is the highest score; ties keep the earlier activity
- Merge fills NULL columns of the kept record from the others, never overwrites,
  records contributing providers, then deletes the others
- dry_run reports the same plan without writing
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.db.models import Activity, WebhookEvent
from app.ingestion.activity_store import ACTIVITY_FIELDS
from app.ingestion.merge import plan_fill
from app.utils.timezone import to_utc, utc_now

START_TOLERANCE = timedelta(minutes=5)
DISTANCE_TOLERANCE_RATIO = 0.01
MIN_DISTANCE_TOLERANCE_METERS = 100.0

POWER_POINTS = 10
HEARTRATE_POINTS = 5
GPS_POINTS = 5
PROVIDER_POINTS = {"garmin": 3, "wahoo": 2}
MAX_AGE_POINTS = 5


class DuplicateCandidate(BaseModel):
    id: str
    provider: str
    name: str | None = None
    start_date: datetime | None = None
    distance: float | None = None
    has_power: bool = False
    has_heartrate: bool = False
    has_gps: bool = False
    score: float = 0.0


class DuplicateGroup(BaseModel):
    """Activities believed to be one physical ride."""

    activities: list[DuplicateCandidate]
    recommended_keep: str
    keep_id: str | None = Field(default=None, description="Caller override of recommended_keep")

    @property
    def activity_ids(self) -> list[str]:
        return [candidate.id for candidate in self.activities]


class GroupMergeResult(BaseModel):
    keep_id: str
    removed_ids: list[str] = Field(default_factory=list)
    filled_fields: dict[str, Any] = Field(default_factory=dict)
    merged_providers: list[str] = Field(default_factory=list)
    skipped_reason: str | None = None


class MergeReport(BaseModel):
    dry_run: bool
    groups: list[GroupMergeResult] = Field(default_factory=list)

    @property
    def merged_count(self) -> int:
        return sum(1 for group in self.groups if group.skipped_reason is None)

    @property
    def deleted_count(self) -> int:
        return sum(len(group.removed_ids) for group in self.groups if group.skipped_reason is None)


def is_candidate_duplicate(a: Activity, b: Activity) -> bool:
    if a.start_date is None or b.start_date is None or a.distance is None or b.distance is None:
        return False
    if abs(to_utc(a.start_date) - to_utc(b.start_date)) > START_TOLERANCE:
        return False
    tolerance = max(DISTANCE_TOLERANCE_RATIO * a.distance, DISTANCE_TOLERANCE_RATIO * b.distance, MIN_DISTANCE_TOLERANCE_METERS)
    return abs(a.distance - b.distance) <= tolerance


def score_activity(activity: Activity, now: datetime | None = None) -> float:
    """Higher is a better canonical record."""
    now = now or utc_now()
    score = 0.0
    if activity.average_watts:
        score += POWER_POINTS
    if activity.average_heartrate:
        score += HEARTRATE_POINTS
    if activity.map_summary_polyline:
        score += GPS_POINTS
    score += PROVIDER_POINTS.get(activity.provider, 0)
    if activity.created_at is not None:
        age_days = (now - to_utc(activity.created_at)).total_seconds() / 86400
        score += min(MAX_AGE_POINTS, max(age_days, 0.0))
    return score


def _candidate(activity: Activity, now: datetime) -> DuplicateCandidate:
    return DuplicateCandidate(
        id=activity.id,
        provider=activity.provider,
        name=activity.name,
        start_date=activity.start_date,
        distance=activity.distance,
        has_power=bool(activity.average_watts),
        has_heartrate=bool(activity.average_heartrate),
        has_gps=bool(activity.map_summary_polyline),
        score=round(score_activity(activity, now), 3),
    )


def find_duplicates(session: Session, user_id: str, now: datetime | None = None) -> list[DuplicateGroup]:
    """Group a user's activities that look like the same ride.

    Args:
        session: Database session
        user_id: Owner of the activities
        now: Reference time for the age bonus

    Returns:
        Groups of two or more activities, in start order
    """
    now = now or utc_now()
    activities = (
        session.execute(
            select(Activity)
            .where(
                Activity.user_id == user_id,
                Activity.start_date.is_not(None),
                Activity.distance.is_not(None),
            )
            .order_by(Activity.start_date, Activity.id)
        )
        .scalars()
        .all()
    )

    grouped: set[str] = set()
    groups: list[DuplicateGroup] = []
    for index, anchor in enumerate(activities):
        if anchor.id in grouped:
            continue
        members = [anchor]
        anchor_start = to_utc(anchor.start_date)
        for other in activities[index + 1 :]:
            if to_utc(other.start_date) - anchor_start > START_TOLERANCE:
                break
            if other.id not in grouped and is_candidate_duplicate(anchor, other):
                members.append(other)
        if len(members) < 2:
            continue

        grouped.update(member.id for member in members)
        candidates = [_candidate(member, now) for member in members]
        best = max(candidates, key=lambda candidate: candidate.score)
        groups.append(DuplicateGroup(activities=candidates, recommended_keep=best.id))

    logger.info(f"[DEDUP] Found {len(groups)} duplicate group(s) among {len(activities)} activities for user_id={user_id}")
    return groups


def _column_values(activity: Activity) -> dict[str, Any]:
    return {field: getattr(activity, field) for field in ACTIVITY_FIELDS}


def merge_duplicates(
    session: Session,
    user_id: str,
    groups: list[DuplicateGroup],
    dry_run: bool = False,
    now: datetime | None = None,
) -> MergeReport:
    """Merge each group into its kept activity.

    Args:
        session: Database session; committed unless dry_run
        user_id: Only this user's activities are touched
        groups: Groups from find_duplicates(), optionally with keep_id set
        dry_run: Report the plan without writing
        now: Timestamp recorded as merged_at

    Returns:
        MergeReport with per-group fills and deletions
    """
    now = now or utc_now()
    report = MergeReport(dry_run=dry_run)

    for group in groups:
        keep_id = group.keep_id or group.recommended_keep
        ids = group.activity_ids
        rows = session.execute(select(Activity).where(Activity.user_id == user_id, Activity.id.in_(ids))).scalars().all()
        by_id = {row.id: row for row in rows}

        keep = by_id.get(keep_id)
        others = [by_id[activity_id] for activity_id in ids if activity_id != keep_id and activity_id in by_id]
        if keep is None or not others:
            reason = "keep activity not found" if keep is None else "nothing to merge"
            logger.warning(f"[DEDUP] Skipping group keep_id={keep_id}: {reason}")
            report.groups.append(GroupMergeResult(keep_id=keep_id, skipped_reason=reason))
            continue

        fills = plan_fill(keep, [_column_values(other) for other in others], ACTIVITY_FIELDS)
        providers = sorted({keep.provider, *(keep.merged_providers or []), *(other.provider for other in others)})
        removed_ids = [other.id for other in others]
        report.groups.append(
            GroupMergeResult(keep_id=keep.id, removed_ids=removed_ids, filled_fields=fills, merged_providers=providers)
        )

        if dry_run:
            logger.info(f"[DEDUP] Dry run: would merge {removed_ids} into {keep.id}, filling {sorted(fills)}")
            continue

        for field, value in fills.items():
            setattr(keep, field, value)
        keep.merged_providers = providers
        raw = dict(keep.raw_data or {})
        raw["merged_at"] = now.isoformat()
        raw["merged_from"] = sorted({*raw.get("merged_from", []), *removed_ids})
        keep.raw_data = raw

        session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.activity_imported_id.in_(removed_ids))
            .values(activity_imported_id=keep.id)
        )
        for other in others:
            session.delete(other)
        logger.info(f"[DEDUP] Merged {removed_ids} into {keep.id} (providers={providers})")

    if not dry_run:
        session.commit()
    return report
