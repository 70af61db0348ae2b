"""Garmin Summary Backfill.

Garmin answers backfill requests asynchronously: 202 means "accepted", the
activities arrive later through the webhook. This module only triggers
delivery; it never waits for data.

Rules:
- At most BACKFILL_MAX_DAYS (30) per request; longer ranges are clamped with a note
- 409 (window already requested) is success
- 401 means reconnect, 403 means the user must grant the data-sharing permission
- Explicit timeout, no retries
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.db.models import Integration
from app.ingestion.errors import AuthExpiredError, PersistenceAfterRefreshError, TransientProviderError
from app.integrations.garmin.client import GarminClient
from app.integrations.garmin.token_service import REAUTHORIZATION_REQUIRED, get_valid_access_token
from app.utils.timezone import to_utc, utc_now

CLAMP_NOTE = "Garmin limits backfill to {days} days per request. Request again for older data."
PERMISSION_REQUIRED = "permission_required"


class BackfillStatus(StrEnum):
    ACCEPTED = "accepted"
    ALREADY_REQUESTED = "already_requested"
    RECONNECT_REQUIRED = "reconnect_required"
    PERMISSION_REQUIRED = "permission_required"
    RETRY_LATER = "retry_later"
    NOT_CONNECTED = "not_connected"


SUCCESS_STATUSES = {BackfillStatus.ACCEPTED, BackfillStatus.ALREADY_REQUESTED}
USER_ACTION_STATUSES = {BackfillStatus.RECONNECT_REQUIRED, BackfillStatus.PERMISSION_REQUIRED, BackfillStatus.NOT_CONNECTED}


class BackfillOutcome(BaseModel):
    """Structured result returned to callers of sync / backfill."""

    status: BackfillStatus
    message: str
    requested_days: int | None = None
    applied_days: int | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None
    status_code: int | None = None
    note: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in SUCCESS_STATUSES


def clamp_days(requested_days: int) -> tuple[int, str | None]:
    max_days = settings.backfill_max_days
    if requested_days > max_days:
        return max_days, CLAMP_NOTE.format(days=max_days)
    return max(requested_days, 1), None


def _outcome_for_status(status_code: int) -> tuple[BackfillStatus, str]:
    if status_code == 202:
        return BackfillStatus.ACCEPTED, "Backfill accepted; activities will arrive via webhook"
    if status_code == 409:
        return BackfillStatus.ALREADY_REQUESTED, "Backfill for this window was already requested"
    if status_code == 401:
        return BackfillStatus.RECONNECT_REQUIRED, "Garmin rejected the access token. Please reconnect Garmin."
    if status_code == 403:
        return BackfillStatus.PERMISSION_REQUIRED, "Enable activity data sharing for this app in Garmin Connect."
    return BackfillStatus.RETRY_LATER, f"Garmin returned HTTP {status_code}. Try again later."


def request_window_backfill(
    session: Session,
    integration: Integration,
    start: datetime,
    end: datetime,
) -> BackfillOutcome:
    """Request backfill for an explicit window of at most BACKFILL_MAX_DAYS."""
    start, end = to_utc(start), to_utc(end)
    user_id = integration.user_id

    try:
        access_token = get_valid_access_token(session, integration)
    except AuthExpiredError as e:
        logger.warning(f"[GARMIN_BACKFILL] Cannot backfill for user_id={user_id}: {e}")
        return BackfillOutcome(
            status=BackfillStatus.RECONNECT_REQUIRED,
            message="Garmin authorization expired. Please reconnect Garmin.",
            window_start=start,
            window_end=end,
        )
    except PersistenceAfterRefreshError as e:
        access_token = e.access_token

    logger.info(f"[GARMIN_BACKFILL] Requesting backfill for user_id={user_id}: {start.date()} to {end.date()}")
    try:
        resp = GarminClient(access_token, user_id=user_id).request_backfill(int(start.timestamp()), int(end.timestamp()))
    except TransientProviderError as e:
        logger.warning(f"[GARMIN_BACKFILL] Backfill request failed for user_id={user_id}: {e}")
        return BackfillOutcome(
            status=BackfillStatus.RETRY_LATER,
            message="Could not reach Garmin. Try again later.",
            window_start=start,
            window_end=end,
        )

    outcome_status, message = _outcome_for_status(resp.status_code)
    if outcome_status in SUCCESS_STATUSES:
        integration.last_sync_at = utc_now()
        integration.sync_error = None
        logger.info(f"[GARMIN_BACKFILL] {outcome_status.value} ({resp.status_code}) for user_id={user_id}")
    elif outcome_status is BackfillStatus.RECONNECT_REQUIRED:
        integration.sync_error = REAUTHORIZATION_REQUIRED
        logger.warning(f"[GARMIN_BACKFILL] 401 for user_id={user_id}, reconnect required")
    elif outcome_status is BackfillStatus.PERMISSION_REQUIRED:
        integration.sync_error = PERMISSION_REQUIRED
        logger.warning(f"[GARMIN_BACKFILL] 403 for user_id={user_id}, data-sharing permission missing")
    else:
        logger.error(f"[GARMIN_BACKFILL] Unexpected HTTP {resp.status_code} for user_id={user_id}: {resp.text[:300]}")
    session.commit()

    return BackfillOutcome(
        status=outcome_status,
        message=message,
        window_start=start,
        window_end=end,
        status_code=resp.status_code,
    )


def request_backfill(
    session: Session,
    integration: Integration,
    requested_days: int,
    now: datetime | None = None,
) -> BackfillOutcome:
    """Request the last `requested_days` days of activities.

    Args:
        session: Session the integration belongs to
        integration: Garmin integration
        requested_days: Days of history wanted; clamped to BACKFILL_MAX_DAYS
        now: End of the window (default: current time)

    Returns:
        BackfillOutcome; a clamped request carries a note to re-request older ranges
    """
    applied_days, note = clamp_days(requested_days)
    end = to_utc(now) if now else utc_now()
    start = end - timedelta(days=applied_days)

    outcome = request_window_backfill(session, integration, start, end)
    return outcome.model_copy(update={"requested_days": requested_days, "applied_days": applied_days, "note": note})


def request_history_backfill(
    session: Session,
    integration: Integration,
    start: datetime,
    end: datetime,
) -> list[BackfillOutcome]:
    """Request a long history range as consecutive windows, newest first.

    Stops at the first window that needs user action (reconnect or permission);
    further windows would fail the same way.
    """
    start, end = to_utc(start), to_utc(end)
    window = timedelta(days=settings.backfill_max_days)
    outcomes: list[BackfillOutcome] = []

    window_end = end
    while window_end > start:
        window_start = max(start, window_end - window)
        outcome = request_window_backfill(session, integration, window_start, window_end)
        outcomes.append(outcome)
        if outcome.status in USER_ACTION_STATUSES:
            break
        window_end = window_start

    accepted = sum(1 for outcome in outcomes if outcome.ok)
    logger.info(f"[GARMIN_BACKFILL] History backfill for user_id={integration.user_id}: {accepted}/{len(outcomes)} windows accepted")
    return outcomes
