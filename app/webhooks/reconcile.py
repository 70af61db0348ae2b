"""Webhook reconciliation: from a classified notification to an Activity.

Receipt (inside the webhook request):
1. classify (app.webhooks.classify; the file URL is already extracted there)
2. resolve the Integration by (provider, provider_user_id); none -> no-op
3. deduplicate against WebhookEvent on (provider, provider_user_id, activity_id):
   create, update in place when the notification brings something new, or
   report a duplicate

Processing (background task or reprocessing pass):
4. resolve summary: push -> embedded, ping -> activity detail API
5. upsert Activity (fill-only enrichment when it already exists)
6. attach track metrics: FIT file (device summary, then derived) and
   detail samples; per column the embedded summary wins, then the file,
   then the samples, whichever of file and samples arrived first
7. mark processed with back-reference, or record the failure

Failures never reach the HTTP caller. Retryable ones (transient, auth
expired) leave the event unprocessed with a next_retry_at; permanent ones
mark it processed with the error recorded. Auth-expired events stop retrying
once they are older than REPROCESS_AUTH_MAX_AGE_HOURS.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.db.models import Activity, Integration, WebhookEvent
from app.db.session import get_session
from app.ingestion.activity_store import enrich_activity, upsert_activity
from app.ingestion.errors import (
    AuthExpiredError,
    DuplicateNotification,
    IngestionError,
    PersistenceAfterRefreshError,
    TransientProviderError,
    UnrecoverableFileReferenceError,
)
from app.integrations.garmin.client import GarminClient
from app.integrations.garmin.normalize import normalize_garmin_activity, track_points_from_samples
from app.integrations.garmin.token_service import get_valid_access_token
from app.tracks.analysis import derive_track_metrics, derived_fields
from app.tracks.decoder import decode_activity_file
from app.utils.timezone import to_utc, utc_now
from app.webhooks.classify import NotificationKind, ProviderNotification

IMPORTED_FROM = "garmin_webhook"
NOT_LINKED = "not_linked"
UNEXPECTED = "unexpected"
REAUTHORIZATION_REQUIRED = "Reauthorization required"

# raw_data key recording where the track metrics on an activity came from
TRACK_STATE_KEY = "track"
TRACK_SOURCE_FILE = "file"
TRACK_SOURCE_SAMPLES = "samples"


class ReceiveStatus(StrEnum):
    CREATED = "created"
    ENRICHMENT = "enrichment"
    DUPLICATE = "duplicate"
    NOT_LINKED = "not_linked"


@dataclass(frozen=True)
class ReceiveResult:
    status: ReceiveStatus
    event_id: str | None = None
    activity_id: str | None = None

    @property
    def should_process(self) -> bool:
        return self.status in {ReceiveStatus.CREATED, ReceiveStatus.ENRICHMENT}

    def as_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "event_id": self.event_id, "activity_id": self.activity_id}


def find_integration(session: Session, provider: str, provider_user_id: str) -> Integration | None:
    return session.execute(
        select(Integration).where(
            Integration.provider == provider,
            Integration.provider_user_id == provider_user_id,
        )
    ).scalar_one_or_none()


def find_event(session: Session, provider: str, provider_user_id: str, activity_id: str) -> WebhookEvent | None:
    return session.execute(
        select(WebhookEvent).where(
            WebhookEvent.provider == provider,
            WebhookEvent.provider_user_id == provider_user_id,
            WebhookEvent.activity_id == activity_id,
        )
    ).scalar_one_or_none()


def _reset_for_processing(event: WebhookEvent) -> None:
    event.processed = False
    event.process_error = None
    event.error_kind = None
    event.retry_count = 0
    event.next_retry_at = None
    event.processed_at = None


def apply_redelivery(event: WebhookEvent, notification: ProviderNotification) -> list[str]:
    """Fold a repeated notification into its existing event.

    Something is new when the notification carries:
    - a file URL the event lacks, or replaces one that turned out to be expired
    - a summary for a ping event that never produced an activity
    - detail samples for an event that only had a summary

    Returns:
        What was added

    Raises:
        DuplicateNotification: Nothing new
    """
    added: list[str] = []
    file_expired = event.error_kind == UnrecoverableFileReferenceError.kind
    if notification.file_url and notification.file_url != event.file_url and (event.file_url is None or file_expired):
        event.file_url = notification.file_url
        event.file_type = notification.file_type or event.file_type
        added.append("file_url")

    unresolved_ping = event.event_type == NotificationKind.PING_FILE and event.activity_imported_id is None
    upgrades_to_detail = (
        notification.kind is NotificationKind.PUSH_DETAIL
        and event.event_type != NotificationKind.PUSH_DETAIL
        and bool(notification.samples)
    )
    if notification.summary is not None and (unresolved_ping or upgrades_to_detail):
        event.event_type = notification.kind.value
        event.payload = notification.payload
        added.append(notification.kind.value)

    if not added:
        raise DuplicateNotification(
            f"Event {event.id} already covers {notification.provider}:{notification.activity_id}"
        )

    _reset_for_processing(event)
    return added


def receive_notification(session: Session, notification: ProviderNotification) -> ReceiveResult:
    """Record a classified notification, deduplicating against earlier deliveries."""
    integration = find_integration(session, notification.provider, notification.provider_user_id)
    if integration is None:
        logger.info(
            f"[GARMIN_WEBHOOK] No integration for provider_user_id={notification.provider_user_id}, "
            "acknowledging as no-op"
        )
        return ReceiveResult(status=ReceiveStatus.NOT_LINKED)

    existing = None
    if notification.activity_id is not None:
        existing = find_event(session, notification.provider, notification.provider_user_id, notification.activity_id)

    if existing is None:
        event = WebhookEvent(
            provider=notification.provider,
            provider_user_id=notification.provider_user_id,
            event_type=notification.kind.value,
            activity_id=notification.activity_id,
            file_url=notification.file_url,
            file_type=notification.file_type,
            payload=notification.payload,
            processed=False,
            retry_count=0,
        )
        try:
            with session.begin_nested():
                session.add(event)
        except IntegrityError:
            # Concurrent delivery of the same activity created the row first
            existing = find_event(session, notification.provider, notification.provider_user_id, notification.activity_id)
            if existing is None:
                raise
        else:
            logger.info(f"[GARMIN_WEBHOOK] Stored {notification.kind.value} event {event.id} activity_id={notification.activity_id}")
            return ReceiveResult(status=ReceiveStatus.CREATED, event_id=event.id)

    try:
        added = apply_redelivery(existing, notification)
    except DuplicateNotification as e:
        logger.info(f"[GARMIN_WEBHOOK] Duplicate notification ignored: {e}")
        return ReceiveResult(status=ReceiveStatus.DUPLICATE, event_id=existing.id, activity_id=existing.activity_imported_id)

    logger.info(f"[GARMIN_WEBHOOK] Event {existing.id} updated with {added}, queued for reprocessing")
    return ReceiveResult(status=ReceiveStatus.ENRICHMENT, event_id=existing.id, activity_id=existing.activity_imported_id)


def _summary_payload(event: WebhookEvent) -> dict[str, Any] | None:
    payload = event.payload or {}
    if event.event_type == NotificationKind.PUSH_DETAIL:
        summary = payload.get("summary")
        return dict(summary) if isinstance(summary, dict) else None
    if event.event_type == NotificationKind.PUSH_SUMMARY:
        return dict(payload)
    return None


def _garmin_client(session: Session, integration: Integration) -> GarminClient:
    try:
        access_token = get_valid_access_token(session, integration)
    except PersistenceAfterRefreshError as e:
        # Already logged as critical; the fresh token still works for this event
        access_token = e.access_token
    return GarminClient(access_token, user_id=integration.user_id)


def _track_state(activity: Activity) -> dict[str, Any]:
    return dict((activity.raw_data or {}).get(TRACK_STATE_KEY) or {})


def _set_track_state(activity: Activity, state: dict[str, Any]) -> None:
    data = dict(activity.raw_data or {})
    data[TRACK_STATE_KEY] = state
    activity.raw_data = data


def _sample_metrics(event: WebhookEvent, activity: Activity) -> dict[str, Any] | None:
    if event.event_type != NotificationKind.PUSH_DETAIL:
        return None
    samples = (event.payload or {}).get("samples") or []
    points, power = track_points_from_samples(samples)
    if not points and not power:
        return None
    return derived_fields(points, power, duration_seconds=activity.moving_time)


def _enrich_from_track(event: WebhookEvent, activity: Activity, client: GarminClient | None) -> None:
    """Attach track metrics: embedded summary, then FIT file, then detail samples.

    The precedence holds whichever of the file and the samples arrives first.
    Columns written from samples are remembered on the activity so a file
    processed later can replace them; once file metrics are attached the file
    is not downloaded again.
    """
    state = _track_state(activity)
    from_samples = _sample_metrics(event, activity)
    use_file = bool(event.file_url) and client is not None and state.get("source") != TRACK_SOURCE_FILE

    sources: list[dict[str, Any]] = []
    if use_file:
        decoded = decode_activity_file(client.download_activity_file(event.file_url))
        sources.extend(derive_track_metrics(decoded).sources)
        logger.info(
            f"[GARMIN_JOB] Decoded file for activity {activity.id}: "
            f"{len(decoded.track_points)} points, {len(decoded.power_samples)} power samples"
        )
    if from_samples:
        sources.append(from_samples)
    if not sources:
        return

    sample_fields = state.get("sample_fields") or []
    if use_file and sample_fields:
        replaced = enrich_activity(activity, sources, fields=sample_fields, replace=True)
        if replaced:
            logger.info(f"[GARMIN_JOB] File metrics replaced sample-derived {sorted(replaced)} on activity {activity.id}")
    changed = enrich_activity(activity, sources)

    if use_file or state.get("source") == TRACK_SOURCE_FILE:
        _set_track_state(activity, {"source": TRACK_SOURCE_FILE})
    else:
        _set_track_state(activity, {"source": TRACK_SOURCE_SAMPLES, "sample_fields": sorted({*sample_fields, *changed})})


def _resolve_and_store(session: Session, event: WebhookEvent, integration: Integration) -> Activity:
    needs_api = event.event_type == NotificationKind.PING_FILE or bool(event.file_url)
    client = _garmin_client(session, integration) if needs_api else None

    summary = _summary_payload(event)
    if summary is None:
        if client is None or event.activity_id is None:
            raise TransientProviderError(f"Event {event.id} has no summary and no activity id to fetch one")
        summary = client.fetch_activity_detail(event.activity_id)

    activity_id = event.activity_id or str(summary.get("activityId") or summary.get("summaryId") or "")
    if not activity_id:
        raise TransientProviderError(f"Event {event.id} has no resolvable activity id")

    activity, created = upsert_activity(
        session,
        user_id=integration.user_id,
        provider=event.provider,
        provider_activity_id=activity_id,
        sources=[normalize_garmin_activity(summary)],
        imported_from=IMPORTED_FROM,
        raw=summary,
    )
    event.activity_imported_id = activity.id
    logger.info(f"[GARMIN_JOB] {'Created' if created else 'Enriched'} activity {activity.id} from event {event.id}")

    _enrich_from_track(event, activity, client)
    return activity


def retry_delay(retry_count: int) -> timedelta:
    """1, 2, 4, 8, 16, 32 minutes."""
    return timedelta(minutes=2 ** min(max(retry_count - 1, 0), 5))


def record_failure(
    event: WebhookEvent,
    error: IngestionError,
    now: datetime | None = None,
    *,
    kind: str | None = None,
) -> str:
    """Store a processing failure on the event and schedule a retry if it is retryable.

    Returns:
        "retry_scheduled" or "failed"
    """
    now = now or utc_now()
    event.process_error = str(error)[:2000]
    event.error_kind = kind or error.kind

    if isinstance(error, AuthExpiredError):
        # The user has to reconnect first; bounded by event age instead of the retry budget
        received_at = to_utc(event.received_at) if event.received_at else now
        if now - received_at < timedelta(hours=settings.reprocess_auth_max_age_hours):
            event.next_retry_at = now + timedelta(minutes=settings.reprocess_auth_retry_minutes)
            return "retry_scheduled"
        event.process_error = f"{REAUTHORIZATION_REQUIRED}: {event.process_error}"
        event.next_retry_at = None
    elif error.retryable:
        event.retry_count = (event.retry_count or 0) + 1
        if event.retry_count < settings.reprocess_max_retries:
            event.next_retry_at = now + retry_delay(event.retry_count)
            return "retry_scheduled"
        event.process_error = f"Max retries exceeded: {event.process_error}"

    event.processed = True
    event.processed_at = now
    return "failed"


def _process(session: Session, event_id: str) -> str:
    event = session.get(WebhookEvent, event_id)
    if event is None:
        logger.warning(f"[GARMIN_JOB] Event {event_id} not found")
        return "missing"
    if event.processed:
        logger.debug(f"[GARMIN_JOB] Event {event_id} already processed")
        return "already_processed"

    integration = find_integration(session, event.provider, event.provider_user_id)
    if integration is None:
        event.processed = True
        event.processed_at = utc_now()
        event.process_error = "No linked integration"
        event.error_kind = NOT_LINKED
        return "failed"

    try:
        activity = _resolve_and_store(session, event, integration)
    except IngestionError as e:
        outcome = record_failure(event, e)
        logger.warning(f"[GARMIN_JOB] Event {event_id} {outcome} ({e.kind}): {e}")
        return outcome

    event.processed = True
    event.processed_at = utc_now()
    event.process_error = None
    event.error_kind = None
    event.next_retry_at = None
    logger.info(f"[GARMIN_JOB] Event {event_id} processed -> activity {activity.id}")
    return "processed"


def process_webhook_event(event_id: str) -> str:
    """Process one stored webhook event.

    Safe to call repeatedly: processed events are skipped and activity
    writes are fill-only.

    Returns:
        "processed", "retry_scheduled", "failed", "already_processed", "missing" or "error"
    """
    try:
        with get_session() as session:
            return _process(session, event_id)
    except Exception as e:
        logger.exception(f"[GARMIN_JOB] Unexpected error processing event {event_id}: {e}")
        _record_unexpected_failure(event_id, e)
        return "error"


def _record_unexpected_failure(event_id: str, error: Exception) -> None:
    with get_session() as session:
        event = session.get(WebhookEvent, event_id)
        if event is None:
            return
        record_failure(event, TransientProviderError(f"{type(error).__name__}: {error}"), kind=UNEXPECTED)
