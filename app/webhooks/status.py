"""Per-user webhook delivery diagnostics.

Answers "are my rides arriving?": counts of stored notifications for the
user's Garmin account, the most recent ones, and hints when nothing has
arrived yet.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.models import Integration, WebhookEvent
from app.ingestion.sync_service import get_integration
from app.utils.timezone import to_utc, utc_now

WEBHOOK_PATH = "/webhooks/garmin"
RECENT_EVENT_LIMIT = 10
RECENT_WINDOW = timedelta(hours=24)


class IntegrationInfo(BaseModel):
    provider_user_id: str | None = None
    last_sync_at: datetime | None = None
    token_expires_at: datetime | None = None
    token_valid: bool = False
    sync_error: str | None = None


class WebhookCounts(BaseModel):
    total: int = 0
    processed: int = 0
    failed: int = 0
    pending: int = 0
    last_24h: int = 0


class EventSummary(BaseModel):
    id: str
    received_at: datetime
    event_type: str
    activity_id: str | None = None
    processed: bool
    process_error: str | None = None
    processed_at: datetime | None = None


class Diagnostics(BaseModel):
    has_integration: bool = False
    has_provider_user_id: bool = False
    token_valid: bool = False
    troubleshooting: list[str] = Field(default_factory=list)


class WebhookStatus(BaseModel):
    user_id: str
    webhook_path: str = WEBHOOK_PATH
    integration: IntegrationInfo | None = None
    counts: WebhookCounts = Field(default_factory=WebhookCounts)
    last_event: EventSummary | None = None
    recent_events: list[EventSummary] = Field(default_factory=list)
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)


def _token_valid(integration: Integration, now: datetime) -> bool:
    if not integration.access_token or integration.token_expires_at is None:
        return False
    return to_utc(integration.token_expires_at) > now


def _summarize(event: WebhookEvent) -> EventSummary:
    return EventSummary(
        id=event.id,
        received_at=event.received_at,
        event_type=event.event_type,
        activity_id=event.activity_id,
        processed=event.processed,
        process_error=event.process_error,
        processed_at=event.processed_at,
    )


def count_events(session: Session, provider: str, provider_user_id: str, now: datetime) -> WebhookCounts:
    base = select(func.count()).select_from(WebhookEvent).where(
        WebhookEvent.provider == provider,
        WebhookEvent.provider_user_id == provider_user_id,
    )
    total = session.execute(base).scalar_one()
    processed = session.execute(base.where(WebhookEvent.processed.is_(True))).scalar_one()
    failed = session.execute(
        base.where(WebhookEvent.processed.is_(True), WebhookEvent.process_error.is_not(None))
    ).scalar_one()
    last_24h = session.execute(base.where(WebhookEvent.received_at >= now - RECENT_WINDOW)).scalar_one()
    return WebhookCounts(total=total, processed=processed, failed=failed, pending=total - processed, last_24h=last_24h)


def recent_events(session: Session, provider: str, provider_user_id: str, limit: int = RECENT_EVENT_LIMIT) -> list[WebhookEvent]:
    return list(
        session.execute(
            select(WebhookEvent)
            .where(WebhookEvent.provider == provider, WebhookEvent.provider_user_id == provider_user_id)
            .order_by(WebhookEvent.received_at.desc())
            .limit(limit)
        ).scalars()
    )


def _troubleshooting(integration: Integration | None, counts: WebhookCounts, token_valid: bool) -> list[str]:
    if integration is None:
        return ["Garmin is not connected. Connect your Garmin account to receive rides automatically."]
    if not integration.provider_user_id:
        return [
            "No Garmin user id is stored, so notifications cannot be matched to this account.",
            "Disconnect and reconnect Garmin to fetch the user id.",
        ]
    hints: list[str] = []
    if not token_valid:
        hints.append("The Garmin authorization has expired. Reconnect Garmin; files for new rides cannot be downloaded until then.")
    if counts.total == 0:
        hints.extend(
            [
                "No notifications received yet. Possible causes:",
                f"1. The endpoint {WEBHOOK_PATH} is not registered in the Garmin developer portal",
                "2. Garmin Connect has not synced since the ride was recorded",
            ]
        )
    elif counts.failed:
        hints.append(f"{counts.failed} notification(s) failed permanently; see process_error on the recent events.")
    return hints


def webhook_status(session: Session, user_id: str, provider: str = "garmin", now: datetime | None = None) -> WebhookStatus:
    """Collect delivery and processing statistics for a user's integration."""
    now = to_utc(now) if now else utc_now()
    integration = get_integration(session, user_id, provider)
    if integration is None:
        return WebhookStatus(user_id=user_id, diagnostics=Diagnostics(troubleshooting=_troubleshooting(None, WebhookCounts(), False)))

    token_valid = _token_valid(integration, now)
    counts = WebhookCounts()
    events: list[WebhookEvent] = []
    if integration.provider_user_id:
        counts = count_events(session, provider, integration.provider_user_id, now)
        events = recent_events(session, provider, integration.provider_user_id)

    summaries = [_summarize(event) for event in events]
    return WebhookStatus(
        user_id=user_id,
        integration=IntegrationInfo(
            provider_user_id=integration.provider_user_id,
            last_sync_at=integration.last_sync_at,
            token_expires_at=integration.token_expires_at,
            token_valid=token_valid,
            sync_error=integration.sync_error,
        ),
        counts=counts,
        last_event=summaries[0] if summaries else None,
        recent_events=summaries,
        diagnostics=Diagnostics(
            has_integration=True,
            has_provider_user_id=bool(integration.provider_user_id),
            token_valid=token_valid,
            troubleshooting=_troubleshooting(integration, counts, token_valid),
        ),
    )
