from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""


class Integration(Base):
    """OAuth connection between a user and a device provider.

    One row per (user, provider). Tokens are Fernet-encrypted at rest.

    Fields:
    - provider_user_id: The provider's id for the user (webhooks are keyed on it)
    - access_token / refresh_token: Encrypted tokens, cleared on invalidation
    - token_expires_at: Access token expiry
    - last_sync_at: Last successful sync / backfill request
    - sync_error: Last user-actionable error (e.g. "reauthorization_required")
    """

    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)  # Encrypted
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)  # Encrypted
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scope: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integration_user_provider"),
        Index("idx_integrations_provider_user", "provider", "provider_user_id"),
    )

    def invalidate(self, reason: str) -> None:
        """Clear tokens so the user has to reconnect."""
        self.access_token = None
        self.refresh_token = None
        self.token_expires_at = None
        self.sync_error = reason


class WebhookEvent(Base):
    """One inbound provider notification (audit trail, never deleted).

    Duplicate deliveries for the same (provider, provider_user_id, activity_id)
    update this row in place instead of inserting a new one.

    Fields:
    - event_type: push_summary | push_detail | ping_file
    - payload: The notification item exactly as received
    - processed: True once the event reached a terminal state (success or permanent failure)
    - process_error / error_kind: Last failure and its category
    - retry_count / next_retry_at: Scheduling state for the reprocessing pass
    - activity_imported_id: Activity.id this event resolved to
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    activity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_type: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    process_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    activity_imported_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", "activity_id", name="uq_webhook_event_activity"),
        Index("idx_webhook_events_pending", "processed", "next_retry_at"),
    )


class Activity(Base):
    """Canonical activity record.

    Unique per (user_id, provider, provider_activity_id). Enrichment only fills
    columns that are still NULL; see app.ingestion.merge.
    """

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    provider_activity_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    activity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    distance: Mapped[float | None] = mapped_column(Float, nullable=True)  # meters
    moving_time: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds
    elapsed_time: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds
    total_elevation_gain: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_speed: Mapped[float | None] = mapped_column(Float, nullable=True)  # m/s
    max_speed: Mapped[float | None] = mapped_column(Float, nullable=True)

    average_watts: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_watts: Mapped[float | None] = mapped_column(Float, nullable=True)
    normalized_power: Mapped[float | None] = mapped_column(Float, nullable=True)
    intensity_factor: Mapped[float | None] = mapped_column(Float, nullable=True)
    training_stress_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold_power: Mapped[float | None] = mapped_column(Float, nullable=True)
    kilojoules: Mapped[float | None] = mapped_column(Float, nullable=True)
    power_curve: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    average_heartrate: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_heartrate: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_cadence: Mapped[float | None] = mapped_column(Float, nullable=True)
    calories: Mapped[float | None] = mapped_column(Float, nullable=True)

    map_summary_polyline: Mapped[str | None] = mapped_column(Text, nullable=True)
    trainer: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    imported_from: Mapped[str | None] = mapped_column(String, nullable=True)
    merged_providers: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "provider_activity_id", name="uq_activity_user_provider_id"),
        Index("idx_activities_user_start", "user_id", "start_date"),
    )
