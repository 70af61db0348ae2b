"""User-triggered sync and backfill.

Garmin is push-only: there is no "list my activities" call to poll. A sync
therefore asks Garmin to redeliver the recent window through the webhook.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.db.models import Integration
from app.integrations.garmin.summary_backfill import (
    BackfillOutcome,
    BackfillStatus,
    request_backfill,
    request_history_backfill,
)
from app.utils.timezone import to_utc, utc_now

SUPPORTED_PROVIDERS = {"garmin"}


class UnsupportedProviderError(ValueError):
    """Provider has no sync implementation."""


def get_integration(session: Session, user_id: str, provider: str) -> Integration | None:
    return session.execute(
        select(Integration).where(Integration.user_id == user_id, Integration.provider == provider)
    ).scalar_one_or_none()


def request_backfill_for_user(session: Session, user_id: str, days: int, provider: str = "garmin") -> BackfillOutcome:
    """Request `days` days of history for a user's integration.

    Raises:
        UnsupportedProviderError: Provider is not implemented
    """
    if provider not in SUPPORTED_PROVIDERS:
        raise UnsupportedProviderError(f"Backfill is not supported for provider '{provider}'")

    integration = get_integration(session, user_id, provider)
    if integration is None:
        logger.info(f"[SYNC] No {provider} integration for user_id={user_id}")
        return BackfillOutcome(
            status=BackfillStatus.NOT_CONNECTED,
            message=f"{provider.title()} is not connected",
            requested_days=days,
        )
    return request_backfill(session, integration, days)


def request_history_for_user(
    session: Session,
    user_id: str,
    days: int,
    provider: str = "garmin",
    now: datetime | None = None,
) -> list[BackfillOutcome]:
    """Request `days` days of history as consecutive provider-sized windows.

    Raises:
        UnsupportedProviderError: Provider is not implemented
    """
    if provider not in SUPPORTED_PROVIDERS:
        raise UnsupportedProviderError(f"Backfill is not supported for provider '{provider}'")

    integration = get_integration(session, user_id, provider)
    if integration is None:
        logger.info(f"[SYNC] No {provider} integration for user_id={user_id}")
        return [
            BackfillOutcome(
                status=BackfillStatus.NOT_CONNECTED,
                message=f"{provider.title()} is not connected",
                requested_days=days,
            )
        ]
    end = to_utc(now) if now else utc_now()
    return request_history_backfill(session, integration, end - timedelta(days=days), end)


def trigger_sync(session: Session, user_id: str, provider: str = "garmin") -> BackfillOutcome:
    """Sync recent activities by requesting a backfill of the default lookback."""
    logger.info(f"[SYNC] Sync requested for user_id={user_id} provider={provider}")
    return request_backfill_for_user(session, user_id, settings.sync_default_days, provider)
