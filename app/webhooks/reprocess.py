"""Reprocessing pass for webhook events that did not complete.

Re-reads stored events instead of waiting for the provider to redeliver.

Selected:
- unprocessed events with a recorded error whose next_retry_at has passed
- unprocessed events without an error that are older than STALE_AFTER
  (the background task never ran, e.g. the worker restarted)

Events with an expired file URL are marked processed and never selected.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta

import redis
from loguru import logger
from sqlalchemy import and_, or_, select

from app.config.settings import settings
from app.core.locks import lock_manager
from app.db.models import WebhookEvent
from app.db.session import get_session
from app.utils.timezone import utc_now
from app.webhooks.reconcile import process_webhook_event

STALE_AFTER = timedelta(minutes=10)
REPROCESS_LOCK_KEY = "lock:webhook_reprocess"


def select_retryable_events(now: datetime, limit: int) -> list[str]:
    with get_session() as session:
        rows = session.execute(
            select(WebhookEvent.id)
            .where(
                WebhookEvent.processed.is_(False),
                or_(
                    and_(
                        WebhookEvent.process_error.is_not(None),
                        or_(WebhookEvent.next_retry_at.is_(None), WebhookEvent.next_retry_at <= now),
                    ),
                    and_(
                        WebhookEvent.process_error.is_(None),
                        WebhookEvent.received_at <= now - STALE_AFTER,
                    ),
                ),
            )
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        ).all()
    return [row[0] for row in rows]


def reprocess_failed_events(limit: int | None = None, now: datetime | None = None) -> dict[str, int]:
    """Run one reprocessing batch.

    Args:
        limit: Maximum events to process (default REPROCESS_BATCH_SIZE)
        now: Reference time for retry scheduling

    Returns:
        Counts per outcome plus "selected"
    """
    now = now or utc_now()
    limit = limit or settings.reprocess_batch_size
    event_ids = select_retryable_events(now, limit)
    if not event_ids:
        logger.debug("[REPROCESS] No events due")
        return {"selected": 0}

    logger.info(f"[REPROCESS] Reprocessing {len(event_ids)} webhook events")
    outcomes: Counter[str] = Counter()
    for event_id in event_ids:
        outcomes[process_webhook_event(event_id)] += 1

    logger.info(f"[REPROCESS] Done: {dict(outcomes)}")
    return {"selected": len(event_ids), **outcomes}


def reprocess_tick() -> None:
    """Scheduler entry point; one worker at a time via a Redis lock."""
    try:
        with lock_manager.acquire(REPROCESS_LOCK_KEY) as acquired:
            if not acquired:
                return
            reprocess_failed_events()
    except redis.RedisError as e:
        logger.error(f"[REPROCESS] Skipping tick, Redis lock unavailable: {e}")
