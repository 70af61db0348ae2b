from datetime import timedelta

import pytest
import redis

from app.core.locks import RedisLockManager
from app.db.models import WebhookEvent
from app.utils.timezone import utc_now
from app.webhooks import reprocess
from app.webhooks.reprocess import REPROCESS_LOCK_KEY, reprocess_failed_events, reprocess_tick, select_retryable_events


@pytest.fixture
def make_event(db_session):
    counter = {"n": 0}

    def _make(**fields) -> WebhookEvent:
        counter["n"] += 1
        fields.setdefault("activity_id", str(counter["n"]))
        event = WebhookEvent(provider="garmin", provider_user_id="garmin-user-1", event_type="push_summary", payload={}, **fields)
        db_session.add(event)
        db_session.commit()
        return event

    return _make


def test_selects_due_failures_and_stale_events(make_event):
    now = utc_now()
    done = make_event(processed=True, received_at=now - timedelta(hours=2))
    due = make_event(process_error="timeout", error_kind="transient", next_retry_at=now - timedelta(minutes=1), received_at=now - timedelta(hours=1))
    not_due = make_event(process_error="timeout", error_kind="transient", next_retry_at=now + timedelta(minutes=5), received_at=now - timedelta(hours=1))
    stale = make_event(received_at=now - timedelta(minutes=30))
    fresh = make_event(received_at=now - timedelta(minutes=1))

    selected = select_retryable_events(now, limit=10)

    assert selected == [due.id, stale.id]
    assert done.id not in selected
    assert not_due.id not in selected
    assert fresh.id not in selected


def test_selection_respects_limit_oldest_first(make_event):
    now = utc_now()
    oldest = make_event(received_at=now - timedelta(hours=3))
    make_event(received_at=now - timedelta(hours=2))

    assert select_retryable_events(now, limit=1) == [oldest.id]


def test_reprocess_counts_outcomes(make_event, monkeypatch):
    now = utc_now()
    first = make_event(received_at=now - timedelta(hours=1))
    second = make_event(received_at=now - timedelta(minutes=45))
    outcomes = {first.id: "processed", second.id: "retry_scheduled"}
    monkeypatch.setattr(reprocess, "process_webhook_event", lambda event_id: outcomes[event_id])

    result = reprocess_failed_events(limit=10, now=now)

    assert result == {"selected": 2, "processed": 1, "retry_scheduled": 1}


def test_nothing_due(db_session):
    assert reprocess_failed_events(limit=10) == {"selected": 0}


def test_tick_skips_when_another_worker_holds_the_lock(db_session, fake_redis, monkeypatch):
    calls = []
    monkeypatch.setattr(reprocess, "lock_manager", RedisLockManager(fake_redis))
    monkeypatch.setattr(reprocess, "reprocess_failed_events", lambda: calls.append(1))
    fake_redis.set(REPROCESS_LOCK_KEY, "other-worker")

    reprocess_tick()

    assert calls == []
    assert fake_redis.get(REPROCESS_LOCK_KEY) == "other-worker"


def test_tick_runs_and_releases_lock(db_session, fake_redis, monkeypatch):
    calls = []
    monkeypatch.setattr(reprocess, "lock_manager", RedisLockManager(fake_redis))
    monkeypatch.setattr(reprocess, "reprocess_failed_events", lambda: calls.append(1))

    reprocess_tick()

    assert calls == [1]
    assert fake_redis.get(REPROCESS_LOCK_KEY) is None
    assert fake_redis.expiries[REPROCESS_LOCK_KEY] > 0


class UnavailableRedis:
    def set(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")


def test_tick_survives_redis_outage(monkeypatch):
    monkeypatch.setattr(reprocess, "lock_manager", RedisLockManager(UnavailableRedis()))

    reprocess_tick()
