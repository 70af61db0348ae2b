from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.ingestion.sync_service import UnsupportedProviderError, request_backfill_for_user, trigger_sync
from app.integrations.garmin.summary_backfill import (
    CLAMP_NOTE,
    BackfillStatus,
    request_backfill,
    request_history_backfill,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def garmin_backfill_api(monkeypatch):
    """Replace httpx.get with a recorder that answers with the queued status codes."""
    calls = []
    statuses = []

    def fake_get(url, params=None, headers=None, timeout=None, follow_redirects=False):
        calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        status_code = statuses.pop(0) if statuses else 202
        return httpx.Response(status_code, text="", request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", fake_get)
    return calls, statuses


def test_long_request_is_clamped_with_note(db_session, make_integration, garmin_backfill_api):
    calls, _ = garmin_backfill_api
    integration = make_integration()

    outcome = request_backfill(db_session, integration, 45, now=NOW)

    assert outcome.status == BackfillStatus.ACCEPTED
    assert outcome.ok
    assert outcome.requested_days == 45
    assert outcome.applied_days == 30
    assert outcome.note == CLAMP_NOTE.format(days=30)
    assert outcome.window_end - outcome.window_start == timedelta(days=30)

    assert len(calls) == 1
    assert calls[0]["url"].endswith("/backfill/activities")
    assert calls[0]["params"] == {
        "summaryStartTimeInSeconds": int((NOW - timedelta(days=30)).timestamp()),
        "summaryEndTimeInSeconds": int(NOW.timestamp()),
    }
    assert calls[0]["headers"]["Authorization"] == "Bearer access-token"
    assert calls[0]["timeout"] is not None
    assert integration.last_sync_at is not None


def test_short_request_has_no_note(db_session, make_integration, garmin_backfill_api):
    outcome = request_backfill(db_session, make_integration(), 7, now=NOW)

    assert outcome.applied_days == 7
    assert outcome.note is None


@pytest.mark.parametrize(
    ("status_code", "expected", "sync_error"),
    [
        (409, BackfillStatus.ALREADY_REQUESTED, None),
        (401, BackfillStatus.RECONNECT_REQUIRED, "reauthorization_required"),
        (403, BackfillStatus.PERMISSION_REQUIRED, "permission_required"),
        (500, BackfillStatus.RETRY_LATER, None),
    ],
)
def test_status_codes_map_to_outcomes(db_session, make_integration, garmin_backfill_api, status_code, expected, sync_error):
    _, statuses = garmin_backfill_api
    statuses.append(status_code)
    integration = make_integration()

    outcome = request_backfill(db_session, integration, 10, now=NOW)

    assert outcome.status == expected
    assert outcome.status_code == status_code
    assert outcome.ok is (expected == BackfillStatus.ALREADY_REQUESTED)
    assert integration.sync_error == sync_error


def test_network_failure_is_retry_later(db_session, make_integration, monkeypatch):
    def fake_get(url, **kwargs):
        raise httpx.ConnectError("connection refused", request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", fake_get)

    outcome = request_backfill(db_session, make_integration(), 10, now=NOW)

    assert outcome.status == BackfillStatus.RETRY_LATER
    assert outcome.status_code is None


def test_expired_authorization_asks_to_reconnect(db_session, make_integration, garmin_backfill_api):
    calls, _ = garmin_backfill_api
    integration = make_integration(access_token=None, refresh_token=None, expires_in=timedelta(days=-1))

    outcome = request_backfill(db_session, integration, 10, now=NOW)

    assert outcome.status == BackfillStatus.RECONNECT_REQUIRED
    assert calls == []


def test_history_backfill_walks_windows_newest_first(db_session, make_integration, garmin_backfill_api):
    calls, _ = garmin_backfill_api
    integration = make_integration()

    outcomes = request_history_backfill(db_session, integration, NOW - timedelta(days=75), NOW)

    assert [outcome.status for outcome in outcomes] == [BackfillStatus.ACCEPTED] * 3
    ends = [call["params"]["summaryEndTimeInSeconds"] for call in calls]
    assert ends == sorted(ends, reverse=True)
    assert calls[-1]["params"]["summaryStartTimeInSeconds"] == int((NOW - timedelta(days=75)).timestamp())


def test_history_backfill_stops_when_user_action_needed(db_session, make_integration, garmin_backfill_api):
    calls, statuses = garmin_backfill_api
    statuses.extend([202, 403])

    outcomes = request_history_backfill(db_session, make_integration(), NOW - timedelta(days=90), NOW)

    assert [outcome.status for outcome in outcomes] == [BackfillStatus.ACCEPTED, BackfillStatus.PERMISSION_REQUIRED]
    assert len(calls) == 2


def test_backfill_without_integration_is_not_connected(db_session, garmin_backfill_api):
    outcome = request_backfill_for_user(db_session, "nobody", 10)

    assert outcome.status == BackfillStatus.NOT_CONNECTED
    assert not outcome.ok


def test_unsupported_provider_is_rejected(db_session):
    with pytest.raises(UnsupportedProviderError):
        request_backfill_for_user(db_session, "user-1", 10, provider="polar")


def test_trigger_sync_requests_default_window(db_session, make_integration, garmin_backfill_api):
    calls, _ = garmin_backfill_api
    make_integration(user_id="user-9", provider_user_id="g-9")

    outcome = trigger_sync(db_session, "user-9")

    assert outcome.status == BackfillStatus.ACCEPTED
    assert outcome.applied_days == 30
    params = calls[0]["params"]
    assert params["summaryEndTimeInSeconds"] - params["summaryStartTimeInSeconds"] == 30 * 86400
