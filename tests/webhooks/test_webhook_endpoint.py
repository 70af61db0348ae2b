"""HTTP-level tests for POST /webhooks/garmin."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.config.settings import settings
from app.db.models import Activity
from app.main import app
from app.webhooks import garmin as garmin_webhook
from app.webhooks.rate_limit import SlidingWindowRateLimiter, get_rate_limiter

PUSH = {
    "activities": [
        {
            "userId": "garmin-user-1",
            "activityId": 901,
            "activityType": "CYCLING",
            "startTimeInSeconds": 1714548600,
            "durationInSeconds": 1800,
            "distanceInMeters": 15000.0,
        }
    ]
}


@pytest.fixture
def limiter(fake_redis):
    return SlidingWindowRateLimiter(fake_redis, limit=100, window_seconds=60)


@pytest.fixture
def client(db_session, limiter, monkeypatch):
    monkeypatch.setattr(settings, "garmin_webhook_token", "")
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health_check(client):
    response = client.get("/webhooks/garmin")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "provider": "garmin"}


def test_push_is_acknowledged_and_processed(client, db_session, make_integration):
    make_integration()

    response = client.post("/webhooks/garmin", json=PUSH)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "acknowledged"
    assert body["received"] == 1
    assert body["results"][0]["status"] == "created"
    assert body["results"][0]["kind"] == "push_summary"

    # Background task ran after the response
    db_session.rollback()
    [activity] = db_session.execute(select(Activity)).scalars().all()
    assert activity.provider_activity_id == "901"
    assert activity.distance == 15000.0


def test_unlinked_user_is_still_acknowledged(client, db_session):
    response = client.post("/webhooks/garmin", json=PUSH)

    assert response.status_code == 200
    assert response.json()["results"][0]["status"] == "not_linked"


def test_invalid_json_is_400(client):
    response = client.post("/webhooks/garmin", content=b"{not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_json"


def test_unknown_shape_is_400(client):
    response = client.post("/webhooks/garmin", json={"sleeps": [{"userId": "x"}]})

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_payload"


def test_token_is_checked_when_configured(client, monkeypatch, make_integration):
    make_integration()
    monkeypatch.setattr(settings, "garmin_webhook_token", "s3cret")

    assert client.post("/webhooks/garmin", json=PUSH).status_code == 401
    assert client.post("/webhooks/garmin", json=PUSH, headers={"x-webhook-token": "wrong"}).status_code == 401
    assert client.post("/webhooks/garmin", json=PUSH, headers={"x-webhook-token": "s3cret"}).status_code == 200
    assert client.post("/webhooks/garmin?token=s3cret", json=PUSH).status_code == 200


def test_rate_limit_returns_429_with_retry_after(client, limiter):
    limiter.limit = 2

    codes = [client.post("/webhooks/garmin", json={"activities": []}).status_code for _ in range(3)]

    assert codes[:2] == [200, 200]
    assert codes[2] == 429


def test_rate_limited_response_carries_retry_after(client, limiter):
    limiter.limit = 0

    response = client.post("/webhooks/garmin", json={"activities": []})

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1
    assert response.json()["error"] == "rate_limited"


def test_oversized_body_is_413(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_max_body_bytes", 16)

    response = client.post("/webhooks/garmin", json=PUSH)

    assert response.status_code == 413


def test_database_failure_still_answers_200(client, make_integration, monkeypatch):
    make_integration()

    def broken(session, notification):
        raise OperationalError("INSERT INTO webhook_events", {}, Exception("database is locked"))

    monkeypatch.setattr(garmin_webhook, "receive_notification", broken)

    response = client.post("/webhooks/garmin", json=PUSH)

    assert response.status_code == 200
    assert response.json()["results"] == [{"status": "error", "activity_id": "901"}]
