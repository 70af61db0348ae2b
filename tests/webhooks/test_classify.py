import pytest

from app.ingestion.errors import InvalidWebhookPayload
from app.webhooks.classify import NotificationKind, classify_payload, extract_file_url


def test_activities_list_is_push_summary():
    body = {"activities": [{"userId": "u1", "activityId": 1, "startTimeInSeconds": 1714548600}]}

    [notification] = classify_payload(body)

    assert notification.kind is NotificationKind.PUSH_SUMMARY
    assert notification.is_push
    assert notification.provider == "garmin"
    assert notification.provider_user_id == "u1"
    assert notification.activity_id == "1"
    assert notification.summary == body["activities"][0]
    assert notification.file_url is None


def test_activity_details_carry_summary_and_samples():
    body = {
        "activityDetails": [
            {
                "userId": "u1",
                "activityId": 5,
                "summary": {"activityId": 5, "activityType": "CYCLING"},
                "samples": [{"powerInWatts": 200}],
            }
        ]
    }

    [notification] = classify_payload(body)

    assert notification.kind is NotificationKind.PUSH_DETAIL
    assert notification.summary == {"activityId": 5, "activityType": "CYCLING"}
    assert notification.samples == [{"powerInWatts": 200}]


def test_activity_id_falls_back_to_summary():
    body = {"activityDetails": [{"userId": "u1", "summary": {"activityId": 77}}]}

    [notification] = classify_payload(body)

    assert notification.activity_id == "77"


def test_activity_files_are_pings_with_file_url():
    body = {
        "activityFiles": [
            {"userId": "u1", "activityId": 9, "callbackURL": "https://apis.garmin.com/file?id=9", "fileType": "FIT"}
        ]
    }

    [notification] = classify_payload(body)

    assert notification.kind is NotificationKind.PING_FILE
    assert not notification.is_push
    assert notification.summary is None
    assert notification.file_url == "https://apis.garmin.com/file?id=9"
    assert notification.file_type == "FIT"


def test_file_url_is_extracted_for_push_notifications_too():
    body = {"activities": [{"userId": "u1", "activityId": 3, "fileUrl": "https://example.test/3.fit"}]}

    [notification] = classify_payload(body)

    assert notification.kind is NotificationKind.PUSH_SUMMARY
    assert notification.file_url == "https://example.test/3.fit"


def test_mixed_body_yields_every_item():
    body = {
        "activities": [{"userId": "u1", "activityId": 1}, {"userId": "u2", "activityId": 2}],
        "activityFiles": [{"userId": "u1", "activityId": 1, "callbackURL": "https://x.test/1"}],
    }

    kinds = [notification.kind for notification in classify_payload(body)]

    assert kinds == [NotificationKind.PUSH_SUMMARY, NotificationKind.PUSH_SUMMARY, NotificationKind.PING_FILE]


def test_empty_list_yields_nothing():
    assert classify_payload({"activities": []}) == []


def test_flat_objects():
    [summary] = classify_payload({"userId": "u1", "activityId": 4, "durationInSeconds": 60})
    [ping] = classify_payload({"userId": "u1", "activityId": 4, "callbackURL": "https://x.test/4"})

    assert summary.kind is NotificationKind.PUSH_SUMMARY
    assert ping.kind is NotificationKind.PING_FILE


@pytest.mark.parametrize(
    "body",
    [
        [],
        "activities",
        {"activities": {"userId": "u1"}},
        {"activities": [{"activityId": 1}]},
        {"activities": ["not-an-object"]},
        {"activityDetails": [{"userId": "u1", "activityId": 1}]},
        {"sleeps": [{"userId": "u1"}]},
        {"userId": "u1"},
    ],
)
def test_unknown_shapes_are_rejected(body):
    with pytest.raises(InvalidWebhookPayload):
        classify_payload(body)


def test_extract_file_url_prefers_item_then_body():
    assert extract_file_url({"callbackURL": "a"}, {"fileUrl": "b"}) == "a"
    assert extract_file_url({}, {"activityFileUrl": "b"}) == "b"
    assert extract_file_url({"callbackURL": ""}) is None
