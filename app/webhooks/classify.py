"""Classification of inbound Garmin webhook bodies.

The body shape is inspected once, here, and turned into typed
ProviderNotification values. Nothing downstream looks at raw shapes again.

Shapes:
- {"activities": [...]} / {"manuallyUpdatedActivities": [...]} -> PUSH_SUMMARY
- {"activityDetails": [{"summary": {...}, "samples": [...]}]}   -> PUSH_DETAIL
- {"activityFiles": [{"callbackURL": ...}]}                     -> PING_FILE
- a flat object with userId: summary fields -> PUSH_SUMMARY, else file URL -> PING_FILE

The file URL is extracted for every notification kind, before any
deduplication decision is made.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from app.ingestion.errors import InvalidWebhookPayload

PROVIDER = "garmin"

FILE_URL_KEYS = ("callbackURL", "fileUrl", "activityFileUrl")
SUMMARY_MARKERS = ("startTimeInSeconds", "durationInSeconds", "distanceInMeters", "activityType")


class NotificationKind(StrEnum):
    PUSH_SUMMARY = "push_summary"
    PUSH_DETAIL = "push_detail"
    PING_FILE = "ping_file"


LIST_KEYS: dict[str, NotificationKind] = {
    "activities": NotificationKind.PUSH_SUMMARY,
    "manuallyUpdatedActivities": NotificationKind.PUSH_SUMMARY,
    "activityDetails": NotificationKind.PUSH_DETAIL,
    "activityFiles": NotificationKind.PING_FILE,
}


@dataclass(frozen=True)
class ProviderNotification:
    """One notification item, classified."""

    kind: NotificationKind
    provider: str
    provider_user_id: str
    activity_id: str | None
    file_url: str | None
    file_type: str | None
    summary: dict[str, Any] | None
    samples: list[dict[str, Any]] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_push(self) -> bool:
        return self.kind is not NotificationKind.PING_FILE


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def extract_file_url(item: dict[str, Any], body: dict[str, Any] | None = None) -> str | None:
    for key in FILE_URL_KEYS:
        url = _text(item.get(key))
        if url:
            return url
    if body is not None:
        for key in FILE_URL_KEYS:
            url = _text(body.get(key))
            if url:
                return url
    return None


def _activity_id(item: dict[str, Any], summary: dict[str, Any] | None) -> str | None:
    activity_id = _text(item.get("activityId"))
    if activity_id is None and summary:
        activity_id = _text(summary.get("activityId"))
    if activity_id is None:
        activity_id = _text(item.get("summaryId"))
    return activity_id


def _build(kind: NotificationKind, item: dict[str, Any], body: dict[str, Any]) -> ProviderNotification:
    if not isinstance(item, dict):
        raise InvalidWebhookPayload(f"{kind.value} item is not an object")

    provider_user_id = _text(item.get("userId"))
    if provider_user_id is None:
        raise InvalidWebhookPayload(f"{kind.value} item has no userId")

    file_url = extract_file_url(item, body)

    samples: list[dict[str, Any]] = []
    if kind is NotificationKind.PUSH_DETAIL:
        summary = item.get("summary")
        if not isinstance(summary, dict):
            raise InvalidWebhookPayload("activityDetails item has no summary")
        raw_samples = item.get("samples")
        if isinstance(raw_samples, list):
            samples = raw_samples
    elif kind is NotificationKind.PUSH_SUMMARY:
        summary = item
    else:
        summary = None

    return ProviderNotification(
        kind=kind,
        provider=PROVIDER,
        provider_user_id=provider_user_id,
        activity_id=_activity_id(item, summary),
        file_url=file_url,
        file_type=_text(item.get("fileType")),
        summary=summary,
        samples=samples,
        payload=item,
    )


def classify_payload(body: Any) -> list[ProviderNotification]:
    """Split a webhook body into classified notifications.

    Args:
        body: Parsed JSON body

    Returns:
        One ProviderNotification per item (empty lists yield no notifications)

    Raises:
        InvalidWebhookPayload: Body matches none of the known shapes
    """
    if not isinstance(body, dict):
        raise InvalidWebhookPayload("Webhook body must be a JSON object")

    notifications: list[ProviderNotification] = []
    matched = False
    for key, kind in LIST_KEYS.items():
        if key not in body:
            continue
        items = body[key]
        if not isinstance(items, list):
            raise InvalidWebhookPayload(f"'{key}' must be a list")
        matched = True
        notifications.extend(_build(kind, item, body) for item in items)

    if matched:
        return notifications

    if "userId" in body:
        if any(body.get(marker) is not None for marker in SUMMARY_MARKERS):
            return [_build(NotificationKind.PUSH_SUMMARY, body, body)]
        if extract_file_url(body):
            return [_build(NotificationKind.PING_FILE, body, body)]

    raise InvalidWebhookPayload(f"Unrecognized webhook shape (keys: {sorted(body)[:10]})")
