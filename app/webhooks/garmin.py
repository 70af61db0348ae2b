"""Garmin webhook endpoint.

Rules:
- Rate limit per client IP before the body is read (429)
- Oversized bodies are refused (413)
- Shared-token mismatch is 401, unparseable or unrecognized bodies are 400
- Everything else is 200, including notifications whose processing later fails;
  Garmin disables webhooks that keep answering non-2xx
- Only receipt and deduplication happen inline; processing runs as a background task
"""

from __future__ import annotations

import hmac
import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.config.settings import settings
from app.db.session import get_session
from app.ingestion.errors import InvalidWebhookPayload
from app.webhooks.classify import classify_payload
from app.webhooks.rate_limit import SlidingWindowRateLimiter, client_ip, get_rate_limiter
from app.webhooks.reconcile import process_webhook_event, receive_notification

router = APIRouter(prefix="/webhooks/garmin", tags=["webhooks", "garmin"])


def _token_matches(request: Request) -> bool:
    expected = settings.garmin_webhook_token
    if not expected:
        return True
    provided = request.headers.get("x-webhook-token") or request.query_params.get("token") or ""
    return hmac.compare_digest(provided.encode(), expected.encode())


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "error": error, **extra})


@router.get("")
def garmin_webhook_health() -> dict[str, str]:
    """Health check used when registering the endpoint with Garmin."""
    return {"status": "ok", "provider": "garmin"}


@router.post("")
async def garmin_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> JSONResponse:
    """Receive a Garmin push or ping notification.

    Args:
        request: FastAPI request object
        background_tasks: Processing is queued here, after the response is sent
        limiter: Shared per-IP rate limiter

    Returns:
        200 with one result per notification item, or an error status as listed in the module rules
    """
    ip = client_ip(request)
    verdict = limiter.hit(ip)
    if not verdict.allowed:
        response = _error(status.HTTP_429_TOO_MANY_REQUESTS, "rate_limited", retry_after=verdict.retry_after)
        response.headers["Retry-After"] = str(verdict.retry_after)
        return response

    max_bytes = settings.webhook_max_body_bytes
    declared_length = request.headers.get("content-length")
    if declared_length and declared_length.isdigit() and int(declared_length) > max_bytes:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "payload_too_large")

    if not _token_matches(request):
        logger.warning(f"[GARMIN_WEBHOOK] Token mismatch from {ip}")
        return _error(status.HTTP_401_UNAUTHORIZED, "invalid_token")

    body = await request.body()
    if len(body) > max_bytes:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "payload_too_large")

    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.warning(f"[GARMIN_WEBHOOK] Body is not valid JSON: {e}")
        return _error(status.HTTP_400_BAD_REQUEST, "invalid_json")

    try:
        notifications = classify_payload(payload)
    except InvalidWebhookPayload as e:
        logger.warning(f"[GARMIN_WEBHOOK] Rejected payload: {e}")
        return _error(status.HTTP_400_BAD_REQUEST, "invalid_payload", detail=str(e))

    logger.info(f"[GARMIN_WEBHOOK] Received {len(notifications)} notification(s) from {ip}")

    results = []
    for notification in notifications:
        try:
            with get_session() as session:
                result = receive_notification(session, notification)
        except SQLAlchemyError as e:
            logger.exception(f"[GARMIN_WEBHOOK] Could not record notification activity_id={notification.activity_id}: {e}")
            results.append({"status": "error", "activity_id": notification.activity_id})
            continue

        if result.should_process and result.event_id:
            background_tasks.add_task(process_webhook_event, result.event_id)
        results.append({**result.as_dict(), "kind": notification.kind.value})

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"status": "acknowledged", "received": len(notifications), "results": results},
    )
