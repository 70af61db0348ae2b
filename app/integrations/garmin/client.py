"""Garmin Health API client.

Thin, synchronous client used by webhook reconciliation and backfill.

- Bearer-token authenticated
- Explicit timeouts on every call, no retries (retrying is the reprocessing pass's job)
- HTTP failures are translated into the ingestion error taxonomy
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from app.config.settings import settings
from app.ingestion.errors import (
    AuthExpiredError,
    PermissionDeniedError,
    TransientProviderError,
    UnrecoverableFileReferenceError,
)

# Callback URLs in activityFiles pings carry a token that expires after 24 hours
EXPIRED_FILE_STATUSES = {400, 404, 410}


def _activities_url() -> str:
    return f"{settings.garmin_api_base_url}/activities"


def _backfill_url() -> str:
    return f"{settings.garmin_api_base_url}/backfill/activities"


class GarminClient:
    """Garmin API client for a single user's access token."""

    def __init__(self, access_token: str, user_id: str | None = None):
        """Initialize Garmin client.

        Args:
            access_token: Decrypted Garmin access token
            user_id: User ID, only used for log context
        """
        self._access_token = access_token
        self._user_id = user_id

    def _headers(self, accept: str = "application/json") -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": accept,
        }

    def _get(self, url: str, *, params: dict[str, Any] | None = None, timeout: float, accept: str = "application/json") -> httpx.Response:
        try:
            return httpx.get(url, params=params, headers=self._headers(accept), timeout=timeout, follow_redirects=True)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Garmin request timed out: {url}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Garmin request failed: {type(e).__name__}: {e}") from e

    def _raise_for_status(self, resp: httpx.Response, context: str) -> None:
        status = resp.status_code
        if status < 400:
            return
        if status == 401:
            raise AuthExpiredError(f"Garmin rejected access token during {context} (user_id={self._user_id})")
        if status == 403:
            raise PermissionDeniedError(f"Garmin denied {context}: data-sharing permission missing (user_id={self._user_id})")
        raise TransientProviderError(f"Garmin {context} failed with HTTP {status}")

    def fetch_activity_detail(self, activity_id: str) -> dict[str, Any]:
        """Fetch the activity summary for a ping notification.

        This is the JSON API. The file URL from a ping is binary and goes
        through download_activity_file().

        Args:
            activity_id: Garmin activity ID

        Returns:
            Activity summary payload

        Raises:
            AuthExpiredError: 401
            PermissionDeniedError: 403
            TransientProviderError: Network failure, timeout, or other HTTP error
        """
        logger.debug(f"[GARMIN_CLIENT] Fetching activity detail: {activity_id}")
        resp = self._get(f"{_activities_url()}/{activity_id}", timeout=settings.http_timeout_seconds)
        self._raise_for_status(resp, f"activity detail {activity_id}")

        try:
            data = resp.json()
        except ValueError as e:
            raise TransientProviderError(f"Garmin activity detail {activity_id} was not JSON") from e

        if isinstance(data, list):
            data = next((item for item in data if isinstance(item, dict)), None)
        if not isinstance(data, dict) or not data:
            raise TransientProviderError(f"Garmin returned no detail for activity {activity_id}")
        return data

    def download_activity_file(self, file_url: str) -> bytes:
        """Download a binary activity file (FIT) from a callback URL.

        Raises:
            UnrecoverableFileReferenceError: URL expired or gone (400/404/410)
            AuthExpiredError: 401
            PermissionDeniedError: 403
            TransientProviderError: Network failure, timeout, 5xx
        """
        logger.debug(f"[GARMIN_CLIENT] Downloading activity file for user_id={self._user_id}")
        resp = self._get(file_url, timeout=settings.file_download_timeout_seconds, accept="application/octet-stream")
        if resp.status_code in EXPIRED_FILE_STATUSES:
            raise UnrecoverableFileReferenceError(f"Activity file URL no longer valid (HTTP {resp.status_code})")
        self._raise_for_status(resp, "activity file download")
        logger.debug(f"[GARMIN_CLIENT] Downloaded {len(resp.content)} bytes")
        return resp.content

    def request_backfill(self, start_seconds: int, end_seconds: int) -> httpx.Response:
        """Ask Garmin to redeliver activity summaries for a time window.

        The response is returned as-is: 202, 409, 401 and 403 each mean
        something different to the caller. Network failures raise
        TransientProviderError.
        """
        return self._get(
            _backfill_url(),
            params={
                "summaryStartTimeInSeconds": start_seconds,
                "summaryEndTimeInSeconds": end_seconds,
            },
            timeout=settings.http_timeout_seconds,
        )
