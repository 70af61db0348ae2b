"""Garmin access token lifecycle.

Rules:
- A token expiring more than buffer_seconds from now is returned as stored
- Otherwise it is refreshed with grant_type=refresh_token before the caller proceeds
- Garmin may rotate the refresh token; keep the old one if none is returned
- A successful refresh clears sync_error
- Any refresh failure is AuthExpiredError and is never retried here;
  a rejected grant (400/401) also clears the stored tokens
- Failing to persist a refreshed pair is PersistenceAfterRefreshError, logged as critical
"""

from __future__ import annotations

from datetime import timedelta

import requests
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.encryption import EncryptionError, decrypt_token, encrypt_token
from app.db.models import Integration
from app.ingestion.errors import AuthExpiredError, PersistenceAfterRefreshError
from app.integrations.garmin.oauth import refresh_access_token
from app.utils.timezone import to_utc, utc_now

# Garmin documents 90-day access tokens; used when expires_in is missing
DEFAULT_EXPIRES_IN_SECONDS = 7_776_000
REAUTHORIZATION_REQUIRED = "reauthorization_required"


def token_needs_refresh(integration: Integration, buffer_seconds: int) -> bool:
    if not integration.access_token or integration.token_expires_at is None:
        return True
    return to_utc(integration.token_expires_at) <= utc_now() + timedelta(seconds=buffer_seconds)


def _decrypt_or_expire(integration: Integration, value: str | None, label: str) -> str:
    if not value:
        raise AuthExpiredError(f"No {label} stored for user_id={integration.user_id}. User must re-authorize.")
    try:
        return decrypt_token(value)
    except EncryptionError as e:
        logger.error(f"[GARMIN_TOKEN] Failed to decrypt {label} for user_id={integration.user_id}: {e}")
        raise AuthExpiredError(f"Stored {label} is unreadable for user_id={integration.user_id}. User must re-authorize.") from e


def get_valid_access_token(
    session: Session,
    integration: Integration,
    buffer_seconds: int | None = None,
) -> str:
    """Return a usable access token, refreshing it first when close to expiry.

    Args:
        session: Session the integration is attached to; committed after a refresh
        integration: Garmin integration row
        buffer_seconds: Refresh window before expiry (default from settings, 5 minutes)

    Returns:
        Plain text access token

    Raises:
        AuthExpiredError: Refresh impossible or rejected; the user must reconnect
        PersistenceAfterRefreshError: Refresh succeeded but the new tokens could not be saved
    """
    if buffer_seconds is None:
        buffer_seconds = settings.token_refresh_buffer_seconds

    if not token_needs_refresh(integration, buffer_seconds):
        return _decrypt_or_expire(integration, integration.access_token, "access token")

    user_id = integration.user_id
    refresh_token = _decrypt_or_expire(integration, integration.refresh_token, "refresh token")
    logger.info(f"[GARMIN_TOKEN] Token expires within {buffer_seconds}s, refreshing for user_id={user_id}")

    try:
        token_data = refresh_access_token(
            client_id=settings.garmin_client_id,
            client_secret=settings.garmin_client_secret,
            refresh_token=refresh_token,
        )
    except requests.HTTPError as e:
        status_code = e.response.status_code if e.response is not None else None
        if status_code in {400, 401}:
            logger.warning(f"[GARMIN_TOKEN] Refresh grant rejected ({status_code}) for user_id={user_id}, clearing tokens")
            integration.invalidate(REAUTHORIZATION_REQUIRED)
            session.commit()
        raise AuthExpiredError(f"Garmin token refresh failed for user_id={user_id} ({status_code}). User must re-authorize.") from e
    except requests.RequestException as e:
        raise AuthExpiredError(f"Garmin token refresh failed for user_id={user_id}: {e}") from e

    new_access_token = token_data.get("access_token")
    if not isinstance(new_access_token, str) or not new_access_token:
        raise AuthExpiredError(f"Garmin token response for user_id={user_id} has no access_token")

    expires_in = token_data.get("expires_in")
    if not isinstance(expires_in, int) or expires_in <= 0:
        expires_in = DEFAULT_EXPIRES_IN_SECONDS
    expires_at = utc_now() + timedelta(seconds=expires_in)

    new_refresh_token = token_data.get("refresh_token")
    try:
        integration.access_token = encrypt_token(new_access_token)
        if isinstance(new_refresh_token, str) and new_refresh_token:
            integration.refresh_token = encrypt_token(new_refresh_token)
        integration.token_expires_at = expires_at
        integration.sync_error = None
        session.commit()
    except (SQLAlchemyError, EncryptionError) as e:
        session.rollback()
        logger.critical(
            f"[GARMIN_TOKEN] CRITICAL: refreshed tokens for user_id={user_id} could not be persisted. "
            f"The stored refresh token is now stale; the next refresh will fail. Error: {e}"
        )
        raise PersistenceAfterRefreshError(
            f"Refreshed Garmin tokens for user_id={user_id} were not persisted",
            access_token=new_access_token,
        ) from e

    logger.info(f"[GARMIN_TOKEN] Refreshed tokens for user_id={user_id}, expires_at={expires_at.isoformat()}")
    return new_access_token
