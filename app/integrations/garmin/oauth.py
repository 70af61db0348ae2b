"""Garmin OAuth2 token refresh."""

import requests
from loguru import logger

from app.config.settings import settings

TOKEN_REQUEST_TIMEOUT_SECONDS = 10


def refresh_access_token(
    *,
    client_id: str,
    client_secret: str,
    refresh_token: str,
) -> dict:
    """Exchange a refresh token for a new access token.

    Args:
        client_id: Garmin application client ID
        client_secret: Garmin application client secret
        refresh_token: Decrypted refresh token from the stored integration

    Returns:
        Token response containing access_token and usually refresh_token / expires_in

    Raises:
        requests.HTTPError: If Garmin rejects the request
        requests.RequestException: On network failure or timeout
    """
    logger.info("[GARMIN_OAUTH] Refreshing access token")
    try:
        resp = requests.post(
            settings.garmin_token_url,
            data={
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
            timeout=TOKEN_REQUEST_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        token_data = resp.json()
    except requests.HTTPError as e:
        status = e.response.status_code if e.response is not None else "unknown"
        body = e.response.text[:200] if e.response is not None else ""
        logger.error(f"[GARMIN_OAUTH] Token refresh rejected: {status} - {body}")
        raise
    except requests.RequestException as e:
        logger.error(f"[GARMIN_OAUTH] Token refresh request failed: {type(e).__name__}: {e}")
        raise
    else:
        logger.info("[GARMIN_OAUTH] Token refresh succeeded")
        return token_data
