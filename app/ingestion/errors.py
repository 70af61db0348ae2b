"""Error taxonomy for activity ingestion.

Every error carries a stable `kind` that is persisted in
WebhookEvent.error_kind, so the reprocessing pass can tell retryable
failures from permanent ones without parsing messages.

Rules:
- Retryable: TransientProviderError, AuthExpiredError (after the user reconnects)
- Permanent for the event: UnrecoverableFileReferenceError, MalformedFileError,
  DecodeError, PermissionDeniedError
- Critical: PersistenceAfterRefreshError (valid token could not be stored)
"""

from __future__ import annotations


class IngestionError(RuntimeError):
    """Base class for ingestion pipeline errors."""

    kind = "ingestion_error"
    retryable = False


class MalformedFileError(IngestionError):
    """Binary activity file is too small or has an unreadable header."""

    kind = "malformed_file"


class DecodeError(IngestionError):
    """Binary activity file stream is corrupt; partial results are discarded."""

    kind = "decode_error"


class AuthExpiredError(IngestionError):
    """Provider access could not be refreshed; the user must re-authorize."""

    kind = "auth_expired"
    retryable = True


class PersistenceAfterRefreshError(IngestionError):
    """A refreshed token pair could not be persisted.

    The provider has already rotated the refresh token, so the stored pair is
    now stale. The freshly issued access token is still usable for the
    current operation and is carried on the exception.
    """

    kind = "persistence_after_refresh"

    def __init__(self, message: str, *, access_token: str) -> None:
        super().__init__(message)
        self.access_token = access_token


class DuplicateNotification(IngestionError):
    """Notification repeats an already handled event and carries nothing new."""

    kind = "duplicate_notification"


class PermissionDeniedError(IngestionError):
    """User has not granted the data-sharing scope the request needs."""

    kind = "permission_denied"


class TransientProviderError(IngestionError):
    """Network failure, timeout, rate limit or 5xx from the provider."""

    kind = "transient"
    retryable = True


class UnrecoverableFileReferenceError(IngestionError):
    """File download URL has expired or no longer exists."""

    kind = "unrecoverable_file"


class InvalidWebhookPayload(IngestionError):
    """Webhook body does not match any known notification shape."""

    kind = "invalid_payload"
