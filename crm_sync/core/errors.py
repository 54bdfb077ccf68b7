"""Error taxonomy for the sync engine."""

from __future__ import annotations


class SyncEngineError(Exception):
    """Base class for sync engine errors."""


class ConfigurationError(SyncEngineError):
    """Required secret or client credential is missing."""


class TokenDecryptionError(SyncEngineError):
    """Ciphertext is malformed or failed authentication."""


class AuthExpiredError(SyncEngineError):
    """Credentials can no longer be used; the user must reconnect."""

    def __init__(self, message: str = "Authorization expired, reconnect required") -> None:
        super().__init__(message)


class InvalidOAuthStateError(SyncEngineError):
    """OAuth state value is unknown, expired or already consumed."""


class IntegrationNotFoundError(SyncEngineError):
    """No active integration exists for the requested user and type."""


class ProviderError(SyncEngineError):
    """Provider call failed after retries."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after


class CursorExpiredError(SyncEngineError):
    """Provider rejected the stored incremental cursor."""
