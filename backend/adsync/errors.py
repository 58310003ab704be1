"""
Domain exceptions for the connector core.

Routers translate these into HTTP responses; services raise them with the
original cause chained (``raise ... from exc``).
"""

from typing import Optional


class AdSyncError(Exception):
    """Base class for every error raised by the connector core."""


class ConfigurationError(AdSyncError):
    """Bad or missing secret at startup. The process should refuse to start."""


class EncryptionError(AdSyncError):
    """Encryption failed or the key material is invalid."""


class DecryptionError(AdSyncError):
    """Ciphertext failed authentication against every known key."""


# ── Authentication family: caller should ask the user to reconnect ──

class AuthenticationError(AdSyncError):
    reconnect_required = True


class TokenExchangeError(AuthenticationError):
    """The provider rejected the authorization code."""


class AccountDiscoveryError(AuthenticationError):
    """No discovery strategy produced a valid external account id."""

    def __init__(self, message: str, attempts: Optional[list[tuple[str, str]]] = None):
        self.attempts = attempts or []
        if self.attempts:
            tried = "; ".join(f"{name}: {reason}" for name, reason in self.attempts)
            message = f"{message} (tried {tried})"
        super().__init__(message)


class RefreshFailedError(AuthenticationError):
    """Refresh was rejected. Terminal until the user re-authorizes."""


class RevokedError(AuthenticationError):
    """The stored access token fingerprint has been revoked."""


class ExpiredNoRefreshError(AuthenticationError):
    """Access token expired and no refresh token is stored."""


# ── Everything else ───────────────────────────────────────────────────

class RateLimitError(AdSyncError):
    def __init__(self, message: str, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(message)


class NotFoundError(AdSyncError):
    pass


class InvalidStateError(AdSyncError):
    pass


class SyncError(AdSyncError):
    """Fetch or persist failed. Earlier batches may already be committed."""
