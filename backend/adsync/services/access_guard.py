"""
Access Guards — process-local token revocation list, per-user token access
rate limiting, and pending OAuth state tracking.

All state lives in memory and resets on restart. Each guard sits behind a
narrow interface (is_revoked / record_attempt / consume) so a shared store
can replace it without touching callers.
"""

import logging
import secrets
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from adsync.config import get_settings

logger = logging.getLogger(__name__)


# ── Revoked token fingerprints ────────────────────────────────────────

class RevokedTokenRegistry:
    """Set of SHA-256 token fingerprints that must no longer be honoured."""

    def __init__(self):
        self._hashes: set[str] = set()

    def revoke(self, token_hash: str) -> None:
        if token_hash:
            self._hashes.add(token_hash)

    def is_revoked(self, token_hash: Optional[str]) -> bool:
        return bool(token_hash) and token_hash in self._hashes

    def clear(self) -> None:
        self._hashes.clear()

    def __len__(self) -> int:
        return len(self._hashes)


# ── Sliding window rate limiter ───────────────────────────────────────

@dataclass
class RateLimitResult:
    """
    Outcome of one attempt.

    Attributes:
        allowed:     Whether the attempt was admitted.
        remaining:   Attempts left in the current window.
        limit:       Maximum attempts per window.
        retry_after: Seconds until the oldest attempt leaves the window (0 if allowed).
    """

    allowed: bool
    remaining: int
    limit: int
    retry_after: float


class SlidingWindowRateLimiter:
    """
    In-memory sliding window: at most `limit` admitted attempts per key
    within any `window_seconds` interval. Rejected attempts are not recorded,
    so a caller who is being throttled does not extend its own lockout.
    """

    def __init__(
        self,
        limit: int = 5,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: dict[str, deque[float]] = {}

    def record_attempt(self, key: str) -> RateLimitResult:
        now = self._clock()
        cutoff = now - self.window_seconds
        self._drop_idle_keys(cutoff)
        window = self._attempts.setdefault(key, deque())
        while window and window[0] <= cutoff:
            window.popleft()

        if len(window) >= self.limit:
            retry_after = max(0.0, window[0] + self.window_seconds - now)
            logger.warning(f"Rate limit exceeded for {key}: {len(window)}/{self.limit} in {self.window_seconds}s")
            return RateLimitResult(allowed=False, remaining=0, limit=self.limit, retry_after=retry_after)

        window.append(now)
        return RateLimitResult(
            allowed=True,
            remaining=self.limit - len(window),
            limit=self.limit,
            retry_after=0.0,
        )

    def _drop_idle_keys(self, cutoff: float) -> None:
        idle = [k for k, w in self._attempts.items() if not w or w[-1] <= cutoff]
        for k in idle:
            del self._attempts[k]

    def __len__(self) -> int:
        return len(self._attempts)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._attempts.clear()
        else:
            self._attempts.pop(key, None)


# ── Pending OAuth states ──────────────────────────────────────────────

def make_oauth_state(user_id: str) -> str:
    """`<user id>-<epoch ms>-<random>`."""
    return f"{user_id}-{int(time.time() * 1000)}-{secrets.token_urlsafe(8)}"


class PendingStateStore:
    """
    OAuth `state` values issued by /authorize, each bound to the user who
    asked for it. A state is valid once and for `ttl_seconds`.
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: dict[str, tuple[str, float]] = {}

    def issue(self, state: str, user_id: str) -> None:
        self._purge()
        self._pending[state] = (user_id, self._clock() + self.ttl_seconds)

    def consume(self, state: str) -> Optional[str]:
        """Return the owning user id and forget the state, or None if unknown/expired."""
        self._purge()
        entry = self._pending.pop(state, None)
        if entry is None:
            return None
        return entry[0]

    def _purge(self) -> None:
        now = self._clock()
        for key in [k for k, (_, exp) in self._pending.items() if exp <= now]:
            del self._pending[key]

    def __len__(self) -> int:
        return len(self._pending)


# ── Process-wide instances ────────────────────────────────────────────

revoked_tokens = RevokedTokenRegistry()
pending_states = PendingStateStore()
_token_rate_limiter: Optional[SlidingWindowRateLimiter] = None


def get_token_rate_limiter() -> SlidingWindowRateLimiter:
    global _token_rate_limiter
    if _token_rate_limiter is None:
        settings = get_settings()
        _token_rate_limiter = SlidingWindowRateLimiter(
            limit=settings.token_access_limit,
            window_seconds=settings.token_access_window_seconds,
        )
    return _token_rate_limiter
