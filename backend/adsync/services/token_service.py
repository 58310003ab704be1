"""
Token Service — OAuth token lifecycle for Google Ads connected accounts.

Issues authorization URLs, exchanges codes, discovers the customer id,
stores tokens encrypted, and hands out fresh plaintext tokens on demand
(refreshing, rate limiting and revocation checks included).
Plaintext tokens exist only inside this module's call frames and in the
TokenPair handed back to the caller.
"""

import enum
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.config import Settings, get_settings
from adsync.crypto import get_cipher, hash_value
from adsync.errors import (
    AccountDiscoveryError,
    DecryptionError,
    ExpiredNoRefreshError,
    InvalidStateError,
    NotFoundError,
    RateLimitError,
    RefreshFailedError,
    RevokedError,
    TokenExchangeError,
)
from adsync.field_guard import decrypt_field, looks_encrypted
from adsync.google_ads_client import (
    GoogleAdsAPIError,
    GoogleAdsClient,
    TokenSet,
    customer_id_from_resource_name,
    get_google_ads_client,
)
from adsync.models import ConnectedAccount, Platform
from adsync.services.access_guard import (
    PendingStateStore,
    RevokedTokenRegistry,
    SlidingWindowRateLimiter,
    get_token_rate_limiter,
    make_oauth_state,
    pending_states,
    revoked_tokens,
)
from adsync.services.security_events import SecurityEventLog, security_events

logger = logging.getLogger(__name__)

CUSTOMER_ID_RE = re.compile(r"^\d{10}$")

# Upstream messages that mean no strategy can succeed, so discovery stops early
_PERMISSION_MARKERS = ("PERMISSION_DENIED", "has not been used in project", "is disabled")


class TokenState(str, enum.Enum):
    NO_TOKEN = "no_token"
    VALID = "valid"
    EXPIRED = "expired"
    REFRESH_FAILED = "refresh_failed"
    REVOKED = "revoked"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    connected_account_id: uuid.UUID
    external_account_id: str


DiscoveryStrategy = tuple[str, Callable[[str, Optional[str]], Awaitable[list[str]]]]


def _is_permission_error(exc: GoogleAdsAPIError) -> bool:
    if exc.status_code == 403:
        return True
    return any(marker in exc.message for marker in _PERMISSION_MARKERS)


class TokenService:
    def __init__(
        self,
        db: AsyncSession,
        client: Optional[GoogleAdsClient] = None,
        settings: Optional[Settings] = None,
        revoked: Optional[RevokedTokenRegistry] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        states: Optional[PendingStateStore] = None,
        events: Optional[SecurityEventLog] = None,
    ):
        self.db = db
        self.client = client or get_google_ads_client()
        self.settings = settings or get_settings()
        self.revoked = revoked if revoked is not None else revoked_tokens
        self.rate_limiter = rate_limiter if rate_limiter is not None else get_token_rate_limiter()
        self.states = states if states is not None else pending_states
        self.events = events if events is not None else security_events

    # ── State ─────────────────────────────────────────────────────────

    def token_state(self, account: ConnectedAccount) -> TokenState:
        if not account.access_token:
            return TokenState.NO_TOKEN
        if self.revoked.is_revoked(account.access_token_hash):
            return TokenState.REVOKED
        if not account.is_active:
            return TokenState.REFRESH_FAILED
        if account.is_token_expired:
            return TokenState.EXPIRED
        return TokenState.VALID

    # ── Authorization ─────────────────────────────────────────────────

    def generate_authorization_url(self, user_id: Any) -> tuple[str, str]:
        """Consent URL plus the state value the callback must present."""
        state = make_oauth_state(str(user_id))
        self.states.issue(state, str(user_id))
        self.events.log_security_event("oauth_authorization_started", {}, user_id=user_id)
        return self.client.build_authorization_url(state), state

    async def exchange_code(self, code: str) -> TokenSet:
        try:
            tokens = await self.client.exchange_code(code)
        except GoogleAdsAPIError as e:
            logger.error(f"Authorization code exchange failed: {e}")
            self.events.log_security_event("oauth_code_exchange_failed", {"error": e.message})
            raise TokenExchangeError(f"Failed to exchange authorization code: {e.message}") from e
        logger.info(
            f"Code exchanged (access token length {len(tokens.access_token)}, "
            f"refresh token {'present' if tokens.refresh_token else 'absent'})"
        )
        return tokens

    # ── Account discovery ─────────────────────────────────────────────

    def discovery_strategies(self) -> list[DiscoveryStrategy]:
        """Ordered; the first strategy yielding a valid 10-digit id wins."""
        version = self.settings.google_ads_api_version

        async def sdk_default(access_token: str, refresh_token: Optional[str]) -> list[str]:
            if not refresh_token:
                raise GoogleAdsAPIError("refresh token required for SDK discovery")
            return await self.client.list_accessible_customers_sdk(refresh_token)

        async def sdk_pinned(access_token: str, refresh_token: Optional[str]) -> list[str]:
            if not refresh_token:
                raise GoogleAdsAPIError("refresh token required for SDK discovery")
            return await self.client.list_accessible_customers_sdk(refresh_token, version=version)

        async def rest(access_token: str, refresh_token: Optional[str]) -> list[str]:
            return await self.client.list_accessible_customers(access_token)

        return [
            ("sdk_customer_service", sdk_default),
            ("sdk_pinned_version", sdk_pinned),
            ("rest_list_accessible_customers", rest),
        ]

    async def resolve_external_account_id(
        self, access_token: str, refresh_token: Optional[str] = None
    ) -> str:
        customers = await self.discover_customers(access_token, refresh_token)
        return customers[0]

    async def discover_customers(
        self, access_token: str, refresh_token: Optional[str] = None
    ) -> list[str]:
        """Every valid customer id reachable by the grant, from the first strategy that yields one."""
        attempts: list[tuple[str, str]] = []
        for name, strategy in self.discovery_strategies():
            try:
                resource_names = await strategy(access_token, refresh_token)
            except GoogleAdsAPIError as e:
                logger.warning(f"Customer discovery via {name} failed: {e.message}")
                attempts.append((name, e.message))
                if _is_permission_error(e):
                    raise AccountDiscoveryError(
                        "Google Ads API access denied; check that the API is enabled "
                        "and the developer token is approved",
                        attempts,
                    ) from e
                continue

            if not resource_names:
                attempts.append((name, "no accessible customers"))
                continue
            ids = [customer_id_from_resource_name(r) for r in resource_names]
            valid = [cid for cid in ids if CUSTOMER_ID_RE.match(cid)]
            if not valid:
                attempts.append((name, f"invalid customer id format: {ids[0]!r}"))
                continue

            logger.info(f"{len(valid)} customer id(s) resolved via {name}, primary {valid[0]}")
            return valid

        raise AccountDiscoveryError("Could not determine a Google Ads customer id", attempts)

    # ── Storage ───────────────────────────────────────────────────────

    async def store_tokens(
        self,
        user_id: uuid.UUID,
        external_account_id: Optional[str],
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> ConnectedAccount:
        """
        Upsert the (user, google_ads, external id) account with encrypted
        tokens. A re-auth that returns no refresh token keeps the stored one.
        """
        customers: Optional[list[str]] = None
        if not external_account_id:
            customers = await self.discover_customers(access_token, refresh_token)
            external_account_id = customers[0]

        result = await self.db.execute(
            select(ConnectedAccount).where(
                ConnectedAccount.user_id == user_id,
                ConnectedAccount.platform == Platform.GOOGLE_ADS.value,
                ConnectedAccount.external_account_id == external_account_id,
            )
        )
        account = result.scalar_one_or_none()
        created = account is None
        if created:
            account = ConnectedAccount(
                user_id=user_id,
                platform=Platform.GOOGLE_ADS.value,
                external_account_id=external_account_id,
            )
            self.db.add(account)

        self._apply_tokens(account, access_token, refresh_token, expires_at)
        if customers:
            account.accessible_customers = customers
        elif not account.accessible_customers:
            account.accessible_customers = [external_account_id]
        await self._apply_customer_details(account, access_token)
        account.is_active = True
        await self.db.commit()

        self.events.log_security_event(
            "tokens_stored",
            {"created": created, "external_account_id": external_account_id},
            user_id=user_id,
            account_id=account.id,
        )
        logger.info(f"{'Created' if created else 'Updated'} connected account {account.id} for user {user_id}")
        return account

    async def _apply_customer_details(self, account: ConnectedAccount, access_token: str) -> None:
        """Best effort: a failed lookup leaves the metadata columns as they were."""
        try:
            details = await self.client.get_customer_details(account.external_account_id, access_token)
        except GoogleAdsAPIError as e:
            logger.warning(f"Customer details lookup failed for {account.external_account_id}: {e.message}")
            return
        if not details:
            return

        account.account_name = details.get("name") or account.account_name
        account.is_manager_account = details.get("manager", False)
        account.account_timezone = details.get("time_zone") or account.account_timezone
        account.is_test_account = details.get("test_account", False)

        login_cid = "".join(ch for ch in self.settings.google_ads_login_customer_id if ch.isdigit())
        if len(login_cid) == 10 and login_cid != account.external_account_id:
            account.parent_account_id = login_cid

    async def rename_account(
        self, connected_account_id: uuid.UUID, user_id: Any, display_name: Optional[str]
    ) -> ConnectedAccount:
        """Set the user-facing label; an empty name falls back to the Google Ads name."""
        account = await self.get_owned_account(connected_account_id, user_id)
        account.display_name = (display_name or "").strip() or None
        await self.db.commit()
        logger.info(f"Renamed connected account {account.id}")
        return account

    def _apply_tokens(
        self,
        account: ConnectedAccount,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> None:
        """Provider tokens are always plaintext here, so they are encrypted unconditionally."""
        cipher = get_cipher()
        account.access_token = cipher.encrypt(access_token)
        account.access_token_hash = hash_value(access_token)
        if refresh_token:
            account.refresh_token = cipher.encrypt(refresh_token)
            account.refresh_token_hash = hash_value(refresh_token)
        account.expires_at = expires_at

    # ── Retrieval ─────────────────────────────────────────────────────

    async def retrieve_tokens(
        self,
        connected_account_id: uuid.UUID,
        requesting_user_id: Optional[Any] = None,
        force_refresh: bool = False,
    ) -> TokenPair:
        if requesting_user_id is not None:
            check = self.rate_limiter.record_attempt(str(requesting_user_id))
            if not check.allowed:
                self.events.log_security_event(
                    "token_access_rate_limited",
                    {"retry_after": round(check.retry_after, 1)},
                    user_id=requesting_user_id,
                    account_id=connected_account_id,
                )
                raise RateLimitError(
                    "Too many token access attempts. Please try again later.",
                    retry_after=check.retry_after,
                )

        account = await self.db.get(ConnectedAccount, connected_account_id)
        if account is None or (
            requesting_user_id is not None and str(account.user_id) != str(requesting_user_id)
        ):
            raise NotFoundError("Connected account not found")
        if not account.access_token:
            raise InvalidStateError("Connected account has no access token")
        if self.revoked.is_revoked(account.access_token_hash):
            self.events.log_security_event(
                "revoked_token_access_attempt", {}, user_id=requesting_user_id, account_id=account.id
            )
            raise RevokedError("Access token has been revoked. Please reconnect the account.")
        if not account.is_active:
            raise RefreshFailedError("Token refresh previously failed. Please reconnect the account.")

        try:
            access_token = decrypt_field(account.access_token, "access_token")
            refresh_token = decrypt_field(account.refresh_token, "refresh_token")
        except DecryptionError:
            self.events.log_security_event(
                "token_decryption_failed", {}, user_id=requesting_user_id, account_id=account.id
            )
            raise

        dirty = self._upgrade_ciphertexts(account, access_token, refresh_token)

        if force_refresh or account.is_token_expired:
            access_token, refresh_token = await self._refresh(account, refresh_token, requesting_user_id)
            dirty = True

        if dirty:
            await self.db.commit()

        self.events.log_security_event(
            "token_accessed", {"force_refresh": force_refresh}, user_id=requesting_user_id, account_id=account.id
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=account.expires_at,
            connected_account_id=account.id,
            external_account_id=account.external_account_id,
        )

    def _upgrade_ciphertexts(
        self, account: ConnectedAccount, access_token: str, refresh_token: Optional[str]
    ) -> bool:
        """Re-encrypt tokens stored under a previous key (or left in plaintext)."""
        cipher = get_cipher()
        changed = False
        stored_access = account.access_token
        if not looks_encrypted(stored_access) or not cipher.is_current(stored_access):
            account.access_token = cipher.encrypt(access_token)
            changed = True
        stored_refresh = account.refresh_token
        if refresh_token and (not looks_encrypted(stored_refresh) or not cipher.is_current(stored_refresh)):
            account.refresh_token = cipher.encrypt(refresh_token)
            changed = True
        if changed:
            logger.info(f"Re-encrypted tokens for account {account.id} under the current key")
        return changed

    async def _refresh(
        self, account: ConnectedAccount, refresh_token: Optional[str], requesting_user_id: Any
    ) -> tuple[str, Optional[str]]:
        if not refresh_token:
            self.events.log_security_event(
                "token_expired_no_refresh", {}, user_id=requesting_user_id, account_id=account.id
            )
            raise ExpiredNoRefreshError("Access token expired and no refresh token is available. Please reconnect.")

        try:
            tokens = await self.client.refresh_access_token(refresh_token)
        except GoogleAdsAPIError as e:
            account.is_active = False
            await self.db.commit()
            self.events.log_security_event(
                "token_refresh_failed", {"error": e.message}, user_id=requesting_user_id, account_id=account.id
            )
            logger.error(f"Token refresh failed for account {account.id}: {e}")
            raise RefreshFailedError("Failed to refresh access token. Please reconnect the account.") from e

        self._apply_tokens(account, tokens.access_token, tokens.refresh_token, tokens.expires_at)
        self.events.log_security_event("token_refreshed", {}, user_id=requesting_user_id, account_id=account.id)
        logger.info(f"Token refreshed for account {account.id}, expires at {tokens.expires_at}")
        return tokens.access_token, tokens.refresh_token

    # ── Revocation ────────────────────────────────────────────────────

    def revoke_token(self, token_hash: str) -> None:
        self.revoked.revoke(token_hash)
        self.events.log_security_event("token_revoked", {"token_hash_prefix": (token_hash or "")[:8]})

    def is_token_revoked(self, token_hash: str) -> bool:
        return self.revoked.is_revoked(token_hash)

    async def get_owned_account(self, connected_account_id: uuid.UUID, user_id: Any) -> ConnectedAccount:
        account = await self.db.get(ConnectedAccount, connected_account_id)
        if account is None or str(account.user_id) != str(user_id):
            raise NotFoundError("Connected account not found")
        return account

    async def list_accounts(self, user_id: uuid.UUID) -> list[ConnectedAccount]:
        result = await self.db.execute(
            select(ConnectedAccount)
            .where(ConnectedAccount.user_id == user_id)
            .order_by(ConnectedAccount.created_at)
        )
        return list(result.scalars().all())

    async def revoke_account(self, connected_account_id: uuid.UUID, user_id: Any) -> ConnectedAccount:
        """Revoke both stored token fingerprints; the row stays for history."""
        account = await self.get_owned_account(connected_account_id, user_id)
        for token_hash in (account.access_token_hash, account.refresh_token_hash):
            if token_hash:
                self.revoke_token(token_hash)
        return account

    async def disconnect(self, connected_account_id: uuid.UUID, user_id: Any) -> None:
        """
        Revoke the account's tokens locally and at Google, then delete it.
        Campaign data and sync history go with it.
        """
        account = await self.revoke_account(connected_account_id, user_id)

        upstream = account.refresh_token or account.access_token
        if upstream:
            try:
                await self.client.revoke(decrypt_field(upstream, "refresh_token" if account.refresh_token else "access_token"))
            except (GoogleAdsAPIError, DecryptionError) as e:
                # Local revocation already holds; Google expires the grant on its own.
                logger.warning(f"Upstream revocation failed for account {account.id}: {e}")

        await self.db.delete(account)
        await self.db.commit()
        self.events.log_security_event("account_disconnected", {}, user_id=user_id, account_id=connected_account_id)
        logger.info(f"Disconnected account {connected_account_id} for user {user_id}")
