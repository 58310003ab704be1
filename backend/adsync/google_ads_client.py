"""
Google Ads Client
Talks to Google's OAuth2 endpoints and the Google Ads API.
OAuth and GAQL search go over REST with httpx; account discovery can also
go through the google-ads SDK CustomerService.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from adsync.config import Settings, get_settings

logger = logging.getLogger(__name__)

# ── Endpoints ─────────────────────────────────────────────────────────
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_ADS_API_BASE = "https://googleads.googleapis.com"
GOOGLE_ADS_SCOPE = "https://www.googleapis.com/auth/adwords"

CUSTOMER_DETAILS_QUERY = (
    "SELECT customer.id, customer.descriptive_name, customer.manager, "
    "customer.time_zone, customer.test_account FROM customer LIMIT 1"
)

# gRPC status names the SDK reports, mapped to the HTTP status REST would give
_GRPC_TO_HTTP = {
    "UNAUTHENTICATED": 401,
    "PERMISSION_DENIED": 403,
    "NOT_FOUND": 404,
    "RESOURCE_EXHAUSTED": 429,
    "INVALID_ARGUMENT": 400,
    "INTERNAL": 500,
    "UNAVAILABLE": 503,
}


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None  # naive UTC


def _expires_at(expires_in: Any) -> Optional[datetime]:
    if not expires_in:
        return None
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now + timedelta(seconds=int(expires_in))


def customer_id_from_resource_name(resource_name: str) -> str:
    """'customers/1234567890' -> '1234567890'."""
    return resource_name.split("/")[-1] if resource_name else ""


class GoogleAdsClient:
    """
    Thin async wrapper around the Google OAuth2 and Google Ads endpoints.
    Pass `transport` to route every httpx call through a custom transport.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._timeout = timeout

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    # ── OAuth2 ────────────────────────────────────────────────────────

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.google_ads_client_id,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_ADS_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.settings.google_ads_client_id,
            "client_secret": self.settings.google_ads_client_secret,
            "redirect_uri": self.settings.oauth_redirect_uri,
        })
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_expires_at(data.get("expires_in")),
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Google keeps the refresh token unless it sends a new one."""
        data = await self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.settings.google_ads_client_id,
            "client_secret": self.settings.google_ads_client_secret,
        })
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=_expires_at(data.get("expires_in")),
        )

    async def revoke(self, token: str) -> None:
        try:
            async with self._http() as client:
                response = await client.post(GOOGLE_REVOKE_URL, data={"token": token})
        except httpx.HTTPError as e:
            raise GoogleAdsAPIError(f"Token revocation failed: {e}") from e
        if response.status_code >= 400:
            raise GoogleAdsAPIError(
                f"Token revocation failed: {_error_message(response)}", response.status_code
            )

    async def _post_token(self, form: dict[str, str]) -> dict:
        try:
            async with self._http() as client:
                response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            raise GoogleAdsAPIError(f"Token endpoint unreachable: {e}") from e

        if response.status_code >= 400:
            raise GoogleAdsAPIError(_error_message(response), response.status_code)
        data = response.json()
        if not data.get("access_token"):
            raise GoogleAdsAPIError("Token response did not include an access_token", response.status_code)
        return data

    # ── Google Ads REST ───────────────────────────────────────────────

    def _ads_headers(self, access_token: str) -> dict[str, str]:
        h = {
            "developer-token": self.settings.google_ads_developer_token,
            "Authorization": f"Bearer {access_token}",
        }
        login_cid = "".join(ch for ch in self.settings.google_ads_login_customer_id if ch.isdigit())
        if len(login_cid) == 10:
            h["login-customer-id"] = login_cid
        return h

    def _ads_url(self, path: str) -> str:
        return f"{GOOGLE_ADS_API_BASE}/{self.settings.google_ads_api_version}/{path}"

    async def list_accessible_customers(self, access_token: str) -> list[str]:
        """Resource names ('customers/123...') the token can reach."""
        try:
            async with self._http() as client:
                response = await client.get(
                    self._ads_url("customers:listAccessibleCustomers"),
                    headers=self._ads_headers(access_token),
                )
        except httpx.HTTPError as e:
            raise GoogleAdsAPIError(f"listAccessibleCustomers failed: {e}") from e
        if response.status_code >= 400:
            raise GoogleAdsAPIError(_error_message(response), response.status_code)
        return response.json().get("resourceNames", [])

    async def search(self, customer_id: str, access_token: str, query: str) -> list[dict]:
        """
        Run a GAQL query and return every result row across all pages.
        The API fixes the page size server-side; we only follow nextPageToken.
        """
        rows: list[dict] = []
        page_token: Optional[str] = None
        url = self._ads_url(f"customers/{customer_id}/googleAds:search")
        headers = self._ads_headers(access_token)

        async with self._http() as client:
            while True:
                body: dict[str, Any] = {"query": query}
                if page_token:
                    body["pageToken"] = page_token
                try:
                    response = await client.post(url, json=body, headers=headers)
                except httpx.HTTPError as e:
                    raise GoogleAdsAPIError(f"Google Ads search failed: {e}") from e
                if response.status_code >= 400:
                    raise GoogleAdsAPIError(_error_message(response), response.status_code)

                data = response.json()
                rows.extend(data.get("results", []))
                page_token = data.get("nextPageToken")
                if not page_token:
                    break

        logger.info(f"Google Ads search for {customer_id} returned {len(rows)} rows")
        return rows

    async def get_customer_details(self, customer_id: str, access_token: str) -> Optional[dict]:
        """Name, manager flag, time zone and test flag of one customer, or None."""
        rows = await self.search(customer_id, access_token, CUSTOMER_DETAILS_QUERY)
        if not rows:
            return None
        customer = rows[0].get("customer") or {}
        return {
            "name": customer.get("descriptiveName"),
            "manager": bool(customer.get("manager", False)),
            "time_zone": customer.get("timeZone"),
            "test_account": bool(customer.get("testAccount", False)),
        }

    # ── google-ads SDK ────────────────────────────────────────────────

    async def list_accessible_customers_sdk(
        self, refresh_token: str, version: Optional[str] = None
    ) -> list[str]:
        """CustomerService.list_accessible_customers via the SDK, off the event loop."""
        return await asyncio.to_thread(self._sdk_list_accessible_customers, refresh_token, version)

    def _sdk_list_accessible_customers(self, refresh_token: str, version: Optional[str]) -> list[str]:
        from google.ads.googleads.client import GoogleAdsClient as SdkClient
        from google.ads.googleads.errors import GoogleAdsException

        config = {
            "developer_token": self.settings.google_ads_developer_token,
            "client_id": self.settings.google_ads_client_id,
            "client_secret": self.settings.google_ads_client_secret,
            "refresh_token": refresh_token,
            "use_proto_plus": True,
        }
        try:
            sdk = SdkClient.load_from_dict(config, version=version)
            customer_service = sdk.get_service("CustomerService")
            response = customer_service.list_accessible_customers()
        except GoogleAdsException as e:
            code_name = e.error.code().name
            messages = "; ".join(err.message for err in e.failure.errors) or code_name
            raise GoogleAdsAPIError(messages, _GRPC_TO_HTTP.get(code_name)) from e
        except Exception as e:
            # google-auth RefreshError, config ValueError, transport errors
            raise GoogleAdsAPIError(f"{type(e).__name__}: {e}") from e
        return list(response.resource_names)


def _error_message(response: httpx.Response) -> str:
    """Best-effort error text from a Google JSON error body."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:300] or f"HTTP {response.status_code}"
    err = data.get("error")
    if isinstance(err, dict):
        return err.get("status", "") + (": " if err.get("status") else "") + err.get("message", "")
    if isinstance(err, str):
        desc = data.get("error_description")
        return f"{err}: {desc}" if desc else err
    return response.text[:300]


class GoogleAdsAPIError(Exception):
    """Upstream Google OAuth / Google Ads failure, with the HTTP status when known."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


_client: Optional[GoogleAdsClient] = None


def get_google_ads_client() -> GoogleAdsClient:
    global _client
    if _client is None:
        _client = GoogleAdsClient()
    return _client
