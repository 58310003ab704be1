"""
Sync Service — pulls campaign performance from Google Ads into campaign_data.

Picks the date range (explicit, incremental from last_sync_at, or a 30-day
bootstrap), fetches through the result cache with auth/rate-limit retries,
drops malformed rows, and persists in committed batches. Every call leaves
one sync_history row behind.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.config import Settings, get_settings
from adsync.errors import AdSyncError, NotFoundError, SyncError
from adsync.field_guard import encrypt_field
from adsync.google_ads_client import GoogleAdsAPIError, GoogleAdsClient, get_google_ads_client
from adsync.models import CampaignData, ConnectedAccount, SyncHistory, SyncStatus
from adsync.services.result_cache import MISS, ResultCache, campaign_data_key
from adsync.services.token_service import TokenPair, TokenService
from adsync.utils import utcnow

logger = logging.getLogger(__name__)

DATE_PRESETS = ("today", "last_7_days", "last_30_days", "custom")

MAX_AUTH_RETRIES = 3
AUTH_BACKOFF_SECONDS = 1.0  # multiplied by attempt number
MAX_RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BACKOFF_SECONDS = 1.0  # doubled each attempt

_AUTH_MARKERS = ("token", "invalid_grant", "unauthenticated", "unauthorized")
_RATE_LIMIT_MARKERS = ("resource_exhausted", "too many requests", "rate limit")

CAMPAIGN_QUERY = """
    SELECT
      campaign.id,
      campaign.name,
      campaign.status,
      campaign.advertising_channel_type,
      campaign.advertising_channel_sub_type,
      segments.date,
      metrics.impressions,
      metrics.clicks,
      metrics.cost_micros,
      metrics.conversions
    FROM campaign
    WHERE segments.date BETWEEN '{start}' AND '{end}'
      AND campaign.status != 'REMOVED'
    ORDER BY segments.date DESC, campaign.id
"""

_shared_cache = ResultCache()


# ── Date ranges ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"start date {self.start} is after end date {self.end}")


def get_date_range(
    preset: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    today: Optional[date] = None,
) -> DateRange:
    """Return the DateRange for a named preset. Unknown presets fall back to 30 days."""
    today = today or date.today()
    if preset == "today":
        return DateRange(today, today)
    if preset == "last_7_days":
        return DateRange(today - timedelta(days=7), today)
    if preset == "custom":
        if start is None or end is None:
            raise ValueError("custom date range requires both start and end")
        return DateRange(start, end)
    return DateRange(today - timedelta(days=30), today)


def incremental_date_range(
    account: ConnectedAccount, bootstrap_days: int = 30, today: Optional[date] = None
) -> DateRange:
    """From the last sync date through today, or a bootstrap window on first sync."""
    today = today or date.today()
    if account.last_sync_at:
        return DateRange(min(account.last_sync_at.date(), today), today)
    return DateRange(today - timedelta(days=bootstrap_days), today)


def build_campaign_query(date_range: DateRange) -> str:
    return CAMPAIGN_QUERY.format(start=date_range.start.isoformat(), end=date_range.end.isoformat())


# ── Upstream error classes ────────────────────────────────────────────

def classify_upstream_error(error: GoogleAdsAPIError) -> Optional[str]:
    """'rate_limit', 'auth', or None for errors that are not retried."""
    message = error.message.lower()
    if error.status_code == 429 or any(m in message for m in _RATE_LIMIT_MARKERS):
        return "rate_limit"
    if error.status_code in (401, 403) or any(m in message for m in _AUTH_MARKERS):
        return "auth"
    return None


# ── Row transform ─────────────────────────────────────────────────────

def _pick(section: Any, *names: str) -> Any:
    """Read the first present key; REST rows are camelCase, SDK dicts snake_case."""
    if not isinstance(section, dict):
        return None
    for name in names:
        value = section.get(name)
        if value is not None:
            return value
    return None


def transform_row(row: dict) -> Optional[dict]:
    """
    Flatten one GAQL result row. Returns None when the campaign id or name
    is missing. Spend is converted from micros to currency units.
    """
    if not isinstance(row, dict):
        return None
    campaign = row.get("campaign") or {}
    segments = row.get("segments") or {}
    metrics = row.get("metrics") or {}

    campaign_id = _pick(campaign, "id")
    campaign_name = _pick(campaign, "name")
    if not campaign_id or not campaign_name:
        return None

    raw_date = _pick(segments, "date")
    cost_micros = _pick(metrics, "costMicros", "cost_micros")
    return {
        "campaign_id": str(campaign_id),
        "campaign_name": campaign_name,
        "campaign_type": _pick(campaign, "advertisingChannelType", "advertising_channel_type"),
        "campaign_sub_type": _pick(campaign, "advertisingChannelSubType", "advertising_channel_sub_type"),
        "date": date.fromisoformat(raw_date) if raw_date else date.today(),
        "spend": float(cost_micros) / 1_000_000 if cost_micros else 0.0,
        "impressions": int(_pick(metrics, "impressions") or 0),
        "clicks": int(_pick(metrics, "clicks") or 0),
        "conversions": float(_pick(metrics, "conversions") or 0),
    }


# ── Service ───────────────────────────────────────────────────────────

class SyncService:
    def __init__(
        self,
        db: AsyncSession,
        token_service: Optional[TokenService] = None,
        client: Optional[GoogleAdsClient] = None,
        cache: Optional[ResultCache] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.client = client or get_google_ads_client()
        self.tokens = token_service or TokenService(db, client=self.client, settings=self.settings)
        self.cache = cache if cache is not None else _shared_cache
        self._sleep = sleep

    async def sync_account(
        self,
        connected_account_id: uuid.UUID,
        user_id: Any,
        date_range: Optional[DateRange] = None,
    ) -> list[CampaignData]:
        started = time.monotonic()
        account = await self.db.get(ConnectedAccount, connected_account_id)
        if account is None or str(account.user_id) != str(user_id):
            raise NotFoundError("Connected account not found")

        sync_range = date_range or incremental_date_range(account, self.settings.sync_bootstrap_days)
        logger.info(f"Syncing account {connected_account_id} for {sync_range.start} → {sync_range.end}")
        history_id = await self._start_history(connected_account_id)

        stored: list[CampaignData] = []
        try:
            raw_rows = await self.fetch_campaign_data(account, user_id, sync_range)
            await self.process_and_store(connected_account_id, raw_rows, stored)
        except AdSyncError as e:
            await self._finish_history(history_id, SyncStatus.FAILED, len(stored), started, error_message=str(e))
            logger.error(f"Sync failed for account {connected_account_id} after {len(stored)} rows: {e}")
            raise

        account.last_sync_at = utcnow()
        await self._finish_history(history_id, SyncStatus.COMPLETED, len(stored), started)
        logger.info(f"Sync complete for account {connected_account_id}: {len(stored)} rows")
        return stored

    async def fetch_campaign_data(
        self, account: ConnectedAccount, user_id: Any, date_range: DateRange
    ) -> list[dict]:
        key = campaign_data_key(account.id, date_range.start.isoformat(), date_range.end.isoformat())
        cached = self.cache.get(key)
        if cached is not MISS:
            logger.info(f"Cache hit for {key}")
            return cached

        rows = await self._search_with_retries(account.id, user_id, build_campaign_query(date_range))
        self.cache.put(key, rows, self.settings.sync_cache_ttl_minutes)
        return rows

    async def _search_with_retries(self, account_id: uuid.UUID, user_id: Any, query: str) -> list[dict]:
        tokens: TokenPair = await self.tokens.retrieve_tokens(account_id, requesting_user_id=user_id)
        auth_retries = 0
        rate_retries = 0

        while True:
            try:
                return await self.client.search(tokens.external_account_id, tokens.access_token, query)
            except GoogleAdsAPIError as e:
                kind = classify_upstream_error(e)
                if kind == "auth" and auth_retries < MAX_AUTH_RETRIES:
                    auth_retries += 1
                    logger.warning(f"Auth error from Google Ads (retry {auth_retries}/{MAX_AUTH_RETRIES}): {e}")
                    await self._sleep(AUTH_BACKOFF_SECONDS * auth_retries)
                    tokens = await self.tokens.retrieve_tokens(account_id, force_refresh=True)
                    continue
                if kind == "rate_limit" and rate_retries < MAX_RATE_LIMIT_RETRIES:
                    delay = RATE_LIMIT_BACKOFF_SECONDS * (2 ** rate_retries)
                    rate_retries += 1
                    logger.warning(f"Rate limited by Google Ads (retry {rate_retries}/{MAX_RATE_LIMIT_RETRIES} in {delay}s)")
                    await self._sleep(delay)
                    continue
                raise SyncError(f"Failed to fetch campaign data: {e.message}") from e

    async def process_and_store(
        self,
        connected_account_id: uuid.UUID,
        raw_rows: list[dict],
        stored: Optional[list[CampaignData]] = None,
    ) -> list[CampaignData]:
        """
        Transform and insert rows in batches, committing each batch.
        A failing batch is rolled back and raises SyncError; earlier batches stay.
        """
        stored = stored if stored is not None else []
        batch_size = self.settings.sync_batch_size
        dropped = 0

        for offset in range(0, len(raw_rows), batch_size):
            batch: list[CampaignData] = []
            for row in raw_rows[offset:offset + batch_size]:
                try:
                    values = transform_row(row)
                except (AttributeError, TypeError, ValueError) as e:
                    logger.warning(f"Dropping malformed campaign row: {e}")
                    values = None
                if values is None:
                    dropped += 1
                    continue
                values["campaign_name"] = encrypt_field(values["campaign_name"], "campaign_name")
                batch.append(CampaignData(connected_account_id=connected_account_id, **values))

            if not batch:
                continue
            try:
                self.db.add_all(batch)
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise SyncError(
                    f"Failed to store campaign batch at offset {offset}: {e}"
                ) from e
            stored.extend(batch)

        if dropped:
            logger.info(f"Dropped {dropped} rows without campaign id or name")
        return stored

    async def _start_history(self, connected_account_id: uuid.UUID) -> uuid.UUID:
        history = SyncHistory(connected_account_id=connected_account_id, status=SyncStatus.IN_PROGRESS.value)
        self.db.add(history)
        await self.db.commit()
        return history.id

    async def _finish_history(
        self,
        history_id: uuid.UUID,
        status: SyncStatus,
        records: int,
        started: float,
        error_message: Optional[str] = None,
    ) -> None:
        # A rolled-back batch expires the session, so the row is loaded again
        history = await self.db.get(SyncHistory, history_id)
        history.status = status.value
        history.records_synced = records
        history.duration_ms = int((time.monotonic() - started) * 1000)
        history.error_message = error_message
        await self.db.commit()
