"""
Reporting Service — read path for stored campaign data.
Decrypts campaign names and adds derived metrics (CTR, CPC, CPA, CPM,
efficiency score and category labels) to each row.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.field_guard import decrypt_field
from adsync.models import CampaignData, SyncHistory
from adsync.services.sync_service import DateRange

logger = logging.getLogger(__name__)

KNOWN_CAMPAIGN_TYPES = ("search", "display", "shopping", "video", "app")


# ── Metric computation ────────────────────────────────────────────────

def categorize_performance(ctr: float, cpc: float) -> str:
    if ctr > 5 and cpc < 2:
        return "Excellent"
    if ctr > 2 and cpc < 5:
        return "Good"
    if ctr > 1 and cpc < 10:
        return "Average"
    return "Poor"


def categorize_campaign_type(campaign_type: Optional[str]) -> str:
    if not campaign_type:
        return "Unknown"
    t = campaign_type.lower()
    if t in KNOWN_CAMPAIGN_TYPES:
        return t.capitalize()
    return "Other"


def calculate_efficiency_score(
    ctr: float, cpc: float, conversions: float, clicks: int, spend: float
) -> int:
    """
    0–100 blend of normalized CTR, CPC, conversion rate and ROAS
    (weights 0.1 / 0.1 / 0.4 / 0.4). ROAS here is conversions per
    currency unit, since revenue is not synced.
    """
    conversion_rate = conversions / clicks * 100 if clicks > 0 else 0
    roas = conversions / spend if spend > 0 else 0

    ctr_score = min(100, ctr * 10)
    cpc_score = max(0, 100 - cpc * 10)
    conversion_rate_score = min(100, conversion_rate * 100)
    roas_score = min(100, roas * 100)

    return round(
        ctr_score * 0.1 + cpc_score * 0.1 + conversion_rate_score * 0.4 + roas_score * 0.4
    )


def serialize_campaign_row(row: CampaignData) -> dict:
    """Plain dict of a stored row with the campaign name decrypted."""
    return {
        "id": str(row.id),
        "connected_account_id": str(row.connected_account_id),
        "campaign_id": row.campaign_id,
        "campaign_name": decrypt_field(row.campaign_name, "campaign_name"),
        "campaign_type": row.campaign_type,
        "campaign_sub_type": row.campaign_sub_type,
        "date": row.date.isoformat() if row.date else None,
        "spend": float(row.spend or 0),
        "impressions": int(row.impressions or 0),
        "clicks": int(row.clicks or 0),
        "conversions": float(row.conversions or 0),
    }


def enrich_campaign_row(row: dict) -> dict:
    """Add derived metrics to a serialized campaign row."""
    out = dict(row)
    spend = float(out.get("spend") or 0)
    impressions = int(out.get("impressions") or 0)
    clicks = int(out.get("clicks") or 0)
    conversions = float(out.get("conversions") or 0)

    ctr = clicks / impressions * 100 if impressions > 0 else 0
    cpc = spend / clicks if clicks > 0 else 0
    cpa = spend / conversions if conversions > 0 else 0
    cpm = spend / impressions * 1000 if impressions > 0 else 0

    out["ctr"] = ctr
    out["cpc"] = cpc
    out["cpa"] = cpa
    out["cpm"] = cpm
    out["performance_category"] = categorize_performance(ctr, cpc)
    out["campaign_category"] = categorize_campaign_type(out.get("campaign_type"))
    out["efficiency_score"] = calculate_efficiency_score(ctr, cpc, conversions, clicks, spend)
    return out


def compute_metrics(rows: list) -> dict:
    """Aggregate metrics across a list of campaign row dicts."""
    total_spend = sum(float(r.get("spend") or 0) for r in rows)
    total_impressions = sum(int(r.get("impressions") or 0) for r in rows)
    total_clicks = sum(int(r.get("clicks") or 0) for r in rows)
    total_conversions = sum(float(r.get("conversions") or 0) for r in rows)

    ctr = (total_clicks / total_impressions * 100) if total_impressions > 0 else 0
    cpc = (total_spend / total_clicks) if total_clicks > 0 else 0
    cpa = (total_spend / total_conversions) if total_conversions > 0 else 0
    cpm = (total_spend / total_impressions * 1000) if total_impressions > 0 else 0

    return {
        "spend": round(total_spend, 2),
        "impressions": total_impressions,
        "clicks": total_clicks,
        "conversions": round(total_conversions, 2),
        "ctr": round(ctr, 2),
        "cpc": round(cpc, 2),
        "cpa": round(cpa, 2),
        "cpm": round(cpm, 2),
        "campaigns": len({r.get("campaign_id") for r in rows}),
    }


# ══════════════════════════════════════════════════════════════════════
#  DB QUERIES
# ══════════════════════════════════════════════════════════════════════

async def get_campaign_data(
    db: AsyncSession,
    connected_account_id: uuid.UUID,
    date_range: Optional[DateRange] = None,
) -> list[dict]:
    """Stored rows for an account, newest first, decrypted and enriched."""
    query = select(CampaignData).where(CampaignData.connected_account_id == connected_account_id)
    if date_range is not None:
        query = query.where(
            CampaignData.date >= date_range.start,
            CampaignData.date <= date_range.end,
        )
    result = await db.execute(query.order_by(CampaignData.date.desc(), CampaignData.campaign_id))
    rows = result.scalars().all()
    logger.info(f"Loaded {len(rows)} campaign rows for account {connected_account_id}")
    return [enrich_campaign_row(serialize_campaign_row(r)) for r in rows]


async def get_sync_history(
    db: AsyncSession,
    connected_account_id: uuid.UUID,
    limit: int = 20,
) -> list[dict]:
    result = await db.execute(
        select(SyncHistory)
        .where(SyncHistory.connected_account_id == connected_account_id)
        .order_by(SyncHistory.synced_at.desc())
        .limit(limit)
    )
    return [
        {
            "id": str(h.id),
            "synced_at": h.synced_at.isoformat() if h.synced_at else None,
            "status": h.status,
            "records_synced": h.records_synced,
            "duration_ms": h.duration_ms,
            "duration": h.formatted_duration,
            "error_message": h.error_message,
        }
        for h in result.scalars().all()
    ]
