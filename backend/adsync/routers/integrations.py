"""
Google Ads Integration Router — OAuth connect flow, account management,
campaign sync and stored campaign data.
All endpoints except the OAuth callback require a user JWT; the callback
identifies the user through the single-use `state` issued by /authorize.
"""

import logging
from datetime import date, datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.auth import get_current_user
from adsync.database import get_db
from adsync.errors import (
    AdSyncError,
    AuthenticationError,
    InvalidStateError,
    NotFoundError,
    RateLimitError,
    SyncError,
)
from adsync.models import ConnectedAccount, User
from adsync.services.reporting_service import compute_metrics, get_campaign_data, get_sync_history
from adsync.services.sync_service import DATE_PRESETS, DateRange, SyncService, get_date_range
from adsync.services.token_service import TokenService
from adsync.utils import parse_date, parse_uuid, safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────
class ConnectedAccountResponse(BaseModel):
    id: UUID
    platform: str
    external_account_id: str
    formatted_account_id: str
    display_name: str
    account_name: Optional[str] = None
    token_state: str
    is_active: bool
    is_manager_account: bool
    accessible_customers: list[str] = []
    expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class RenameRequest(BaseModel):
    display_name: Optional[str] = None


class SyncRequest(BaseModel):
    preset: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


# ── Helpers ───────────────────────────────────────────────────────────
def _account_to_response(account: ConnectedAccount, tokens: TokenService) -> dict:
    return {
        "id": account.id,
        "platform": account.platform,
        "external_account_id": account.external_account_id,
        "formatted_account_id": account.formatted_account_id,
        "display_name": account.account_display_name,
        "account_name": account.account_name,
        "token_state": tokens.token_state(account).value,
        "is_active": bool(account.is_active),
        "is_manager_account": bool(account.is_manager_account),
        "accessible_customers": list(account.accessible_customers or []),
        "expires_at": account.expires_at,
        "last_sync_at": account.last_sync_at,
        "created_at": account.created_at,
    }


def _http_error(exc: AdSyncError) -> HTTPException:
    """Translate a domain error into the HTTP response the client sees."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RateLimitError):
        return HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(max(1, int(exc.retry_after + 0.999)))},
        )
    if isinstance(exc, AuthenticationError):
        return HTTPException(
            status_code=401,
            detail={"message": str(exc), "reconnect_required": exc.reconnect_required},
        )
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, SyncError):
        return HTTPException(status_code=502, detail=str(exc))
    # DecryptionError, ConfigurationError and anything unexpected
    return HTTPException(status_code=500, detail=safe_error_detail(exc))


def _resolve_range(
    preset: Optional[str], start: Optional[date], end: Optional[date]
) -> Optional[DateRange]:
    if preset is None and start is None and end is None:
        return None
    if preset is not None and preset not in DATE_PRESETS:
        raise HTTPException(status_code=400, detail=f"Unknown preset {preset!r}. Use one of {', '.join(DATE_PRESETS)}")
    try:
        return get_date_range(preset or "custom", start, end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ── OAuth ─────────────────────────────────────────────────────────────
@router.get("/authorize")
async def authorize(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Start the consent flow. The client redirects the browser to authorization_url."""
    url, state = TokenService(db).generate_authorization_url(user.id)
    return {"authorization_url": url, "state": state}


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    if error:
        raise HTTPException(status_code=400, detail=f"Authorization was not granted: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")

    tokens = TokenService(db)
    user_id = tokens.states.consume(state)
    if user_id is None:
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state. Start the connection again.")

    try:
        token_set = await tokens.exchange_code(code)
        account = await tokens.store_tokens(
            parse_uuid(user_id, "state"),
            None,
            token_set.access_token,
            token_set.refresh_token,
            token_set.expires_at,
        )
    except AdSyncError as e:
        raise _http_error(e) from e

    return {"connected": True, "account": ConnectedAccountResponse(**_account_to_response(account, tokens))}


# ── Accounts ──────────────────────────────────────────────────────────
@router.get("/accounts", response_model=list[ConnectedAccountResponse])
async def list_accounts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tokens = TokenService(db)
    accounts = await tokens.list_accounts(user.id)
    return [_account_to_response(a, tokens) for a in accounts]


@router.patch("/accounts/{account_id}", response_model=ConnectedAccountResponse)
async def rename_account(
    account_id: str,
    payload: RenameRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tokens = TokenService(db)
    try:
        account = await tokens.rename_account(parse_uuid(account_id, "account_id"), user.id, payload.display_name)
    except AdSyncError as e:
        raise _http_error(e) from e
    return _account_to_response(account, tokens)


@router.post("/accounts/{account_id}/sync")
async def sync_account(
    account_id: str,
    payload: Optional[SyncRequest] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Pull campaign data. Without a range, syncs incrementally from the last sync."""
    payload = payload or SyncRequest()
    date_range = _resolve_range(payload.preset, payload.start_date, payload.end_date)
    try:
        rows = await SyncService(db).sync_account(parse_uuid(account_id, "account_id"), user.id, date_range)
    except AdSyncError as e:
        raise _http_error(e) from e
    return {"records_synced": len(rows)}


@router.get("/accounts/{account_id}/campaigns")
async def get_campaigns(
    account_id: str,
    preset: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    date_range = _resolve_range(
        preset, parse_date(start_date, "start_date"), parse_date(end_date, "end_date")
    )
    try:
        account = await TokenService(db).get_owned_account(parse_uuid(account_id, "account_id"), user.id)
        rows = await get_campaign_data(db, account.id, date_range)
    except AdSyncError as e:
        raise _http_error(e) from e
    return {
        "account_id": str(account.id),
        "date_range": {
            "start": date_range.start.isoformat(), "end": date_range.end.isoformat()
        } if date_range else None,
        "summary": compute_metrics(rows),
        "campaigns": rows,
    }


@router.get("/accounts/{account_id}/history")
async def get_history(
    account_id: str,
    limit: int = 20,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        account = await TokenService(db).get_owned_account(parse_uuid(account_id, "account_id"), user.id)
    except AdSyncError as e:
        raise _http_error(e) from e
    return await get_sync_history(db, account.id, limit=max(1, min(limit, 100)))


@router.post("/accounts/{account_id}/revoke")
async def revoke_account(
    account_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Stop honouring the stored tokens. The account must be reconnected to sync again."""
    try:
        await TokenService(db).revoke_account(parse_uuid(account_id, "account_id"), user.id)
    except AdSyncError as e:
        raise _http_error(e) from e
    return {"revoked": True}


@router.delete("/accounts/{account_id}")
async def disconnect_account(
    account_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await TokenService(db).disconnect(parse_uuid(account_id, "account_id"), user.id)
    except AdSyncError as e:
        raise _http_error(e) from e
    return {"disconnected": True}
