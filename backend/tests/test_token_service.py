"""
Tests for the token lifecycle: authorization URLs, code exchange, account
discovery, encrypted storage, retrieval with refresh, rate limiting and
revocation.
"""

import base64
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from adsync.crypto import Cipher, hash_value, set_cipher
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
from adsync.field_guard import looks_encrypted
from adsync.google_ads_client import GoogleAdsAPIError, TokenSet
from adsync.models import CampaignData, ConnectedAccount, SyncHistory
from adsync.services.token_service import TokenState
from adsync.utils import utcnow

from conftest import OTHER_KEY, TEST_KEY


# ── Authorization ─────────────────────────────────────────────────────

@pytest.mark.usefixtures("anyio_backend")
def test_generate_authorization_url_records_state(token_service, events):
    user_id = uuid.uuid4()
    url, state = token_service.generate_authorization_url(user_id)
    assert state.startswith(f"{user_id}-")
    assert state in url
    assert token_service.states.consume(state) == str(user_id)
    assert events.recent_events("oauth_authorization_started")


@pytest.mark.anyio
async def test_exchange_code_success(token_service, fake_client):
    fake_client.exchange_code.return_value = TokenSet("ya29.a", "1//r", None)
    tokens = await token_service.exchange_code("auth-code")
    assert tokens.access_token == "ya29.a"
    fake_client.exchange_code.assert_awaited_once_with("auth-code")


@pytest.mark.anyio
async def test_exchange_code_rejection(token_service, fake_client):
    fake_client.exchange_code.side_effect = GoogleAdsAPIError("invalid_grant: Bad Request", 400)
    with pytest.raises(TokenExchangeError) as exc_info:
        await token_service.exchange_code("used-code")
    assert exc_info.value.reconnect_required is True
    assert isinstance(exc_info.value.__cause__, GoogleAdsAPIError)


# ── Discovery ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_discovery_first_strategy_wins(token_service, fake_client):
    fake_client.list_accessible_customers_sdk.return_value = ["customers/1112223334"]
    assert await token_service.resolve_external_account_id("ya29.a", "1//r") == "1112223334"
    fake_client.list_accessible_customers.assert_not_awaited()


@pytest.mark.anyio
async def test_discovery_falls_through_to_rest(token_service, fake_client):
    fake_client.list_accessible_customers_sdk.side_effect = GoogleAdsAPIError("UNIMPLEMENTED", 501)
    fake_client.list_accessible_customers.return_value = ["customers/9998887776"]
    assert await token_service.resolve_external_account_id("ya29.a", "1//r") == "9998887776"
    assert fake_client.list_accessible_customers_sdk.await_count == 2


@pytest.mark.anyio
async def test_discovery_skips_invalid_ids(token_service, fake_client):
    fake_client.list_accessible_customers_sdk.return_value = ["customers/123"]
    fake_client.list_accessible_customers.return_value = ["customers/1234567890"]
    assert await token_service.resolve_external_account_id("ya29.a", "1//r") == "1234567890"


@pytest.mark.anyio
async def test_discovery_reports_every_failure(token_service, fake_client):
    fake_client.list_accessible_customers_sdk.side_effect = GoogleAdsAPIError("boom", 500)
    fake_client.list_accessible_customers.return_value = []
    with pytest.raises(AccountDiscoveryError) as exc_info:
        await token_service.resolve_external_account_id("ya29.a", "1//r")
    names = [name for name, _ in exc_info.value.attempts]
    assert names == ["sdk_customer_service", "sdk_pinned_version", "rest_list_accessible_customers"]
    assert "no accessible customers" in str(exc_info.value)


@pytest.mark.anyio
async def test_discovery_short_circuits_on_permission_error(token_service, fake_client):
    fake_client.list_accessible_customers_sdk.side_effect = GoogleAdsAPIError(
        "PERMISSION_DENIED: Google Ads API has not been used in project 123", 403
    )
    with pytest.raises(AccountDiscoveryError) as exc_info:
        await token_service.resolve_external_account_id("ya29.a", "1//r")
    assert len(exc_info.value.attempts) == 1
    fake_client.list_accessible_customers.assert_not_awaited()


@pytest.mark.anyio
async def test_discovery_without_refresh_token_uses_rest(token_service, fake_client):
    fake_client.list_accessible_customers.return_value = ["customers/5556667778"]
    assert await token_service.resolve_external_account_id("ya29.a", None) == "5556667778"
    fake_client.list_accessible_customers_sdk.assert_not_awaited()


# ── Storage ───────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_store_tokens_encrypts_and_fingerprints(token_service, user):
    account = await token_service.store_tokens(user.id, "1234567890", "ya29.access", "1//refresh")
    assert account.access_token != "ya29.access"
    assert looks_encrypted(account.access_token)
    assert looks_encrypted(account.refresh_token)
    assert account.access_token_hash == hash_value("ya29.access")
    assert account.refresh_token_hash == hash_value("1//refresh")
    assert account.is_active is True
    assert account.platform == "google_ads"


@pytest.mark.anyio
async def test_store_tokens_upserts(token_service, user, db_session):
    first = await token_service.store_tokens(user.id, "1234567890", "ya29.one", "1//one")
    first.is_active = False
    second = await token_service.store_tokens(user.id, "1234567890", "ya29.two")

    assert second.id == first.id
    assert second.is_active is True
    count = await db_session.scalar(select(func.count()).select_from(ConnectedAccount))
    assert count == 1
    # No new refresh token: the stored one is kept
    pair = await token_service.retrieve_tokens(second.id)
    assert pair.access_token == "ya29.two"
    assert pair.refresh_token == "1//one"


@pytest.mark.anyio
async def test_store_tokens_discovers_missing_id(token_service, user, fake_client):
    fake_client.list_accessible_customers_sdk.return_value = ["customers/4445556667"]
    account = await token_service.store_tokens(user.id, None, "ya29.a", "1//r")
    assert account.external_account_id == "4445556667"
    assert account.accessible_customers == ["4445556667"]


@pytest.mark.anyio
async def test_store_tokens_keeps_every_accessible_customer(token_service, user, fake_client, db_session):
    fake_client.list_accessible_customers_sdk.return_value = [
        "customers/4445556667", "customers/bogus", "customers/7778889990",
    ]
    account = await token_service.store_tokens(user.id, None, "ya29.a", "1//r")

    assert account.external_account_id == "4445556667"
    reloaded = await db_session.get(ConnectedAccount, account.id)
    assert reloaded.accessible_customers == ["4445556667", "7778889990"]


@pytest.mark.anyio
async def test_discover_customers_returns_all_valid_ids(token_service, fake_client):
    fake_client.list_accessible_customers_sdk.return_value = ["customers/1112223334", "customers/5556667778"]
    assert await token_service.discover_customers("ya29.a", "1//r") == ["1112223334", "5556667778"]


@pytest.mark.anyio
async def test_store_tokens_with_known_id_records_it_as_accessible(token_service, user):
    account = await token_service.store_tokens(user.id, "1234567890", "ya29.a", "1//r")
    assert account.accessible_customers == ["1234567890"]


@pytest.mark.anyio
async def test_store_tokens_encrypts_base64_shaped_tokens(token_service, user):
    token = base64.b64encode(bytes(range(45))).decode()
    assert looks_encrypted(token)

    account = await token_service.store_tokens(user.id, "1234567890", token, token)

    assert account.access_token != token
    assert account.refresh_token != token
    pair = await token_service.retrieve_tokens(account.id)
    assert pair.access_token == token
    assert pair.refresh_token == token


@pytest.mark.anyio
async def test_store_tokens_fills_customer_details(token_service, user, fake_client, settings):
    settings.google_ads_login_customer_id = "999-888-7777"
    fake_client.get_customer_details.return_value = {
        "name": "Acme Search", "manager": False, "time_zone": "Europe/London", "test_account": True,
    }
    account = await token_service.store_tokens(user.id, "1234567890", "ya29.a", "1//r")

    fake_client.get_customer_details.assert_awaited_once_with("1234567890", "ya29.a")
    assert account.account_name == "Acme Search"
    assert account.account_display_name == "Acme Search"
    assert account.account_timezone == "Europe/London"
    assert account.is_test_account is True
    assert account.is_manager_account is False
    assert account.parent_account_id == "9998887777"


@pytest.mark.anyio
async def test_store_tokens_survives_customer_details_failure(token_service, user, fake_client):
    fake_client.get_customer_details.side_effect = GoogleAdsAPIError("PERMISSION_DENIED", 403)
    account = await token_service.store_tokens(user.id, "1234567890", "ya29.a", "1//r")
    assert account.is_active is True
    assert account.account_name is None


@pytest.mark.anyio
async def test_rename_account(token_service, connected_account, user):
    account = await token_service.rename_account(connected_account.id, user.id, "  Brand account ")
    assert account.display_name == "Brand account"

    account = await token_service.rename_account(connected_account.id, user.id, "")
    assert account.display_name is None

    with pytest.raises(NotFoundError):
        await token_service.rename_account(connected_account.id, uuid.uuid4(), "Mine now")


# ── Retrieval ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_retrieve_valid_tokens(token_service, connected_account, fake_client, events):
    pair = await token_service.retrieve_tokens(connected_account.id, requesting_user_id=connected_account.user_id)
    assert pair.access_token == "ya29.valid-access-token"
    assert pair.refresh_token == "1//valid-refresh-token"
    assert pair.external_account_id == "1234567890"
    fake_client.refresh_access_token.assert_not_awaited()
    assert events.recent_events("token_accessed")


@pytest.mark.anyio
async def test_retrieve_unknown_account(token_service):
    with pytest.raises(NotFoundError):
        await token_service.retrieve_tokens(uuid.uuid4())


@pytest.mark.anyio
async def test_retrieve_other_users_account_is_not_found(token_service, connected_account):
    with pytest.raises(NotFoundError):
        await token_service.retrieve_tokens(connected_account.id, requesting_user_id=uuid.uuid4())


@pytest.mark.anyio
async def test_retrieve_without_access_token(token_service, connected_account, db_session):
    connected_account.access_token = None
    await db_session.commit()
    with pytest.raises(InvalidStateError):
        await token_service.retrieve_tokens(connected_account.id)


@pytest.mark.anyio
async def test_expired_token_is_refreshed(token_service, connected_account, fake_client, db_session):
    connected_account.expires_at = utcnow() - timedelta(minutes=1)
    await db_session.commit()
    new_expiry = utcnow() + timedelta(hours=1)
    fake_client.refresh_access_token.return_value = TokenSet("ya29.refreshed", "1//valid-refresh-token", new_expiry)

    pair = await token_service.retrieve_tokens(connected_account.id)

    assert pair.access_token == "ya29.refreshed"
    fake_client.refresh_access_token.assert_awaited_once_with("1//valid-refresh-token")
    await db_session.refresh(connected_account)
    assert connected_account.expires_at == new_expiry
    assert connected_account.access_token_hash == hash_value("ya29.refreshed")
    assert looks_encrypted(connected_account.access_token)


@pytest.mark.anyio
async def test_refresh_failure_deactivates_account(token_service, connected_account, fake_client, db_session):
    connected_account.expires_at = utcnow() - timedelta(minutes=1)
    await db_session.commit()
    fake_client.refresh_access_token.side_effect = GoogleAdsAPIError("invalid_grant: Token has been expired or revoked.", 400)

    with pytest.raises(RefreshFailedError):
        await token_service.retrieve_tokens(connected_account.id)

    await db_session.refresh(connected_account)
    assert connected_account.is_active is False
    assert token_service.token_state(connected_account) == TokenState.REFRESH_FAILED
    # Terminal until re-authorization
    with pytest.raises(RefreshFailedError):
        await token_service.retrieve_tokens(connected_account.id)
    assert fake_client.refresh_access_token.await_count == 1


@pytest.mark.anyio
async def test_expired_without_refresh_token(token_service, user, fake_client):
    account = await token_service.store_tokens(
        user.id, "1234567890", "ya29.only-access", None, utcnow() - timedelta(minutes=5)
    )
    assert token_service.token_state(account) == TokenState.EXPIRED
    with pytest.raises(ExpiredNoRefreshError):
        await token_service.retrieve_tokens(account.id)
    fake_client.refresh_access_token.assert_not_awaited()


@pytest.mark.anyio
async def test_force_refresh(token_service, connected_account, fake_client):
    fake_client.refresh_access_token.return_value = TokenSet("ya29.forced", "1//valid-refresh-token", None)
    pair = await token_service.retrieve_tokens(connected_account.id, force_refresh=True)
    assert pair.access_token == "ya29.forced"


@pytest.mark.anyio
async def test_rate_limit_sixth_call_fails_then_recovers(token_service, connected_account, clock):
    user_id = connected_account.user_id
    for _ in range(5):
        await token_service.retrieve_tokens(connected_account.id, requesting_user_id=user_id)

    with pytest.raises(RateLimitError) as exc_info:
        await token_service.retrieve_tokens(connected_account.id, requesting_user_id=user_id)
    assert exc_info.value.retry_after > 0

    clock.advance(61)
    pair = await token_service.retrieve_tokens(connected_account.id, requesting_user_id=user_id)
    assert pair.access_token == "ya29.valid-access-token"


@pytest.mark.anyio
async def test_internal_calls_are_not_rate_limited(token_service, connected_account):
    for _ in range(10):
        await token_service.retrieve_tokens(connected_account.id)


@pytest.mark.anyio
async def test_lazy_reencryption_after_key_rotation(token_service, connected_account, db_session):
    old_ciphertext = connected_account.access_token
    rotated = Cipher(OTHER_KEY, [TEST_KEY])
    set_cipher(rotated)

    pair = await token_service.retrieve_tokens(connected_account.id)

    assert pair.access_token == "ya29.valid-access-token"
    await db_session.refresh(connected_account)
    assert connected_account.access_token != old_ciphertext
    assert rotated.is_current(connected_account.access_token)
    assert rotated.is_current(connected_account.refresh_token)


@pytest.mark.anyio
async def test_undecryptable_token_raises(token_service, connected_account, events):
    set_cipher(Cipher(OTHER_KEY))
    with pytest.raises(DecryptionError):
        await token_service.retrieve_tokens(connected_account.id)
    assert events.recent_events("token_decryption_failed")


# ── Revocation ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_revoked_token_rejected(token_service, connected_account):
    token_service.revoke_token(connected_account.access_token_hash)
    assert token_service.is_token_revoked(connected_account.access_token_hash)
    assert token_service.token_state(connected_account) == TokenState.REVOKED
    with pytest.raises(RevokedError):
        await token_service.retrieve_tokens(connected_account.id)


@pytest.mark.anyio
async def test_reconnect_after_revocation_issues_fresh_fingerprint(token_service, connected_account, user):
    await token_service.revoke_account(connected_account.id, user.id)
    account = await token_service.store_tokens(user.id, "1234567890", "ya29.brand-new", "1//new")
    pair = await token_service.retrieve_tokens(account.id)
    assert pair.access_token == "ya29.brand-new"


@pytest.mark.anyio
async def test_disconnect_deletes_account_and_children(token_service, connected_account, user, fake_client, db_session):
    db_session.add(CampaignData(
        connected_account_id=connected_account.id,
        campaign_id="1",
        campaign_name="x",
        date=utcnow().date(),
    ))
    db_session.add(SyncHistory(connected_account_id=connected_account.id, status="completed"))
    await db_session.commit()
    access_hash = connected_account.access_token_hash
    account_id = connected_account.id

    await token_service.disconnect(account_id, user.id)

    fake_client.revoke.assert_awaited_once_with("1//valid-refresh-token")
    assert token_service.is_token_revoked(access_hash)
    assert await db_session.get(ConnectedAccount, account_id) is None
    assert await db_session.scalar(select(func.count()).select_from(CampaignData)) == 0
    assert await db_session.scalar(select(func.count()).select_from(SyncHistory)) == 0


@pytest.mark.anyio
async def test_disconnect_survives_upstream_revoke_failure(token_service, connected_account, user, fake_client, db_session):
    fake_client.revoke.side_effect = GoogleAdsAPIError("already revoked", 400)
    await token_service.disconnect(connected_account.id, user.id)
    assert await db_session.scalar(select(func.count()).select_from(ConnectedAccount)) == 0


@pytest.mark.anyio
async def test_disconnect_other_users_account(token_service, connected_account):
    with pytest.raises(NotFoundError):
        await token_service.disconnect(connected_account.id, uuid.uuid4())
