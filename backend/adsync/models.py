"""
Google Ads Connector — Database Models
Connected accounts hold encrypted OAuth tokens; campaign rows hold encrypted
campaign names. Plaintext never lands in these tables.
"""

import uuid
import enum
from datetime import date as date_type, datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    ForeignKey, Index, JSON, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from adsync.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class Platform(str, enum.Enum):
    GOOGLE_ADS = "google_ads"
    META_ADS = "meta_ads"
    TIKTOK_ADS = "tiktok_ads"


class SyncStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════════════
#  USERS
# ══════════════════════════════════════════════════════════════════════

class User(Base):
    """App user who owns connected ad accounts."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    connected_accounts: Mapped[list["ConnectedAccount"]] = relationship(
        "ConnectedAccount", back_populates="user", cascade="all, delete-orphan"
    )


# ══════════════════════════════════════════════════════════════════════
#  CONNECTED ACCOUNTS — one external ad account linked to one user
# ══════════════════════════════════════════════════════════════════════

class ConnectedAccount(Base):
    """
    External ad-platform account with its OAuth credentials.
    access_token / refresh_token hold ciphertext; the *_hash columns hold
    SHA-256 fingerprints used only for revocation checks.
    """
    __tablename__ = "connected_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default=Platform.GOOGLE_ADS.value)
    external_account_id: Mapped[str] = mapped_column(String(64), nullable=False)

    access_token: Mapped[str] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=True)
    access_token_hash: Mapped[str] = mapped_column(String(64), nullable=True)
    refresh_token_hash: Mapped[str] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)  # incremental-sync watermark
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    display_name: Mapped[str] = mapped_column(String(255), nullable=True)
    account_name: Mapped[str] = mapped_column(String(255), nullable=True)
    is_manager_account: Mapped[bool] = mapped_column(Boolean, default=False)
    parent_account_id: Mapped[str] = mapped_column(String(64), nullable=True)
    account_timezone: Mapped[str] = mapped_column(String(64), nullable=True)
    is_test_account: Mapped[bool] = mapped_column(Boolean, default=False)
    accessible_customers: Mapped[list] = mapped_column(JSON, nullable=True)  # every customer id the grant reaches

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="connected_accounts")
    campaign_data: Mapped[list["CampaignData"]] = relationship(
        "CampaignData", back_populates="connected_account", cascade="all, delete-orphan", passive_deletes=True
    )
    sync_history: Mapped[list["SyncHistory"]] = relationship(
        "SyncHistory", back_populates="connected_account", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "external_account_id", name="uq_connected_account_per_user"),
        Index("ix_connected_accounts_user_id", "user_id"),
        Index("ix_connected_accounts_access_token_hash", "access_token_hash"),
    )

    @property
    def is_token_expired(self) -> bool:
        if not self.expires_at:
            return False
        return self.expires_at < _utcnow()

    @property
    def formatted_account_id(self) -> str:
        """Google Ads customer ids render as XXX-XXX-XXXX."""
        return format_customer_id(self.external_account_id)

    @property
    def account_display_name(self) -> str:
        if self.display_name:
            return self.display_name
        if self.account_name:
            return self.account_name
        return f"{(self.platform or '').replace('_', ' ')} Account"


def format_customer_id(customer_id: str) -> str:
    if not customer_id or len(customer_id) != 10:
        return customer_id
    return f"{customer_id[:3]}-{customer_id[3:6]}-{customer_id[6:]}"


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGN DATA — one row per campaign per day
# ══════════════════════════════════════════════════════════════════════

class CampaignData(Base):
    """
    Daily campaign performance pulled from Google Ads.
    campaign_name is ciphertext at rest. (account, campaign, date) is not
    unique: overlapping re-syncs append duplicate rows.
    """
    __tablename__ = "campaign_data"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    connected_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("connected_accounts.id", ondelete="CASCADE"), nullable=False
    )
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_name: Mapped[str] = mapped_column(Text, nullable=False)
    campaign_type: Mapped[str] = mapped_column(String(64), nullable=True)
    campaign_sub_type: Mapped[str] = mapped_column(String(64), nullable=True)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)

    spend: Mapped[float] = mapped_column(Float, default=0.0)  # currency units, not micros
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    conversions: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    connected_account: Mapped["ConnectedAccount"] = relationship("ConnectedAccount", back_populates="campaign_data")

    __table_args__ = (
        Index("ix_campaign_data_account_id", "connected_account_id"),
        Index("ix_campaign_data_account_date", "connected_account_id", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SYNC HISTORY — one row per sync run
# ══════════════════════════════════════════════════════════════════════

class SyncHistory(Base):
    __tablename__ = "sync_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    connected_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("connected_accounts.id", ondelete="CASCADE"), nullable=False
    )
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    status: Mapped[str] = mapped_column(String(20), default=SyncStatus.IN_PROGRESS.value)
    records_synced: Mapped[int] = mapped_column(Integer, default=0)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    connected_account: Mapped["ConnectedAccount"] = relationship("ConnectedAccount", back_populates="sync_history")

    __table_args__ = (
        Index("ix_sync_history_account_id", "connected_account_id"),
        Index("ix_sync_history_synced_at", "synced_at"),
    )

    @property
    def duration_seconds(self) -> float:
        return (self.duration_ms or 0) / 1000

    @property
    def formatted_duration(self) -> str:
        if not self.duration_ms:
            return "N/A"
        seconds = self.duration_ms // 1000
        minutes, remaining = divmod(seconds, 60)
        if minutes > 0:
            return f"{minutes}m {remaining}s"
        return f"{remaining}s"
