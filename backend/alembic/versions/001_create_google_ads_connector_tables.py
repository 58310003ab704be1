"""Create users, connected_accounts, campaign_data and sync_history.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    existing = set(insp.get_table_names())

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("email", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "connected_accounts" not in existing:
        op.create_table(
            "connected_accounts",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("platform", sa.String(20), nullable=False, server_default="google_ads"),
            sa.Column("external_account_id", sa.String(64), nullable=False),
            sa.Column("access_token", sa.Text(), nullable=True),
            sa.Column("refresh_token", sa.Text(), nullable=True),
            sa.Column("access_token_hash", sa.String(64), nullable=True),
            sa.Column("refresh_token_hash", sa.String(64), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("last_sync_at", sa.DateTime(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("display_name", sa.String(255), nullable=True),
            sa.Column("account_name", sa.String(255), nullable=True),
            sa.Column("is_manager_account", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("parent_account_id", sa.String(64), nullable=True),
            sa.Column("account_timezone", sa.String(64), nullable=True),
            sa.Column("is_test_account", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("accessible_customers", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "platform", "external_account_id", name="uq_connected_account_per_user"),
        )
        op.create_index("ix_connected_accounts_user_id", "connected_accounts", ["user_id"], unique=False)
        op.create_index(
            "ix_connected_accounts_access_token_hash", "connected_accounts", ["access_token_hash"], unique=False
        )

    if "campaign_data" not in existing:
        op.create_table(
            "campaign_data",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("connected_account_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("campaign_id", sa.String(64), nullable=False),
            sa.Column("campaign_name", sa.Text(), nullable=False),
            sa.Column("campaign_type", sa.String(64), nullable=True),
            sa.Column("campaign_sub_type", sa.String(64), nullable=True),
            sa.Column("date", sa.Date(), nullable=False),
            sa.Column("spend", sa.Float(), nullable=True, server_default="0"),
            sa.Column("impressions", sa.BigInteger(), nullable=True, server_default="0"),
            sa.Column("clicks", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("conversions", sa.Float(), nullable=True, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["connected_account_id"], ["connected_accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_campaign_data_account_id", "campaign_data", ["connected_account_id"], unique=False)
        op.create_index(
            "ix_campaign_data_account_date", "campaign_data", ["connected_account_id", "date"], unique=False
        )

    if "sync_history" not in existing:
        op.create_table(
            "sync_history",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("connected_account_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("synced_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("status", sa.String(20), nullable=True, server_default="in_progress"),
            sa.Column("records_synced", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("duration_ms", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["connected_account_id"], ["connected_accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sync_history_account_id", "sync_history", ["connected_account_id"], unique=False)
        op.create_index("ix_sync_history_synced_at", "sync_history", ["synced_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sync_history_synced_at", table_name="sync_history")
    op.drop_index("ix_sync_history_account_id", table_name="sync_history")
    op.drop_table("sync_history")
    op.drop_index("ix_campaign_data_account_date", table_name="campaign_data")
    op.drop_index("ix_campaign_data_account_id", table_name="campaign_data")
    op.drop_table("campaign_data")
    op.drop_index("ix_connected_accounts_access_token_hash", table_name="connected_accounts")
    op.drop_index("ix_connected_accounts_user_id", table_name="connected_accounts")
    op.drop_table("connected_accounts")
    op.drop_table("users")
