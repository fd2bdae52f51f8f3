"""Create tenant, user, binding, lead and message tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(length=120), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("owner_user_id", UUID, nullable=True),
    )

    op.create_table(
        "app_users",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("tenant_id", sa.String(length=120), nullable=False),
        sa.Column("external_user_id", sa.String(length=120), nullable=False),
        sa.Column("chat_user_id", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.UniqueConstraint("external_user_id", "tenant_id", name="uq_app_user_external_tenant"),
    )
    op.create_index("ix_app_users_tenant_id", "app_users", ["tenant_id"])
    op.create_index("ix_app_users_chat_user_id", "app_users", ["chat_user_id"])

    op.create_table(
        "channel_bindings",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("owner_id", UUID, nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(length=120), nullable=False),
        sa.Column("guild_id", sa.String(length=64), nullable=True),
        sa.Column("guild_name", sa.String(length=200), nullable=True),
        sa.Column("bot_user_id", sa.String(length=64), nullable=True),
        sa.Column("chat_user_id", sa.String(length=64), nullable=True),
        sa.Column("chat_username", sa.String(length=120), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "connected_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("synced_members_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("synced_channels_count", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
    )
    op.create_index("ix_channel_bindings_tenant_id", "channel_bindings", ["tenant_id"])
    op.create_index("ix_channel_bindings_guild_id", "channel_bindings", ["guild_id"])

    op.create_table(
        "leads",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("tenant_id", sa.String(length=120), nullable=False),
        sa.Column("owner_id", UUID, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("username", sa.String(length=120), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("chat_user_id", sa.String(length=64), nullable=True),
        sa.Column("commerce_membership_id", sa.String(length=120), nullable=True),
        sa.Column("commerce_customer_id", sa.String(length=120), nullable=True),
        sa.Column("chat_channel_id", sa.String(length=64), nullable=True),
        sa.Column("won_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_contact_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["owner_id"], ["app_users.id"]),
    )
    op.create_index("ix_leads_tenant_id", "leads", ["tenant_id"])
    op.create_index("ix_leads_owner_id", "leads", ["owner_id"])
    op.create_index("ix_leads_status", "leads", ["status"])
    op.create_index(
        "ix_leads_tenant_commerce_customer", "leads", ["tenant_id", "commerce_customer_id"]
    )

    op.create_table(
        "messages",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("tenant_id", sa.String(length=120), nullable=False),
        sa.Column("lead_id", UUID, nullable=True),
        sa.Column("owner_id", UUID, nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column(
            "delivery_status", sa.String(length=16), nullable=False, server_default="received"
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("external_message_id", sa.String(length=120), nullable=True),
        sa.Column("external_channel_id", sa.String(length=120), nullable=True),
        sa.Column("author_external_id", sa.String(length=120), nullable=True),
        sa.Column("author_username", sa.String(length=120), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["lead_id"], ["leads.id"]),
    )
    op.create_index("ix_messages_tenant_id", "messages", ["tenant_id"])
    op.create_index("ix_messages_lead_id", "messages", ["lead_id"])
    op.create_index("ix_messages_owner_id", "messages", ["owner_id"])
    op.create_index("ix_messages_lead_created", "messages", ["lead_id", "created_at"])


def downgrade() -> None:
    op.drop_table("messages")
    op.drop_table("leads")
    op.drop_table("channel_bindings")
    op.drop_table("app_users")
    op.drop_table("tenants")
