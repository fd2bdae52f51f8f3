"""Enforce one lead per external key and one message per external id.

Existing duplicates must be merged with ``creatorcrm reconcile --all`` before
this revision is applied, otherwise index creation fails.
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0002_partial_unique_indexes"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None

PARTIAL_INDEXES = (
    ("uq_leads_tenant_chat_user", "leads", ["tenant_id", "chat_user_id"], "chat_user_id"),
    (
        "uq_leads_tenant_commerce_membership",
        "leads",
        ["tenant_id", "commerce_membership_id"],
        "commerce_membership_id",
    ),
    (
        "uq_messages_channel_external_id",
        "messages",
        ["channel", "external_message_id"],
        "external_message_id",
    ),
)


def upgrade() -> None:
    for name, table, columns, present in PARTIAL_INDEXES:
        where = sa.text(f"{present} IS NOT NULL")
        op.create_index(
            name,
            table,
            columns,
            unique=True,
            postgresql_where=where,
            sqlite_where=where,
        )


def downgrade() -> None:
    for name, table, _, _ in reversed(PARTIAL_INDEXES):
        op.drop_index(name, table_name=table)
