"""kv entries

Revision ID: 0001_kv_entries
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_kv_entries"
down_revision = None
branch_labels = None
depends_on = None


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    if "kv_entries" not in existing_tables:
        op.create_table(
            "kv_entries",
            sa.Column("key", sa.String(), primary_key=True),
            sa.Column("value", sa.Text(), nullable=False),
            sa.Column("expires_at", sa.Float(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = {idx["name"] for idx in inspector.get_indexes("kv_entries")} if "kv_entries" in existing_tables else set()
    if "ix_kv_entries_key" not in idxs:
        op.create_index("ix_kv_entries_key", "kv_entries", ["key"])
    if "ix_kv_entries_expires_at" not in idxs:
        op.create_index("ix_kv_entries_expires_at", "kv_entries", ["expires_at"])


def downgrade() -> None:
    inspector = _inspector()
    if "kv_entries" in set(inspector.get_table_names()):
        op.drop_index("ix_kv_entries_expires_at", table_name="kv_entries")
        op.drop_index("ix_kv_entries_key", table_name="kv_entries")
        op.drop_table("kv_entries")
