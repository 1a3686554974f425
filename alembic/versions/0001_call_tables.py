"""call sessions and call history

Revision ID: 0001_call_tables
Revises: 
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_call_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "call_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("initiator_id", sa.String(length=64), nullable=False),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("call_type", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_missed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_call_sessions_initiator_id", "call_sessions", ["initiator_id"], unique=False)
    op.create_index("ix_call_sessions_recipient_id", "call_sessions", ["recipient_id"], unique=False)
    op.create_index("ix_call_sessions_status", "call_sessions", ["status"], unique=False)

    op.create_table(
        "call_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("call_id", sa.String(length=36), nullable=False),
        sa.Column("initiator_id", sa.String(length=64), nullable=False),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("call_type", sa.String(length=16), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["call_id"],
            ["call_sessions.id"],
            ondelete="CASCADE",
        ),
    )
    # One history row per call; concurrent writers rely on this constraint.
    op.create_index("ix_call_history_call_id", "call_history", ["call_id"], unique=True)
    op.create_index("ix_call_history_initiator_id", "call_history", ["initiator_id"], unique=False)
    op.create_index("ix_call_history_recipient_id", "call_history", ["recipient_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_call_history_recipient_id", table_name="call_history")
    op.drop_index("ix_call_history_initiator_id", table_name="call_history")
    op.drop_index("ix_call_history_call_id", table_name="call_history")
    op.drop_table("call_history")

    op.drop_index("ix_call_sessions_status", table_name="call_sessions")
    op.drop_index("ix_call_sessions_recipient_id", table_name="call_sessions")
    op.drop_index("ix_call_sessions_initiator_id", table_name="call_sessions")
    op.drop_table("call_sessions")
