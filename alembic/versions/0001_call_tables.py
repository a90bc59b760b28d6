"""call outcome and call stats tables

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
        "calls",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("call_id", sa.String(length=64), nullable=False),
        sa.Column("caller_id", sa.String(length=128), nullable=False),
        sa.Column("callee_id", sa.String(length=128), nullable=False),
        sa.Column("is_video", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_calls_call_id", "calls", ["call_id"], unique=True)
    op.create_index("ix_calls_caller_id", "calls", ["caller_id"], unique=False)
    op.create_index("ix_calls_callee_id", "calls", ["callee_id"], unique=False)

    op.create_table(
        "call_stats",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("call_id", sa.String(length=64), nullable=False),
        sa.Column("reported_by", sa.String(length=128), nullable=True),
        sa.Column("caller_id", sa.String(length=128), nullable=False),
        sa.Column("callee_id", sa.String(length=128), nullable=False),
        sa.Column("is_video", sa.Boolean(), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=False),
        sa.Column("total_samples", sa.Integer(), nullable=False),
        sa.Column("avg_send_bitrate_kbps", sa.Float(), nullable=False),
        sa.Column("avg_receive_bitrate_kbps", sa.Float(), nullable=False),
        sa.Column("avg_packet_loss_percent", sa.Float(), nullable=False),
        sa.Column("avg_rtt_ms", sa.Float(), nullable=False),
        sa.Column("total_data_used_bytes", sa.Integer(), nullable=False),
        sa.Column("quality_distribution", sa.JSON(), nullable=False),
        sa.Column("samples", sa.JSON(), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_call_stats_call_id", "call_stats", ["call_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_call_stats_call_id", table_name="call_stats")
    op.drop_table("call_stats")
    op.drop_index("ix_calls_callee_id", table_name="calls")
    op.drop_index("ix_calls_caller_id", table_name="calls")
    op.drop_index("ix_calls_call_id", table_name="calls")
    op.drop_table("calls")
