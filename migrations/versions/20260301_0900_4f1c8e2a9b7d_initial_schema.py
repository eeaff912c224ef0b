"""Initial schema: sync state, message metadata, sync runs, response metrics.

Also creates the identity-mapping and partner-assignment tables when this
database is not shared with the system that owns them.

Revision ID: 4f1c8e2a9b7d
Revises:
Create Date: 2026-03-01 09:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "4f1c8e2a9b7d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Per-channel sync position
    op.create_table(
        "slack_sync_state",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("channel_id", sa.String(32), nullable=False, unique=True),
        sa.Column("channel_name", sa.String(255), nullable=False),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("latest_ts", sa.String(32), nullable=True),
        sa.Column("oldest_ts", sa.String(32), nullable=True),
        sa.Column("is_backfill_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("bot_is_member", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_slack_sync_partner", "slack_sync_state", ["partner_id"])
    op.create_index("idx_slack_sync_last_synced", "slack_sync_state", ["last_synced_at"])

    # Message metadata (never content)
    op.create_table(
        "slack_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("channel_id", sa.String(32), nullable=False),
        sa.Column("message_ts", sa.String(32), nullable=False),
        sa.Column("thread_ts", sa.String(32), nullable=True),
        sa.Column("sender_slack_id", sa.String(32), nullable=True),
        sa.Column("sender_bot_id", sa.String(32), nullable=True),
        sa.Column("sender_type", sa.String(10), nullable=False, server_default="user"),
        sa.Column("sender_staff_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("sender_is_staff", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_bot", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("channel_id", "message_ts", name="slack_messages_channel_ts"),
    )
    op.create_index("idx_slack_messages_channel_posted", "slack_messages", ["channel_id", "posted_at"])
    op.create_index("idx_slack_messages_sender", "slack_messages", ["sender_slack_id", "posted_at"])

    # Chunked sync runs
    op.create_table(
        "slack_sync_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("triggered_by", sa.String(255), nullable=True),
        sa.Column("total_channels", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("synced_channels", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_channels", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_messages_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_channel_offset", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_slack_sync_runs_status", "slack_sync_runs", ["status"])
    op.create_index("idx_slack_sync_runs_created", "slack_sync_runs", ["created_at"])
    # At most one pending or running run
    op.create_index(
        "slack_sync_runs_single_active",
        "slack_sync_runs",
        [sa.text("(status IN ('pending', 'running'))")],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'running')"),
    )

    # Response metrics, one row per channel per day
    op.create_table(
        "slack_response_metrics",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("channel_id", sa.String(32), nullable=False),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("pod_leader_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("total_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("staff_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("partner_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_response_time_mins", sa.Numeric(10, 2), nullable=True),
        sa.Column("median_response_time_mins", sa.Numeric(10, 2), nullable=True),
        sa.Column("p95_response_time_mins", sa.Numeric(10, 2), nullable=True),
        sa.Column("max_response_time_mins", sa.Numeric(10, 2), nullable=True),
        sa.Column("min_response_time_mins", sa.Numeric(10, 2), nullable=True),
        sa.Column("responses_under_30m", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("responses_30m_to_1h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("responses_1h_to_4h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("responses_4h_to_24h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("responses_over_24h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unanswered_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("computed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("algorithm_version", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("channel_id", "date", name="slack_response_metrics_channel_date"),
    )
    op.create_index("idx_response_metrics_partner", "slack_response_metrics", ["partner_id", "date"])
    op.create_index("idx_response_metrics_pod", "slack_response_metrics", ["pod_leader_id", "date"])
    op.create_index("idx_response_metrics_date", "slack_response_metrics", ["date"])

    # External identities (staff <-> Slack user)
    op.create_table(
        "entity_external_ids",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("entity_type", "entity_id", "source",
                            name="entity_external_ids_unique_entity_source"),
        sa.UniqueConstraint("source", "external_id",
                            name="entity_external_ids_unique_source_external"),
    )

    # Partner assignments (pod leaders etc.)
    op.create_table(
        "partner_assignments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("staff_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("assignment_role", sa.String(64), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("unassigned_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_partner_assignments_partner_role",
        "partner_assignments",
        ["partner_id", "assignment_role"],
    )


def downgrade() -> None:
    op.drop_table("partner_assignments")
    op.drop_table("entity_external_ids")
    op.drop_table("slack_response_metrics")
    op.drop_table("slack_sync_runs")
    op.drop_table("slack_messages")
    op.drop_table("slack_sync_state")
