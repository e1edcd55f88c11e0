"""Create dedup ledger, in-app notification and job run tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261001_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_log",
        sa.Column("entry_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_instance_id", sa.String(length=160), nullable=False),
        sa.Column("recipient_address", sa.String(length=256), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("recipient_type", sa.String(length=32), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("installment_id", sa.String(length=64), nullable=True),
        sa.Column("template_id", sa.String(length=64), nullable=True),
        sa.Column("email_subject", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint(
            "event_instance_id",
            "recipient_address",
            "event_type",
            name="uq_notification_log_event_recipient",
        ),
    )
    op.create_index("ix_notification_log_event_instance_id", "notification_log", ["event_instance_id"], unique=False)
    op.create_index("ix_notification_log_agency_id", "notification_log", ["agency_id"], unique=False)
    op.create_index("ix_notification_log_installment_id", "notification_log", ["installment_id"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(length=512), nullable=True),
        sa.Column("event_instance_id", sa.String(length=160), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.PrimaryKeyConstraint("notification_id"),
        sa.UniqueConstraint("agency_id", "event_instance_id", name="uq_notifications_agency_event"),
    )
    op.create_index("ix_notifications_agency_id", "notifications", ["agency_id"], unique=False)
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"], unique=False)
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"], unique=False)

    op.create_table(
        "status_job_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("installments_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transitioned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_soon_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("in_app_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_status_job_runs_job_name", "status_job_runs", ["job_name"], unique=False)
    op.create_index("ix_status_job_runs_started_at", "status_job_runs", ["started_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_status_job_runs_started_at", table_name="status_job_runs")
    op.drop_index("ix_status_job_runs_job_name", table_name="status_job_runs")
    op.drop_table("status_job_runs")

    op.drop_index("ix_notifications_created_at", table_name="notifications")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_index("ix_notifications_agency_id", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_notification_log_installment_id", table_name="notification_log")
    op.drop_index("ix_notification_log_agency_id", table_name="notification_log")
    op.drop_index("ix_notification_log_event_instance_id", table_name="notification_log")
    op.drop_table("notification_log")
