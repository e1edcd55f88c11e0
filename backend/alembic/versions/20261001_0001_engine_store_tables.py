"""Create agency, enrollment, installment, rule and template tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agencies",
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="Australia/Brisbane"),
        sa.Column("overdue_cutoff_time", sa.Time(), nullable=False, server_default="17:00:00"),
        sa.Column("due_soon_threshold_days", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("contact_email", sa.String(length=256), nullable=True),
        sa.Column("contact_phone", sa.String(length=64), nullable=True),
        sa.Column("payment_instructions", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("agency_id"),
        sa.CheckConstraint(
            "due_soon_threshold_days >= 1 AND due_soon_threshold_days <= 30",
            name="ck_agencies_due_soon_threshold_range",
        ),
    )

    op.create_table(
        "students",
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("full_name", sa.String(length=256), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("assigned_user_id", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.agency_id"]),
        sa.PrimaryKeyConstraint("student_id"),
    )
    op.create_index("ix_students_agency_id", "students", ["agency_id"], unique=False)

    op.create_table(
        "staff_users",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("full_name", sa.String(length=256), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("email_notifications_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.agency_id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_staff_users_agency_id", "staff_users", ["agency_id"], unique=False)

    op.create_table(
        "colleges",
        sa.Column("college_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("contact_email", sa.String(length=256), nullable=True),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.agency_id"]),
        sa.PrimaryKeyConstraint("college_id"),
    )
    op.create_index("ix_colleges_agency_id", "colleges", ["agency_id"], unique=False)

    op.create_table(
        "branches",
        sa.Column("branch_id", sa.String(length=64), nullable=False),
        sa.Column("college_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("contact_email", sa.String(length=256), nullable=True),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.agency_id"]),
        sa.ForeignKeyConstraint(["college_id"], ["colleges.college_id"]),
        sa.PrimaryKeyConstraint("branch_id"),
    )
    op.create_index("ix_branches_agency_id", "branches", ["agency_id"], unique=False)

    op.create_table(
        "payment_plans",
        sa.Column("plan_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("branch_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.agency_id"]),
        sa.ForeignKeyConstraint(["student_id"], ["students.student_id"]),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.branch_id"]),
        sa.PrimaryKeyConstraint("plan_id"),
    )
    op.create_index("ix_payment_plans_agency_id", "payment_plans", ["agency_id"], unique=False)

    op.create_table(
        "installments",
        sa.Column("installment_id", sa.String(length=64), nullable=False),
        sa.Column("plan_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("student_due_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("overdue_cycle", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overdue_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_due_soon_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_overdue_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_received_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.agency_id"]),
        sa.ForeignKeyConstraint(["plan_id"], ["payment_plans.plan_id"]),
        sa.PrimaryKeyConstraint("installment_id"),
    )
    op.create_index("ix_installments_plan_id", "installments", ["plan_id"], unique=False)
    op.create_index("ix_installments_agency_id", "installments", ["agency_id"], unique=False)
    op.create_index("ix_installments_status", "installments", ["status"], unique=False)

    op.create_table(
        "email_templates",
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("recipient_type", sa.String(length=32), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("subject", sa.String(length=256), nullable=False),
        sa.Column("body_html", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.agency_id"]),
        sa.PrimaryKeyConstraint("template_id"),
    )
    op.create_index("ix_email_templates_agency_id", "email_templates", ["agency_id"], unique=False)

    op.create_table(
        "notification_rules",
        sa.Column("rule_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("recipient_type", sa.String(length=32), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("template_id", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.agency_id"]),
        sa.PrimaryKeyConstraint("rule_id"),
        sa.UniqueConstraint(
            "agency_id",
            "recipient_type",
            "event_type",
            name="uq_notification_rules_agency_recipient_event",
        ),
    )
    op.create_index("ix_notification_rules_agency_id", "notification_rules", ["agency_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_notification_rules_agency_id", table_name="notification_rules")
    op.drop_table("notification_rules")

    op.drop_index("ix_email_templates_agency_id", table_name="email_templates")
    op.drop_table("email_templates")

    op.drop_index("ix_installments_status", table_name="installments")
    op.drop_index("ix_installments_agency_id", table_name="installments")
    op.drop_index("ix_installments_plan_id", table_name="installments")
    op.drop_table("installments")

    op.drop_index("ix_payment_plans_agency_id", table_name="payment_plans")
    op.drop_table("payment_plans")

    op.drop_index("ix_branches_agency_id", table_name="branches")
    op.drop_table("branches")

    op.drop_index("ix_colleges_agency_id", table_name="colleges")
    op.drop_table("colleges")

    op.drop_index("ix_staff_users_agency_id", table_name="staff_users")
    op.drop_table("staff_users")

    op.drop_index("ix_students_agency_id", table_name="students")
    op.drop_table("students")

    op.drop_table("agencies")
