"""create merchants, deal_recurring and deals tables

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

FREQUENCIES = (
    "daily", "weekly", "biweekly", "monthly_date", "monthly_weekday",
    "monthly_last_day", "quarterly", "semi_annual", "annual", "custom",
)


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("team_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("billing_email", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_merchants_team_id", "merchants", ["team_id"])

    op.create_table(
        "deal_recurring",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("team_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("merchant_id", sa.String(36), sa.ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True),
        sa.Column("merchant_name", sa.String(255), nullable=True),
        sa.Column("frequency", sa.Enum(*FREQUENCIES, name="frequency"), nullable=False),
        sa.Column("frequency_day", sa.Integer(), nullable=True),
        sa.Column("frequency_week", sa.Integer(), nullable=True),
        sa.Column("frequency_interval", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("end_type", sa.Enum("never", "on_date", "after_count", name="endtype"), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("end_count", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "completed", "canceled", name="recurringstatus"),
            nullable=False,
        ),
        sa.Column("deals_generated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_scheduled_at", sa.DateTime(), nullable=True),
        sa.Column("last_generated_at", sa.DateTime(), nullable=True),
        sa.Column("upcoming_notification_sent_at", sa.DateTime(), nullable=True),
        sa.Column("claimed_until", sa.DateTime(), nullable=True),
        sa.Column("claim_token", sa.String(36), nullable=True),
        sa.Column("due_date_offset", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("template", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_deal_recurring_team_id", "deal_recurring", ["team_id"])
    op.create_index("ix_deal_recurring_status", "deal_recurring", ["status"])
    op.create_index("idx_deal_recurring_due", "deal_recurring", ["status", "next_scheduled_at"])

    op.create_table(
        "deals",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("team_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("deal_number", sa.String(50), nullable=False),
        sa.Column(
            "status",
            sa.Enum("draft", "scheduled", "unpaid", "overdue", "paid", "canceled", name="dealstatus"),
            nullable=False,
        ),
        sa.Column("merchant_id", sa.String(36), sa.ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True),
        sa.Column("merchant_name", sa.String(255), nullable=True),
        sa.Column("sent_to", sa.String(255), nullable=True),
        sa.Column("issue_date", sa.DateTime(), nullable=True),
        sa.Column("due_date", sa.DateTime(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("template", sa.JSON(), nullable=True),
        sa.Column("deal_recurring_id", sa.String(36), sa.ForeignKey("deal_recurring.id"), nullable=True),
        sa.Column("recurring_sequence", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("deal_recurring_id", "recurring_sequence", name="uq_deal_recurring_sequence"),
    )
    op.create_index("ix_deals_team_id", "deals", ["team_id"])
    op.create_index("ix_deals_deal_recurring_id", "deals", ["deal_recurring_id"])


def downgrade() -> None:
    op.drop_table("deals")
    op.drop_table("deal_recurring")
    op.drop_table("merchants")
