"""Create directory, notification job/delivery and chat phase tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "people",
        sa.Column("person_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=False),
        sa.Column("telegram_user_id", sa.String(length=64), nullable=True),
        sa.Column("telegram_username", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("person_id"),
    )
    op.create_index("ix_people_telegram_user_id", "people", ["telegram_user_id"], unique=False)

    op.create_table(
        "person_slack_links",
        sa.Column("link_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("person_id", sa.String(length=128), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.String(length=64), nullable=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(["person_id"], ["people.person_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("link_id"),
    )
    op.create_index("ix_person_slack_links_person_id", "person_slack_links", ["person_id"], unique=False)

    op.create_table(
        "notification_jobs",
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("targets_json", sa.Text(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("source_json", sa.Text(), nullable=False),
        sa.Column("resend_guard", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("task_name", sa.String(length=512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_notification_jobs_type", "notification_jobs", ["type"], unique=False)
    op.create_index("ix_notification_jobs_scheduled_at", "notification_jobs", ["scheduled_at"], unique=False)
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"], unique=False)

    op.create_table(
        "notification_deliveries",
        sa.Column("delivery_id", sa.String(length=64), nullable=False),
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("targets_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("source_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("delivery_id"),
    )
    op.create_index("ix_notification_deliveries_job_id", "notification_deliveries", ["job_id"], unique=False)
    op.create_index("ix_notification_deliveries_created_at", "notification_deliveries", ["created_at"], unique=False)

    op.create_table(
        "tg_chats",
        sa.Column("chat_id", sa.String(length=64), nullable=False),
        sa.Column("phase_value", sa.String(length=32), nullable=True),
        sa.Column("phase_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column("phase_message_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chat_id"),
    )
    op.create_index("ix_tg_chats_phase_value", "tg_chats", ["phase_value"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_tg_chats_phase_value", table_name="tg_chats")
    op.drop_table("tg_chats")
    op.drop_index("ix_notification_deliveries_created_at", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_job_id", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")
    op.drop_index("ix_notification_jobs_status", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_scheduled_at", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_type", table_name="notification_jobs")
    op.drop_table("notification_jobs")
    op.drop_index("ix_person_slack_links_person_id", table_name="person_slack_links")
    op.drop_table("person_slack_links")
    op.drop_index("ix_people_telegram_user_id", table_name="people")
    op.drop_table("people")
