"""Baseline schema: users, contacts, interactions, integrations, sync state, jobs.

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_baseline"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _user_fk() -> sa.Column:
    return sa.Column(
        "user_id",
        sa.Uuid(),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "contacts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=True),
        sa.Column("company", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("source", sa.String(30), nullable=True),
        sa.Column("last_contact_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_contacts_user_email", "contacts", ["user_id", "email"])

    op.create_table(
        "interactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("external_source", sa.String(30), nullable=False),
        sa.Column("interaction_type", sa.String(20), nullable=False),
        sa.Column("subject", sa.String(1000), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("location", sa.String(1000), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("item_metadata", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "external_id", "external_source", name="uq_interaction_external"
        ),
    )
    op.create_index("idx_interactions_user_occurred", "interactions", ["user_id", "occurred_at"])

    op.create_table(
        "interaction_participants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "interaction_id",
            sa.Uuid(),
            sa.ForeignKey("interactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            sa.Uuid(),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("response_status", sa.String(20), nullable=True),
        sa.UniqueConstraint("interaction_id", "contact_id", name="uq_interaction_participant"),
    )

    op.create_table(
        "integrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column("integration_type", sa.String(30), nullable=False),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("account_email", sa.String(320), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("provider_metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "integration_type", name="uq_integration_user_type"),
    )

    op.create_table(
        "sync_states",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column("integration_type", sa.String(30), nullable=False),
        sa.Column("phase", sa.String(30), nullable=False),
        sa.Column("sync_enabled", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("cursors", sa.JSON(), nullable=False),
        sa.Column("selected_source_ids", sa.JSON(), nullable=False),
        sa.Column("lookback_days", sa.Integer(), server_default="30", nullable=False),
        sa.Column("excluded_emails", sa.JSON(), nullable=False),
        sa.Column("excluded_domains", sa.JSON(), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("total_synced", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "integration_type", name="uq_sync_state_user_type"),
    )

    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(128), primary_key=True),
        _user_fk(),
        sa.Column("integration_type", sa.String(30), nullable=False),
        sa.Column("code_verifier", sa.String(128), nullable=True),
        sa.Column("redirect_context", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="3", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("progress", sa.Integer(), server_default="0", nullable=False),
        sa.Column("progress_detail", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
    )
    op.create_index("idx_jobs_pending", "jobs", ["status", "run_at"])
    op.create_index("idx_jobs_user", "jobs", ["user_id", "created_at"])
    op.create_index("uq_job_idempotency", "jobs", ["idempotency_key"], unique=True)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=True),
        sa.Column("dedupe_key", sa.String(255), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_notif_user_unread", "notifications", ["user_id", "read_at", "created_at"]
    )
    op.create_index("idx_notif_dedupe", "notifications", ["dedupe_key", "created_at"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("jobs")
    op.drop_table("oauth_states")
    op.drop_table("sync_states")
    op.drop_table("integrations")
    op.drop_table("interaction_participants")
    op.drop_table("interactions")
    op.drop_table("contacts")
    op.drop_table("users")
