"""Repositories, members and snowball events.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # Create enum types
    op.execute(
        "CREATE TYPE snowball_event_status AS ENUM "
        "('pending', 'processing', 'completed', 'partial', 'failed')"
    )
    op.execute("CREATE TYPE member_source AS ENUM ('manual', 'csv', 'snowball', 'api')")
    op.execute("CREATE TYPE verification_status AS ENUM ('pending', 'verified', 'rejected')")

    # Create repositories table
    op.create_table(
        "repositories",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("topic", sa.Text(), nullable=True),
        sa.Column("hashtags", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("owner_email", sa.String(255), nullable=True),
        sa.Column("settings", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("total_emails", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("verified_emails", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_emails", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("growth_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("engagement_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("viral_multiplier", sa.Float(), nullable=False, server_default="0"),
        sa.Column("quality_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("stats_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_repositories")),
    )
    op.create_index(op.f("ix_repositories_name"), "repositories", ["name"], unique=False)
    op.create_index(op.f("ix_repositories_owner_id"), "repositories", ["owner_id"], unique=False)

    # Create snowball_events table
    op.create_table(
        "snowball_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("repository_id", sa.UUID(), nullable=False),
        sa.Column("uploader_id", sa.String(255), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("checksum", sa.String(64), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("parent_event_id", sa.UUID(), nullable=True),
        sa.Column("parent_email", sa.String(320), nullable=True),
        sa.Column("candidates", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("results", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("total_emails", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_rows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("added_emails", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rejected_emails", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duplicate_emails", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("batches_committed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            postgresql.ENUM(
                "pending",
                "processing",
                "completed",
                "partial",
                "failed",
                name="snowball_event_status",
                create_type=False,
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("failure_reason", sa.String(50), nullable=True),
        sa.Column("lock_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["repository_id"],
            ["repositories.id"],
            name=op.f("fk_snowball_events_repository_id_repositories"),
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["parent_event_id"],
            ["snowball_events.id"],
            name=op.f("fk_snowball_events_parent_event_id_snowball_events"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_snowball_events")),
    )
    op.create_index(
        "ix_snowball_events_repository_generation",
        "snowball_events",
        ["repository_id", "generation"],
        unique=False,
    )
    op.create_index(
        "ix_snowball_events_repository_content_hash",
        "snowball_events",
        ["repository_id", "content_hash"],
        unique=False,
    )
    op.create_index(
        "ix_snowball_events_uploader_created",
        "snowball_events",
        ["uploader_id", "created_at"],
        unique=False,
    )

    # Create repository_members table
    op.create_table(
        "repository_members",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("repository_id", sa.UUID(), nullable=False),
        sa.Column("address", sa.String(320), nullable=False),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("company", sa.String(100), nullable=True),
        sa.Column("tags", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("added_by", sa.String(255), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "source",
            postgresql.ENUM(
                "manual", "csv", "snowball", "api", name="member_source", create_type=False
            ),
            nullable=False,
            server_default="manual",
        ),
        sa.Column("event_id", sa.UUID(), nullable=True),
        sa.Column("snowball_generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("parent_email", sa.String(320), nullable=True),
        sa.Column(
            "verification_status",
            postgresql.ENUM(
                "pending", "verified", "rejected", name="verification_status", create_type=False
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("opt_in_status", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("engagement_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("quality_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("bounce_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("removed_reason", sa.String(50), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["repository_id"],
            ["repositories.id"],
            name=op.f("fk_repository_members_repository_id_repositories"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["event_id"],
            ["snowball_events.id"],
            name=op.f("fk_repository_members_event_id_snowball_events"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_repository_members")),
        sa.UniqueConstraint(
            "repository_id", "address", name="uq_repository_members_repository_address"
        ),
    )
    op.create_index(
        op.f("ix_repository_members_repository_id"),
        "repository_members",
        ["repository_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_repository_members_added_by"),
        "repository_members",
        ["added_by"],
        unique=False,
    )
    op.create_index(
        "ix_repository_members_repository_generation",
        "repository_members",
        ["repository_id", "snowball_generation"],
        unique=False,
    )
    op.create_index(
        "ix_repository_members_repository_active",
        "repository_members",
        ["repository_id", "is_active"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("repository_members")
    op.drop_table("snowball_events")
    op.drop_table("repositories")

    op.execute("DROP TYPE IF EXISTS verification_status")
    op.execute("DROP TYPE IF EXISTS member_source")
    op.execute("DROP TYPE IF EXISTS snowball_event_status")
