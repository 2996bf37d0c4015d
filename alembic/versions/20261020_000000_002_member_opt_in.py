"""Member opt-in tokens.

Revision ID: 002
Revises: 001
Create Date: 2026-10-20 00:00:00.000000

Adds the per-member verification token used to confirm double opt-in, and
the time the member was verified.
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "repository_members",
        sa.Column("verification_token", sa.String(64), nullable=True),
    )
    op.add_column(
        "repository_members",
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        op.f("ix_repository_members_verification_token"),
        "repository_members",
        ["verification_token"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        op.f("ix_repository_members_verification_token"), table_name="repository_members"
    )
    op.drop_column("repository_members", "verified_at")
    op.drop_column("repository_members", "verification_token")
