"""Create links, content_archives and content_archive_transitions.

``content_archives`` holds one archive per link (unique ``link_id``) with its
lifecycle state and, once completed, the sanitized content and metadata.

``content_archive_transitions`` is the append-only state-change log.  A
partial unique index guarantees at most one ``most_recent`` row per archive.

Both child tables cascade on delete so removing a link removes its archive
and the archive's history.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the link and archive tables."""
    op.create_table(
        "links",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("submitted_url", sa.String(2048), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_links_created_at", "links", ["created_at"])

    op.create_table(
        "content_archives",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "link_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("links.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("url", sa.String(2048), nullable=False),
        # Lifecycle
        sa.Column(
            "state",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        # Content
        sa.Column("content_html", sa.Text(), nullable=True),
        sa.Column("content_text", sa.Text(), nullable=True),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("image_url", sa.String(2048), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_content_archives_state", "content_archives", ["state"])

    op.create_table(
        "content_archive_transitions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "archive_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("content_archives.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_state", sa.String(20), nullable=True),
        sa.Column("to_state", sa.String(20), nullable=False),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("sort_key", sa.Integer(), nullable=False),
        sa.Column("most_recent", sa.Boolean(), nullable=False),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "archive_id", "sort_key", name="uq_content_archive_transitions_parent_sort"
        ),
    )
    op.create_index(
        "ix_content_archive_transitions_archive_id",
        "content_archive_transitions",
        ["archive_id"],
    )
    op.create_index(
        "idx_content_archive_transitions_parent_most_recent",
        "content_archive_transitions",
        ["archive_id", "most_recent"],
        unique=True,
        postgresql_where=sa.text("most_recent"),
    )


def downgrade() -> None:
    """Drop the archive and link tables."""
    op.drop_index(
        "idx_content_archive_transitions_parent_most_recent",
        table_name="content_archive_transitions",
    )
    op.drop_index(
        "ix_content_archive_transitions_archive_id",
        table_name="content_archive_transitions",
    )
    op.drop_table("content_archive_transitions")
    op.drop_index("idx_content_archives_state", table_name="content_archives")
    op.drop_table("content_archives")
    op.drop_index("idx_links_created_at", table_name="links")
    op.drop_table("links")
