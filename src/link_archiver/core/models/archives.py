"""SQLAlchemy ORM models for content archives and their transition log.

``ContentArchive`` holds the current lifecycle state and, once the pipeline
completes, the sanitized article content and metadata for one ``Link``.

``ContentArchiveTransition`` is the append-only audit trail: one row per state
change, carrying stage-specific facts (failure reason, HTTP status, resolved
IP, byte count, retry count, duration) in its ``metadata`` column.  Rows are
only ever removed by cascade when the archive is deleted.

All writes to ``state`` go through
:func:`link_archiver.archiving.state_machine.transition_to`.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from link_archiver.core.models.base import Base, JSONType, TimestampMixin, utcnow, uuid7

if TYPE_CHECKING:
    from link_archiver.core.models.links import Link


class ContentArchive(TimestampMixin, Base):
    """Archived web page content for a Link.

    Attributes:
        id: UUIDv7 primary key (creation-ordered).
        link_id: Owning link; unique, so each link has exactly one archive.
        url: URL submitted for archival.
        state: ``"pending"``, ``"processing"``, ``"completed"`` or ``"failed"``.
        error_message: Last failure detail; only set while ``state == "failed"``.
        content_html: Sanitized article body.
        content_text: Plain-text rendition of ``content_html``.
        title: Page title (at most 500 characters).
        description: Page description.
        image_url: Preview image URL.
        archive_metadata: Namespaced metadata bag (``og``, ``twitter``,
            ``canonical_url``, ``final_url``, ``content_type``).  Stored in the
            ``metadata`` column.
        fetched_at: Timestamp of the successful fetch.
    """

    __tablename__ = "content_archives"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid7)
    link_id: Mapped[uuid.UUID] = mapped_column(
        sa.ForeignKey("links.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    url: Mapped[str] = mapped_column(sa.String(2048), nullable=False)

    # Lifecycle
    state: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        default="pending",
        server_default=sa.text("'pending'"),
    )
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    # Extracted content
    content_html: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    content_text: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    # Extracted metadata
    title: Mapped[Optional[str]] = mapped_column(sa.String(500), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(sa.String(2048), nullable=True)
    archive_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    fetched_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    link: Mapped["Link"] = relationship(back_populates="content_archive")
    transitions: Mapped[list["ContentArchiveTransition"]] = relationship(
        back_populates="content_archive",
        order_by="ContentArchiveTransition.sort_key",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (sa.Index("idx_content_archives_state", "state"),)


class ContentArchiveTransition(Base):
    """One entry in an archive's append-only transition log.

    Attributes:
        id: UUIDv7 primary key.
        archive_id: Archive this transition belongs to.
        from_state: State before the transition (``None`` for the creation entry).
        to_state: State after the transition.
        transition_metadata: Stage-specific facts.  Stored in the
            ``metadata`` column.
        sort_key: Position in the archive's log, strictly increasing.
        most_recent: ``True`` only for the latest transition of the archive.
        occurred_at: When the transition was recorded.
    """

    __tablename__ = "content_archive_transitions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid7)
    archive_id: Mapped[uuid.UUID] = mapped_column(
        sa.ForeignKey("content_archives.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_state: Mapped[Optional[str]] = mapped_column(sa.String(20), nullable=True)
    to_state: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    transition_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )
    sort_key: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    most_recent: Mapped[bool] = mapped_column(sa.Boolean, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utcnow,
        server_default=sa.func.now(),
    )

    content_archive: Mapped["ContentArchive"] = relationship(back_populates="transitions")

    __table_args__ = (
        sa.UniqueConstraint(
            "archive_id", "sort_key", name="uq_content_archive_transitions_parent_sort"
        ),
        sa.Index(
            "idx_content_archive_transitions_parent_most_recent",
            "archive_id",
            "most_recent",
            unique=True,
            postgresql_where=sa.text("most_recent"),
            sqlite_where=sa.text("most_recent"),
        ),
    )
