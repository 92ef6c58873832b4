"""SQLAlchemy ORM model for saved links.

A ``Link`` is the owning entity of a ``ContentArchive``.  Deleting a link
removes its archive and the archive's transition history (``ON DELETE
CASCADE`` at the database level, ``delete-orphan`` at the ORM level).
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from link_archiver.core.models.base import Base, TimestampMixin, uuid7

if TYPE_CHECKING:
    from link_archiver.core.models.archives import ContentArchive


class Link(TimestampMixin, Base):
    """A URL saved by a user.

    Attributes:
        id: UUIDv7 primary key.
        url: The URL to archive.
        submitted_url: The URL exactly as the user submitted it.
        content_archive: The one-to-one archive record for this link.
    """

    __tablename__ = "links"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid7)
    url: Mapped[str] = mapped_column(sa.String(2048), nullable=False)
    submitted_url: Mapped[str] = mapped_column(sa.String(2048), nullable=False)

    content_archive: Mapped[Optional["ContentArchive"]] = relationship(
        back_populates="link",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (sa.Index("idx_links_created_at", "created_at"),)
