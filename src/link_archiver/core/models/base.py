"""SQLAlchemy declarative base and shared mixins for all ORM models.

Provides:
- Base: the DeclarativeBase subclass all models inherit from
- TimestampMixin: created_at / updated_at columns
- JSONType: JSON column type that becomes JSONB on PostgreSQL
- uuid7(): time-ordered UUID generator used for primary keys
"""

from __future__ import annotations

import os
import time
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

#: JSON bag column; JSONB (GIN-indexable) on PostgreSQL, plain JSON elsewhere.
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def uuid7() -> uuid.UUID:
    """Return a version 7 UUID (48-bit millisecond timestamp + random bits).

    IDs sort in creation order, which keeps primary-key indexes append-only
    and makes ``ORDER BY id`` a creation-order query.
    """
    unix_ms = time.time_ns() // 1_000_000
    rand = int.from_bytes(os.urandom(10), "big")
    value = (unix_ms & 0xFFFF_FFFF_FFFF) << 80
    value |= 0x7 << 76  # version
    value |= ((rand >> 62) & 0xFFF) << 64  # rand_a
    value |= 0b10 << 62  # RFC 4122 variant
    value |= rand & 0x3FFF_FFFF_FFFF_FFFF  # rand_b
    return uuid.UUID(int=value)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all Link Archiver models."""

    type_annotation_map = {
        uuid.UUID: sa.Uuid(as_uuid=True),
        datetime: sa.DateTime(timezone=True),
    }


class TimestampMixin:
    """Adds created_at and updated_at columns.

    Values are set by the ORM so they are available without a refresh; the
    server default covers rows inserted outside the ORM (migrations, SQL).
    """

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utcnow,
        server_default=sa.func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utcnow,
        server_default=sa.func.now(),
        onupdate=utcnow,
    )
