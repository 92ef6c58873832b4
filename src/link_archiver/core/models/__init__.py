"""SQLAlchemy ORM models for Link Archiver.

All models are imported here so that:
1. Alembic autogenerate can discover them via Base.metadata.
2. Application code can do ``from link_archiver.core.models import Link``
   without knowing which sub-module a model lives in.
3. SQLAlchemy's relationship resolution finds all mapper targets at
   import time, avoiding "mapper not yet configured" errors.
"""

from __future__ import annotations

from link_archiver.core.models.base import Base, TimestampMixin
from link_archiver.core.models.archives import ContentArchive, ContentArchiveTransition
from link_archiver.core.models.links import Link

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Links
    "Link",
    # Archives
    "ContentArchive",
    "ContentArchiveTransition",
]
