"""Configuration package for Link Archiver.

Re-exports the settings objects so that callers can write::

    from link_archiver.config import get_archive_settings
"""

from __future__ import annotations

from link_archiver.config.settings import (
    ArchiveSettings,
    Settings,
    get_archive_settings,
    get_settings,
)

__all__ = [
    "ArchiveSettings",
    "Settings",
    "get_archive_settings",
    "get_settings",
]
