"""Archive lifecycle state machine.

States and allowed edges::

    (none) ──▶ pending ──▶ processing ──▶ completed
                  │            │  ▲
                  │            ▼  │ retry
                  └────────▶ failed

``pending → failed`` is only taken when archival is disabled.  ``failed →
processing`` is the explicit retry edge.  ``completed`` is terminal.

:func:`transition_to` is the only code path that changes
``ContentArchive.state``.  It validates the edge, appends a
``ContentArchiveTransition`` row, moves the ``most_recent`` flag and applies
the field updates in the caller's session; the caller commits once so that
the state change, the log row and the content land atomically.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from link_archiver.core.exceptions import InvalidTransitionError
from link_archiver.core.models.archives import ContentArchive, ContentArchiveTransition
from link_archiver.core.models.base import utcnow

logger = logging.getLogger(__name__)


class ArchiveState(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


#: Map of current state (``None`` = not yet created) to permitted next states.
ALLOWED_TRANSITIONS: dict[ArchiveState | None, frozenset[ArchiveState]] = {
    None: frozenset({ArchiveState.PENDING}),
    ArchiveState.PENDING: frozenset({ArchiveState.PROCESSING, ArchiveState.FAILED}),
    ArchiveState.PROCESSING: frozenset({ArchiveState.COMPLETED, ArchiveState.FAILED}),
    ArchiveState.FAILED: frozenset({ArchiveState.PROCESSING}),
    ArchiveState.COMPLETED: frozenset(),
}

#: Fields that may only be written together with a transition into ``completed``.
CONTENT_FIELDS: frozenset[str] = frozenset({
    "content_html",
    "content_text",
    "title",
    "description",
    "image_url",
    "archive_metadata",
    "fetched_at",
})


def _coerce(state: ArchiveState | str | None) -> ArchiveState | None:
    if state is None:
        return None
    return ArchiveState(state)


def can_transition(from_state: ArchiveState | str | None, to_state: ArchiveState | str) -> bool:
    """Return ``True`` if ``from_state → to_state`` is an edge of the state machine."""
    try:
        source, target = _coerce(from_state), ArchiveState(to_state)
    except ValueError:
        return False
    return target in ALLOWED_TRANSITIONS.get(source, frozenset())


def transition_to(
    session: Session,
    archive: ContentArchive,
    to_state: ArchiveState | str,
    *,
    metadata: dict[str, Any] | None = None,
    updates: dict[str, Any] | None = None,
) -> ContentArchiveTransition:
    """Move ``archive`` to ``to_state`` and record the transition.

    For a newly created archive (not yet flushed, ``state`` unset) the edge
    is taken from ``None``.

    Args:
        session: Session owning ``archive``.  Not committed here.
        archive: The archive to update.
        to_state: Target state.
        metadata: Stage facts stored on the transition row.
        updates: Column values to set on the archive in the same unit of
            work.  Content fields are only accepted with ``completed`` and
            ``error_message`` only with ``failed``.

    Returns:
        The appended :class:`ContentArchiveTransition`.

    Raises:
        InvalidTransitionError: If the edge is not allowed.
        ValueError: If ``updates`` names a field the target state may not set.
    """
    target = ArchiveState(to_state)
    is_new = archive.id is None or not _has_transitions(session, archive)
    source = None if is_new else _coerce(archive.state)

    if not can_transition(source, target):
        raise InvalidTransitionError(source.value if source else None, target.value)

    updates = dict(updates or {})
    content_updates = CONTENT_FIELDS.intersection(updates)
    if content_updates and target is not ArchiveState.COMPLETED:
        raise ValueError(
            f"Content fields {sorted(content_updates)} can only be set when completing an archive"
        )
    if "error_message" in updates and target is not ArchiveState.FAILED:
        raise ValueError("error_message can only be set when failing an archive")
    if "state" in updates:
        raise ValueError("state is managed by transition_to")

    if target is not ArchiveState.FAILED:
        updates.setdefault("error_message", None)

    if archive.id is None:
        session.add(archive)
        session.flush()

    # Clear the previous most_recent flag before inserting the new row so the
    # partial unique index never sees two flagged rows.
    session.execute(
        update(ContentArchiveTransition)
        .where(
            ContentArchiveTransition.archive_id == archive.id,
            ContentArchiveTransition.most_recent.is_(True),
        )
        .values(most_recent=False)
        .execution_options(synchronize_session="fetch")
    )
    next_sort_key = session.scalar(
        select(func.coalesce(func.max(ContentArchiveTransition.sort_key), 0)).where(
            ContentArchiveTransition.archive_id == archive.id
        )
    ) + 1

    transition = ContentArchiveTransition(
        archive_id=archive.id,
        from_state=source.value if source else None,
        to_state=target.value,
        transition_metadata=dict(metadata or {}),
        sort_key=next_sort_key,
        most_recent=True,
        occurred_at=utcnow(),
    )
    archive.transitions.append(transition)

    archive.state = target.value
    for name, value in updates.items():
        setattr(archive, name, value)

    session.flush()
    logger.debug(
        "state_machine: archive %s %s -> %s",
        archive.id,
        source.value if source else None,
        target.value,
    )
    return transition


def _has_transitions(session: Session, archive: ContentArchive) -> bool:
    return (
        session.scalar(
            select(ContentArchiveTransition.id)
            .where(ContentArchiveTransition.archive_id == archive.id)
            .limit(1)
        )
        is not None
    )
