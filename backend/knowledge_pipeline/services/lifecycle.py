"""
Document lifecycle — allowed transitions and staleness.

    uploaded ─┬─► fetched ─┐
              │            ▼
              └──────► processing ──► completed
                 ▲         │  │
    pending ─────┘         │  └──► error ──► pending
       ▲                   │          │
       └── stale reset ◄───┘          └──► processing (queue retry)

A completed document only leaves `completed` through an explicit
reprocessing request (completed → pending).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.schemas.documents import DocumentStatus

S = DocumentStatus

ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    S.UPLOADED:   frozenset({S.FETCHED, S.PROCESSING, S.PENDING, S.ERROR}),
    S.FETCHED:    frozenset({S.PROCESSING, S.PENDING, S.ERROR}),
    S.PENDING:    frozenset({S.PROCESSING, S.ERROR}),
    S.PROCESSING: frozenset({S.COMPLETED, S.ERROR, S.PENDING}),
    S.ERROR:      frozenset({S.PENDING, S.PROCESSING}),
    S.COMPLETED:  frozenset({S.PENDING}),
}

# States from which a worker may claim the document
CLAIMABLE: frozenset[DocumentStatus] = frozenset({S.UPLOADED, S.FETCHED, S.PENDING, S.ERROR})


class InvalidTransitionError(ValueError):
    def __init__(self, current: DocumentStatus, target: DocumentStatus) -> None:
        super().__init__(f"Illegal document transition {current.value} → {target.value}")
        self.current = current
        self.target = target


def can_transition(current: DocumentStatus | str, target: DocumentStatus | str) -> bool:
    return S(target) in ALLOWED_TRANSITIONS[S(current)]


def ensure_transition(current: DocumentStatus | str, target: DocumentStatus | str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(S(current), S(target))


def stale_threshold() -> timedelta:
    return timedelta(minutes=settings.stale_processing_minutes)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def processing_age(started_at: datetime | None, now: datetime | None = None) -> timedelta | None:
    if started_at is None:
        return None
    now = now or utcnow()
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return now - started_at


def is_stale(
    status:     DocumentStatus | str,
    started_at: datetime | None,
    now:        datetime | None = None,
) -> bool:
    """
    True if a `processing` document has exceeded the staleness threshold.
    A processing row without a start time cannot prove it is alive and
    counts as stale.
    """
    if S(status) is not S.PROCESSING:
        return False
    age = processing_age(started_at, now)
    return age is None or age > stale_threshold()
