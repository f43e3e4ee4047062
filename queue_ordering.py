from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from domain import (
    PRIORITY_ORDER,
    QUEUED_STATUSES,
    QueueEntry,
    QueueSnapshot,
    Visit,
    VisitStatus,
)


def queue_sort_key(visit: Visit):
    """
    Ascending sort key: priority band, carryover before regular, token.

    Skipped patients rejoin at the back of their priority band, in the order
    they were skipped. Check-in time and id only break ties between equal
    tokens, which happen when a reassigned visit keeps a number drawn in
    another scope.
    """
    rank = PRIORITY_ORDER[visit.priority]
    if visit.requeued_at is not None:
        return (rank, 2, visit.requeued_at, visit.token_number, visit.checked_in_at, visit.id)
    return (
        rank,
        0 if visit.is_carryover else 1,
        visit.token_number,
        visit.checked_in_at,
        visit.id,
    )


def order_queue(visits: Iterable[Visit]) -> List[Visit]:
    queued = [v for v in visits if v.status in QUEUED_STATUSES]
    return sorted(queued, key=queue_sort_key)


def remaining_time(visit: Visit, duration: timedelta, now: datetime) -> timedelta:
    if visit.started_at is None:
        return duration
    return max(timedelta(0), duration - (now - visit.started_at))


def estimate_wait(
    position: int,
    duration: timedelta,
    in_progress: Sequence[Visit],
    now: datetime,
    servers: int = 1,
) -> timedelta:
    """
    Expected wait for the visit at ``position`` (0-based) of an ordered queue.

    Everyone ahead costs one consultation, spread over ``servers`` doctors,
    plus whatever is left of the consultation that frees up first.
    """
    servers = max(1, servers)
    remaining = sorted(remaining_time(v, duration, now) for v in in_progress)
    first_free = remaining[0] if len(remaining) >= servers else timedelta(0)
    return (position // servers) * duration + first_free


def to_minutes(delta: timedelta) -> int:
    return max(0, int(round(delta.total_seconds() / 60)))


def build_snapshot(
    visits: Iterable[Visit],
    consultation_minutes: int,
    now: datetime,
    hospital_id: str,
    doctor_id: Optional[str] = None,
    department_id: Optional[str] = None,
    servers: int = 1,
) -> QueueSnapshot:
    visits = list(visits)
    duration = timedelta(minutes=consultation_minutes)
    in_progress = sorted(
        (v for v in visits if v.status == VisitStatus.IN_PROGRESS),
        key=lambda v: (v.started_at or now, v.id),
    )
    entries = []
    for position, visit in enumerate(order_queue(visits)):
        wait = estimate_wait(position, duration, in_progress, now, servers)
        visit.estimated_wait_minutes = to_minutes(wait)
        entries.append(
            QueueEntry(
                visit=visit,
                position=position,
                estimated_wait=wait,
                on_hold=visit.status == VisitStatus.ON_HOLD,
            )
        )
    return QueueSnapshot(
        hospital_id=hospital_id,
        doctor_id=doctor_id,
        department_id=department_id,
        entries=entries,
        in_progress=in_progress,
        computed_at=now,
    )
