from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from domain import Visit, VisitHistory, new_id
from errors import ValidationError

logger = logging.getLogger(__name__)


class HistoryArchiver:
    """Writes the immutable history row of a visit that reached a terminal status."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self.clock = clock

    def archive(self, uow, visit: Visit) -> VisitHistory:
        existing = uow.get_history(visit.id)
        if existing is not None:
            logger.debug("Visit %s already archived", visit.id)
            return existing
        if not visit.is_terminal:
            raise ValidationError(
                f"Visit {visit.id} is {visit.status.value}, only terminal visits are archived"
            )

        wait_end = visit.started_at or visit.completed_at
        actual_wait = wait_end - visit.checked_in_at if wait_end else None
        consultation = None
        if visit.started_at and visit.completed_at:
            consultation = visit.completed_at - visit.started_at

        record = VisitHistory(
            id=new_id(),
            visit_id=visit.id,
            hospital_id=visit.hospital_id,
            patient_id=visit.patient_id,
            doctor_id=visit.doctor_id,
            department_id=visit.department_id,
            token_number=visit.token_number,
            status=visit.status,
            priority=visit.priority,
            checked_in_at=visit.checked_in_at,
            started_at=visit.started_at,
            completed_at=visit.completed_at,
            actual_wait_time=actual_wait,
            actual_consultation_duration=consultation,
            archived_at=self.clock(),
            is_carryover=visit.is_carryover,
            notes=visit.notes,
        )
        uow.add_history(record)
        logger.info("Archived visit %s as %s", visit.id, visit.status.value)
        return record


@dataclass
class HistorySummary:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    average_wait: Optional[timedelta] = None
    average_consultation: Optional[timedelta] = None


def _average(values: List[timedelta]) -> Optional[timedelta]:
    if not values:
        return None
    return sum(values, timedelta(0)) / len(values)


def summarize(
    store,
    hospital_id: str,
    doctor_id: Optional[str] = None,
    since: Optional[datetime] = None,
) -> HistorySummary:
    with store.transaction() as uow:
        records = uow.list_history(hospital_id, doctor_id=doctor_id, since=since)

    summary = HistorySummary(total=len(records))
    for record in records:
        key = record.status.value
        summary.by_status[key] = summary.by_status.get(key, 0) + 1
    summary.average_wait = _average(
        [r.actual_wait_time for r in records if r.actual_wait_time is not None]
    )
    summary.average_consultation = _average(
        [
            r.actual_consultation_duration
            for r in records
            if r.actual_consultation_duration is not None
        ]
    )
    return summary
