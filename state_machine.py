from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Tuple

from domain import Visit, VisitStatus
from errors import InvalidTransition


class Action(str, Enum):
    CALL = "call"
    COMPLETE = "complete"
    CANCEL = "cancel"
    NO_SHOW = "no_show"
    HOLD = "hold"
    RESUME = "resume"
    SKIP = "skip"
    CARRY_OVER = "carry_over"
    REASSIGN = "reassign"


W = VisitStatus.WAITING
P = VisitStatus.IN_PROGRESS
H = VisitStatus.ON_HOLD

# (current status, action) -> next status. Anything missing is rejected.
TRANSITIONS: Dict[Tuple[VisitStatus, Action], VisitStatus] = {
    (W, Action.CALL): P,
    (P, Action.COMPLETE): VisitStatus.COMPLETED,
    (W, Action.CANCEL): VisitStatus.CANCELLED,
    (H, Action.CANCEL): VisitStatus.CANCELLED,
    (W, Action.NO_SHOW): VisitStatus.NO_SHOW,
    (W, Action.HOLD): H,
    (P, Action.HOLD): H,
    (H, Action.RESUME): W,
    (W, Action.SKIP): VisitStatus.SKIPPED,
    (W, Action.CARRY_OVER): VisitStatus.CARRYOVER,
    (H, Action.CARRY_OVER): VisitStatus.CARRYOVER,
    (P, Action.CARRY_OVER): VisitStatus.CARRYOVER,
    (W, Action.REASSIGN): W,
    (H, Action.REASSIGN): H,
}


def next_status(current: VisitStatus, action: Action) -> VisitStatus:
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(current, action) from None


def can(visit: Visit, action: Action) -> bool:
    return (visit.status, action) in TRANSITIONS


def apply(visit: Visit, action: Action, now: datetime) -> Visit:
    """Move ``visit`` along the table and stamp the matching timestamp."""
    visit.status = next_status(visit.status, action)
    if action == Action.CALL and visit.started_at is None:
        visit.started_at = now
    elif visit.is_terminal:
        visit.completed_at = now
    return visit
