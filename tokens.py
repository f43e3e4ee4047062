from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import NamedTuple, Optional

import pytz

from config_resolver import to_local
from domain import ResetFrequency, TokenCounter
from locks import KeyedLocks


@dataclass(frozen=True)
class TokenScope:
    hospital_id: str
    department_id: str
    doctor_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.hospital_id}:{self.department_id}:{self.doctor_id or '*'}"


class AllocatedToken(NamedTuple):
    number: int
    period_key: str


def period_key(frequency: ResetFrequency, now: datetime, tz_name: str) -> str:
    """Name of the reset period containing ``now`` in the hospital's zone."""
    local = to_local(now, tz_name)
    if frequency == ResetFrequency.DAILY:
        return local.date().isoformat()
    if frequency == ResetFrequency.WEEKLY:
        year, week, _ = local.isocalendar()
        return f"{year}-W{week:02d}"
    if frequency == ResetFrequency.MONTHLY:
        return f"{local.year}-{local.month:02d}"
    return "ALL"


def day_start(now: datetime, tz_name: str) -> datetime:
    """Start of the local calendar day containing ``now``, as UTC."""
    zone = pytz.timezone(tz_name)
    local = to_local(now, tz_name)
    midnight = zone.localize(datetime.combine(local.date(), time.min))
    return midnight.astimezone(pytz.utc)


class TokenAllocator:
    """
    Hands out token numbers per scope.

    Each scope key owns one counter row. The counter lives in the caller's
    unit of work, so a number is only consumed when the operation that drew
    it commits. Allocation for one scope is serialized by its own lock,
    separate from the doctor queue locks, held until that unit of work ends.
    """

    def __init__(self, locks: Optional[KeyedLocks] = None) -> None:
        self.locks = locks or KeyedLocks()

    def allocate(
        self,
        uow,
        scope: TokenScope,
        frequency: ResetFrequency,
        now: datetime,
        tz_name: str,
    ) -> AllocatedToken:
        period = period_key(frequency, now, tz_name)
        # Held until the unit of work finishes so the next caller reads the
        # committed counter.
        uow.hold(self.locks, f"token:{scope.key}")
        counter = uow.get_token_counter(scope.key)
        if counter is None or counter.period_key != period:
            counter = TokenCounter(scope_key=scope.key, period_key=period)
        counter.last_value += 1
        uow.save_token_counter(counter)
        return AllocatedToken(counter.last_value, period)

    def next_token(
        self,
        uow,
        scope: TokenScope,
        frequency: ResetFrequency,
        now: datetime,
        tz_name: str,
    ) -> int:
        return self.allocate(uow, scope, frequency, now, tz_name).number
