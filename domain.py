from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Optional


class BookingMode(str, Enum):
    TOKEN_ONLY = "TOKEN_ONLY"
    TIME_SLOT_ONLY = "TIME_SLOT_ONLY"
    BOTH = "BOTH"


class ResetFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    NEVER = "NEVER"


class DoctorStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ON_LEAVE = "ON_LEAVE"
    INACTIVE = "INACTIVE"


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    COMPLETED = "COMPLETED"


class BookingType(str, Enum):
    ONLINE = "ONLINE"
    WALK_IN = "WALK_IN"


class Priority(str, Enum):
    NORMAL = "NORMAL"
    VIP = "VIP"
    URGENT = "URGENT"


class VisitStatus(str, Enum):
    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    SKIPPED = "SKIPPED"
    CARRYOVER = "CARRYOVER"


# Lower rank is served first.
PRIORITY_ORDER = {
    Priority.URGENT: 0,
    Priority.VIP: 1,
    Priority.NORMAL: 2,
}

# Statuses that are archived into VisitHistory.
TERMINAL_STATUSES = frozenset(
    {VisitStatus.COMPLETED, VisitStatus.CANCELLED, VisitStatus.NO_SHOW}
)

# SKIPPED and CARRYOVER rows are replaced by a successor visit, so they no
# longer count as the patient's active visit.
ACTIVE_STATUSES = frozenset(
    {VisitStatus.WAITING, VisitStatus.IN_PROGRESS, VisitStatus.ON_HOLD}
)

QUEUED_STATUSES = frozenset({VisitStatus.WAITING, VisitStatus.ON_HOLD})

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class BusinessHours:
    is_open: bool = True
    start: time = time(9, 0)
    end: time = time(17, 0)


def default_business_hours() -> Dict[str, BusinessHours]:
    hours = {day: BusinessHours() for day in WEEKDAYS}
    hours["sunday"] = BusinessHours(is_open=False)
    return hours


@dataclass
class HospitalConfig:
    hospital_id: str
    booking_mode: BookingMode = BookingMode.TOKEN_ONLY
    default_consultation_duration: Optional[int] = None  # minutes
    buffer_time: Optional[int] = None  # minutes
    arrival_window: Optional[int] = None  # minutes before the appointment
    business_hours: Dict[str, BusinessHours] = field(
        default_factory=default_business_hours
    )
    token_reset_frequency: Optional[ResetFrequency] = None
    auto_reassign_on_leave: bool = False
    max_queue_length: Optional[int] = None
    timezone: Optional[str] = None
    no_show_grace_period: Optional[int] = None  # minutes


@dataclass
class DepartmentConfig:
    """Per-department override; every ``None`` field defers to the hospital."""

    hospital_id: str
    department_id: str
    booking_mode: Optional[BookingMode] = None
    default_consultation_duration: Optional[int] = None
    buffer_time: Optional[int] = None
    arrival_window: Optional[int] = None
    token_reset_frequency: Optional[ResetFrequency] = None
    max_queue_length: Optional[int] = None
    token_prefix: Optional[str] = None
    no_show_grace_period: Optional[int] = None


@dataclass
class EffectivePolicy:
    hospital_id: str
    department_id: Optional[str]
    booking_mode: BookingMode
    consultation_duration: int
    buffer_time: int
    arrival_window: int
    token_reset_frequency: ResetFrequency
    max_queue_length: Optional[int]
    token_prefix: Optional[str]
    no_show_grace_period: int
    auto_reassign_on_leave: bool
    timezone: str
    business_hours: Dict[str, BusinessHours]


@dataclass
class Doctor:
    id: str
    hospital_id: str
    department_id: str
    name: str = ""
    status: DoctorStatus = DoctorStatus.ACTIVE
    consultation_duration: Optional[int] = None
    daily_patient_limit: Optional[int] = None


@dataclass
class Appointment:
    id: str
    hospital_id: str
    patient_id: str
    scheduled_at: datetime
    department_id: Optional[str] = None
    doctor_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    booking_type: BookingType = BookingType.ONLINE


@dataclass
class Visit:
    id: str
    hospital_id: str
    patient_id: str
    department_id: str
    token_number: int
    checked_in_at: datetime
    doctor_id: Optional[str] = None
    appointment_id: Optional[str] = None
    status: VisitStatus = VisitStatus.WAITING
    priority: Priority = Priority.NORMAL
    token_prefix: Optional[str] = None
    token_period: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_wait_minutes: Optional[int] = None
    is_carryover: bool = False
    carried_from_id: Optional[str] = None
    requeued_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def display_token(self) -> str:
        if self.token_prefix:
            return f"{self.token_prefix}-{self.token_number:03d}"
        return str(self.token_number)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(frozen=True)
class VisitHistory:
    id: str
    visit_id: str
    hospital_id: str
    patient_id: str
    doctor_id: Optional[str]
    department_id: str
    token_number: int
    status: VisitStatus
    priority: Priority
    checked_in_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    actual_wait_time: Optional[timedelta]
    actual_consultation_duration: Optional[timedelta]
    archived_at: datetime
    is_carryover: bool = False
    notes: Optional[str] = None


@dataclass
class TokenCounter:
    scope_key: str
    period_key: str
    last_value: int = 0


@dataclass
class QueueEntry:
    visit: Visit
    position: int
    estimated_wait: timedelta
    on_hold: bool = False


@dataclass
class QueueSnapshot:
    """Ordered view of one doctor's or department's queue at a moment."""

    hospital_id: str
    doctor_id: Optional[str]
    department_id: Optional[str]
    entries: List[QueueEntry]
    in_progress: List[Visit]
    computed_at: datetime

    @property
    def visit_ids(self) -> List[str]:
        return [entry.visit.id for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)
