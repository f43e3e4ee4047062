from __future__ import annotations

from datetime import datetime
from typing import Optional

import pytz

from domain import (
    WEEKDAYS,
    BookingMode,
    Doctor,
    EffectivePolicy,
    ResetFrequency,
)
from errors import ConfigNotFound

DEFAULT_CONSULTATION_DURATION = 15
DEFAULT_BUFFER_TIME = 5
DEFAULT_ARRIVAL_WINDOW = 15
DEFAULT_RESET_FREQUENCY = ResetFrequency.DAILY
DEFAULT_BOOKING_MODE = BookingMode.TOKEN_ONLY
DEFAULT_NO_SHOW_GRACE_PERIOD = 30


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def resolve(
    uow,
    hospital_id: str,
    department_id: Optional[str] = None,
    default_timezone: str = "UTC",
) -> EffectivePolicy:
    """
    Merge hospital and department configuration into one effective policy.

    For every field the department override wins when set, then the hospital
    value, then the system default. Reads only; safe to call on every action.
    """
    hospital = uow.get_hospital_config(hospital_id)
    if hospital is None:
        raise ConfigNotFound(hospital_id)

    department = None
    if department_id is not None:
        department = uow.get_department_config(hospital_id, department_id)

    def pick(name, default):
        override = getattr(department, name, None) if department else None
        return _first_set(override, getattr(hospital, name, None), default)

    return EffectivePolicy(
        hospital_id=hospital_id,
        department_id=department_id,
        booking_mode=pick("booking_mode", DEFAULT_BOOKING_MODE),
        consultation_duration=pick(
            "default_consultation_duration", DEFAULT_CONSULTATION_DURATION
        ),
        buffer_time=pick("buffer_time", DEFAULT_BUFFER_TIME),
        arrival_window=pick("arrival_window", DEFAULT_ARRIVAL_WINDOW),
        token_reset_frequency=pick("token_reset_frequency", DEFAULT_RESET_FREQUENCY),
        max_queue_length=pick("max_queue_length", None),
        token_prefix=department.token_prefix if department else None,
        no_show_grace_period=pick(
            "no_show_grace_period", DEFAULT_NO_SHOW_GRACE_PERIOD
        ),
        auto_reassign_on_leave=hospital.auto_reassign_on_leave,
        timezone=hospital.timezone or default_timezone,
        business_hours=hospital.business_hours,
    )


def consultation_duration_for(
    policy: EffectivePolicy, doctor: Optional[Doctor] = None
) -> int:
    if doctor is not None and doctor.consultation_duration:
        return doctor.consultation_duration
    return policy.consultation_duration


def to_local(when: datetime, tz_name: str) -> datetime:
    return when.astimezone(pytz.timezone(tz_name))


def is_open(policy: EffectivePolicy, when: datetime) -> bool:
    """True when ``when`` falls inside the hospital's business hours."""
    local = to_local(when, policy.timezone)
    hours = policy.business_hours.get(WEEKDAYS[local.weekday()])
    if hours is None or not hours.is_open:
        return False
    return hours.start <= local.time() < hours.end
