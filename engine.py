from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import pytz

from config_resolver import consultation_duration_for, is_open, resolve
from domain import (
    ACTIVE_STATUSES,
    QUEUED_STATUSES,
    Appointment,
    AppointmentStatus,
    BookingMode,
    DepartmentConfig,
    Doctor,
    DoctorStatus,
    EffectivePolicy,
    HospitalConfig,
    Priority,
    QueueSnapshot,
    Visit,
    VisitStatus,
    new_id,
)
from errors import (
    Busy,
    ConfigNotFound,
    DoctorBusy,
    DuplicateActiveVisit,
    EmptyQueue,
    InvalidTransition,
    NotFound,
    TargetDoctorInactive,
    ValidationError,
)
from events import EventPublisher, InMemoryPublisher, QueueEvent, queue_items
from history import HistoryArchiver
from locks import KeyedLocks, department_key, doctor_key
from queue_ordering import build_snapshot, order_queue
from state_machine import Action, apply, next_status
from storage import Store
from tokens import TokenAllocator, TokenScope, day_start

logger = logging.getLogger(__name__)

# Appointment status mirrored when its visit ends.
_APPOINTMENT_OUTCOME = {
    VisitStatus.COMPLETED: AppointmentStatus.COMPLETED,
    VisitStatus.CANCELLED: AppointmentStatus.CANCELLED,
    VisitStatus.NO_SHOW: AppointmentStatus.NO_SHOW,
}


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


class QueueEngine:
    """
    Queue and token orchestration for one or many hospitals.

    Responsibilities:
    - Resolves the effective policy for every action.
    - Allocates tokens on check-in and keeps the per-doctor queue ordered.
    - Applies visit transitions through the central transition table.
    - Serializes writes per doctor (or per department pool) with bounded waits.
    - Archives terminal visits and publishes one event per successful change.
    """

    def __init__(
        self,
        store: Store,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        lock_timeout: float = 2.0,
        default_timezone: str = "UTC",
    ) -> None:
        self.store = store
        self.publisher = publisher or InMemoryPublisher()
        self.clock = clock or utcnow
        self.locks = KeyedLocks(lock_timeout)
        self.tokens = TokenAllocator(KeyedLocks(lock_timeout))
        self.archiver = HistoryArchiver(self.clock)
        self.default_timezone = default_timezone

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def save_hospital_config(self, config: HospitalConfig) -> HospitalConfig:
        if config.timezone:
            try:
                pytz.timezone(config.timezone)
            except pytz.UnknownTimeZoneError as exc:
                raise ValidationError(f"Unknown time zone {config.timezone}") from exc
        with self.store.transaction() as uow:
            uow.save_hospital_config(config)
        return config

    def save_department_config(self, config: DepartmentConfig) -> DepartmentConfig:
        with self.store.transaction() as uow:
            if uow.get_hospital_config(config.hospital_id) is None:
                raise ConfigNotFound(config.hospital_id)
            uow.save_department_config(config)
        return config

    def save_doctor(self, doctor: Doctor) -> Doctor:
        with self.store.transaction() as uow:
            if uow.get_hospital_config(doctor.hospital_id) is None:
                raise ConfigNotFound(doctor.hospital_id)
            uow.save_doctor(doctor)
        return doctor

    def save_appointment(self, appointment: Appointment) -> Appointment:
        if appointment.department_id is None and appointment.doctor_id is None:
            raise ValidationError("Either department_id or doctor_id must be provided")
        with self.store.transaction() as uow:
            policy = self._policy(uow, appointment.hospital_id)
            if appointment.scheduled_at.tzinfo is None:
                # Naive times are wall-clock times at the hospital.
                zone = pytz.timezone(policy.timezone)
                appointment.scheduled_at = zone.localize(appointment.scheduled_at)
            if appointment.doctor_id is not None:
                doctor = self._doctor(uow, appointment.doctor_id)
                appointment.department_id = appointment.department_id or doctor.department_id
            uow.save_appointment(appointment)
        return appointment

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def resolve_policy(
        self, hospital_id: str, department_id: Optional[str] = None
    ) -> EffectivePolicy:
        with self.store.transaction() as uow:
            return self._policy(uow, hospital_id, department_id)

    def get_visit(self, visit_id: str) -> Visit:
        with self.store.transaction() as uow:
            return self._visit(uow, visit_id)

    def get_doctor(self, doctor_id: str) -> Doctor:
        with self.store.transaction() as uow:
            return self._doctor(uow, doctor_id)

    def current_queue(
        self,
        doctor_id: Optional[str] = None,
        department_id: Optional[str] = None,
        hospital_id: Optional[str] = None,
    ) -> QueueSnapshot:
        """Ordered WAITING/ON_HOLD visits of a doctor, or of a whole department."""
        now = self.clock()
        with self.store.transaction() as uow:
            if doctor_id is not None:
                return self._doctor_snapshot(uow, self._doctor(uow, doctor_id), now)
            if department_id is None or hospital_id is None:
                raise ValidationError(
                    "Either doctor_id or hospital_id with department_id is required"
                )
            return self._department_snapshot(uow, hospital_id, department_id, now)

    def estimate_wait(self, visit_id: str) -> timedelta:
        visit = self.get_visit(visit_id)
        if visit.status not in QUEUED_STATUSES:
            return timedelta(0)
        if visit.doctor_id:
            snapshot = self.current_queue(doctor_id=visit.doctor_id)
        else:
            snapshot = self.current_queue(
                department_id=visit.department_id, hospital_id=visit.hospital_id
            )
        for entry in snapshot.entries:
            if entry.visit.id == visit_id:
                return entry.estimated_wait
        return timedelta(0)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _policy(self, uow, hospital_id, department_id=None) -> EffectivePolicy:
        return resolve(uow, hospital_id, department_id, self.default_timezone)

    def _doctor(self, uow, doctor_id: str) -> Doctor:
        doctor = uow.get_doctor(doctor_id)
        if doctor is None:
            raise NotFound("Doctor", doctor_id)
        return doctor

    def _visit(self, uow, visit_id: str) -> Visit:
        visit = uow.get_visit(visit_id)
        if visit is None:
            raise NotFound("Visit", visit_id)
        return visit

    @staticmethod
    def _scope_key(visit: Visit) -> str:
        if visit.doctor_id:
            return doctor_key(visit.doctor_id)
        return department_key(visit.hospital_id, visit.department_id)

    def _doctor_snapshot(self, uow, doctor: Doctor, now: datetime) -> QueueSnapshot:
        policy = self._policy(uow, doctor.hospital_id, doctor.department_id)
        visits = uow.list_visits(doctor_id=doctor.id, statuses=ACTIVE_STATUSES)
        return build_snapshot(
            visits,
            consultation_duration_for(policy, doctor),
            now,
            hospital_id=doctor.hospital_id,
            doctor_id=doctor.id,
            department_id=doctor.department_id,
        )

    def _department_snapshot(
        self, uow, hospital_id: str, department_id: str, now: datetime
    ) -> QueueSnapshot:
        policy = self._policy(uow, hospital_id, department_id)
        visits = uow.list_visits(
            hospital_id=hospital_id,
            department_id=department_id,
            statuses=ACTIVE_STATUSES,
        )
        servers = len(
            uow.list_doctors(hospital_id, department_id, status=DoctorStatus.ACTIVE)
        )
        return build_snapshot(
            visits,
            policy.consultation_duration,
            now,
            hospital_id=hospital_id,
            department_id=department_id,
            servers=servers or 1,
        )

    def _refresh(self, uow, visit: Visit, now: datetime) -> QueueSnapshot:
        """Recompute the queue the visit belongs to and store the new estimates."""
        if visit.doctor_id:
            snapshot = self._doctor_snapshot(uow, self._doctor(uow, visit.doctor_id), now)
            pooled = False
        else:
            snapshot = self._department_snapshot(
                uow, visit.hospital_id, visit.department_id, now
            )
            pooled = True
        for entry in snapshot.entries:
            # Assigned visits keep the estimate of their own doctor's queue.
            if not pooled or entry.visit.doctor_id is None:
                uow.save_visit(entry.visit)
        return snapshot

    def _event(
        self,
        action: str,
        visit: Visit,
        snapshot: QueueSnapshot,
        now: datetime,
        **extra,
    ) -> QueueEvent:
        return QueueEvent(
            action=action,
            hospital_id=visit.hospital_id,
            doctor_id=visit.doctor_id,
            department_id=visit.department_id,
            visit_id=visit.id,
            status=visit.status,
            queue=queue_items(snapshot),
            occurred_at=now,
            **extra,
        )

    def _publish(self, events: List[QueueEvent]) -> None:
        for event in events:
            self.publisher.publish(event)

    def _ensure_no_active_visit(
        self, uow, visit: Visit, doctor_id: Optional[str], exclude_id=None
    ) -> None:
        if doctor_id:
            existing = uow.list_visits(
                doctor_id=doctor_id,
                patient_id=visit.patient_id,
                statuses=ACTIVE_STATUSES,
            )
        else:
            existing = uow.list_visits(
                hospital_id=visit.hospital_id,
                department_id=visit.department_id,
                patient_id=visit.patient_id,
                statuses=ACTIVE_STATUSES,
                unassigned=True,
            )
        if any(v.id != exclude_id for v in existing):
            raise DuplicateActiveVisit(visit.patient_id, doctor_id)

    def _settle_appointment(self, uow, visit: Visit) -> None:
        outcome = _APPOINTMENT_OUTCOME.get(visit.status)
        if outcome is None or visit.appointment_id is None:
            return
        appointment = uow.get_appointment(visit.appointment_id)
        if appointment is not None:
            appointment.status = outcome
            uow.save_appointment(appointment)

    def _run_on_visit(self, visit_id: str, work, extra_keys: Tuple[str, ...] = ()):
        """
        Run ``work(uow, visit, now)`` under the lock of the visit's queue.

        ``work`` returns ``(result, events)``; events are published after the
        unit of work commits and before the lock is released.
        """
        for _ in range(3):
            key = self._scope_key(self.get_visit(visit_id))
            with self.locks.hold(key, *extra_keys):
                with self.store.transaction() as uow:
                    visit = self._visit(uow, visit_id)
                    if self._scope_key(visit) != key:
                        # Claimed or reassigned since we looked; lock again.
                        continue
                    result, events = work(uow, visit, self.clock())
                self._publish(events)
                return result
        raise Busy(f"visit:{visit_id}", self.locks.timeout)

    def _transition(self, visit_id: str, action: Action, note: Optional[str] = None) -> Visit:
        def work(uow, visit, now):
            apply(visit, action, now)
            if note is not None:
                visit.notes = note
            uow.save_visit(visit)
            if visit.is_terminal:
                self.archiver.archive(uow, visit)
                self._settle_appointment(uow, visit)
            snapshot = self._refresh(uow, visit, now)
            return visit, [self._event(action.value, visit, snapshot, now)]

        visit = self._run_on_visit(visit_id, work)
        logger.info("Visit %s -> %s (%s)", visit.id, visit.status.value, action.value)
        return visit

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def check_in(
        self,
        hospital_id: str,
        patient_id: str,
        department_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        appointment_id: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        notes: Optional[str] = None,
    ) -> Visit:
        """Create a WAITING visit with a fresh token for a walk-in or an arriving appointment."""
        with self.store.transaction() as uow:
            if appointment_id is not None:
                appointment = uow.get_appointment(appointment_id)
                if appointment is None or appointment.hospital_id != hospital_id:
                    raise NotFound("Appointment", appointment_id)
                if appointment.patient_id != patient_id:
                    raise ValidationError(
                        f"Appointment {appointment_id} belongs to another patient"
                    )
                if (
                    doctor_id is not None
                    and appointment.doctor_id is not None
                    and doctor_id != appointment.doctor_id
                ):
                    raise ValidationError(
                        f"Appointment {appointment_id} is booked with doctor "
                        f"{appointment.doctor_id}, not {doctor_id}"
                    )
                doctor_id = doctor_id or appointment.doctor_id
                department_id = department_id or appointment.department_id
            if doctor_id is not None:
                doctor = self._doctor(uow, doctor_id)
                if doctor.hospital_id != hospital_id:
                    raise NotFound("Doctor", doctor_id)
                if department_id is not None and department_id != doctor.department_id:
                    raise ValidationError(
                        f"Doctor {doctor_id} is not in department {department_id}"
                    )
                department_id = doctor.department_id
        if department_id is None:
            raise ValidationError("Either department_id or doctor_id must be provided")

        key = doctor_key(doctor_id) if doctor_id else department_key(hospital_id, department_id)
        with self.locks.hold(key):
            with self.store.transaction() as uow:
                now = self.clock()
                policy = self._policy(uow, hospital_id, department_id)
                doctor = self._doctor(uow, doctor_id) if doctor_id else None
                if doctor is not None and doctor.status != DoctorStatus.ACTIVE:
                    raise TargetDoctorInactive(doctor.id, doctor.status)

                if appointment_id is None:
                    if policy.booking_mode == BookingMode.TIME_SLOT_ONLY:
                        raise ValidationError(
                            f"Department {department_id} only accepts booked appointments"
                        )
                else:
                    self._check_in_appointment(uow, appointment_id, policy, now)

                visit = Visit(
                    id=new_id(),
                    hospital_id=hospital_id,
                    patient_id=patient_id,
                    department_id=department_id,
                    doctor_id=doctor_id,
                    appointment_id=appointment_id,
                    priority=priority,
                    token_number=0,
                    checked_in_at=now,
                    notes=notes,
                )
                self._ensure_no_active_visit(uow, visit, doctor_id)
                self._warn_soft_limits(uow, visit, doctor, policy, now)

                token = self.tokens.allocate(
                    uow,
                    TokenScope(hospital_id, department_id, doctor_id),
                    policy.token_reset_frequency,
                    now,
                    policy.timezone,
                )
                visit.token_number = token.number
                visit.token_period = token.period_key
                visit.token_prefix = policy.token_prefix
                uow.save_visit(visit)

                snapshot = self._refresh(uow, visit, now)
                visit = uow.get_visit(visit.id)
                event = self._event("check_in", visit, snapshot, now)
            self._publish([event])

        logger.info(
            "Checked in patient %s as token %s (visit %s)",
            patient_id,
            visit.display_token,
            visit.id,
        )
        return visit

    def _check_in_appointment(
        self, uow, appointment_id: str, policy: EffectivePolicy, now: datetime
    ) -> None:
        appointment = uow.get_appointment(appointment_id)
        if appointment.status not in (
            AppointmentStatus.PENDING,
            AppointmentStatus.CONFIRMED,
        ):
            raise ValidationError(
                f"Appointment {appointment_id} is {appointment.status.value}"
            )
        if uow.list_visits(appointment_id=appointment_id):
            raise ValidationError(f"Appointment {appointment_id} is already checked in")
        opens_at = appointment.scheduled_at - timedelta(minutes=policy.arrival_window)
        if now < opens_at:
            raise ValidationError(
                f"Check-in opens {policy.arrival_window} minutes before the appointment"
            )
        appointment.status = AppointmentStatus.CONFIRMED
        uow.save_appointment(appointment)

    def _warn_soft_limits(
        self, uow, visit: Visit, doctor: Optional[Doctor], policy: EffectivePolicy, now
    ) -> None:
        if policy.max_queue_length:
            if doctor is not None:
                queued = uow.list_visits(doctor_id=doctor.id, statuses=QUEUED_STATUSES)
            else:
                queued = uow.list_visits(
                    hospital_id=visit.hospital_id,
                    department_id=visit.department_id,
                    statuses=QUEUED_STATUSES,
                )
            if len(queued) >= policy.max_queue_length:
                logger.warning(
                    "Queue length limit %s reached for %s, admitting anyway",
                    policy.max_queue_length,
                    doctor.id if doctor else visit.department_id,
                )
        if doctor is not None and doctor.daily_patient_limit:
            since = day_start(now, policy.timezone)
            seen_today = [
                v
                for v in uow.list_visits(doctor_id=doctor.id)
                if v.checked_in_at >= since
                and v.status in ACTIVE_STATUSES | {VisitStatus.COMPLETED}
            ]
            if len(seen_today) >= doctor.daily_patient_limit:
                logger.warning(
                    "Doctor %s reached daily limit of %s patients",
                    doctor.id,
                    doctor.daily_patient_limit,
                )
        if not is_open(policy, now):
            logger.warning(
                "Check-in for hospital %s outside business hours", visit.hospital_id
            )

    def call_next(self, doctor_id: str) -> Visit:
        """Move the head WAITING visit (own queue or department pool) to IN_PROGRESS."""
        doctor = self.get_doctor(doctor_id)
        keys = (doctor_key(doctor.id), department_key(doctor.hospital_id, doctor.department_id))
        with self.locks.hold(*keys):
            with self.store.transaction() as uow:
                now = self.clock()
                doctor = self._doctor(uow, doctor_id)
                if doctor.status != DoctorStatus.ACTIVE:
                    raise TargetDoctorInactive(doctor.id, doctor.status)
                busy = uow.list_visits(doctor_id=doctor.id, statuses=[VisitStatus.IN_PROGRESS])
                if busy:
                    raise DoctorBusy(doctor.id, busy[0].id)

                own = uow.list_visits(doctor_id=doctor.id, statuses=[VisitStatus.WAITING])
                # A patient already queued with this doctor is left for a colleague.
                own_patients = {
                    v.patient_id
                    for v in uow.list_visits(doctor_id=doctor.id, statuses=ACTIVE_STATUSES)
                }
                pool = [
                    v
                    for v in uow.list_visits(
                        hospital_id=doctor.hospital_id,
                        department_id=doctor.department_id,
                        statuses=[VisitStatus.WAITING],
                        unassigned=True,
                    )
                    if v.patient_id not in own_patients
                ]
                ordered = order_queue(own + pool)
                if not ordered:
                    raise EmptyQueue(doctor.id)

                visit = ordered[0]
                claimed = visit.doctor_id is None
                if claimed:
                    visit.doctor_id = doctor.id
                apply(visit, Action.CALL, now)
                uow.save_visit(visit)
                snapshot = self._doctor_snapshot(uow, doctor, now)
                for entry in snapshot.entries:
                    uow.save_visit(entry.visit)
                if claimed:
                    # The pool shrank too; keep its stored estimates current.
                    pool_snapshot = self._department_snapshot(
                        uow, doctor.hospital_id, doctor.department_id, now
                    )
                    for entry in pool_snapshot.entries:
                        if entry.visit.doctor_id is None:
                            uow.save_visit(entry.visit)
                event = self._event(Action.CALL.value, visit, snapshot, now)
            self._publish([event])

        logger.info(
            "Doctor %s called token %s (visit %s)", doctor_id, visit.display_token, visit.id
        )
        return visit

    def skip(self, visit_id: str) -> Visit:
        """Mark a WAITING visit SKIPPED and queue a carryover successor with the same token."""

        def work(uow, visit, now):
            apply(visit, Action.SKIP, now)
            uow.save_visit(visit)
            successor = self._successor(
                visit, checked_in_at=visit.checked_in_at, requeued_at=now
            )
            uow.save_visit(successor)
            snapshot = self._refresh(uow, successor, now)
            successor = uow.get_visit(successor.id)
            event = self._event(
                Action.SKIP.value, successor, snapshot, now, related_visit_id=visit.id
            )
            return successor, [event]

        successor = self._run_on_visit(visit_id, work)
        logger.info("Skipped visit %s, re-queued as %s", visit_id, successor.id)
        return successor

    @staticmethod
    def _successor(
        visit: Visit, checked_in_at: datetime, requeued_at: Optional[datetime] = None
    ) -> Visit:
        return replace(
            visit,
            id=new_id(),
            status=VisitStatus.WAITING,
            is_carryover=True,
            carried_from_id=visit.id,
            checked_in_at=checked_in_at,
            requeued_at=requeued_at,
            started_at=None,
            completed_at=None,
            estimated_wait_minutes=None,
        )

    def delay(self, doctor_id: Optional[str] = None, visit_id: Optional[str] = None) -> Visit:
        """Put a visit on hold; by doctor it targets the visit currently in progress."""
        if visit_id is not None:
            return self.hold(visit_id)
        if doctor_id is None:
            raise ValidationError("Either doctor_id or visit_id must be provided")

        with self.store.transaction() as uow:
            self._doctor(uow, doctor_id)
            busy = uow.list_visits(doctor_id=doctor_id, statuses=[VisitStatus.IN_PROGRESS])
        if not busy:
            raise InvalidTransition(
                None,
                Action.HOLD,
                f"Doctor {doctor_id} has no visit in progress to delay",
            )
        return self._transition(busy[0].id, Action.HOLD)

    def hold(self, visit_id: str) -> Visit:
        return self._transition(visit_id, Action.HOLD)

    def resume(self, visit_id: str) -> Visit:
        return self._transition(visit_id, Action.RESUME)

    def complete(self, visit_id: str, notes: Optional[str] = None) -> Visit:
        return self._transition(visit_id, Action.COMPLETE, note=notes)

    def cancel(self, visit_id: str) -> Visit:
        return self._transition(visit_id, Action.CANCEL)

    def mark_no_show(self, visit_id: str) -> Visit:
        """WAITING -> NO_SHOW, only once the grace period since check-in has run out."""

        def work(uow, visit, now):
            next_status(visit.status, Action.NO_SHOW)
            policy = self._policy(uow, visit.hospital_id, visit.department_id)
            grace = timedelta(minutes=policy.no_show_grace_period)
            if now - visit.checked_in_at < grace:
                raise InvalidTransition(
                    visit.status,
                    Action.NO_SHOW,
                    f"Visit {visit.id} is still within its {policy.no_show_grace_period} "
                    "minute grace period",
                )
            apply(visit, Action.NO_SHOW, now)
            uow.save_visit(visit)
            self.archiver.archive(uow, visit)
            self._settle_appointment(uow, visit)
            snapshot = self._refresh(uow, visit, now)
            return visit, [self._event(Action.NO_SHOW.value, visit, snapshot, now)]

        visit = self._run_on_visit(visit_id, work)
        logger.info("Visit %s marked NO_SHOW", visit.id)
        return visit

    def reassign(self, visit_id: str, new_doctor_id: str) -> Visit:
        """Move a WAITING/ON_HOLD visit to another doctor, keeping its token when possible."""
        with self.store.transaction() as uow:
            self._doctor(uow, new_doctor_id)

        def work(uow, visit, now):
            target = self._doctor(uow, new_doctor_id)
            if target.hospital_id != visit.hospital_id:
                raise NotFound("Doctor", new_doctor_id)
            if target.status != DoctorStatus.ACTIVE:
                raise TargetDoctorInactive(target.id, target.status)
            next_status(visit.status, Action.REASSIGN)
            if visit.doctor_id == target.id:
                raise ValidationError(f"Visit {visit.id} is already with doctor {target.id}")
            self._ensure_no_active_visit(uow, visit, target.id, exclude_id=visit.id)

            previous = replace(visit)
            self._retoken_for(uow, visit, target, now)
            visit.doctor_id = target.id
            visit.department_id = target.department_id
            uow.save_visit(visit)

            previous_snapshot = self._refresh(uow, previous, now)
            snapshot = self._refresh(uow, visit, now)
            visit = uow.get_visit(visit.id)
            event = self._event(
                Action.REASSIGN.value,
                visit,
                snapshot,
                now,
                previous_doctor_id=previous.doctor_id,
                previous_queue=queue_items(previous_snapshot),
            )
            return visit, [event]

        visit = self._run_on_visit(visit_id, work, extra_keys=(doctor_key(new_doctor_id),))
        logger.info(
            "Reassigned visit %s to doctor %s as token %s",
            visit.id,
            new_doctor_id,
            visit.display_token,
        )
        return visit

    def _retoken_for(self, uow, visit: Visit, target: Doctor, now: datetime) -> None:
        """Draw a new token when the target department numbers tokens differently."""
        if target.department_id == visit.department_id:
            return
        source = self._policy(uow, visit.hospital_id, visit.department_id)
        policy = self._policy(uow, visit.hospital_id, target.department_id)
        if (
            source.token_prefix == policy.token_prefix
            and source.token_reset_frequency == policy.token_reset_frequency
        ):
            return
        token = self.tokens.allocate(
            uow,
            TokenScope(visit.hospital_id, target.department_id, target.id),
            policy.token_reset_frequency,
            now,
            policy.timezone,
        )
        visit.token_number = token.number
        visit.token_period = token.period_key
        visit.token_prefix = policy.token_prefix

    def set_doctor_status(self, doctor_id: str, status: DoctorStatus) -> List[Visit]:
        """
        Change a doctor's status.

        When the doctor goes on leave and the hospital auto-reassigns, queued
        visits move to the least busy active colleague of the same department.
        Returns the visits that were moved.
        """
        doctor = self.get_doctor(doctor_id)
        with self.store.transaction() as uow:
            colleagues = [
                d
                for d in uow.list_doctors(
                    doctor.hospital_id, doctor.department_id, status=DoctorStatus.ACTIVE
                )
                if d.id != doctor.id
            ]
        keys = [doctor_key(doctor.id)] + [doctor_key(d.id) for d in colleagues]

        moved: List[Visit] = []
        events: List[QueueEvent] = []
        with self.locks.hold(*keys):
            with self.store.transaction() as uow:
                now = self.clock()
                doctor = self._doctor(uow, doctor_id)
                doctor.status = status
                uow.save_doctor(doctor)
                policy = self._policy(uow, doctor.hospital_id, doctor.department_id)
                if status == DoctorStatus.ON_LEAVE and policy.auto_reassign_on_leave:
                    moved = self._reassign_away(uow, doctor, colleagues, now, events)
            self._publish(events)

        logger.info(
            "Doctor %s is now %s, %d visits reassigned", doctor_id, status.value, len(moved)
        )
        return moved

    def _reassign_away(
        self, uow, doctor: Doctor, colleagues: List[Doctor], now, events
    ) -> List[Visit]:
        # Only colleagues still active inside the lock are eligible.
        targets = [self._doctor(uow, d.id) for d in colleagues]
        targets = [d for d in targets if d.status == DoctorStatus.ACTIVE]
        queued = order_queue(uow.list_visits(doctor_id=doctor.id, statuses=QUEUED_STATUSES))
        if not targets:
            if queued:
                logger.warning(
                    "Doctor %s on leave with %d queued visits and no active colleague",
                    doctor.id,
                    len(queued),
                )
            return []

        load: Dict[str, int] = {
            d.id: len(uow.list_visits(doctor_id=d.id, statuses=ACTIVE_STATUSES))
            for d in targets
        }
        moved = []
        for visit in queued:
            for target in sorted(targets, key=lambda d: (load[d.id], d.id)):
                try:
                    self._ensure_no_active_visit(uow, visit, target.id)
                except DuplicateActiveVisit:
                    continue
                visit.doctor_id = target.id
                uow.save_visit(visit)
                load[target.id] += 1
                moved.append(visit)
                break

        previous_snapshot = self._doctor_snapshot(uow, doctor, now)
        snapshots = {d.id: self._refresh_doctor(uow, d, now) for d in targets}
        for visit in moved:
            visit = uow.get_visit(visit.id)
            events.append(
                self._event(
                    Action.REASSIGN.value,
                    visit,
                    snapshots[visit.doctor_id],
                    now,
                    previous_doctor_id=doctor.id,
                    previous_queue=queue_items(previous_snapshot),
                )
            )
        return moved

    def _refresh_doctor(self, uow, doctor: Doctor, now: datetime) -> QueueSnapshot:
        snapshot = self._doctor_snapshot(uow, doctor, now)
        for entry in snapshot.entries:
            uow.save_visit(entry.visit)
        return snapshot

    def carry_over(self, hospital_id: str) -> List[Visit]:
        """
        Roll unresolved visits from earlier days into today's queues.

        Each visit checked in before the start of the hospital's current local
        day becomes CARRYOVER and a WAITING successor with the same token and
        carryover precedence takes its place.
        """
        now = self.clock()
        with self.store.transaction() as uow:
            policy = self._policy(uow, hospital_id)
            cutoff = day_start(now, policy.timezone)
            stale = [
                v
                for v in uow.list_visits(hospital_id=hospital_id, statuses=ACTIVE_STATUSES)
                if v.checked_in_at < cutoff
            ]

        scopes = sorted({self._scope_key(v) for v in stale})
        successors: List[Visit] = []
        for key in scopes:
            successors.extend(self._carry_over_scope(hospital_id, key, cutoff))
        if successors:
            logger.info(
                "Carried over %d visits for hospital %s", len(successors), hospital_id
            )
        return successors

    def _carry_over_scope(self, hospital_id: str, key: str, cutoff: datetime) -> List[Visit]:
        successors = []
        events = []
        with self.locks.hold(key):
            with self.store.transaction() as uow:
                now = self.clock()
                stale = [
                    v
                    for v in uow.list_visits(hospital_id=hospital_id, statuses=ACTIVE_STATUSES)
                    if v.checked_in_at < cutoff and self._scope_key(v) == key
                ]
                for visit in stale:
                    apply(visit, Action.CARRY_OVER, now)
                    uow.save_visit(visit)
                    successor = self._successor(visit, checked_in_at=now)
                    uow.save_visit(successor)
                    successors.append(successor)
                if successors:
                    snapshot = self._refresh(uow, successors[0], now)
                    for successor in successors:
                        events.append(
                            self._event(
                                Action.CARRY_OVER.value,
                                successor,
                                snapshot,
                                now,
                                related_visit_id=successor.carried_from_id,
                            )
                        )
            self._publish(events)
        return successors
