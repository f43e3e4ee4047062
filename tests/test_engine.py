import threading
from datetime import timedelta

import pytest

from domain import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    BookingMode,
    DepartmentConfig,
    Doctor,
    DoctorStatus,
    HospitalConfig,
    Priority,
    ResetFrequency,
    VisitStatus,
)
from engine import QueueEngine
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
from locks import department_key, doctor_key
from storage import InMemoryStore


def statuses(engine, *visits):
    return [engine.get_visit(v.id).status for v in visits]


def test_priority_order_call_next_and_completion(engine, clock, store):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    p2 = engine.check_in("h1", "P2", doctor_id="d1", priority=Priority.URGENT)
    p3 = engine.check_in("h1", "P3", doctor_id="d1")
    assert [p1.token_number, p2.token_number, p3.token_number] == [1, 2, 3]
    assert engine.current_queue(doctor_id="d1").visit_ids == [p2.id, p1.id, p3.id]

    current = engine.call_next("d1")
    assert current.id == p2.id
    assert current.status == VisitStatus.IN_PROGRESS
    assert current.started_at == clock.now
    assert engine.current_queue(doctor_id="d1").visit_ids == [p1.id, p3.id]

    clock.advance(minutes=12)
    done = engine.complete(p2.id, notes="BP normal")
    assert done.status == VisitStatus.COMPLETED
    assert done.completed_at == clock.now

    with store.transaction() as uow:
        record = uow.get_history(p2.id)
    assert record.status == VisitStatus.COMPLETED
    assert record.actual_consultation_duration == timedelta(minutes=12)
    assert record.actual_wait_time == timedelta(0)
    assert record.notes == "BP normal"


def test_queue_reads_are_repeatable(engine):
    for patient in ("a", "b", "c"):
        engine.check_in("h1", patient, doctor_id="d1")
    first = engine.current_queue(doctor_id="d1").visit_ids
    assert engine.current_queue(doctor_id="d1").visit_ids == first


def test_wait_estimates_include_remaining_consultation(engine, clock):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    p2 = engine.check_in("h1", "P2", doctor_id="d1")
    p3 = engine.check_in("h1", "P3", doctor_id="d1")
    assert p3.estimated_wait_minutes == 30

    engine.call_next("d1")
    clock.advance(minutes=5)
    assert engine.estimate_wait(p2.id) == timedelta(minutes=10)
    assert engine.estimate_wait(p3.id) == timedelta(minutes=25)
    assert engine.estimate_wait(p1.id) == timedelta(0)


def test_doctor_duration_override_drives_estimates(engine):
    engine.save_doctor(
        Doctor(id="d5", hospital_id="h1", department_id="general", consultation_duration=6)
    )
    engine.check_in("h1", "a", doctor_id="d5")
    second = engine.check_in("h1", "b", doctor_id="d5")
    assert second.estimated_wait_minutes == 6


def test_call_next_refuses_while_a_visit_is_in_progress(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    p2 = engine.check_in("h1", "P2", doctor_id="d1")
    engine.call_next("d1")
    with pytest.raises(DoctorBusy) as excinfo:
        engine.call_next("d1")
    assert excinfo.value.visit_id == p1.id
    assert engine.get_visit(p2.id).status == VisitStatus.WAITING


def test_call_next_on_empty_queue(engine):
    with pytest.raises(EmptyQueue):
        engine.call_next("d1")


def test_check_in_requires_active_doctor(engine):
    with pytest.raises(TargetDoctorInactive):
        engine.check_in("h1", "P1", doctor_id="d4")


def test_check_in_unknown_hospital_or_doctor(engine):
    with pytest.raises(NotFound):
        engine.check_in("h1", "P1", doctor_id="nobody")
    with pytest.raises(ConfigNotFound):
        engine.check_in("h9", "P1", department_id="general")
    with pytest.raises(ValidationError):
        engine.check_in("h1", "P1")


def test_doctor_must_belong_to_requested_department(engine):
    with pytest.raises(ValidationError):
        engine.check_in("h1", "P1", department_id="cardio", doctor_id="d1")


def test_one_active_visit_per_patient_and_doctor(engine):
    first = engine.check_in("h1", "P1", doctor_id="d1")
    with pytest.raises(DuplicateActiveVisit):
        engine.check_in("h1", "P1", doctor_id="d1")
    engine.check_in("h1", "P1", doctor_id="d2")

    engine.cancel(first.id)
    again = engine.check_in("h1", "P1", doctor_id="d1")
    # The rejected check-in did not consume a token.
    assert again.token_number == 2


def active_with(engine, patient_id, doctor_id):
    with engine.store.transaction() as uow:
        return uow.list_visits(
            doctor_id=doctor_id, patient_id=patient_id, statuses=ACTIVE_STATUSES
        )


def test_pool_visit_is_left_for_a_colleague_when_doctor_has_the_patient(engine):
    pooled = engine.check_in("h1", "P1", department_id="general")
    own = engine.check_in("h1", "P1", doctor_id="d1")
    other = engine.check_in("h1", "P2", department_id="general")

    assert engine.call_next("d1").id == own.id
    assert [v.id for v in active_with(engine, "P1", "d1")] == [own.id]
    assert engine.get_visit(pooled.id).doctor_id is None

    assert engine.call_next("d2").id == pooled.id
    assert engine.get_visit(other.id).doctor_id is None


def test_held_visit_still_blocks_claiming_the_same_patient_from_pool(engine):
    own = engine.check_in("h1", "P1", doctor_id="d1")
    engine.hold(own.id)
    engine.check_in("h1", "P1", department_id="general")

    with pytest.raises(EmptyQueue):
        engine.call_next("d1")
    assert len(active_with(engine, "P1", "d1")) == 1

    engine.resume(own.id)
    engine.complete(engine.call_next("d1").id)
    # Once the doctor's own visit is over the pool visit can be claimed.
    claimed = engine.call_next("d1")
    assert claimed.doctor_id == "d1"
    assert [v.id for v in active_with(engine, "P1", "d1")] == [claimed.id]


def test_leave_does_not_move_a_patient_onto_a_doctor_who_has_them(engine):
    engine.save_hospital_config(
        HospitalConfig(
            hospital_id="h1",
            token_reset_frequency=ResetFrequency.DAILY,
            auto_reassign_on_leave=True,
        )
    )
    shared = engine.check_in("h1", "P1", doctor_id="d1")
    engine.check_in("h1", "P1", doctor_id="d2")
    movable = engine.check_in("h1", "P2", doctor_id="d1")

    moved = engine.set_doctor_status("d1", DoctorStatus.ON_LEAVE)

    assert [v.id for v in moved] == [movable.id]
    assert engine.get_visit(shared.id).doctor_id == "d1"
    assert len(active_with(engine, "P1", "d2")) == 1


def test_reassign_from_pool_to_doctor_who_has_the_patient(engine):
    pooled = engine.check_in("h1", "P1", department_id="general")
    engine.check_in("h1", "P1", doctor_id="d1")
    with pytest.raises(DuplicateActiveVisit):
        engine.reassign(pooled.id, "d1")
    assert engine.get_visit(pooled.id).doctor_id is None
    assert engine.reassign(pooled.id, "d2").doctor_id == "d2"


def test_doctor_off_duty_cannot_call_next(engine):
    pooled = engine.check_in("h1", "P1", department_id="general")
    engine.set_doctor_status("d1", DoctorStatus.ON_LEAVE)
    with pytest.raises(TargetDoctorInactive):
        engine.call_next("d1")
    with pytest.raises(TargetDoctorInactive):
        engine.call_next("d4")
    assert engine.get_visit(pooled.id).doctor_id is None
    assert engine.call_next("d2").id == pooled.id


def test_department_prefix_is_applied_to_tokens(engine):
    visit = engine.check_in("h1", "P1", doctor_id="d3")
    assert visit.token_prefix == "C"
    assert visit.display_token == "C-001"


def test_tokens_reset_on_a_new_day(engine, clock):
    engine.check_in("h1", "P1", doctor_id="d1")
    engine.check_in("h1", "P2", doctor_id="d1")
    clock.advance(days=1)
    visit = engine.check_in("h1", "P3", doctor_id="d1")
    assert visit.token_number == 1
    assert visit.token_period == "2024-03-05"


def test_config_change_does_not_touch_assigned_tokens(engine):
    visit = engine.check_in("h1", "P1", doctor_id="d3")
    engine.save_department_config(
        DepartmentConfig(hospital_id="h1", department_id="cardio", token_prefix="K")
    )
    assert engine.get_visit(visit.id).display_token == "C-001"
    assert engine.check_in("h1", "P2", doctor_id="d3").display_token == "K-002"


def test_skip_requeues_at_back_with_same_token(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    p2 = engine.check_in("h1", "P2", doctor_id="d1")
    p3 = engine.check_in("h1", "P3", doctor_id="d1")

    successor = engine.skip(p1.id)
    assert engine.get_visit(p1.id).status == VisitStatus.SKIPPED
    assert successor.status == VisitStatus.WAITING
    assert successor.token_number == p1.token_number
    assert successor.is_carryover
    assert successor.carried_from_id == p1.id
    assert successor.checked_in_at == p1.checked_in_at

    queue = engine.current_queue(doctor_id="d1")
    assert len(queue) == 3
    assert queue.visit_ids == [p2.id, p3.id, successor.id]


def test_skip_only_from_waiting(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.call_next("d1")
    with pytest.raises(InvalidTransition):
        engine.skip(p1.id)


def test_delay_holds_the_visit_in_progress(engine, clock):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    p2 = engine.check_in("h1", "P2", doctor_id="d1")
    engine.call_next("d1")
    started = clock.now

    clock.advance(minutes=4)
    held = engine.delay(doctor_id="d1")
    assert held.id == p1.id
    assert held.status == VisitStatus.ON_HOLD
    assert held.started_at == started

    queue = engine.current_queue(doctor_id="d1")
    assert queue.visit_ids == [p1.id, p2.id]
    assert queue.entries[0].on_hold
    assert not queue.in_progress

    # Nothing advances on its own; the held visit is passed over by call_next.
    assert engine.call_next("d1").id == p2.id
    engine.complete(p2.id)
    engine.resume(p1.id)
    again = engine.call_next("d1")
    assert again.id == p1.id
    assert again.started_at == started


def test_delay_without_visit_in_progress(engine):
    engine.check_in("h1", "P1", doctor_id="d1")
    with pytest.raises(InvalidTransition):
        engine.delay(doctor_id="d1")


def test_hold_and_resume_a_waiting_visit(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    assert engine.hold(p1.id).status == VisitStatus.ON_HOLD
    with pytest.raises(InvalidTransition):
        engine.hold(p1.id)
    assert engine.resume(p1.id).status == VisitStatus.WAITING


def test_cancel_in_progress_is_rejected(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.call_next("d1")
    with pytest.raises(InvalidTransition):
        engine.cancel(p1.id)
    assert engine.get_visit(p1.id).status == VisitStatus.IN_PROGRESS


def test_cancel_archives_the_visit(engine, store):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.hold(p1.id)
    engine.cancel(p1.id)
    with store.transaction() as uow:
        record = uow.get_history(p1.id)
    assert record.status == VisitStatus.CANCELLED
    assert record.actual_consultation_duration is None


def test_terminal_visits_reject_further_actions(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.call_next("d1")
    engine.complete(p1.id)
    for action in (engine.complete, engine.cancel, engine.hold, engine.skip):
        with pytest.raises(InvalidTransition):
            action(p1.id)


def test_no_show_waits_for_grace_period(engine, clock, store):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    clock.advance(minutes=29)
    with pytest.raises(InvalidTransition):
        engine.mark_no_show(p1.id)
    assert engine.get_visit(p1.id).status == VisitStatus.WAITING

    clock.advance(minutes=1)
    visit = engine.mark_no_show(p1.id)
    assert visit.status == VisitStatus.NO_SHOW
    with store.transaction() as uow:
        assert uow.get_history(p1.id).actual_wait_time == timedelta(minutes=30)


def test_no_show_grace_period_follows_department_override(engine, clock):
    engine.save_department_config(
        DepartmentConfig(hospital_id="h1", department_id="general", no_show_grace_period=5)
    )
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    clock.advance(minutes=5)
    assert engine.mark_no_show(p1.id).status == VisitStatus.NO_SHOW


def test_reassign_to_inactive_doctor_leaves_visit_alone(engine, publisher):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    before = len(publisher.published)
    with pytest.raises(TargetDoctorInactive):
        engine.reassign(p1.id, "d4")
    visit = engine.get_visit(p1.id)
    assert visit.status == VisitStatus.WAITING
    assert visit.doctor_id == "d1"
    assert len(publisher.published) == before


def test_reassign_within_department_keeps_token(engine):
    engine.check_in("h1", "P0", doctor_id="d1")
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.check_in("h1", "P2", doctor_id="d2")

    moved = engine.reassign(p1.id, "d2")
    assert moved.doctor_id == "d2"
    assert moved.token_number == 2
    assert moved.status == VisitStatus.WAITING
    assert p1.id not in engine.current_queue(doctor_id="d1").visit_ids
    assert p1.id in engine.current_queue(doctor_id="d2").visit_ids


def test_reassign_across_departments_draws_new_token(engine):
    for patient in ("a", "b", "c"):
        engine.check_in("h1", patient, doctor_id="d1")
    engine.check_in("h1", "x", doctor_id="d3")
    p = engine.check_in("h1", "P", doctor_id="d1")

    moved = engine.reassign(p.id, "d3")
    assert moved.department_id == "cardio"
    assert moved.display_token == "C-002"


def test_reassign_keeps_hold_status(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.hold(p1.id)
    assert engine.reassign(p1.id, "d2").status == VisitStatus.ON_HOLD


def test_reassign_in_progress_is_rejected(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.call_next("d1")
    with pytest.raises(InvalidTransition):
        engine.reassign(p1.id, "d2")


def test_reassign_respects_one_active_visit_per_doctor(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.check_in("h1", "P1", doctor_id="d2")
    with pytest.raises(DuplicateActiveVisit):
        engine.reassign(p1.id, "d2")


def test_time_slot_only_department_rejects_walk_ins(engine, clock):
    engine.save_department_config(
        DepartmentConfig(
            hospital_id="h1",
            department_id="cardio",
            token_prefix="C",
            booking_mode=BookingMode.TIME_SLOT_ONLY,
        )
    )
    with pytest.raises(ValidationError):
        engine.check_in("h1", "P1", doctor_id="d3")

    engine.save_appointment(
        Appointment(
            id="a1",
            hospital_id="h1",
            patient_id="P1",
            doctor_id="d3",
            scheduled_at=clock.now + timedelta(minutes=10),
        )
    )
    with pytest.raises(ValidationError):
        engine.check_in("h1", "P1", doctor_id="d1", appointment_id="a1")
    visit = engine.check_in("h1", "P1", appointment_id="a1")
    assert visit.doctor_id == "d3"
    assert visit.department_id == "cardio"


def test_appointment_check_in_window_and_outcome(engine, clock, store):
    engine.save_appointment(
        Appointment(
            id="a1",
            hospital_id="h1",
            patient_id="P1",
            doctor_id="d1",
            scheduled_at=clock.now + timedelta(hours=1),
        )
    )
    with pytest.raises(ValidationError):
        engine.check_in("h1", "P1", appointment_id="a1")
    with pytest.raises(ValidationError):
        engine.check_in("h1", "someone-else", appointment_id="a1")

    clock.advance(minutes=45)
    visit = engine.check_in("h1", "P1", appointment_id="a1")
    assert visit.appointment_id == "a1"
    with store.transaction() as uow:
        assert uow.get_appointment("a1").status == AppointmentStatus.CONFIRMED

    with pytest.raises((ValidationError, DuplicateActiveVisit)):
        engine.check_in("h1", "P1", appointment_id="a1")

    engine.call_next("d1")
    engine.complete(visit.id)
    with store.transaction() as uow:
        assert uow.get_appointment("a1").status == AppointmentStatus.COMPLETED


def test_department_pool_is_claimed_by_call_next(engine):
    pooled = engine.check_in("h1", "P1", department_id="general")
    assert pooled.doctor_id is None
    assert pooled.token_number == 1

    queue = engine.current_queue(department_id="general", hospital_id="h1")
    assert queue.visit_ids == [pooled.id]

    claimed = engine.call_next("d2")
    assert claimed.id == pooled.id
    assert claimed.doctor_id == "d2"
    assert claimed.status == VisitStatus.IN_PROGRESS


def test_pool_and_own_queue_merge_by_priority(engine):
    own = engine.check_in("h1", "P1", doctor_id="d1")
    urgent = engine.check_in("h1", "P2", department_id="general", priority=Priority.URGENT)
    assert engine.call_next("d1").id == urgent.id
    engine.complete(urgent.id)
    assert engine.call_next("d1").id == own.id


def test_department_queue_spreads_wait_across_active_doctors(engine):
    visits = [engine.check_in("h1", f"P{i}", department_id="general") for i in range(4)]
    waits = [engine.estimate_wait(v.id) for v in visits]
    # Two active doctors (d1, d2) share the pool.
    assert waits == [
        timedelta(0),
        timedelta(0),
        timedelta(minutes=15),
        timedelta(minutes=15),
    ]


def test_carry_over_rolls_stale_visits_into_today(engine, clock):
    waiting = engine.check_in("h1", "P1", doctor_id="d1")
    engine.check_in("h1", "P2", doctor_id="d1")
    engine.call_next("d1")
    done = engine.check_in("h1", "P3", doctor_id="d2")
    engine.call_next("d2")
    engine.complete(done.id)

    clock.advance(days=1)
    fresh = engine.check_in("h1", "P9", doctor_id="d1")
    successors = engine.carry_over("h1")

    assert len(successors) == 2
    assert {s.carried_from_id for s in successors} >= {waiting.id}
    assert all(s.is_carryover and s.status == VisitStatus.WAITING for s in successors)
    assert statuses(engine, waiting) == [VisitStatus.CARRYOVER]

    queue = engine.current_queue(doctor_id="d1")
    # Carried visits keep their tokens and go ahead of today's regular visits.
    assert queue.visit_ids[-1] == fresh.id
    assert [e.visit.token_number for e in queue.entries] == [1, 2, 1]

    assert engine.carry_over("h1") == []


def test_leave_reassigns_to_least_busy_colleague(engine):
    engine.save_hospital_config(
        HospitalConfig(
            hospital_id="h1",
            token_reset_frequency=ResetFrequency.DAILY,
            auto_reassign_on_leave=True,
        )
    )
    engine.save_doctor(Doctor(id="d5", hospital_id="h1", department_id="general"))
    engine.check_in("h1", "busy-1", doctor_id="d2")
    engine.check_in("h1", "busy-2", doctor_id="d2")
    a = engine.check_in("h1", "A", doctor_id="d1")
    b = engine.check_in("h1", "B", doctor_id="d1")
    c = engine.check_in("h1", "C", doctor_id="d1")

    moved = engine.set_doctor_status("d1", DoctorStatus.ON_LEAVE)

    assert [v.id for v in moved] == [a.id, b.id, c.id]
    assert [engine.get_visit(v.id).doctor_id for v in (a, b, c)] == ["d5", "d5", "d2"]
    assert engine.get_doctor("d1").status == DoctorStatus.ON_LEAVE
    assert len(engine.current_queue(doctor_id="d1")) == 0
    # The inactive colleague d4 never receives patients.
    assert len(engine.current_queue(doctor_id="d4")) == 0


def test_leave_without_auto_reassign_keeps_queue(engine):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    assert engine.set_doctor_status("d1", DoctorStatus.ON_LEAVE) == []
    assert engine.get_visit(p1.id).doctor_id == "d1"
    with pytest.raises(TargetDoctorInactive):
        engine.check_in("h1", "P2", doctor_id="d1")


def test_one_event_per_successful_mutation(engine, publisher):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.check_in("h1", "P2", doctor_id="d1")
    engine.call_next("d1")
    with pytest.raises(DoctorBusy):
        engine.call_next("d1")
    engine.complete(p1.id)

    actions = [e.action for e in publisher.events("doctor:d1")]
    assert actions == ["check_in", "check_in", "call", "complete"]
    last = publisher.events("doctor:d1")[-1]
    assert [item.patient_id for item in last.queue] == ["P2"]
    assert "hospital:h1" in last.topics


def test_reassign_event_reaches_both_doctors(engine, publisher):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    engine.reassign(p1.id, "d2")
    event = publisher.events("doctor:d2")[-1]
    assert event.action == "reassign"
    assert event.previous_doctor_id == "d1"
    assert publisher.events("doctor:d1")[-1] is event
    assert event.previous_queue == ()


def test_subscribers_see_committed_state(engine, publisher):
    seen = []
    publisher.subscribe(
        "doctor:d1", lambda event: seen.append(engine.store.tables["visits"][event.visit_id].status)
    )
    engine.check_in("h1", "P1", doctor_id="d1")
    assert seen == [VisitStatus.WAITING]


def test_busy_when_doctor_lock_cannot_be_taken(engine):
    engine.locks.timeout = 0.05
    with engine.locks.hold(doctor_key("d1")):
        with pytest.raises(Busy):
            engine.check_in("h1", "P1", doctor_id="d1")
        # Other doctors are not blocked.
        engine.check_in("h1", "P1", doctor_id="d2")
    assert len(engine.current_queue(doctor_id="d1")) == 0


def test_pool_check_in_is_serialized_per_department(engine):
    engine.locks.timeout = 0.05
    with engine.locks.hold(department_key("h1", "general")):
        with pytest.raises(Busy):
            engine.check_in("h1", "P1", department_id="general")
        engine.check_in("h1", "P1", doctor_id="d1")


def test_concurrent_check_ins_get_distinct_contiguous_tokens(clock):
    engine = QueueEngine(InMemoryStore(), clock=clock, lock_timeout=10.0)
    engine.save_hospital_config(
        HospitalConfig(hospital_id="h1", token_reset_frequency=ResetFrequency.DAILY)
    )
    engine.save_doctor(Doctor(id="d1", hospital_id="h1", department_id="general"))
    tokens = []
    guard = threading.Lock()

    def arrive(patient):
        visit = engine.check_in("h1", patient, doctor_id="d1")
        with guard:
            tokens.append(visit.token_number)

    threads = [threading.Thread(target=arrive, args=(f"P{i}",)) for i in range(25)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(tokens) == list(range(1, 26))
    assert len(engine.current_queue(doctor_id="d1")) == 25
    assert len(engine.locks) == 0
