from datetime import datetime, timedelta

import pytz

from domain import DepartmentConfig, Doctor, HospitalConfig, Priority, ResetFrequency
from engine import QueueEngine
from storage import InMemoryStore


class SimulatedClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)


def print_queue(engine: QueueEngine, doctor_id: str) -> None:
    snapshot = engine.current_queue(doctor_id=doctor_id)
    for visit in snapshot.in_progress:
        print(f"  [in progress] {visit.display_token} {visit.patient_id}")
    for entry in snapshot.entries:
        flags = " (on hold)" if entry.on_hold else ""
        flags += " (carryover)" if entry.visit.is_carryover else ""
        print(
            f"  #{entry.position + 1} {entry.visit.display_token} {entry.visit.patient_id}"
            f" [{entry.visit.priority.value}] ~{entry.visit.estimated_wait_minutes} min{flags}"
        )


def run_simulation() -> None:
    """
    Simulate one clinic day with three doctors in two departments.

    Demonstrates:
    - Token numbering per doctor, with a department prefix.
    - URGENT and VIP patients jumping the NORMAL band.
    - Skip re-queueing with carryover precedence.
    - Hold/resume, reassignment and completion with history.
    - Carrying unresolved visits into the next day.
    """
    clock = SimulatedClock(pytz.utc.localize(datetime(2024, 3, 4, 9, 0)))
    engine = QueueEngine(InMemoryStore(), clock=clock)

    engine.save_hospital_config(
        HospitalConfig(
            hospital_id="h1",
            default_consultation_duration=10,
            token_reset_frequency=ResetFrequency.DAILY,
            auto_reassign_on_leave=True,
        )
    )
    engine.save_department_config(
        DepartmentConfig(hospital_id="h1", department_id="cardio", token_prefix="C")
    )
    for doctor_id, department in (("d1", "general"), ("d2", "general"), ("d3", "cardio")):
        engine.save_doctor(
            Doctor(id=doctor_id, hospital_id="h1", department_id=department, name=f"Dr. {doctor_id}")
        )

    alice = engine.check_in("h1", "alice", doctor_id="d1")
    engine.check_in("h1", "bob", doctor_id="d1", priority=Priority.URGENT)
    carol = engine.check_in("h1", "carol", doctor_id="d1")
    engine.check_in("h1", "dave", doctor_id="d1", priority=Priority.VIP)
    engine.check_in("h1", "erin", doctor_id="d3")
    print("Queue for d1 after check-ins:")
    print_queue(engine, "d1")

    current = engine.call_next("d1")
    print("\nd1 called", current.patient_id, "token", current.display_token)
    clock.advance(12)
    engine.complete(current.id, notes="BP checked")

    successor = engine.skip(alice.id)
    print("Alice skipped, re-queued with token", successor.display_token)
    print_queue(engine, "d1")

    moved = engine.reassign(carol.id, "d2")
    print("\nCarol moved to d2 with token", moved.display_token)

    current = engine.call_next("d1")
    clock.advance(3)
    held = engine.delay(doctor_id="d1")
    print("d1 put", held.patient_id, "on hold")
    engine.resume(held.id)
    print_queue(engine, "d1")

    clock.advance(60 * 15)
    carried = engine.carry_over("h1")
    print(f"\nNext morning: carried over {len(carried)} visits")
    print_queue(engine, "d1")

    print("\nEvents published:", len(engine.publisher.published))


if __name__ == "__main__":
    run_simulation()
