from datetime import datetime, timedelta

import pytest
import pytz

from domain import Visit, VisitStatus
from errors import ValidationError
from history import HistoryArchiver, summarize
from storage import InMemoryStore

NOW = pytz.utc.localize(datetime(2024, 3, 4, 11, 0))


def finished_visit(status=VisitStatus.COMPLETED, **kwargs):
    values = dict(
        id="v1",
        hospital_id="h1",
        patient_id="p1",
        department_id="general",
        doctor_id="d1",
        token_number=4,
        checked_in_at=NOW - timedelta(minutes=40),
        started_at=NOW - timedelta(minutes=15),
        completed_at=NOW,
        status=status,
    )
    values.update(kwargs)
    return Visit(**values)


def test_archive_computes_wait_and_consultation():
    store = InMemoryStore()
    archiver = HistoryArchiver(lambda: NOW)
    with store.transaction() as uow:
        record = archiver.archive(uow, finished_visit())
    assert record.actual_wait_time == timedelta(minutes=25)
    assert record.actual_consultation_duration == timedelta(minutes=15)
    assert record.archived_at == NOW
    assert record.token_number == 4


def test_archive_is_idempotent():
    store = InMemoryStore()
    archiver = HistoryArchiver(lambda: NOW)
    with store.transaction() as uow:
        first = archiver.archive(uow, finished_visit())
    with store.transaction() as uow:
        second = archiver.archive(uow, finished_visit(notes="changed"))
        assert len(uow.list_history("h1")) == 1
    assert second == first
    assert second.notes is None


def test_only_terminal_visits_are_archived():
    store = InMemoryStore()
    archiver = HistoryArchiver(lambda: NOW)
    with store.transaction() as uow:
        with pytest.raises(ValidationError):
            archiver.archive(uow, finished_visit(status=VisitStatus.WAITING))
        with pytest.raises(ValidationError):
            archiver.archive(uow, finished_visit(status=VisitStatus.SKIPPED))


def test_rolled_back_archive_leaves_no_record():
    store = InMemoryStore()
    archiver = HistoryArchiver(lambda: NOW)
    with pytest.raises(RuntimeError):
        with store.transaction() as uow:
            archiver.archive(uow, finished_visit())
            raise RuntimeError("boom")
    with store.transaction() as uow:
        assert uow.get_history("v1") is None


def test_summary_over_a_morning(engine, clock):
    p1 = engine.check_in("h1", "P1", doctor_id="d1")
    p2 = engine.check_in("h1", "P2", doctor_id="d1")
    p3 = engine.check_in("h1", "P3", doctor_id="d1")
    engine.call_next("d1")
    clock.advance(minutes=10)
    engine.complete(p1.id)
    engine.call_next("d1")
    clock.advance(minutes=20)
    engine.complete(p2.id)
    engine.cancel(p3.id)

    summary = summarize(engine.store, "h1")
    assert summary.total == 3
    assert summary.by_status == {"COMPLETED": 2, "CANCELLED": 1}
    assert summary.average_wait == timedelta(minutes=40) / 3
    assert summary.average_consultation == timedelta(minutes=15)

    assert summarize(engine.store, "h1", doctor_id="d2").total == 0
    later = summarize(engine.store, "h1", since=clock.now + timedelta(minutes=1))
    assert later.total == 0
    assert later.average_wait is None
