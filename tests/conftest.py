from datetime import datetime, timedelta

import pytest
import pytz

from domain import DepartmentConfig, Doctor, DoctorStatus, HospitalConfig, ResetFrequency
from engine import QueueEngine
from events import InMemoryPublisher
from sql_storage import SqlStore
from storage import InMemoryStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def seed_hospital(engine: QueueEngine, **config) -> None:
    """Hospital h1: general (d1, d2, inactive d4) and cardio (d3, prefix C)."""
    config.setdefault("token_reset_frequency", ResetFrequency.DAILY)
    engine.save_hospital_config(HospitalConfig(hospital_id="h1", **config))
    engine.save_department_config(
        DepartmentConfig(hospital_id="h1", department_id="cardio", token_prefix="C")
    )
    engine.save_doctor(Doctor(id="d1", hospital_id="h1", department_id="general"))
    engine.save_doctor(Doctor(id="d2", hospital_id="h1", department_id="general"))
    engine.save_doctor(Doctor(id="d3", hospital_id="h1", department_id="cardio"))
    engine.save_doctor(
        Doctor(
            id="d4",
            hospital_id="h1",
            department_id="general",
            status=DoctorStatus.INACTIVE,
        )
    )


@pytest.fixture
def clock():
    # A Monday morning inside default business hours.
    return FakeClock(pytz.utc.localize(datetime(2024, 3, 4, 10, 0)))


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def engine(store, publisher, clock):
    engine = QueueEngine(store, publisher=publisher, clock=clock, lock_timeout=1.0)
    seed_hospital(engine)
    return engine


@pytest.fixture
def sql_engine(publisher, clock):
    store = SqlStore("sqlite://")
    store.create_all()
    engine = QueueEngine(store, publisher=publisher, clock=clock, lock_timeout=1.0)
    seed_hospital(engine)
    yield engine
    store.drop_all()
