# SQLAlchemy-backed store. Rows are mapped to and from the dataclasses in
# domain.py so the engine never touches ORM objects directly.

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, time
from typing import Dict, Iterator, Optional

import pytz
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Integer,
    Interval,
    String,
    Text,
    create_engine,
    select,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from domain import (
    Appointment,
    AppointmentStatus,
    BookingMode,
    BookingType,
    BusinessHours,
    DepartmentConfig,
    Doctor,
    DoctorStatus,
    HospitalConfig,
    Priority,
    ResetFrequency,
    TokenCounter,
    Visit,
    VisitHistory,
    VisitStatus,
)
from storage import Store, UnitOfWork

Base = declarative_base()


class HospitalConfigRow(Base):
    __tablename__ = "hospital_configs"
    hospital_id = Column(String(64), primary_key=True)
    booking_mode = Column(Enum(BookingMode), nullable=False, default=BookingMode.TOKEN_ONLY)
    default_consultation_duration = Column(Integer)
    buffer_time = Column(Integer)
    arrival_window = Column(Integer)
    business_hours = Column(JSON, nullable=False, default=dict)
    token_reset_frequency = Column(Enum(ResetFrequency))
    auto_reassign_on_leave = Column(Boolean, nullable=False, default=False)
    max_queue_length = Column(Integer)
    timezone = Column(String(64))
    no_show_grace_period = Column(Integer)


class DepartmentConfigRow(Base):
    __tablename__ = "department_configs"
    hospital_id = Column(String(64), primary_key=True)
    department_id = Column(String(64), primary_key=True)
    booking_mode = Column(Enum(BookingMode))
    default_consultation_duration = Column(Integer)
    buffer_time = Column(Integer)
    arrival_window = Column(Integer)
    token_reset_frequency = Column(Enum(ResetFrequency))
    max_queue_length = Column(Integer)
    token_prefix = Column(String(16))
    no_show_grace_period = Column(Integer)


class DoctorRow(Base):
    __tablename__ = "doctors"
    id = Column(String(64), primary_key=True)
    hospital_id = Column(String(64), nullable=False, index=True)
    department_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    status = Column(Enum(DoctorStatus), nullable=False, default=DoctorStatus.ACTIVE)
    consultation_duration = Column(Integer)
    daily_patient_limit = Column(Integer)


class AppointmentRow(Base):
    __tablename__ = "appointments"
    id = Column(String(64), primary_key=True)
    hospital_id = Column(String(64), nullable=False, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    department_id = Column(String(64))
    doctor_id = Column(String(64))
    status = Column(Enum(AppointmentStatus), nullable=False)
    booking_type = Column(Enum(BookingType), nullable=False)


class VisitRow(Base):
    __tablename__ = "visits"
    id = Column(String(64), primary_key=True)
    hospital_id = Column(String(64), nullable=False, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    department_id = Column(String(64), nullable=False, index=True)
    doctor_id = Column(String(64), index=True)
    appointment_id = Column(String(64), index=True)
    token_number = Column(Integer, nullable=False)
    token_prefix = Column(String(16))
    token_period = Column(String(16))
    status = Column(Enum(VisitStatus), nullable=False, index=True)
    priority = Column(Enum(Priority), nullable=False)
    checked_in_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    estimated_wait_minutes = Column(Integer)
    is_carryover = Column(Boolean, nullable=False, default=False)
    carried_from_id = Column(String(64))
    requeued_at = Column(DateTime(timezone=True))
    notes = Column(Text)


class VisitHistoryRow(Base):
    __tablename__ = "visit_history"
    id = Column(String(64), primary_key=True)
    visit_id = Column(String(64), nullable=False, unique=True)
    hospital_id = Column(String(64), nullable=False, index=True)
    patient_id = Column(String(64), nullable=False)
    doctor_id = Column(String(64), index=True)
    department_id = Column(String(64), nullable=False)
    token_number = Column(Integer, nullable=False)
    status = Column(Enum(VisitStatus), nullable=False)
    priority = Column(Enum(Priority), nullable=False)
    checked_in_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    actual_wait_time = Column(Interval)
    actual_consultation_duration = Column(Interval)
    archived_at = Column(DateTime(timezone=True), nullable=False)
    is_carryover = Column(Boolean, nullable=False, default=False)
    notes = Column(Text)


class TokenCounterRow(Base):
    __tablename__ = "token_counters"
    scope_key = Column(String(200), primary_key=True)
    period_key = Column(String(16), nullable=False)
    last_value = Column(Integer, nullable=False, default=0)


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)


def _hours_to_json(hours: Dict[str, BusinessHours]) -> Dict:
    return {
        day: {
            "is_open": h.is_open,
            "start": h.start.strftime("%H:%M"),
            "end": h.end.strftime("%H:%M"),
        }
        for day, h in hours.items()
    }


def _hours_from_json(data: Dict) -> Dict[str, BusinessHours]:
    return {
        day: BusinessHours(
            is_open=h["is_open"],
            start=time.fromisoformat(h["start"]),
            end=time.fromisoformat(h["end"]),
        )
        for day, h in (data or {}).items()
    }


def _columns(row) -> Dict:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}


def _hospital_from_row(row: HospitalConfigRow) -> HospitalConfig:
    data = _columns(row)
    data["business_hours"] = _hours_from_json(data["business_hours"])
    return HospitalConfig(**data)


def _appointment_from_row(row: AppointmentRow) -> Appointment:
    data = _columns(row)
    data["scheduled_at"] = _to_utc(data["scheduled_at"])
    return Appointment(**data)


def _visit_from_row(row: VisitRow) -> Visit:
    data = _columns(row)
    for name in ("checked_in_at", "started_at", "completed_at", "requeued_at"):
        data[name] = _to_utc(data[name])
    return Visit(**data)


def _history_from_row(row: VisitHistoryRow) -> VisitHistory:
    data = _columns(row)
    for name in ("checked_in_at", "started_at", "completed_at", "archived_at"):
        data[name] = _to_utc(data[name])
    return VisitHistory(**data)


def _visit_values(visit: Visit) -> Dict:
    return dict(
        id=visit.id,
        hospital_id=visit.hospital_id,
        patient_id=visit.patient_id,
        department_id=visit.department_id,
        doctor_id=visit.doctor_id,
        appointment_id=visit.appointment_id,
        token_number=visit.token_number,
        token_prefix=visit.token_prefix,
        token_period=visit.token_period,
        status=visit.status,
        priority=visit.priority,
        checked_in_at=_to_utc(visit.checked_in_at),
        started_at=_to_utc(visit.started_at),
        completed_at=_to_utc(visit.completed_at),
        estimated_wait_minutes=visit.estimated_wait_minutes,
        is_carryover=visit.is_carryover,
        carried_from_id=visit.carried_from_id,
        requeued_at=_to_utc(visit.requeued_at),
        notes=visit.notes,
    )


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session) -> None:
        super().__init__()
        self.session = session

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def close(self) -> None:
        try:
            self.session.close()
        finally:
            super().close()

    def get_hospital_config(self, hospital_id):
        row = self.session.get(HospitalConfigRow, hospital_id)
        return _hospital_from_row(row) if row else None

    def save_hospital_config(self, config):
        self.session.merge(
            HospitalConfigRow(
                hospital_id=config.hospital_id,
                booking_mode=config.booking_mode,
                default_consultation_duration=config.default_consultation_duration,
                buffer_time=config.buffer_time,
                arrival_window=config.arrival_window,
                business_hours=_hours_to_json(config.business_hours),
                token_reset_frequency=config.token_reset_frequency,
                auto_reassign_on_leave=config.auto_reassign_on_leave,
                max_queue_length=config.max_queue_length,
                timezone=config.timezone,
                no_show_grace_period=config.no_show_grace_period,
            )
        )

    def get_department_config(self, hospital_id, department_id):
        row = self.session.get(DepartmentConfigRow, (hospital_id, department_id))
        return DepartmentConfig(**_columns(row)) if row else None

    def save_department_config(self, config):
        self.session.merge(DepartmentConfigRow(**vars(config)))

    def get_doctor(self, doctor_id):
        row = self.session.get(DoctorRow, doctor_id)
        return Doctor(**_columns(row)) if row else None

    def save_doctor(self, doctor):
        self.session.merge(DoctorRow(**vars(doctor)))

    def list_doctors(self, hospital_id, department_id=None, status=None):
        query = select(DoctorRow).where(DoctorRow.hospital_id == hospital_id)
        if department_id is not None:
            query = query.where(DoctorRow.department_id == department_id)
        if status is not None:
            query = query.where(DoctorRow.status == status)
        rows = self.session.scalars(query.order_by(DoctorRow.id))
        return [Doctor(**_columns(row)) for row in rows]

    def get_appointment(self, appointment_id):
        row = self.session.get(AppointmentRow, appointment_id)
        return _appointment_from_row(row) if row else None

    def save_appointment(self, appointment):
        values = dict(vars(appointment))
        values["scheduled_at"] = _to_utc(appointment.scheduled_at)
        self.session.merge(AppointmentRow(**values))

    def get_visit(self, visit_id):
        row = self.session.get(VisitRow, visit_id)
        return _visit_from_row(row) if row else None

    def save_visit(self, visit):
        self.session.merge(VisitRow(**_visit_values(visit)))

    def list_visits(
        self,
        hospital_id=None,
        doctor_id=None,
        department_id=None,
        statuses=None,
        patient_id=None,
        appointment_id=None,
        unassigned=False,
    ):
        query = select(VisitRow)
        if hospital_id is not None:
            query = query.where(VisitRow.hospital_id == hospital_id)
        if doctor_id is not None:
            query = query.where(VisitRow.doctor_id == doctor_id)
        if unassigned:
            query = query.where(VisitRow.doctor_id.is_(None))
        if department_id is not None:
            query = query.where(VisitRow.department_id == department_id)
        if statuses is not None:
            query = query.where(VisitRow.status.in_(list(statuses)))
        if patient_id is not None:
            query = query.where(VisitRow.patient_id == patient_id)
        if appointment_id is not None:
            query = query.where(VisitRow.appointment_id == appointment_id)
        rows = self.session.scalars(query.order_by(VisitRow.checked_in_at, VisitRow.id))
        return [_visit_from_row(row) for row in rows]

    def get_history(self, visit_id):
        row = self.session.scalars(
            select(VisitHistoryRow).where(VisitHistoryRow.visit_id == visit_id)
        ).first()
        return _history_from_row(row) if row else None

    def add_history(self, record):
        if self.get_history(record.visit_id) is not None:
            return
        values = dict(vars(record))
        for name in ("checked_in_at", "started_at", "completed_at", "archived_at"):
            values[name] = _to_utc(values[name])
        self.session.add(VisitHistoryRow(**values))

    def list_history(self, hospital_id, doctor_id=None, since=None):
        query = select(VisitHistoryRow).where(VisitHistoryRow.hospital_id == hospital_id)
        if doctor_id is not None:
            query = query.where(VisitHistoryRow.doctor_id == doctor_id)
        if since is not None:
            query = query.where(VisitHistoryRow.archived_at >= _to_utc(since))
        rows = self.session.scalars(
            query.order_by(VisitHistoryRow.archived_at, VisitHistoryRow.visit_id)
        )
        return [_history_from_row(row) for row in rows]

    def get_token_counter(self, scope_key):
        row = self.session.get(TokenCounterRow, scope_key)
        return TokenCounter(**_columns(row)) if row else None

    def save_token_counter(self, counter):
        self.session.merge(TokenCounterRow(**vars(counter)))


class SqlStore(Store):
    def __init__(self, url: str = "sqlite://", engine=None) -> None:
        if engine is None:
            kwargs = {}
            if url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                if url in ("sqlite://", "sqlite:///:memory:"):
                    kwargs["poolclass"] = StaticPool
            engine = create_engine(url, **kwargs)
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
        # Sessions on a StaticPool share one connection, so one rollback would
        # discard every other open session's writes. Run them one at a time.
        self.shared_connection = (
            threading.RLock() if isinstance(engine.pool, StaticPool) else None
        )

    @contextmanager
    def transaction(self) -> Iterator[SqlUnitOfWork]:
        if self.shared_connection is None:
            with super().transaction() as uow:
                yield uow
            return
        with self.shared_connection:
            with super().transaction() as uow:
                yield uow

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def begin(self) -> SqlUnitOfWork:
        return SqlUnitOfWork(self.SessionLocal())
