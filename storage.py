from __future__ import annotations

import copy
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from domain import (
    Appointment,
    DepartmentConfig,
    Doctor,
    DoctorStatus,
    HospitalConfig,
    TokenCounter,
    Visit,
    VisitHistory,
    VisitStatus,
)


class UnitOfWork:
    """
    One transactional view of the store.

    Writes become visible to other units of work only on ``commit``. Locks
    taken through ``hold`` are released when the unit of work closes, after
    commit or rollback.
    """

    def __init__(self) -> None:
        self._resources = ExitStack()
        self._held = set()

    def hold(self, locks, key: str) -> None:
        if key in self._held:
            return
        self._resources.enter_context(locks.hold(key))
        self._held.add(key)

    def close(self) -> None:
        self._held.clear()
        self._resources.close()

    def commit(self) -> None:
        raise NotImplementedError

    def rollback(self) -> None:
        raise NotImplementedError

    def get_hospital_config(self, hospital_id: str) -> Optional[HospitalConfig]:
        raise NotImplementedError

    def save_hospital_config(self, config: HospitalConfig) -> None:
        raise NotImplementedError

    def get_department_config(
        self, hospital_id: str, department_id: str
    ) -> Optional[DepartmentConfig]:
        raise NotImplementedError

    def save_department_config(self, config: DepartmentConfig) -> None:
        raise NotImplementedError

    def get_doctor(self, doctor_id: str) -> Optional[Doctor]:
        raise NotImplementedError

    def save_doctor(self, doctor: Doctor) -> None:
        raise NotImplementedError

    def list_doctors(
        self,
        hospital_id: str,
        department_id: Optional[str] = None,
        status: Optional[DoctorStatus] = None,
    ) -> List[Doctor]:
        raise NotImplementedError

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        raise NotImplementedError

    def save_appointment(self, appointment: Appointment) -> None:
        raise NotImplementedError

    def get_visit(self, visit_id: str) -> Optional[Visit]:
        raise NotImplementedError

    def save_visit(self, visit: Visit) -> None:
        raise NotImplementedError

    def list_visits(
        self,
        hospital_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        department_id: Optional[str] = None,
        statuses: Optional[Iterable[VisitStatus]] = None,
        patient_id: Optional[str] = None,
        appointment_id: Optional[str] = None,
        unassigned: bool = False,
    ) -> List[Visit]:
        raise NotImplementedError

    def get_history(self, visit_id: str) -> Optional[VisitHistory]:
        raise NotImplementedError

    def add_history(self, record: VisitHistory) -> None:
        raise NotImplementedError

    def list_history(
        self,
        hospital_id: str,
        doctor_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[VisitHistory]:
        raise NotImplementedError

    def get_token_counter(self, scope_key: str) -> Optional[TokenCounter]:
        raise NotImplementedError

    def save_token_counter(self, counter: TokenCounter) -> None:
        raise NotImplementedError


class Store:
    def begin(self) -> UnitOfWork:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """All writes made inside the block commit together or not at all."""
        uow = self.begin()
        try:
            yield uow
            uow.commit()
        except BaseException:
            uow.rollback()
            raise
        finally:
            uow.close()


def visit_matches(
    visit: Visit,
    hospital_id=None,
    doctor_id=None,
    department_id=None,
    statuses=None,
    patient_id=None,
    appointment_id=None,
    unassigned=False,
) -> bool:
    if hospital_id is not None and visit.hospital_id != hospital_id:
        return False
    if doctor_id is not None and visit.doctor_id != doctor_id:
        return False
    if unassigned and visit.doctor_id is not None:
        return False
    if department_id is not None and visit.department_id != department_id:
        return False
    if statuses is not None and visit.status not in statuses:
        return False
    if patient_id is not None and visit.patient_id != patient_id:
        return False
    if appointment_id is not None and visit.appointment_id != appointment_id:
        return False
    return True


_TABLES = (
    "hospital_configs",
    "department_configs",
    "doctors",
    "appointments",
    "visits",
    "history",
    "token_counters",
)


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "InMemoryStore") -> None:
        super().__init__()
        self._store = store
        self._pending: Dict[str, Dict] = {name: {} for name in _TABLES}

    def _get(self, table: str, key):
        pending = self._pending[table]
        if key in pending:
            return copy.deepcopy(pending[key])
        with self._store.mutex:
            return copy.deepcopy(self._store.tables[table].get(key))

    def _put(self, table: str, key, value) -> None:
        self._pending[table][key] = copy.deepcopy(value)

    def _scan(self, table: str) -> List:
        with self._store.mutex:
            merged = dict(self._store.tables[table])
        merged.update(self._pending[table])
        return [copy.deepcopy(value) for value in merged.values()]

    def commit(self) -> None:
        with self._store.mutex:
            for table, rows in self._pending.items():
                target = self._store.tables[table]
                if table == "history":
                    # Append-only: a record, once written, is never replaced.
                    for key, value in rows.items():
                        target.setdefault(key, value)
                else:
                    target.update(rows)
        self._reset()

    def rollback(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._pending = {name: {} for name in _TABLES}

    def get_hospital_config(self, hospital_id):
        return self._get("hospital_configs", hospital_id)

    def save_hospital_config(self, config):
        self._put("hospital_configs", config.hospital_id, config)

    def get_department_config(self, hospital_id, department_id):
        return self._get("department_configs", (hospital_id, department_id))

    def save_department_config(self, config):
        self._put(
            "department_configs", (config.hospital_id, config.department_id), config
        )

    def get_doctor(self, doctor_id):
        return self._get("doctors", doctor_id)

    def save_doctor(self, doctor):
        self._put("doctors", doctor.id, doctor)

    def list_doctors(self, hospital_id, department_id=None, status=None):
        doctors = [
            d
            for d in self._scan("doctors")
            if d.hospital_id == hospital_id
            and (department_id is None or d.department_id == department_id)
            and (status is None or d.status == status)
        ]
        return sorted(doctors, key=lambda d: d.id)

    def get_appointment(self, appointment_id):
        return self._get("appointments", appointment_id)

    def save_appointment(self, appointment):
        self._put("appointments", appointment.id, appointment)

    def get_visit(self, visit_id):
        return self._get("visits", visit_id)

    def save_visit(self, visit):
        self._put("visits", visit.id, visit)

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
        wanted = frozenset(statuses) if statuses is not None else None
        visits = [
            v
            for v in self._scan("visits")
            if visit_matches(
                v,
                hospital_id=hospital_id,
                doctor_id=doctor_id,
                department_id=department_id,
                statuses=wanted,
                patient_id=patient_id,
                appointment_id=appointment_id,
                unassigned=unassigned,
            )
        ]
        return sorted(visits, key=lambda v: (v.checked_in_at, v.id))

    def get_history(self, visit_id):
        return self._get("history", visit_id)

    def add_history(self, record):
        if self.get_history(record.visit_id) is None:
            self._put("history", record.visit_id, record)

    def list_history(self, hospital_id, doctor_id=None, since=None):
        records = [
            r
            for r in self._scan("history")
            if r.hospital_id == hospital_id
            and (doctor_id is None or r.doctor_id == doctor_id)
            and (since is None or r.archived_at >= since)
        ]
        return sorted(records, key=lambda r: (r.archived_at, r.visit_id))

    def get_token_counter(self, scope_key):
        return self._get("token_counters", scope_key)

    def save_token_counter(self, counter):
        self._put("token_counters", counter.scope_key, counter)


class InMemoryStore(Store):
    """Dict-backed store; each unit of work stages writes and applies them atomically."""

    def __init__(self) -> None:
        self.mutex = threading.RLock()
        self.tables: Dict[str, Dict] = {name: {} for name in _TABLES}

    def begin(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self)

    def reset(self) -> None:
        with self.mutex:
            for table in self.tables.values():
                table.clear()
