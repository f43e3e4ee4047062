"""Error taxonomy raised by the queue engine.

Every error is raised before the operation's unit of work commits, so a
rejected call leaves visits, tokens and queues exactly as they were.
"""

from typing import Optional


class QueueError(Exception):
    """Base class. ``category`` groups errors the way callers react to them."""

    category = "validation"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(QueueError):
    category = "validation"


class NotFound(ValidationError):
    def __init__(self, kind: str, identifier: Optional[str]) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class InvalidTransition(QueueError):
    category = "conflict"

    def __init__(self, current, requested, message: Optional[str] = None) -> None:
        current_name = getattr(current, "value", current)
        requested_name = getattr(requested, "value", requested)
        super().__init__(
            message or f"Cannot {requested_name} a visit in status {current_name}"
        )
        self.current = current
        self.requested = requested


class DuplicateActiveVisit(QueueError):
    category = "conflict"

    def __init__(self, patient_id: str, doctor_id: Optional[str]) -> None:
        target = f"doctor {doctor_id}" if doctor_id else "the department pool"
        super().__init__(
            f"Patient {patient_id} already has an active visit with {target}"
        )
        self.patient_id = patient_id
        self.doctor_id = doctor_id


class DoctorBusy(QueueError):
    category = "conflict"

    def __init__(self, doctor_id: str, visit_id: str) -> None:
        super().__init__(
            f"Doctor {doctor_id} already has visit {visit_id} in progress; "
            "complete or hold it first"
        )
        self.doctor_id = doctor_id
        self.visit_id = visit_id


class EmptyQueue(QueueError):
    category = "conflict"

    def __init__(self, doctor_id: str) -> None:
        super().__init__(f"No waiting patients for doctor {doctor_id}")
        self.doctor_id = doctor_id


class Busy(QueueError):
    category = "contention"

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"Could not lock {key} within {timeout:g}s, retry")
        self.key = key
        self.timeout = timeout


class ConfigNotFound(QueueError):
    category = "configuration"

    def __init__(self, hospital_id: str) -> None:
        super().__init__(f"No configuration for hospital {hospital_id}")
        self.hospital_id = hospital_id


class TargetDoctorInactive(QueueError):
    category = "configuration"

    def __init__(self, doctor_id: str, status) -> None:
        super().__init__(
            f"Doctor {doctor_id} is {getattr(status, 'value', status)}, not ACTIVE"
        )
        self.doctor_id = doctor_id
        self.status = status
