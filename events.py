"""Queue change events and the publisher interface the engine writes to.

Delivery to browsers or displays is someone else's job: the engine hands an
immutable ``QueueEvent`` to an ``EventPublisher`` once per successful
mutation, after the change is committed.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Tuple

from domain import QueueSnapshot, VisitStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueItem:
    visit_id: str
    patient_id: str
    doctor_id: Optional[str]
    token_number: int
    display_token: str
    status: VisitStatus
    priority: str
    is_carryover: bool
    on_hold: bool
    position: int
    estimated_wait_minutes: int


def queue_items(snapshot: Optional[QueueSnapshot]) -> Tuple[QueueItem, ...]:
    if snapshot is None:
        return ()
    return tuple(
        QueueItem(
            visit_id=entry.visit.id,
            patient_id=entry.visit.patient_id,
            doctor_id=entry.visit.doctor_id,
            token_number=entry.visit.token_number,
            display_token=entry.visit.display_token,
            status=entry.visit.status,
            priority=entry.visit.priority.value,
            is_carryover=entry.visit.is_carryover,
            on_hold=entry.on_hold,
            position=entry.position,
            estimated_wait_minutes=entry.visit.estimated_wait_minutes or 0,
        )
        for entry in snapshot.entries
    )


@dataclass(frozen=True)
class QueueEvent:
    action: str
    hospital_id: str
    doctor_id: Optional[str]
    department_id: Optional[str]
    visit_id: str
    status: VisitStatus
    queue: Tuple[QueueItem, ...]
    occurred_at: datetime
    related_visit_id: Optional[str] = None
    previous_doctor_id: Optional[str] = None
    previous_queue: Tuple[QueueItem, ...] = ()

    @property
    def topics(self) -> List[str]:
        topics = [f"hospital:{self.hospital_id}"]
        for doctor_id in (self.doctor_id, self.previous_doctor_id):
            if doctor_id and f"doctor:{doctor_id}" not in topics:
                topics.append(f"doctor:{doctor_id}")
        if self.department_id:
            topics.append(f"department:{self.department_id}")
        return topics

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["topics"] = self.topics
        return data


class EventPublisher:
    def publish(self, event: QueueEvent) -> None:
        raise NotImplementedError


Subscriber = Callable[[QueueEvent], None]


class InMemoryPublisher(EventPublisher):
    """
    Keeps a bounded outbox per topic and fans events out to subscribers.

    A failing subscriber is logged and does not stop delivery to the others.
    """

    def __init__(self, outbox_size: int = 500) -> None:
        self.outbox_size = outbox_size
        self._lock = threading.Lock()
        self._outbox: Dict[str, Deque[QueueEvent]] = defaultdict(
            lambda: deque(maxlen=self.outbox_size)
        )
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self.published: Deque[QueueEvent] = deque(maxlen=outbox_size)

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[topic]:
                    self._subscribers[topic].remove(callback)

        return unsubscribe

    def events(self, topic: str) -> List[QueueEvent]:
        with self._lock:
            return list(self._outbox.get(topic, ()))

    def publish(self, event: QueueEvent) -> None:
        with self._lock:
            self.published.append(event)
            callbacks = []
            for topic in event.topics:
                self._outbox[topic].append(event)
                callbacks.extend(self._subscribers.get(topic, ()))

        seen = set()
        for callback in callbacks:
            if id(callback) in seen:
                continue
            seen.add(id(callback))
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber failed for %s on visit %s", event.action, event.visit_id)
