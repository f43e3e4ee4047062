from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from errors import Busy


def doctor_key(doctor_id: str) -> str:
    return f"doctor:{doctor_id}"


def department_key(hospital_id: str, department_id: str) -> str:
    return f"department:{hospital_id}:{department_id}"


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    """
    Arena of exclusive locks keyed by string.

    - A key's lock is created on first use and dropped once nobody holds or
      waits for it, so idle doctors cost nothing.
    - Several keys are always taken in sorted order to rule out deadlock.
    - Waiting is bounded; on timeout ``Busy`` is raised instead of queueing.
    """

    def __init__(self, timeout: float = 2.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, *keys: Optional[str], timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.timeout if timeout is None else timeout
        ordered = sorted({key for key in keys if key})
        deadline = time.monotonic() + wait
        held = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not entry.lock.acquire(timeout=remaining):
                    self._checkin(key)
                    raise Busy(key, wait)
                held.append((key, entry))
            yield
        finally:
            for key, entry in reversed(held):
                entry.lock.release()
                self._checkin(key)
