from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ralph.errors import RegistryError

T = TypeVar("T")


class SessionRole(str, Enum):
    MAIN = "main"
    STRATEGIST = "strategist"
    WORKER = "worker"
    SUBTASK = "subtask"


class ChildTaskStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class ChildTask:
    id: str
    label: str
    goal: str
    spawn_time: float = field(default_factory=time.time)
    status: ChildTaskStatus = ChildTaskStatus.RUNNING
    result_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass(slots=True)
class SessionRecord:
    session_id: str
    role: SessionRole | None = None
    attempt: int = 0
    title: str = ""
    context_loaded: bool = False
    delegated_child: bool = False
    last_progress_at: float = field(default_factory=time.time)
    last_idle_handled_at: float | None = None
    last_grep_at: float | None = None
    last_grep_query: str | None = None
    child_tasks: list[ChildTask] = field(default_factory=list)

    @property
    def assigned(self) -> bool:
        return self.role is not None

    def running_tasks(self) -> list[ChildTask]:
        return [task for task in self.child_tasks if task.status is ChildTaskStatus.RUNNING]

    def find_task(self, label: str) -> ChildTask | None:
        for task in reversed(self.child_tasks):
            if task.label == label:
                return task
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "role": self.role.value if self.role else None,
            "attempt": self.attempt,
            "title": self.title,
            "context_loaded": self.context_loaded,
            "delegated_child": self.delegated_child,
            "last_progress_at": self.last_progress_at,
            "child_tasks": [task.to_dict() for task in self.child_tasks],
        }


class SessionRegistry:
    """Per-session records keyed by session id.

    A record is created on first reference. ``mutate`` gives an atomic
    read-modify-write on a single record; nothing here spans two records.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def register(
        self,
        session_id: str,
        role: SessionRole,
        attempt: int,
        *,
        title: str = "",
    ) -> SessionRecord:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                record = SessionRecord(session_id=session_id, last_progress_at=self._clock())
                self._records[session_id] = record
            if record.role is not None and record.role is not role:
                raise RegistryError(
                    f"Session {session_id} is already registered as {record.role.value}; "
                    f"cannot re-register it as {role.value}."
                )
            record.role = role
            record.attempt = attempt
            record.title = title or record.title
            record.last_progress_at = self._clock()
            return record

    def get(self, session_id: str) -> SessionRecord:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                record = SessionRecord(session_id=session_id, last_progress_at=self._clock())
                self._records[session_id] = record
            return record

    def peek(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            return self._records.get(session_id)

    def mutate(self, session_id: str, fn: Callable[[SessionRecord], T]) -> T:
        with self._lock:
            return fn(self.get(session_id))

    def touch(self, session_id: str) -> None:
        now = self._clock()

        def _update(record: SessionRecord) -> None:
            record.last_progress_at = now

        self.mutate(session_id, _update)

    def remove(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            return self._records.pop(session_id, None)

    def session_ids(self, *, role: SessionRole | None = None) -> list[str]:
        with self._lock:
            return [
                session_id
                for session_id, record in self._records.items()
                if role is None or record.role is role
            ]

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [record.to_dict() for record in self._records.values()]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
