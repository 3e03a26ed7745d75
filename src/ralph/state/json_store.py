from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ralph.errors import StateError

logger = logging.getLogger(__name__)

STALE_LOCK_SECONDS = 30.0


class JsonStateFile:
    """A single JSON document rewritten wholesale on every mutation.

    Writers serialize through an ``O_EXCL`` lock file so separate processes
    (the supervisor and the ``ralph respond`` CLI, for instance) never
    interleave a read-modify-write.
    """

    def __init__(self, path: Path, default: Callable[[], Any]) -> None:
        self.path = path
        self.lock_file = path.with_name(f"{path.name}.lock")
        self._default = default

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale():
                    logger.warning("Removing stale state lock %s", self.lock_file)
                    self._unlink_lock()
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise StateError(f"Timed out waiting for state lock {self.lock_file}.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            self._unlink_lock()

    def _lock_is_stale(self) -> bool:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > STALE_LOCK_SECONDS

    def _unlink_lock(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass

    def read(self) -> Any:
        if not self.path.exists():
            return self._default()
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable state file %s (%s); using defaults", self.path, exc)
            return self._default()

    def _write_unlocked(self, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            raise StateError(f"Cannot write state file {self.path}: {exc}") from exc

    def write(self, payload: Any) -> None:
        with self._state_lock():
            self._write_unlocked(payload)

    def update(self, updater: Callable[[Any], Any]) -> Any:
        with self._state_lock():
            updated = updater(self.read())
            self._write_unlocked(updated)
            return updated
