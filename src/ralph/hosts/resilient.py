from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ralph.errors import SessionHostError
from ralph.hosts.base import SessionHost

logger = logging.getLogger(__name__)

HostEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 30.0


class BestEffortSessionHost(SessionHost):
    """Wraps a host with timeout + retry on create and swallows other failures.

    ``create`` is the only call whose failure matters to the caller (there is
    no session without an id), so it raises ``SessionHostError`` once retries
    are exhausted. ``prompt``/``abort``/``delete`` failures are reported
    through the event hook and the log, never raised.
    """

    def __init__(
        self,
        inner: SessionHost,
        retry_policy: RetryPolicy | None = None,
        event_hook: HostEventHook | None = None,
    ) -> None:
        self.inner = inner
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _call(self, call_name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except TimeoutError as exc:
            raise TimeoutError(f"{call_name} timed out after {timeout:g}s") from exc

    async def create(self, title: str) -> str:
        errors: list[str] = []
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit({"event": "host_retry", "call": "create", "attempt": attempt})
                await asyncio.sleep(delay)
            try:
                session_id = await self._call("create", lambda: self.inner.create(title))
            except TimeoutError as exc:
                errors.append(f"create[{attempt}]: {exc}")
                self._emit({"event": "host_call_failed", "call": "create", "error": "timeout"})
                continue
            except SessionHostError as exc:
                errors.append(f"create[{attempt}]: {exc}")
                self._emit({"event": "host_call_failed", "call": "create", "error": str(exc)})
                if not exc.retriable:
                    break
                continue
            except Exception as exc:
                errors.append(f"create[{attempt}]: {exc}")
                self._emit({"event": "host_call_failed", "call": "create", "error": str(exc)})
                continue
            if not session_id:
                errors.append(f"create[{attempt}]: host returned an empty session id")
                continue
            return str(session_id)

        raise SessionHostError(
            f"Could not create session '{title}'. {'; '.join(errors[-4:])}",
            operation="create",
            retriable=False,
        )

    async def _swallow(self, call_name: str, session_id: str, call: Callable[[], Awaitable[Any]]) -> None:
        try:
            await self._call(call_name, call)
        except Exception as exc:
            logger.warning("Session host %s(%s) failed: %s", call_name, session_id, exc)
            self._emit(
                {
                    "event": "host_call_failed",
                    "call": call_name,
                    "session_id": session_id,
                    "error": str(exc),
                }
            )

    async def prompt(self, session_id: str, text: str) -> None:
        await self._swallow("prompt", session_id, lambda: self.inner.prompt(session_id, text))

    async def abort(self, session_id: str) -> None:
        await self._swallow("abort", session_id, lambda: self.inner.abort(session_id))

    async def delete(self, session_id: str) -> None:
        await self._swallow("delete", session_id, lambda: self.inner.delete(session_id))
