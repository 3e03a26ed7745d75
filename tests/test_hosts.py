import asyncio

import pytest

from ralph.errors import SessionHostError
from ralph.hosts.base import SessionHost
from ralph.hosts.resilient import BestEffortSessionHost, RetryPolicy


class FlakyHost(SessionHost):
    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or RuntimeError("host unavailable")
        self.create_calls = 0

    async def create(self, title: str) -> str:
        self.create_calls += 1
        if self.create_calls <= self.failures:
            raise self.error
        return f"ses-{self.create_calls}"

    async def prompt(self, session_id: str, text: str) -> None:
        raise RuntimeError("prompt rejected")

    async def abort(self, session_id: str) -> None:
        raise RuntimeError("abort rejected")

    async def delete(self, session_id: str) -> None:
        return None


def _policy(max_retries: int = 1) -> RetryPolicy:
    return RetryPolicy(max_retries=max_retries, backoff_seconds=0.0, timeout_seconds=1.0)


def test_create_retries_then_succeeds() -> None:
    events: list[dict] = []
    inner = FlakyHost(failures=1)
    host = BestEffortSessionHost(inner, retry_policy=_policy(), event_hook=events.append)

    assert asyncio.run(host.create("worker")) == "ses-2"
    assert inner.create_calls == 2
    assert [event["event"] for event in events] == ["host_call_failed", "host_retry"]


def test_create_raises_once_retries_are_exhausted() -> None:
    inner = FlakyHost(failures=5)
    host = BestEffortSessionHost(inner, retry_policy=_policy(max_retries=2))

    with pytest.raises(SessionHostError, match="host unavailable") as excinfo:
        asyncio.run(host.create("worker"))

    assert inner.create_calls == 3
    assert excinfo.value.operation == "create"


def test_non_retriable_host_error_stops_immediately() -> None:
    inner = FlakyHost(failures=5, error=SessionHostError("quota", retriable=False))
    host = BestEffortSessionHost(inner, retry_policy=_policy(max_retries=3))

    with pytest.raises(SessionHostError, match="quota"):
        asyncio.run(host.create("worker"))

    assert inner.create_calls == 1


def test_prompt_and_abort_failures_are_swallowed() -> None:
    events: list[dict] = []
    host = BestEffortSessionHost(FlakyHost(), retry_policy=_policy(), event_hook=events.append)

    async def scenario() -> None:
        await host.prompt("ses-1", "hello")
        await host.abort("ses-1")
        await host.delete("ses-1")

    asyncio.run(scenario())

    assert [(event["call"], event["session_id"]) for event in events] == [
        ("prompt", "ses-1"),
        ("abort", "ses-1"),
    ]


class HangingHost(FlakyHost):
    async def create(self, title: str) -> str:
        self.create_calls += 1
        await asyncio.sleep(1)
        return "late"

    async def abort(self, session_id: str) -> None:
        await asyncio.sleep(1)


def test_timeouts_name_the_call() -> None:
    events: list[dict] = []
    policy = RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.01)
    host = BestEffortSessionHost(HangingHost(), retry_policy=policy, event_hook=events.append)

    with pytest.raises(SessionHostError, match=r"create timed out after 0\.01s"):
        asyncio.run(host.create("worker"))

    asyncio.run(host.abort("ses-1"))
    assert events[-1]["error"] == "abort timed out after 0.01s"
