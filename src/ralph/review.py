from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any

from ralph import protocol
from ralph.config import ConfigSource
from ralph.errors import ReviewRejected
from ralph.hosts.base import Notifier, SessionHost, notify_safely
from ralph.registry import SessionRegistry, SessionRole
from ralph.state.documents import DocumentStore
from ralph.state.json_store import JsonStateFile
from ralph.templates import PromptTemplates, interpolate

logger = logging.getLogger(__name__)

REVIEW_STATE_FILE = f"{protocol.STATE_DIR}/review_state.json"
REVIEW_POLL_SECONDS = 5.0
REVIEW_WAIT_TIMEOUT_SECONDS = 1800.0


def empty_review_state() -> dict[str, Any]:
    return {"requests": {}, "run_counts": {}, "active": None}


@dataclass(slots=True)
class ActiveReview:
    name: str
    attempt: int
    run: int
    session_id: str
    state_dir: str
    report_path: str
    started_at: str


class ReviewGate:
    """Optional secondary check pass, gated per attempt.

    Each attempt moves through not-requested, requested, running and
    completed, with a run count capped by ``review.max_runs_per_attempt``.
    The maps are mirrored to ``.ralph/review_state.json`` after every change.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        host: SessionHost,
        store: DocumentStore,
        state_file: JsonStateFile,
        config: ConfigSource,
        templates: PromptTemplates,
        notifier: Notifier,
        *,
        poll_interval_seconds: float = REVIEW_POLL_SECONDS,
        wait_timeout_seconds: float = REVIEW_WAIT_TIMEOUT_SECONDS,
    ) -> None:
        self.registry = registry
        self.host = host
        self.store = store
        self.state_file = state_file
        self.config = config
        self.templates = templates
        self.notifier = notifier
        self.poll_interval_seconds = poll_interval_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.requests: dict[int, dict[str, Any]] = {}
        self.run_counts: dict[int, int] = {}
        self.active: ActiveReview | None = None
        self._lock = asyncio.Lock()

    def load(self) -> None:
        """Restore persisted gating maps. A persisted active review is dropped."""
        payload = self.state_file.read()
        if not isinstance(payload, dict):
            payload = empty_review_state()
        self.requests = {}
        requests = payload.get("requests")
        if isinstance(requests, dict):
            for key, value in requests.items():
                try:
                    self.requests[int(key)] = value if isinstance(value, dict) else {}
                except (TypeError, ValueError):
                    continue
        self.run_counts = {}
        run_counts = payload.get("run_counts")
        if isinstance(run_counts, dict):
            for key, value in run_counts.items():
                try:
                    self.run_counts[int(key)] = max(0, int(value))
                except (TypeError, ValueError):
                    continue
        if payload.get("active"):
            logger.warning(
                "Discarding persisted active review %s; its session is unknown after restart",
                payload["active"].get("name") if isinstance(payload["active"], dict) else "?",
            )
        self.active = None
        self._persist()

    def _persist(self) -> None:
        self.state_file.write(self.state())

    def state(self) -> dict[str, Any]:
        return {
            "requests": {str(key): value for key, value in sorted(self.requests.items())},
            "run_counts": {str(key): value for key, value in sorted(self.run_counts.items())},
            "active": asdict(self.active) if self.active else None,
        }

    def status_for(self, attempt: int) -> str:
        if self.active is not None and self.active.attempt == attempt:
            return "running"
        if attempt in self.requests:
            return "requested"
        if self.run_counts.get(attempt, 0) > 0:
            return "completed"
        return "not-requested"

    def request_review(self, attempt: int, note: str = "") -> dict[str, Any]:
        self.requests[attempt] = {"note": note, "requested_at": protocol.utcnow_iso()}
        self._persist()
        logger.info("Review requested for attempt %d", attempt)
        return {"ok": True, "attempt": attempt, "status": self.status_for(attempt)}

    async def run_review(
        self,
        attempt: int,
        *,
        force: bool = False,
        wait: bool = False,
    ) -> dict[str, Any]:
        async with self._lock:
            cfg = self.config.get().review
            if not cfg.enabled and not force:
                raise ReviewRejected(
                    "Review is disabled. Set [review] enabled = true or pass force.",
                    reason="disabled",
                )
            if cfg.require_explicit_ready and attempt not in self.requests and not force:
                raise ReviewRejected(
                    f"Review for attempt {attempt} was not requested. "
                    "Call request_review first or pass force.",
                    reason="not requested",
                )
            runs = self.run_counts.get(attempt, 0)
            if runs >= cfg.max_runs_per_attempt and not force:
                raise ReviewRejected(
                    f"Review quota reached for attempt {attempt}: {runs} of "
                    f"{cfg.max_runs_per_attempt} run(s) used.",
                    reason="quota reached",
                )
            if self.active is not None:
                if not wait:
                    return {
                        "status": "already_running",
                        "name": self.active.name,
                        "attempt": self.active.attempt,
                        "session_id": self.active.session_id,
                    }
                started: dict[str, Any] = {}
            else:
                started = await self._start(attempt, runs + 1, output_dir=cfg.output_dir)

        if not wait:
            return started
        return await self.wait_for_completion()

    async def _start(self, attempt: int, run: int, *, output_dir: str) -> dict[str, Any]:
        name = f"review-a{attempt}-r{run}"
        state_dir = protocol.review_dir(name)
        note = str(self.requests.get(attempt, {}).get("note") or "General review of the attempt.")
        protocol.bootstrap_child_dir(
            self.store,
            state_dir,
            title=f"Review Plan: {name}",
            goal=note,
            templates=self.templates,
        )
        session_id = await self.host.create(f"review: {name}")
        self.registry.register(session_id, SessionRole.SUBTASK, attempt, title=f"review: {name}")
        self.active = ActiveReview(
            name=name,
            attempt=attempt,
            run=run,
            session_id=session_id,
            state_dir=state_dir,
            report_path=f"{output_dir}/attempt-{attempt}-run-{run}.md",
            started_at=protocol.utcnow_iso(),
        )
        self._persist()
        prompt = interpolate(
            self.templates.reviewer_prompt,
            name=name,
            attempt=attempt,
            note=note,
            state_dir=state_dir,
            done_heading=self.templates.subtask_done_heading,
            done_sentinel=self.templates.subtask_done_sentinel,
        )
        await self.host.prompt(session_id, prompt)
        logger.info("Started review %s (session %s) for attempt %d", name, session_id, attempt)
        return {
            "status": "started",
            "name": name,
            "attempt": attempt,
            "run": run,
            "session_id": session_id,
            "state_dir": state_dir,
        }

    async def wait_for_completion(self) -> dict[str, Any]:
        deadline = time.monotonic() + self.wait_timeout_seconds
        while True:
            active = self.active
            if active is None:
                return {"status": "idle"}
            completed = await self.check_completion()
            if completed is not None:
                return completed
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return {"status": "running", "name": active.name, "attempt": active.attempt}
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    async def handle_idle(self, session_id: str) -> dict[str, Any] | None:
        if self.active is None or self.active.session_id != session_id:
            return None
        return await self.check_completion()

    def is_reviewer(self, session_id: str) -> bool:
        return self.active is not None and self.active.session_id == session_id

    async def check_completion(self) -> dict[str, Any] | None:
        active = self.active
        if active is None:
            return None
        scratch = self.store.read_or(f"{active.state_dir}/{protocol.CURRENT_STATE}", "")
        if not protocol.is_complete(scratch, self.templates):
            return None

        note = str(self.requests.get(active.attempt, {}).get("note") or "")
        report = "\n".join(
            [
                f"# Review Report: {active.name}",
                "",
                f"- Attempt: {active.attempt}",
                f"- Run: {active.run}",
                f"- Reviewer session: {active.session_id}",
                f"- Started: {active.started_at}",
                f"- Completed: {protocol.utcnow_iso()}",
                f"- Request note: {note or '(none)'}",
                "",
                "## Findings",
                "",
                scratch.strip(),
                "",
            ]
        )
        self.store.write(active.report_path, report)

        self.active = None
        self.requests.pop(active.attempt, None)
        self.run_counts[active.attempt] = self.run_counts.get(active.attempt, 0) + 1
        self._persist()
        logger.info("Review %s completed; report at %s", active.name, active.report_path)
        await notify_safely(
            self.notifier,
            "info",
            f"Review {active.name} completed for attempt {active.attempt}: {active.report_path}",
        )
        return {
            "status": "completed",
            "name": active.name,
            "attempt": active.attempt,
            "run": active.run,
            "report": active.report_path,
        }

    def clear_active(self) -> str | None:
        """Forget the in-flight review and return its session id, if any."""
        if self.active is None:
            return None
        session_id = self.active.session_id
        self.active = None
        self._persist()
        return session_id

    def reset(self) -> None:
        self.requests.clear()
        self.run_counts.clear()
        self.active = None
        self._persist()
