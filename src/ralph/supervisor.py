from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from ralph import protocol
from ralph.config import CONFIG_FILENAME, ConfigCache, ConfigSource, RalphConfig
from ralph.errors import DocumentError, ProtocolViolation, ReadinessError, SessionHostError
from ralph.gate import ProtocolGate
from ralph.hosts.base import LoggingNotifier, Notifier, SessionHost, Severity, notify_safely
from ralph.hosts.resilient import BestEffortSessionHost, RetryPolicy
from ralph.questions import QUESTIONS_FILE, QuestionChannel, empty_store
from ralph.registry import SessionRecord, SessionRegistry, SessionRole
from ralph.review import REVIEW_STATE_FILE, ReviewGate, empty_review_state
from ralph.runner import CommandRunner, Verdict, VerifyResult, in_flight_count
from ralph.state.documents import DocumentStore
from ralph.state.json_store import JsonStateFile
from ralph.subtasks import SubtaskManager
from ralph.templates import PromptTemplates, interpolate, resolve_templates

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 60.0
SUMMARY_DETAIL_LINES = 40


@dataclass(slots=True)
class SupervisorRecord:
    bound_controller_id: str | None = None
    attempt_counter: int = 0
    active_strategist_id: str | None = None
    active_worker_id: str | None = None
    terminal: bool = False
    paused: bool = False
    exhausted: bool = False
    verifying: bool = False
    last_verdict: str | None = None

    @property
    def has_active_session(self) -> bool:
        return bool(self.active_strategist_id or self.active_worker_id or self.verifying)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Supervisor:
    """Drives attempts: strategist, then worker, then verification, then stop or retry.

    Every transition of ``record`` happens under ``self._lock``. Verification
    itself runs outside the lock so ``end`` can interrupt it; a result that
    arrives after ``end`` or ``reset`` is discarded via ``_epoch``.
    """

    def __init__(
        self,
        root: Path,
        host: SessionHost,
        *,
        config: ConfigSource,
        templates: PromptTemplates | None = None,
        notifier: Notifier | None = None,
        registry: SessionRegistry | None = None,
        runner: CommandRunner | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = root.resolve()
        self.host = host
        self.config = config
        self.notifier = notifier or LoggingNotifier()
        self.registry = registry or SessionRegistry(clock=clock)
        self.runner = runner or CommandRunner()
        self.store = DocumentStore(self.root)
        self._monotonic = monotonic
        self._clock = clock

        cfg = config.get()
        self.templates = templates or resolve_templates(cfg.templates, self.root)
        self.gate = ProtocolGate(
            self.registry,
            error_message=self.templates.context_gate_error,
            enabled=cfg.protocol.gate_destructive_tools,
        )
        self.subtasks = SubtaskManager(self.registry, host, self.store, config, self.templates)
        self.questions = QuestionChannel(
            JsonStateFile(self.root / QUESTIONS_FILE, empty_store),
            self.registry,
            self.notifier,
            poll_interval_seconds=cfg.questions.poll_interval_seconds,
            default_timeout_minutes=cfg.questions.default_timeout_minutes,
        )
        self.reviews = ReviewGate(
            self.registry,
            host,
            self.store,
            JsonStateFile(self.root / REVIEW_STATE_FILE, empty_review_state),
            config,
            self.templates,
            self.notifier,
        )
        self.reviews.load()

        self.record = SupervisorRecord()
        self._lock = asyncio.Lock()
        self._epoch = 0

    @classmethod
    def for_workspace(
        cls,
        root: Path,
        host: SessionHost,
        notifier: Notifier | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> Supervisor:
        return cls(
            root,
            BestEffortSessionHost(host, retry_policy=retry_policy),
            config=ConfigCache(root / CONFIG_FILENAME),
            notifier=notifier,
        )

    async def _notify(self, severity: Severity, message: str) -> None:
        await notify_safely(self.notifier, severity, message)

    @staticmethod
    def _command_available(executable: str, cwd: Path) -> bool:
        if not executable.strip():
            return False
        if "/" in executable:
            candidate = Path(executable)
            if not candidate.is_absolute():
                candidate = cwd / candidate
            return candidate.is_file()
        return shutil.which(executable) is not None

    def _readiness_checks(self, cfg: RalphConfig) -> list[dict[str, Any]]:
        checks: list[dict[str, Any]] = []
        checks.append(
            {
                "name": "loop_enabled",
                "ok": cfg.loop.enabled,
                "severity": "info" if cfg.loop.enabled else "error",
                "message": (
                    "Loop is enabled."
                    if cfg.loop.enabled
                    else "Loop is disabled; set [loop] enabled = true in ralph.toml."
                ),
            }
        )
        if self.record.terminal:
            checks.append(
                {
                    "name": "terminal",
                    "ok": False,
                    "severity": "error",
                    "message": "Supervision is terminal; call reset before starting again.",
                }
            )
        if self.record.exhausted:
            checks.append(
                {
                    "name": "exhausted",
                    "ok": False,
                    "severity": "error",
                    "message": (
                        f"Attempt bound ({cfg.loop.max_attempts}) was reached; "
                        "end and reset before starting again."
                    ),
                }
            )

        if cfg.verify.configured:
            cwd = (self.root / cfg.verify.cwd).resolve()
            executable = cfg.verify.command[0]
            if not cwd.is_dir():
                checks.append(
                    {
                        "name": "verify_cwd",
                        "ok": False,
                        "severity": "error",
                        "message": f"verify.cwd '{cfg.verify.cwd}' is not a directory.",
                    }
                )
            available = self._command_available(executable, cwd)
            checks.append(
                {
                    "name": "verify_command",
                    "ok": available,
                    "severity": "info" if available else "error",
                    "message": (
                        f"verify executable '{executable}' is available."
                        if available
                        else f"verify executable '{executable}' not found in PATH."
                    ),
                }
            )
        else:
            checks.append(
                {
                    "name": "verify_command",
                    "ok": True,
                    "severity": "warning",
                    "message": (
                        "No verify.command configured; every verdict will be 'unknown' "
                        "and the loop can only stop at the attempt bound."
                    ),
                }
            )

        try:
            created = protocol.bootstrap_protocol_files(self.store, self.templates)
        except DocumentError as exc:
            checks.append(
                {
                    "name": "protocol_files",
                    "ok": False,
                    "severity": "error",
                    "message": f"Protocol files could not be created: {exc}",
                }
            )
        else:
            checks.append(
                {
                    "name": "protocol_files",
                    "ok": True,
                    "severity": "info",
                    "message": (
                        f"Created protocol files: {', '.join(created)}."
                        if created
                        else "Protocol files present."
                    ),
                }
            )
        return checks

    async def start(self, controller_id: str, *, force: bool = False) -> dict[str, Any]:
        async with self._lock:
            bound = self.record.bound_controller_id
            if bound is not None and bound != controller_id and not force:
                raise ProtocolViolation(
                    f"Supervision is already bound to {bound}; "
                    f"{controller_id} must pass force to take over."
                )

            cfg = self.config.get()
            checks = self._readiness_checks(cfg)
            errors = [item["message"] for item in checks if item["severity"] == "error"]
            for item in checks:
                if item["severity"] == "warning":
                    logger.warning("%s", item["message"])
            if errors:
                raise ReadinessError(
                    "Supervision cannot start:\n" + "\n".join(f"- {item}" for item in errors),
                    diagnostics=errors,
                )

            if bound is not None and bound != controller_id:
                logger.warning("Controller %s took over supervision from %s", controller_id, bound)
            self.record.bound_controller_id = controller_id
            self.record.paused = False
            self.registry.register(controller_id, SessionRole.MAIN, self.record.attempt_counter)
            logger.info("Supervision bound to %s", controller_id)

            if not self.record.has_active_session:
                await self._spawn_strategist(self.record.attempt_counter or 1)
            return self.status()

    def _spawn_blocked_reason(self) -> str | None:
        if self.record.terminal:
            return "terminal"
        if self.record.exhausted:
            return "exhausted"
        if self.record.paused:
            return "paused"
        return None

    async def _spawn_strategist(self, attempt: int) -> str | None:
        blocked = self._spawn_blocked_reason()
        if blocked:
            logger.info("Not spawning strategist for attempt %d: %s", attempt, blocked)
            return None
        if self.record.active_strategist_id is not None:
            logger.warning(
                "Strategist %s is still active; not spawning another for attempt %d",
                self.record.active_strategist_id,
                attempt,
            )
            return None

        title = f"ralph attempt {attempt}: strategist"
        try:
            session_id = await self.host.create(title)
        except SessionHostError as exc:
            logger.error("Could not spawn strategist for attempt %d: %s", attempt, exc)
            await self._notify("error", f"Could not spawn strategist for attempt {attempt}: {exc}")
            return None

        self.registry.register(session_id, SessionRole.STRATEGIST, attempt, title=title)
        self.record.attempt_counter = attempt
        self.record.active_strategist_id = session_id
        summary = self.store.read_or(protocol.NEXT_RALPH, "(no previous attempt)")
        prompt = interpolate(self.templates.strategist_prompt, attempt=attempt, summary=summary)
        await self.host.prompt(session_id, prompt)
        logger.info("Spawned strategist %s for attempt %d", session_id, attempt)
        await self._notify("info", f"Attempt {attempt}: strategist started.")
        return session_id

    async def spawn_worker(self, caller_id: str, instructions: str) -> dict[str, Any]:
        async with self._lock:
            attempt = self.record.attempt_counter
            if caller_id != self.record.active_strategist_id:
                caller = self.registry.peek(caller_id)
                role = caller.role.value if caller and caller.role else "unregistered"
                raise ProtocolViolation(
                    f"spawn_worker may only be called by the active strategist "
                    f"(attempt {attempt}); session {caller_id} is {role}."
                )
            strategist = self.registry.get(caller_id)
            if strategist.delegated_child:
                raise ProtocolViolation(
                    f"Attempt {attempt} already has a worker; spawn_worker runs once per attempt."
                )
            if self.record.active_worker_id is not None:
                raise ProtocolViolation(
                    f"Worker {self.record.active_worker_id} is still active for attempt {attempt}."
                )
            blocked = self._spawn_blocked_reason()
            if blocked:
                raise ProtocolViolation(f"Supervision is {blocked}; no worker can be spawned now.")

            title = f"ralph attempt {attempt}: worker"
            session_id = await self.host.create(title)
            self.registry.register(session_id, SessionRole.WORKER, attempt, title=title)

            def _delegate(record: SessionRecord) -> None:
                record.delegated_child = True

            self.registry.mutate(caller_id, _delegate)
            self.record.active_worker_id = session_id
            prompt = interpolate(
                self.templates.worker_prompt, attempt=attempt, instructions=instructions
            )
            await self.host.prompt(session_id, prompt)
            logger.info("Spawned worker %s for attempt %d", session_id, attempt)
            return {"ok": True, "worker_session_id": session_id, "attempt": attempt}

    def _debounced(self, session_id: str) -> bool:
        debounce_seconds = self.config.get().loop.idle_debounce_ms / 1000.0
        now = self._monotonic()

        def _check(record: SessionRecord) -> bool:
            last = record.last_idle_handled_at
            if debounce_seconds > 0 and last is not None and now - last < debounce_seconds:
                return True
            record.last_idle_handled_at = now
            return False

        return self.registry.mutate(session_id, _check)

    async def handle_idle(self, session_id: str) -> str:
        if self.registry.peek(session_id) is None:
            return "untracked"
        if self._debounced(session_id):
            logger.debug("Idle event for %s debounced", session_id)
            return "debounced"

        record = self.registry.get(session_id)
        role = record.role
        if role is SessionRole.STRATEGIST:
            return await self._on_strategist_idle(session_id)
        if role is SessionRole.WORKER:
            return await self._on_worker_idle(session_id)
        if role is SessionRole.SUBTASK:
            completed = await self.reviews.handle_idle(session_id)
            return "review_completed" if completed else "observed"
        if role is SessionRole.MAIN:
            return "observed"
        return "unassigned"

    async def _on_strategist_idle(self, session_id: str) -> str:
        async with self._lock:
            if session_id != self.record.active_strategist_id:
                return "stale"
            record = self.registry.get(session_id)
            if record.delegated_child:
                return "delegated"
            self.record.active_strategist_id = None
            attempt = record.attempt
        message = (
            f"Strategist for attempt {attempt} went idle without calling spawn_worker; "
            "the loop is stalled. Resume to spawn a new strategist."
        )
        logger.warning("%s (session %s)", message, session_id)
        await self._notify("warning", message)
        return "stalled"

    async def _on_worker_idle(self, session_id: str) -> str:
        async with self._lock:
            if session_id != self.record.active_worker_id:
                return "stale"
            self.record.active_worker_id = None
            self.record.verifying = True
            attempt = self.record.attempt_counter
            epoch = self._epoch
            cfg = self.config.get()

        logger.info("Worker %s idle; verifying attempt %d", session_id, attempt)
        try:
            result = await self.runner.verify(cfg, self.root)
        except asyncio.CancelledError:
            async with self._lock:
                if epoch == self._epoch:
                    self.record.verifying = False
            raise

        async with self._lock:
            if epoch != self._epoch:
                logger.info("Discarding verification for attempt %d after end/reset", attempt)
                return "discarded"
            self.record.verifying = False
            self.record.last_verdict = result.verdict.value
            if result.verdict is Verdict.PASS:
                return await self._on_pass(attempt)
            return await self._on_fail(attempt, result, cfg)

    async def _on_pass(self, attempt: int) -> str:
        self.record.terminal = True
        self.record.active_strategist_id = None
        protocol.write_done_marker(self.store, self.templates)
        logger.info("Verification passed on attempt %d; loop complete", attempt)
        await self._notify("success", f"Verification passed on attempt {attempt}. Loop complete.")
        return "done"

    async def _on_fail(self, attempt: int, result: VerifyResult, cfg: RalphConfig) -> str:
        verdict = result.verdict.value
        self.record.active_strategist_id = None
        if attempt >= cfg.loop.max_attempts:
            self.record.exhausted = True
            logger.warning(
                "Verification %s on attempt %d; attempt bound %d reached",
                verdict,
                attempt,
                cfg.loop.max_attempts,
            )
            await self._notify(
                "error",
                f"Max attempts ({cfg.loop.max_attempts}) reached. "
                f"Review {protocol.NEXT_RALPH}.",
            )
            return "exhausted"

        next_attempt = attempt + 1
        self.record.attempt_counter = next_attempt
        details = protocol.clamp_lines(result.details or "(no output)", SUMMARY_DETAIL_LINES)
        protocol.rollover(
            self.store,
            self.templates,
            verdict=verdict,
            summary=f"Attempt {attempt} verification: {verdict}.\n\n{details}",
            next_step=interpolate(
                self.templates.continue_prompt, attempt=next_attempt, verdict=verdict
            ),
        )
        logger.info(
            "Attempt %d verification %s; rolled over to attempt %d", attempt, verdict, next_attempt
        )
        await self._notify("warning", f"Attempt {attempt}: verification {verdict}. Retrying.")
        await self._spawn_strategist(next_attempt)
        return "retry"

    async def pause(self) -> dict[str, Any]:
        async with self._lock:
            self.record.paused = True
            logger.info("Supervision paused")
            return self.status()

    async def resume(self, *, spawn_next: bool = True) -> dict[str, Any]:
        async with self._lock:
            self.record.paused = False
            logger.info("Supervision resumed")
            if (
                spawn_next
                and self.record.bound_controller_id is not None
                and not self.record.has_active_session
            ):
                await self._spawn_strategist(self.record.attempt_counter or 1)
            return self.status()

    async def end(self, *, clear_binding: bool = False) -> dict[str, Any]:
        async with self._lock:
            self._epoch += 1
            self.record.terminal = True
            self.record.paused = True
            children = [
                session_id
                for session_id in self.registry.session_ids()
                if self.registry.get(session_id).role is not SessionRole.MAIN
            ]
            for session_id in children:
                try:
                    await self.host.abort(session_id)
                except Exception as exc:
                    logger.warning("Could not abort session %s: %s", session_id, exc)
            stopped = await self.runner.stop_all()
            withdrawn = self.questions.stop_waiting()
            self.record.active_strategist_id = None
            self.record.active_worker_id = None
            self.record.verifying = False
            self.reviews.clear_active()
            if clear_binding:
                self.record.bound_controller_id = None
            logger.info(
                "Supervision ended: aborted %d session(s), stopped %d command(s), "
                "withdrew %d question(s)",
                len(children),
                stopped,
                withdrawn,
            )
            return self.status()

    async def reset(self) -> dict[str, Any]:
        async with self._lock:
            if not self.record.terminal:
                state = "exhausted" if self.record.exhausted else "running"
                raise ProtocolViolation(
                    f"reset is only valid once supervision is terminal (currently {state}); "
                    "call end first."
                )
            self._epoch += 1
            self.record.terminal = False
            self.record.exhausted = False
            self.record.paused = False
            self.record.verifying = False
            self.record.active_strategist_id = None
            self.record.active_worker_id = None
            self.record.attempt_counter = 0
            self.record.last_verdict = None
            self.reviews.reset()
            logger.info("Supervision reset")
            return self.status()

    async def handle_event(self, event: dict[str, Any]) -> str:
        event_type = str(event.get("type", ""))
        session_id = event.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            return "ignored"
        if event_type == "session.created":
            self.registry.touch(session_id)
            return "tracked"
        if event_type == "session.idle":
            return await self.handle_idle(session_id)
        if event_type == "session.progress":
            self.report_progress(session_id)
            return "progress"
        if event_type == "session.deleted":
            return await self._on_deleted(session_id)
        return "ignored"

    async def _on_deleted(self, session_id: str) -> str:
        async with self._lock:
            if self.record.active_strategist_id == session_id:
                self.record.active_strategist_id = None
                logger.warning("Active strategist %s was deleted", session_id)
            if self.record.active_worker_id == session_id:
                self.record.active_worker_id = None
                logger.warning("Active worker %s was deleted before going idle", session_id)
            if self.reviews.is_reviewer(session_id):
                self.reviews.clear_active()
                logger.warning("Active reviewer %s was deleted", session_id)
        self.subtasks.mark_failed(session_id, "Session was deleted before the sub-task finished.")
        self.registry.remove(session_id)
        return "removed"

    def report_progress(self, session_id: str, note: str | None = None) -> dict[str, Any]:
        self.registry.touch(session_id)
        record = self.registry.get(session_id)
        if note:
            logger.info(
                "Progress from %s (attempt %d): %s",
                session_id,
                record.attempt,
                note,
            )
        return {"ok": True, "session_id": session_id, "last_progress_at": record.last_progress_at}

    def check_heartbeat(self, now: float | None = None) -> list[str]:
        threshold = self.config.get().loop.heartbeat_minutes * 60
        now = self._clock() if now is None else now
        warnings: list[str] = []
        for label, session_id in (
            ("strategist", self.record.active_strategist_id),
            ("worker", self.record.active_worker_id),
        ):
            if session_id is None:
                continue
            record = self.registry.peek(session_id)
            if record is None:
                continue
            silent = now - record.last_progress_at
            if silent > threshold:
                warnings.append(
                    f"Active {label} {session_id} (attempt {record.attempt}) has reported "
                    f"no progress for {int(silent // 60)} minute(s)."
                )
        return warnings

    async def heartbeat_loop(self, interval_seconds: float = HEARTBEAT_INTERVAL_SECONDS) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            for message in self.check_heartbeat():
                logger.warning("%s", message)
                await self._notify("warning", message)

    async def verify_now(self) -> VerifyResult:
        return await self.runner.verify(self.config.get(), self.root)

    def system_prompt(self) -> str:
        """Text the host appends to every session's system prompt."""
        return self.templates.full_system_prompt

    def compaction_context(self) -> str:
        """Context the host keeps when it compacts a session's history."""
        return self.templates.compaction_context

    def status(self) -> dict[str, Any]:
        cfg = self.config.get()
        return {
            "record": self.record.to_dict(),
            "max_attempts": cfg.loop.max_attempts,
            "sessions": self.registry.snapshot(),
            "review": self.reviews.state(),
            "pending_questions": len(self.questions.pending()),
            "in_flight_commands": in_flight_count(),
        }
