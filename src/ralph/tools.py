"""Actions exposed to agent sessions. Every action returns a JSON string."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from ralph import protocol
from ralph.errors import ProtocolViolation
from ralph.registry import SessionRecord
from ralph.state.documents import DocumentStore
from ralph.supervisor import Supervisor

logger = logging.getLogger(__name__)

GREP_FRESHNESS_SECONDS = 5 * 60
ROLLOVER_VERDICTS = ("pass", "fail", "blocked", "unknown")
ACTIONS = frozenset(
    {
        "load_context",
        "grep",
        "slice",
        "update_plan",
        "update_instructions",
        "rollover",
        "verify",
        "report_progress",
        "spawn_worker",
        "subtask_spawn",
        "subtask_peek",
        "subtask_await",
        "subtask_list",
        "ask",
        "request_review",
        "run_review",
    }
)


def _json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


class ToolRouter:
    def __init__(self, supervisor: Supervisor, *, clock: Callable[[], float] = time.time) -> None:
        self.supervisor = supervisor
        self._clock = clock

    @property
    def store(self) -> DocumentStore:
        return self.supervisor.store

    def before_action(self, session_id: str, action: str) -> None:
        cfg = self.supervisor.config.get()
        self.supervisor.gate.enabled = cfg.protocol.gate_destructive_tools
        self.supervisor.gate.check(session_id, action)

    def _attempt_for(self, session_id: str) -> int:
        record = self.supervisor.registry.peek(session_id)
        if record is not None and record.attempt:
            return record.attempt
        return self.supervisor.record.attempt_counter

    def load_context(
        self,
        session_id: str,
        *,
        include_headings: bool = True,
        headings_max: int = 80,
    ) -> str:
        self.before_action(session_id, "load_context")

        def _load(record: SessionRecord) -> SessionRecord:
            record.context_loaded = True
            return record

        record = self.supervisor.registry.mutate(session_id, _load)
        payload = protocol.load_context_payload(
            self.store,
            self.supervisor.config.get(),
            record,
            include_headings=include_headings,
            headings_max=headings_max,
        )
        return _json(payload)

    def grep(
        self,
        session_id: str,
        query: str,
        *,
        file: str | None = None,
        max_matches: int = 50,
        context_lines: int = 0,
    ) -> str:
        self.before_action(session_id, "grep")
        relative = file or protocol.RLM_CONTEXT
        results = protocol.grep(
            self.store.read(relative),
            query,
            max_matches=max_matches,
            context_lines=context_lines,
        )
        now = self._clock()

        def _remember(record: SessionRecord) -> None:
            record.last_grep_at = now
            record.last_grep_query = query

        self.supervisor.registry.mutate(session_id, _remember)
        return _json({"file": relative, "total_matches": len(results), "results": results})

    def slice(
        self,
        session_id: str,
        start_line: int,
        end_line: int,
        *,
        file: str | None = None,
    ) -> str:
        self.before_action(session_id, "slice")
        cfg = self.supervisor.config.get().protocol
        if start_line < 1:
            raise ProtocolViolation("start_line must be >= 1.")
        if end_line < start_line:
            raise ProtocolViolation("end_line must be >= start_line.")
        span = end_line - start_line + 1
        if span > cfg.max_rlm_slice_lines:
            raise ProtocolViolation(
                f"Slice too large: {span} lines. Max allowed: {cfg.max_rlm_slice_lines}. "
                "Use multiple smaller slices."
            )
        if cfg.require_grep_before_large_slice and span >= cfg.grep_required_threshold_lines:
            record = self.supervisor.registry.get(session_id)
            last = record.last_grep_at
            if last is None or self._clock() - last >= GREP_FRESHNESS_SECONDS:
                raise ProtocolViolation(
                    f"Slices >= {cfg.grep_required_threshold_lines} lines require a grep "
                    "call within the last 5 minutes."
                )
        relative = file or protocol.RLM_CONTEXT
        text, total = protocol.slice_lines(self.store.read(relative), start_line, end_line)
        return _json(
            {
                "file": relative,
                "start_line": start_line,
                "end_line": end_line,
                "total_file_lines": total,
                "text": text,
            }
        )

    def _update_document(
        self, session_id: str, action: str, target: str, patch: str, reason: str, label: str
    ) -> str:
        self.before_action(session_id, action)
        if len(reason.strip()) < 3:
            raise ProtocolViolation("A reason of at least 3 characters is required.")
        if target not in patch:
            raise ProtocolViolation(
                f"Patch must target {target} (unified diff paths must include '{target}')."
            )
        protocol.apply_patch(self.store.root, patch)
        self.store.append(target, f"\n- {protocol.utcnow_iso()} {label}: {reason.strip()}\n")
        logger.info("%s updated by %s: %s", target, session_id, reason.strip())
        return _json({"ok": True, "file": target, "message": f"{target} updated, changelog appended."})

    def update_plan(self, session_id: str, patch: str, reason: str) -> str:
        return self._update_document(
            session_id, "update_plan", protocol.PLAN, patch, reason, "plan updated"
        )

    def update_instructions(self, session_id: str, patch: str, reason: str) -> str:
        return self._update_document(
            session_id,
            "update_instructions",
            protocol.RLM_INSTRUCTIONS,
            patch,
            reason,
            "instructions updated",
        )

    def rollover(
        self,
        session_id: str,
        verdict: str,
        summary: str,
        next_step: str,
        learning: str | None = None,
    ) -> str:
        self.before_action(session_id, "rollover")
        if verdict not in ROLLOVER_VERDICTS:
            raise ProtocolViolation(
                f"Unknown verdict {verdict!r}; use one of {', '.join(ROLLOVER_VERDICTS)}."
            )
        result = protocol.rollover(
            self.store,
            self.supervisor.templates,
            verdict=verdict,
            summary=summary,
            next_step=next_step,
            learning=learning,
        )
        return _json(
            {
                "ok": True,
                "timestamp": result.timestamp,
                "message": "Rollover complete: PREVIOUS_STATE, CURRENT_STATE and NEXT_RALPH updated.",
            }
        )

    async def verify(self, session_id: str) -> str:
        self.before_action(session_id, "verify")
        result = await self.supervisor.verify_now()
        return _json(result.to_dict())

    def report_progress(self, session_id: str, note: str | None = None) -> str:
        self.before_action(session_id, "report_progress")
        return _json(self.supervisor.report_progress(session_id, note))

    async def spawn_worker(self, session_id: str, instructions: str) -> str:
        self.before_action(session_id, "spawn_worker")
        return _json(await self.supervisor.spawn_worker(session_id, instructions))

    async def subtask_spawn(
        self, session_id: str, name: str, goal: str, context: str | None = None
    ) -> str:
        self.before_action(session_id, "subtask_spawn")
        spawned = await self.supervisor.subtasks.spawn(session_id, name, goal, context)
        return _json(spawned.to_dict())

    def subtask_peek(
        self, session_id: str, name: str, file: str | None = None, max_lines: int = 200
    ) -> str:
        self.before_action(session_id, "subtask_peek")
        return _json(self.supervisor.subtasks.peek(name, file, max_lines=max_lines))

    def subtask_await(self, session_id: str, name: str, max_lines: int = 200) -> str:
        self.before_action(session_id, "subtask_await")
        return _json(self.supervisor.subtasks.await_task(session_id, name, max_lines=max_lines))

    def subtask_list(self, session_id: str) -> str:
        self.before_action(session_id, "subtask_list")
        return _json({"tasks": self.supervisor.subtasks.list_tasks(session_id)})

    async def ask(
        self,
        session_id: str,
        question: str,
        context: str | None = None,
        timeout_minutes: float | None = None,
    ) -> str:
        self.before_action(session_id, "ask")
        answer = await self.supervisor.questions.ask(
            session_id, question, context=context, timeout_minutes=timeout_minutes
        )
        return _json(answer.to_dict())

    def request_review(self, session_id: str, note: str = "") -> str:
        self.before_action(session_id, "request_review")
        return _json(self.supervisor.reviews.request_review(self._attempt_for(session_id), note))

    async def run_review(self, session_id: str, *, force: bool = False, wait: bool = False) -> str:
        self.before_action(session_id, "run_review")
        result = await self.supervisor.reviews.run_review(
            self._attempt_for(session_id), force=force, wait=wait
        )
        return _json(result)

    async def dispatch(self, session_id: str, action: str, **arguments: Any) -> str:
        """Invoke an action by name; coroutine actions are awaited."""
        if action not in ACTIONS:
            raise ProtocolViolation(
                f"Unknown action {action!r}; available: {', '.join(sorted(ACTIONS))}."
            )
        result = getattr(self, action)(session_id, **arguments)
        if hasattr(result, "__await__"):
            result = await result
        return result
