from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from ralph import protocol
from ralph.config import ConfigSource
from ralph.errors import ProtocolViolation
from ralph.hosts.base import SessionHost
from ralph.registry import ChildTask, ChildTaskStatus, SessionRecord, SessionRegistry, SessionRole
from ralph.state.documents import DocumentStore
from ralph.templates import PromptTemplates, interpolate

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(slots=True)
class SpawnedTask:
    name: str
    session_id: str
    state_dir: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "name": self.name,
            "session_id": self.session_id,
            "state_dir": self.state_dir,
            "message": (
                f'Sub-task spawned. Poll with subtask_await("{self.name}") '
                f'or inspect with subtask_peek("{self.name}").'
            ),
        }


def validate_name(name: str) -> None:
    if not NAME_PATTERN.match(name or ""):
        raise ProtocolViolation(
            f'Sub-task name "{name}" is invalid. Use 1-64 letters, digits, hyphens '
            "or underscores; the name becomes a directory under .ralph/agents/."
        )


class SubtaskManager:
    def __init__(
        self,
        registry: SessionRegistry,
        host: SessionHost,
        store: DocumentStore,
        config: ConfigSource,
        templates: PromptTemplates,
    ) -> None:
        self.registry = registry
        self.host = host
        self.store = store
        self.config = config
        self.templates = templates
        self._spawn_lock = asyncio.Lock()

    async def spawn(
        self,
        caller_id: str,
        name: str,
        goal: str,
        context: str | None = None,
    ) -> SpawnedTask:
        cfg = self.config.get()
        if not cfg.subtasks.enabled:
            raise ProtocolViolation(
                "Sub-tasks are disabled. Set [subtasks] enabled = true in ralph.toml."
            )
        validate_name(name)
        # Check, create and record are one step per manager.
        async with self._spawn_lock:
            caller = self.registry.get(caller_id)
            if any(
                task.label == name and task.status is ChildTaskStatus.RUNNING
                for task in caller.child_tasks
            ):
                raise ProtocolViolation(
                    f'Sub-task "{name}" is already running. Await it first or choose another name.'
                )
            running = len(caller.running_tasks())
            if running >= cfg.subtasks.max_concurrent:
                raise ProtocolViolation(
                    f"Max concurrent sub-tasks ({cfg.subtasks.max_concurrent}) reached: "
                    f"{running} running. Await one before spawning another."
                )

            state_dir = protocol.subtask_dir(name)
            protocol.bootstrap_child_dir(
                self.store,
                state_dir,
                title=f"Sub-task Plan: {name}",
                goal=goal,
                templates=self.templates,
            )

            session_id = await self.host.create(f"subtask: {name}")
            self.registry.register(
                session_id, SessionRole.SUBTASK, caller.attempt, title=f"subtask: {name}"
            )

            def _append(record: SessionRecord) -> None:
                record.child_tasks.append(
                    ChildTask(id=session_id, label=name, goal=goal, spawn_time=time.time())
                )

            self.registry.mutate(caller_id, _append)

        prompt = interpolate(
            self.templates.subtask_prompt,
            name=name,
            goal=goal,
            context=f"\nAdditional context:\n{context}" if context else "",
            state_dir=state_dir,
            done_sentinel=self.templates.subtask_done_sentinel,
            done_heading=self.templates.subtask_done_heading,
        )
        await self.host.prompt(session_id, prompt)
        logger.info(
            "Spawned sub-task %s (session %s) for %s, attempt %d",
            name,
            session_id,
            caller_id,
            caller.attempt,
        )
        return SpawnedTask(name=name, session_id=session_id, state_dir=state_dir)

    def peek(self, name: str, file: str | None = None, *, max_lines: int = 200) -> dict[str, Any]:
        validate_name(name)
        file_name = file or protocol.CURRENT_STATE
        if file_name not in protocol.PEEKABLE_FILES:
            raise ProtocolViolation(
                f"Cannot peek {file_name!r}; choose one of {', '.join(protocol.PEEKABLE_FILES)}."
            )
        relative = f"{protocol.subtask_dir(name)}/{file_name}"
        if not self.store.exists(relative):
            return {"ok": False, "missing": relative}
        text = self.store.read(relative)
        return {
            "ok": True,
            "file": relative,
            "text": protocol.clamp_lines(text, max(20, min(400, max_lines))),
        }

    def await_task(self, caller_id: str, name: str, *, max_lines: int = 200) -> dict[str, Any]:
        """Non-blocking completion check; callers re-invoke it periodically."""
        validate_name(name)
        relative = f"{protocol.subtask_dir(name)}/{protocol.CURRENT_STATE}"
        if not self.store.exists(relative):
            return {"status": "not_found", "name": name}
        text = self.store.read(relative)
        done = protocol.is_complete(text, self.templates)
        status = "done" if done else "running"
        if done:

            def _finish(record: SessionRecord) -> None:
                task = record.find_task(name)
                if task is not None and task.status is ChildTaskStatus.RUNNING:
                    task.status = ChildTaskStatus.DONE
                    task.result_text = text

            self.registry.mutate(caller_id, _finish)
        else:
            caller = self.registry.peek(caller_id)
            task = caller.find_task(name) if caller else None
            if task is not None and task.status is ChildTaskStatus.FAILED:
                status = "failed"
        return {
            "status": status,
            "name": name,
            "current_state": protocol.clamp_lines(text, max(20, min(400, max_lines))),
        }

    def list_tasks(self, caller_id: str) -> list[dict[str, Any]]:
        record = self.registry.peek(caller_id)
        if record is None:
            return []
        return [task.to_dict() for task in record.child_tasks]

    def mark_failed(self, child_session_id: str, reason: str) -> bool:
        """Fail the running task owned by any parent whose child session ended early."""
        for parent_id in self.registry.session_ids():

            def _fail(record: SessionRecord) -> bool:
                for task in record.child_tasks:
                    if task.id == child_session_id and task.status is ChildTaskStatus.RUNNING:
                        task.status = ChildTaskStatus.FAILED
                        task.result_text = reason
                        return True
                return False

            if self.registry.mutate(parent_id, _fail):
                logger.warning("Sub-task session %s failed: %s", child_session_id, reason)
                return True
        return False
