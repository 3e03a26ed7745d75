from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from ralph import protocol
from ralph.errors import QuestionCancelled, QuestionTimeout, UnknownQuestion
from ralph.hosts.base import Notifier, notify_safely
from ralph.registry import SessionRegistry
from ralph.state.json_store import JsonStateFile

logger = logging.getLogger(__name__)

QUESTIONS_FILE = f"{protocol.STATE_DIR}/pending_questions.json"


def empty_store() -> dict[str, Any]:
    return {"questions": [], "responses": {}}


def _normalized(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return empty_store()
    questions = payload.get("questions")
    responses = payload.get("responses")
    return {
        "questions": [item for item in questions if isinstance(item, dict)]
        if isinstance(questions, list)
        else [],
        "responses": responses if isinstance(responses, dict) else {},
    }


@dataclass(slots=True)
class Answer:
    id: str
    answer: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "answer": self.answer}


class QuestionChannel:
    """Blocking question/answer channel between sessions and whoever supervises them.

    Questions and answers meet in one JSON file so an answer can come from a
    different process (``ralph respond``). The asking side polls that file.
    """

    def __init__(
        self,
        store: JsonStateFile,
        registry: SessionRegistry,
        notifier: Notifier,
        *,
        poll_interval_seconds: float = 5.0,
        default_timeout_minutes: float = 30.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.poll_interval_seconds = poll_interval_seconds
        self.default_timeout_minutes = default_timeout_minutes
        self._stops: set[asyncio.Event] = set()

    def _load(self) -> dict[str, Any]:
        return _normalized(self.store.read())

    def _new_id(self, existing: set[str]) -> str:
        while True:
            question_id = f"q-{uuid4().hex[:12]}"
            if question_id not in existing:
                return question_id

    def _enqueue(self, session_id: str, question: str, context: str | None) -> dict[str, Any]:
        record = self.registry.get(session_id)
        entry: dict[str, Any] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            data = _normalized(payload)
            existing = {str(item.get("id")) for item in data["questions"]}
            existing.update(str(key) for key in data["responses"])
            entry.update(
                {
                    "id": self._new_id(existing),
                    "session_id": session_id,
                    "role": record.role.value if record.role else None,
                    "attempt": record.attempt,
                    "question": question,
                    "created_at": protocol.utcnow_iso(),
                }
            )
            if context:
                entry["context"] = context
            data["questions"].append(dict(entry))
            return data

        self.store.update(_updater)
        return entry

    def response_for(self, question_id: str) -> dict[str, Any] | None:
        response = self._load()["responses"].get(question_id)
        return response if isinstance(response, dict) else None

    async def ask(
        self,
        session_id: str,
        question: str,
        context: str | None = None,
        timeout_minutes: float | None = None,
    ) -> Answer:
        entry = self._enqueue(session_id, question, context)
        question_id = entry["id"]
        role = entry["role"] or "session"
        logger.info(
            "Question %s from %s %s (attempt %d): %s",
            question_id,
            role,
            session_id,
            entry["attempt"],
            question,
        )
        await notify_safely(
            self.notifier,
            "warning",
            f"Question {question_id} from {role} (attempt {entry['attempt']}): {question} "
            f'Answer with: ralph respond {question_id} "<answer>"',
        )

        timeout = (timeout_minutes or self.default_timeout_minutes) * 60.0
        deadline = time.monotonic() + timeout
        stop = asyncio.Event()
        self._stops.add(stop)
        try:
            while True:
                response = self.response_for(question_id)
                if response is not None:
                    answer = str(response.get("answer", ""))
                    logger.info("Question %s answered", question_id)
                    return Answer(id=question_id, answer=answer)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(
                        stop.wait(), timeout=min(self.poll_interval_seconds, remaining)
                    )
                except TimeoutError:
                    continue
                logger.warning("Question %s withdrawn: supervision stopped", question_id)
                raise QuestionCancelled(
                    f"Question {question_id} was withdrawn because supervision stopped.",
                    question_id=question_id,
                )
        finally:
            self._stops.discard(stop)

        logger.warning("Question %s timed out after %.0fs", question_id, timeout)
        raise QuestionTimeout(
            f"No answer to question {question_id} within {timeout / 60.0:g} minute(s). "
            "Proceed with your best judgement or ask again.",
            question_id=question_id,
        )

    def respond(self, question_id: str, answer: str) -> dict[str, Any]:
        """Record an answer. Last write wins; a second answer replaces the first."""
        outcome: dict[str, Any] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            data = _normalized(payload)
            known = {str(item.get("id")) for item in data["questions"]}
            if question_id not in known:
                unanswered = [
                    str(item.get("id"))
                    for item in data["questions"]
                    if str(item.get("id")) not in data["responses"]
                ]
                raise UnknownQuestion(
                    f"Unknown question id {question_id!r}. Unanswered: "
                    f"{', '.join(unanswered) if unanswered else '(none)'}",
                    unanswered=unanswered,
                )
            previous = data["responses"].get(question_id)
            data["responses"][question_id] = {
                "answer": answer,
                "responded_at": protocol.utcnow_iso(),
            }
            outcome.update(
                {
                    "id": question_id,
                    "superseded": isinstance(previous, dict),
                    "previous_answer": previous.get("answer")
                    if isinstance(previous, dict)
                    else None,
                }
            )
            return data

        self.store.update(_updater)
        if outcome["superseded"]:
            logger.warning("Answer to %s replaced an earlier answer", question_id)
        return outcome

    def stop_waiting(self) -> int:
        """Withdraw every in-flight ask. Returns how many were waiting."""
        stops = list(self._stops)
        for stop in stops:
            stop.set()
        return len(stops)

    def pending(self) -> list[dict[str, Any]]:
        data = self._load()
        return [item for item in data["questions"] if item.get("id") not in data["responses"]]

    def questions(self) -> list[dict[str, Any]]:
        data = self._load()
        return [
            {**item, "response": data["responses"].get(item.get("id"))}
            for item in data["questions"]
        ]
