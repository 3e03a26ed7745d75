import asyncio
from pathlib import Path

import pytest

from ralph.errors import QuestionCancelled, QuestionTimeout, UnknownQuestion
from ralph.hosts.base import Notifier
from ralph.questions import QUESTIONS_FILE, QuestionChannel, empty_store
from ralph.registry import SessionRegistry, SessionRole
from ralph.state import JsonStateFile


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    async def show(self, severity, message) -> None:
        self.messages.append((severity, message))


class BrokenNotifier(Notifier):
    async def show(self, severity, message) -> None:
        raise RuntimeError("toast service down")


def _channel(tmp_path: Path, notifier: Notifier | None = None, poll: float = 0.02) -> QuestionChannel:
    registry = SessionRegistry()
    registry.register("w-1", SessionRole.WORKER, 3)
    return QuestionChannel(
        JsonStateFile(tmp_path / QUESTIONS_FILE, empty_store),
        registry,
        notifier or RecordingNotifier(),
        poll_interval_seconds=poll,
        default_timeout_minutes=1,
    )


async def _wait_for_pending(channel: QuestionChannel, count: int = 1) -> list[dict]:
    for _ in range(500):
        pending = channel.pending()
        if len(pending) >= count:
            return pending
        await asyncio.sleep(0.01)
    raise AssertionError("question never appeared")


def test_ask_returns_answer_written_by_responder(tmp_path: Path) -> None:
    notifier = RecordingNotifier()
    channel = _channel(tmp_path, notifier)

    async def scenario():
        asking = asyncio.create_task(channel.ask("w-1", "Which database?", context="prod only"))
        pending = await _wait_for_pending(channel)
        question_id = pending[0]["id"]
        outcome = channel.respond(question_id, "postgres")
        answer = await asyncio.wait_for(asking, timeout=2)
        return pending[0], outcome, answer

    question, outcome, answer = asyncio.run(scenario())

    assert question["role"] == "worker"
    assert question["attempt"] == 3
    assert question["context"] == "prod only"
    assert answer.id == question["id"]
    assert answer.answer == "postgres"
    assert outcome == {"id": question["id"], "superseded": False, "previous_answer": None}
    assert channel.pending() == []
    assert question["id"] in notifier.messages[0][1]


def test_ask_times_out_naming_the_question(tmp_path: Path) -> None:
    channel = _channel(tmp_path)

    with pytest.raises(QuestionTimeout) as excinfo:
        asyncio.run(channel.ask("w-1", "Anyone there?", timeout_minutes=0.002))

    question_id = excinfo.value.question_id
    assert question_id.startswith("q-")
    assert question_id in str(excinfo.value)
    assert [item["id"] for item in channel.pending()] == [question_id]


def test_respond_unknown_id_lists_unanswered(tmp_path: Path) -> None:
    channel = _channel(tmp_path)
    with pytest.raises(QuestionTimeout):
        asyncio.run(channel.ask("w-1", "one", timeout_minutes=0.001))
    with pytest.raises(QuestionTimeout):
        asyncio.run(channel.ask("w-1", "two", timeout_minutes=0.001))
    unanswered = [item["id"] for item in channel.pending()]

    with pytest.raises(UnknownQuestion) as excinfo:
        channel.respond("q-nope", "x")

    assert excinfo.value.unanswered == unanswered
    for question_id in unanswered:
        assert question_id in str(excinfo.value)


def test_second_response_supersedes_first(tmp_path: Path) -> None:
    channel = _channel(tmp_path)
    with pytest.raises(QuestionTimeout):
        asyncio.run(channel.ask("w-1", "Color?", timeout_minutes=0.001))
    question_id = channel.pending()[0]["id"]

    channel.respond(question_id, "red")
    outcome = channel.respond(question_id, "blue")

    assert outcome["superseded"] is True
    assert outcome["previous_answer"] == "red"
    assert channel.response_for(question_id)["answer"] == "blue"


def test_last_write_wins_race_is_visible_only_while_polling(tmp_path: Path) -> None:
    # Two answers landing between polls: the asker only ever sees the later one.
    # An answer written after the asker returned replaces the stored answer but
    # never reaches the asker. Both are accepted behaviour.
    channel = _channel(tmp_path, poll=0.2)

    async def scenario():
        asking = asyncio.create_task(channel.ask("w-1", "Ship it?"))
        question_id = (await _wait_for_pending(channel))[0]["id"]
        channel.respond(question_id, "no")
        channel.respond(question_id, "yes")
        answer = await asyncio.wait_for(asking, timeout=2)
        late = channel.respond(question_id, "actually no")
        return question_id, answer, late

    question_id, answer, late = asyncio.run(scenario())

    assert answer.answer == "yes"
    assert late["superseded"] is True
    assert late["previous_answer"] == "yes"
    assert channel.response_for(question_id)["answer"] == "actually no"


def test_question_ids_are_unique(tmp_path: Path) -> None:
    channel = _channel(tmp_path)

    async def scenario():
        tasks = [
            asyncio.create_task(channel.ask("w-1", f"q{index}", timeout_minutes=0.001))
            for index in range(5)
        ]
        return await asyncio.gather(*tasks, return_exceptions=True)

    results = asyncio.run(scenario())

    ids = [result.question_id for result in results]
    assert len(set(ids)) == 5


def test_notification_failure_does_not_break_ask(tmp_path: Path) -> None:
    channel = _channel(tmp_path, BrokenNotifier())

    with pytest.raises(QuestionTimeout):
        asyncio.run(channel.ask("w-1", "still asks", timeout_minutes=0.001))

    assert len(channel.pending()) == 1


def test_ask_is_cancellable(tmp_path: Path) -> None:
    channel = _channel(tmp_path)

    async def scenario():
        asking = asyncio.create_task(channel.ask("w-1", "wait forever?"))
        await _wait_for_pending(channel)
        asking.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asking

    asyncio.run(scenario())


def test_stop_waiting_withdraws_in_flight_asks(tmp_path: Path) -> None:
    channel = _channel(tmp_path, poll=5.0)

    async def scenario():
        first = asyncio.create_task(channel.ask("w-1", "first?"))
        second = asyncio.create_task(channel.ask("w-1", "second?"))
        pending = await _wait_for_pending(channel, count=2)
        await asyncio.sleep(0.01)
        withdrawn = channel.stop_waiting()
        results = await asyncio.wait_for(
            asyncio.gather(first, second, return_exceptions=True), timeout=1
        )
        return pending, withdrawn, results

    pending, withdrawn, results = asyncio.run(scenario())

    assert withdrawn == 2
    assert all(isinstance(item, QuestionCancelled) for item in results)
    assert sorted(item.question_id for item in results) == sorted(item["id"] for item in pending)
    assert channel.stop_waiting() == 0
