import json
import shlex
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from ralph import protocol
from ralph.cli import cli
from ralph.config import load_config
from ralph.questions import QUESTIONS_FILE


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _seed_questions(root: Path) -> None:
    path = root / QUESTIONS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {
                "questions": [
                    {"id": "q-one", "session_id": "s-1", "question": "Which database?"},
                    {"id": "q-two", "session_id": "s-2", "question": "Keep the old API?"},
                ],
                "responses": {},
            }
        ),
        encoding="utf-8",
    )


def test_init_writes_config_and_protocol_files(workspace: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--verify", "pytest -q tests"])

    assert result.exit_code == 0, result.output
    assert "Initialized Ralph" in result.output
    assert "Verify: pytest -q tests" in result.output
    assert load_config(workspace / "ralph.toml").verify.command == ["pytest", "-q", "tests"]
    assert (workspace / protocol.PLAN).exists()
    assert (workspace / protocol.RLM_INSTRUCTIONS).exists()
    assert (workspace / ".ralph" / "logs").is_dir()

    again = runner.invoke(cli, ["init"])
    assert again.exit_code == 0
    assert "Created:" not in again.output
    assert load_config(workspace / "ralph.toml").verify.command == ["pytest", "-q", "tests"]


def test_init_rejects_unparseable_verify_command(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["init", "--verify", "pytest 'unterminated"])

    assert result.exit_code == 1
    assert "Cannot parse verify command" in result.output


def test_config_prints_resolved_toml(workspace: Path) -> None:
    (workspace / "ralph.toml").write_text("[loop]\nmax_attempts = 9999\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["config"])

    assert result.exit_code == 0
    assert "[loop]" in result.output
    assert "max_attempts = 500" in result.output
    assert "[review]" in result.output


def test_verify_exit_code_follows_verdict(workspace: Path) -> None:
    runner = CliRunner()
    passing = shlex.join([sys.executable, "-c", "print('all good')"])
    runner.invoke(cli, ["init", "--verify", passing])

    result = runner.invoke(cli, ["verify"])
    assert result.exit_code == 0, result.output
    assert '"verdict": "pass"' in result.output

    failing = shlex.join([sys.executable, "-c", "import sys; sys.exit(3)"])
    runner.invoke(cli, ["init", "--verify", failing])

    result = runner.invoke(cli, ["verify"])
    assert result.exit_code == 1
    assert '"verdict": "fail"' in result.output
    assert '"exit_code": 3' in result.output


def test_questions_and_respond(workspace: Path) -> None:
    runner = CliRunner()

    empty = runner.invoke(cli, ["questions"])
    assert empty.output.strip() == "No pending questions."

    _seed_questions(workspace)
    listed = runner.invoke(cli, ["questions"])
    assert "Which database?" in listed.output

    answered = runner.invoke(cli, ["respond", "q-one", "postgres"])
    assert answered.exit_code == 0
    assert "Answered q-one" in answered.output

    pending = runner.invoke(cli, ["questions"])
    assert "q-one" not in pending.output
    assert "q-two" in pending.output

    everything = runner.invoke(cli, ["questions", "--all"])
    assert '"answer": "postgres"' in everything.output

    replaced = runner.invoke(cli, ["respond", "q-one", "sqlite"])
    assert "Superseded previous answer: postgres" in replaced.output


def test_respond_to_unknown_question_lists_unanswered(workspace: Path) -> None:
    _seed_questions(workspace)

    result = CliRunner().invoke(cli, ["respond", "q-missing", "yes"])

    assert result.exit_code == 1
    assert "Unknown question id 'q-missing'" in result.output
    assert "q-one, q-two" in result.output
    stored = json.loads((workspace / QUESTIONS_FILE).read_text(encoding="utf-8"))
    assert stored["responses"] == {}


def test_review_state_defaults_to_empty(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["review-state"])

    assert result.exit_code == 0
    assert json.loads(result.output) == {"requests": {}, "run_counts": {}, "active": None}
