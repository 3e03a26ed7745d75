import asyncio
import sys
from pathlib import Path

from ralph.config import RalphConfig
from ralph.runner import CommandRunner, Verdict, in_flight_count, stop_all


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_run_captures_output_and_exit_code(tmp_path: Path) -> None:
    runner = CommandRunner()

    ok = asyncio.run(runner.run(_python("print('hello')"), cwd=tmp_path))
    failed = asyncio.run(
        runner.run(_python("import sys; sys.stderr.write('bad'); sys.exit(3)"), cwd=tmp_path)
    )

    assert ok.ok is True
    assert ok.exit_code == 0
    assert ok.stdout.strip() == "hello"
    assert failed.ok is False
    assert failed.exit_code == 3
    assert failed.stderr == "bad"
    assert in_flight_count() == 0


def test_missing_executable_is_data_not_exception(tmp_path: Path) -> None:
    result = asyncio.run(CommandRunner().run(["definitely-not-a-real-binary-xyz"], cwd=tmp_path))

    assert result.ok is False
    assert result.exit_code == 127
    assert "not found" in result.stderr


def test_missing_cwd_and_empty_command(tmp_path: Path) -> None:
    runner = CommandRunner()

    missing_cwd = asyncio.run(runner.run(_python("print(1)"), cwd=tmp_path / "nope"))
    empty = asyncio.run(runner.run([], cwd=tmp_path))

    assert missing_cwd.ok is False
    assert "Working directory not found" in missing_cwd.stderr
    assert empty.ok is False


def test_timeout_terminates_and_reports_not_ok(tmp_path: Path) -> None:
    runner = CommandRunner(kill_grace_seconds=0.5)

    result = asyncio.run(
        runner.run(_python("import time; time.sleep(30)"), cwd=tmp_path, timeout_seconds=0.3)
    )

    assert result.timed_out is True
    assert result.ok is False
    assert "Timed out" in result.stderr
    assert in_flight_count() == 0


def test_timeout_escalates_to_kill_when_term_is_ignored(tmp_path: Path) -> None:
    runner = CommandRunner(kill_grace_seconds=0.3)
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )

    result = asyncio.run(runner.run(_python(code), cwd=tmp_path, timeout_seconds=0.5))

    assert result.timed_out is True
    assert result.exit_code is not None and result.exit_code < 0
    assert in_flight_count() == 0


def test_stop_all_terminates_in_flight_commands(tmp_path: Path) -> None:
    runner = CommandRunner(kill_grace_seconds=0.5)

    async def scenario():
        task = asyncio.create_task(runner.run(_python("import time; time.sleep(30)"), cwd=tmp_path))
        for _ in range(200):
            if in_flight_count():
                break
            await asyncio.sleep(0.01)
        stopped = await stop_all(0.5)
        result = await task
        return stopped, result

    stopped, result = asyncio.run(scenario())

    assert stopped == 1
    assert result.ok is False
    assert in_flight_count() == 0


def test_verify_verdicts(tmp_path: Path) -> None:
    runner = CommandRunner()
    config = RalphConfig.default()

    unknown = asyncio.run(runner.verify(config, tmp_path))
    assert unknown.verdict is Verdict.UNKNOWN

    config.verify.command = _python("print('all good')")
    passed = asyncio.run(runner.verify(config, tmp_path))
    assert passed.verdict is Verdict.PASS
    assert passed.exit_code == 0

    config.verify.command = _python("import sys; print('2 failed'); sys.exit(1)")
    failed = asyncio.run(runner.verify(config, tmp_path))
    assert failed.verdict is Verdict.FAIL
    assert failed.exit_code == 1
    assert "2 failed" in failed.details
    assert failed.to_dict()["verdict"] == "fail"


def test_verify_runs_in_configured_cwd(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "marker.txt").write_text("x", encoding="utf-8")
    config = RalphConfig.default()
    config.verify.command = _python("import pathlib, sys; sys.exit(0 if pathlib.Path('marker.txt').exists() else 1)")
    config.verify.cwd = "sub"

    result = asyncio.run(CommandRunner().verify(config, tmp_path))

    assert result.verdict is Verdict.PASS
