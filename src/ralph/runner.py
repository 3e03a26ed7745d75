from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ralph.config import RalphConfig

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 2.0
OUTPUT_TAIL_CHARS = 4000

# Every in-flight child process across all runners, so a global stop can reach them.
_IN_FLIGHT: set[asyncio.subprocess.Process] = set()


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class CommandResult:
    ok: bool
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "exit_code": self.exit_code,
            "stdout": self.stdout[-OUTPUT_TAIL_CHARS:],
            "stderr": self.stderr[-OUTPUT_TAIL_CHARS:],
            "timed_out": self.timed_out,
        }


@dataclass(slots=True)
class VerifyResult:
    verdict: Verdict
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    reason: str = ""

    @property
    def details(self) -> str:
        parts = [part for part in (self.reason, self.stderr.strip(), self.stdout.strip()) if part]
        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout[-OUTPUT_TAIL_CHARS:],
            "stderr": self.stderr[-OUTPUT_TAIL_CHARS:],
            "reason": self.reason,
        }


def in_flight_count() -> int:
    return len(_IN_FLIGHT)


def _send_signal(process: asyncio.subprocess.Process, sig: int) -> None:
    if process.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        pass


async def _terminate(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """SIGTERM, then SIGKILL if the process outlives the grace window."""
    _send_signal(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
        return
    except TimeoutError:
        pass
    _send_signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    await process.wait()


async def _drain(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def stop_all(grace_seconds: float = KILL_GRACE_SECONDS) -> int:
    """Terminate every in-flight command. Returns how many were signalled."""
    processes = [process for process in list(_IN_FLIGHT) if process.returncode is None]
    if not processes:
        return 0
    logger.warning("Stopping %d in-flight command(s)", len(processes))
    await asyncio.gather(
        *(_terminate(process, grace_seconds) for process in processes),
        return_exceptions=True,
    )
    return len(processes)


class CommandRunner:
    def __init__(self, *, kill_grace_seconds: float = KILL_GRACE_SECONDS) -> None:
        self.kill_grace_seconds = kill_grace_seconds

    async def run(
        self,
        argv: list[str],
        *,
        cwd: Path | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        if not argv:
            return CommandResult(ok=False, exit_code=1, stdout="", stderr="Command is empty.")
        if cwd is not None and not cwd.is_dir():
            return CommandResult(
                ok=False, exit_code=1, stdout="", stderr=f"Working directory not found: {cwd}"
            )

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError:
            return CommandResult(
                ok=False, exit_code=127, stdout="", stderr=f"Executable not found: {argv[0]}"
            )
        except PermissionError:
            return CommandResult(
                ok=False, exit_code=126, stdout="", stderr=f"Executable not runnable: {argv[0]}"
            )

        _IN_FLIGHT.add(process)
        stdout_task = asyncio.ensure_future(_drain(process.stdout))
        stderr_task = asyncio.ensure_future(_drain(process.stderr))
        timed_out = False
        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout_seconds or None)
            except TimeoutError:
                timed_out = True
                logger.warning(
                    "Command timed out after %.1fs, terminating: %s", timeout_seconds, argv[0]
                )
                await _terminate(process, self.kill_grace_seconds)
            stdout, stderr = await asyncio.gather(stdout_task, stderr_task)
        except asyncio.CancelledError:
            await asyncio.shield(_terminate(process, self.kill_grace_seconds))
            stdout_task.cancel()
            stderr_task.cancel()
            raise
        finally:
            _IN_FLIGHT.discard(process)

        exit_code = process.returncode
        if timed_out:
            stderr = f"{stderr}\nTimed out after {timeout_seconds:.1f}s.".strip()
        return CommandResult(
            ok=exit_code == 0 and not timed_out,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
        )

    async def verify(self, config: RalphConfig, root: Path) -> VerifyResult:
        if not config.verify.configured:
            return VerifyResult(
                verdict=Verdict.UNKNOWN,
                reason="No verify.command configured in ralph.toml.",
            )
        cwd = (root / config.verify.cwd).resolve()
        try:
            result = await self.run(
                config.verify.command,
                cwd=cwd,
                timeout_seconds=config.verify.timeout_seconds or None,
            )
        except OSError as exc:
            logger.exception("Verification command could not be run")
            return VerifyResult(verdict=Verdict.UNKNOWN, reason=f"verify failed to run: {exc}")

        if result.ok:
            return VerifyResult(
                verdict=Verdict.PASS,
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.exit_code,
            )
        reason = "Verification timed out." if result.timed_out else (
            f"Verification exited with code {result.exit_code}."
        )
        return VerifyResult(
            verdict=Verdict.FAIL,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            reason=reason,
        )

    async def stop_all(self) -> int:
        return await stop_all(self.kill_grace_seconds)
