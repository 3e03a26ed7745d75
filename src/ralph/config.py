from __future__ import annotations

import json
import logging
import math
import shlex
import time
import tomllib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "ralph.toml"
CONFIG_TTL_SECONDS = 10.0

MAX_ATTEMPTS_RANGE = (1, 500)
HEARTBEAT_MINUTES_RANGE = (1, 1440)
IDLE_DEBOUNCE_MS_RANGE = (0, 10_000)
VERIFY_TIMEOUT_RANGE = (0.0, 86_400.0)
SLICE_LINES_RANGE = (10, 2000)
MAX_CONCURRENT_SUBTASKS_RANGE = (1, 50)
QUESTION_TIMEOUT_MINUTES_RANGE = (1, 1440)
QUESTION_POLL_SECONDS_RANGE = (1, 60)
REVIEW_RUNS_RANGE = (1, 100)


@dataclass(slots=True)
class LoopConfig:
    enabled: bool = True
    max_attempts: int = 20
    heartbeat_minutes: int = 15
    idle_debounce_ms: int = 800


@dataclass(slots=True)
class VerifyConfig:
    command: list[str] = field(default_factory=list)
    cwd: str = "."
    timeout_seconds: float = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.command)


@dataclass(slots=True)
class ProtocolConfig:
    gate_destructive_tools: bool = True
    max_rlm_slice_lines: int = 200
    require_grep_before_large_slice: bool = True
    grep_required_threshold_lines: int = 120
    agent_md_path: str = "AGENT.md"


@dataclass(slots=True)
class SubtaskConfig:
    enabled: bool = True
    max_concurrent: int = 5


@dataclass(slots=True)
class QuestionConfig:
    default_timeout_minutes: int = 30
    poll_interval_seconds: int = 5


@dataclass(slots=True)
class ReviewConfig:
    enabled: bool = True
    require_explicit_ready: bool = True
    max_runs_per_attempt: int = 1
    output_dir: str = "reviews"


@dataclass(slots=True)
class RalphConfig:
    loop: LoopConfig = field(default_factory=LoopConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    subtasks: SubtaskConfig = field(default_factory=SubtaskConfig)
    questions: QuestionConfig = field(default_factory=QuestionConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    templates: dict[str, str] = field(default_factory=dict)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: Any) -> RalphConfig:
        return resolve_config(data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "loop": {
                "enabled": self.loop.enabled,
                "max_attempts": self.loop.max_attempts,
                "heartbeat_minutes": self.loop.heartbeat_minutes,
                "idle_debounce_ms": self.loop.idle_debounce_ms,
            },
            "verify": {
                "command": list(self.verify.command),
                "cwd": self.verify.cwd,
                "timeout_seconds": self.verify.timeout_seconds,
            },
            "protocol": {
                "gate_destructive_tools": self.protocol.gate_destructive_tools,
                "max_rlm_slice_lines": self.protocol.max_rlm_slice_lines,
                "require_grep_before_large_slice": self.protocol.require_grep_before_large_slice,
                "grep_required_threshold_lines": self.protocol.grep_required_threshold_lines,
                "agent_md_path": self.protocol.agent_md_path,
            },
            "subtasks": {
                "enabled": self.subtasks.enabled,
                "max_concurrent": self.subtasks.max_concurrent,
            },
            "questions": {
                "default_timeout_minutes": self.questions.default_timeout_minutes,
                "poll_interval_seconds": self.questions.poll_interval_seconds,
            },
            "review": {
                "enabled": self.review.enabled,
                "require_explicit_ready": self.review.require_explicit_ready,
                "max_runs_per_attempt": self.review.max_runs_per_attempt,
                "output_dir": self.review.output_dir,
            },
            "templates": dict(self.templates),
        }


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _clamp_int(value: Any, default: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return max(low, min(high, int(value)))


def _clamp_float(value: Any, default: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(float(value)):
        return default
    return max(low, min(high, float(value)))


def _bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _str(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _command(value: Any) -> list[str]:
    if isinstance(value, str):
        try:
            return shlex.split(value)
        except ValueError:
            return []
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return [item for item in value if item]
    return []


def _templates(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): item for key, item in value.items() if isinstance(item, str)}


def resolve_config(raw: Any) -> RalphConfig:
    """Normalize a raw settings mapping into a fully-defaulted, clamped config.

    Never raises: anything malformed falls back to the field default.
    """
    data = raw if isinstance(raw, dict) else {}
    defaults = RalphConfig.default()

    loop_raw = _section(data, "loop")
    loop = LoopConfig(
        enabled=_bool(loop_raw.get("enabled"), defaults.loop.enabled),
        max_attempts=_clamp_int(
            loop_raw.get("max_attempts"), defaults.loop.max_attempts, MAX_ATTEMPTS_RANGE
        ),
        heartbeat_minutes=_clamp_int(
            loop_raw.get("heartbeat_minutes"),
            defaults.loop.heartbeat_minutes,
            HEARTBEAT_MINUTES_RANGE,
        ),
        idle_debounce_ms=_clamp_int(
            loop_raw.get("idle_debounce_ms"),
            defaults.loop.idle_debounce_ms,
            IDLE_DEBOUNCE_MS_RANGE,
        ),
    )

    verify_raw = _section(data, "verify")
    verify = VerifyConfig(
        command=_command(verify_raw.get("command")),
        cwd=_str(verify_raw.get("cwd"), defaults.verify.cwd) or ".",
        timeout_seconds=_clamp_float(
            verify_raw.get("timeout_seconds"),
            defaults.verify.timeout_seconds,
            VERIFY_TIMEOUT_RANGE,
        ),
    )

    protocol_raw = _section(data, "protocol")
    max_slice = _clamp_int(
        protocol_raw.get("max_rlm_slice_lines"),
        defaults.protocol.max_rlm_slice_lines,
        SLICE_LINES_RANGE,
    )
    # The grep threshold is bounded by the slice limit resolved just above.
    threshold = _clamp_int(
        protocol_raw.get("grep_required_threshold_lines"),
        min(defaults.protocol.grep_required_threshold_lines, max_slice),
        (SLICE_LINES_RANGE[0], max_slice),
    )
    protocol = ProtocolConfig(
        gate_destructive_tools=_bool(
            protocol_raw.get("gate_destructive_tools"),
            defaults.protocol.gate_destructive_tools,
        ),
        max_rlm_slice_lines=max_slice,
        require_grep_before_large_slice=_bool(
            protocol_raw.get("require_grep_before_large_slice"),
            defaults.protocol.require_grep_before_large_slice,
        ),
        grep_required_threshold_lines=threshold,
        agent_md_path=_str(protocol_raw.get("agent_md_path"), defaults.protocol.agent_md_path),
    )

    subtasks_raw = _section(data, "subtasks")
    subtasks = SubtaskConfig(
        enabled=_bool(subtasks_raw.get("enabled"), defaults.subtasks.enabled),
        max_concurrent=_clamp_int(
            subtasks_raw.get("max_concurrent"),
            defaults.subtasks.max_concurrent,
            MAX_CONCURRENT_SUBTASKS_RANGE,
        ),
    )

    questions_raw = _section(data, "questions")
    questions = QuestionConfig(
        default_timeout_minutes=_clamp_int(
            questions_raw.get("default_timeout_minutes"),
            defaults.questions.default_timeout_minutes,
            QUESTION_TIMEOUT_MINUTES_RANGE,
        ),
        poll_interval_seconds=_clamp_int(
            questions_raw.get("poll_interval_seconds"),
            defaults.questions.poll_interval_seconds,
            QUESTION_POLL_SECONDS_RANGE,
        ),
    )

    review_raw = _section(data, "review")
    review = ReviewConfig(
        enabled=_bool(review_raw.get("enabled"), defaults.review.enabled),
        require_explicit_ready=_bool(
            review_raw.get("require_explicit_ready"), defaults.review.require_explicit_ready
        ),
        max_runs_per_attempt=_clamp_int(
            review_raw.get("max_runs_per_attempt"),
            defaults.review.max_runs_per_attempt,
            REVIEW_RUNS_RANGE,
        ),
        output_dir=_str(review_raw.get("output_dir"), defaults.review.output_dir)
        or defaults.review.output_dir,
    )

    return RalphConfig(
        loop=loop,
        verify=verify,
        protocol=protocol,
        subtasks=subtasks,
        questions=questions,
        review=review,
        templates=_templates(data.get("templates")),
    )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["loop", "verify", "protocol", "subtasks", "questions", "review", "templates"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_raw_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}


def load_config(path: Path) -> RalphConfig:
    return resolve_config(load_raw_config(path))


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


class ConfigSource(Protocol):
    def get(self) -> RalphConfig: ...


class ConfigCache:
    """Re-resolves the config file at most once per TTL window."""

    def __init__(
        self,
        path: Path,
        *,
        ttl_seconds: float = CONFIG_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = path
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: RalphConfig | None = None
        self._expires_at = 0.0

    def get(self) -> RalphConfig:
        now = self._clock()
        if self._value is not None and now < self._expires_at:
            return self._value
        self._value = load_config(self.path)
        self._expires_at = now + self.ttl_seconds
        return self._value

    def invalidate(self) -> None:
        self._value = None
        self._expires_at = 0.0


class StaticConfig:
    """Config source that always returns the same resolved config."""

    def __init__(self, config: RalphConfig | None = None) -> None:
        self._value = config or RalphConfig.default()

    def get(self) -> RalphConfig:
        return self._value

    def invalidate(self) -> None:
        return None
