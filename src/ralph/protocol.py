"""File-first protocol documents: bootstrap, rollover, context loading and search."""

from __future__ import annotations

import re
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ralph.config import RalphConfig
from ralph.errors import DocumentError, ProtocolViolation
from ralph.registry import SessionRecord
from ralph.state.documents import DocumentStore
from ralph.templates import PromptTemplates, interpolate

PLAN = "PLAN.md"
RLM_INSTRUCTIONS = "RLM_INSTRUCTIONS.md"
NEXT_RALPH = "AGENT_CONTEXT_FOR_NEXT_RALPH.md"
RLM_CONTEXT = "CONTEXT_FOR_RLM.md"
PREVIOUS_STATE = "PREVIOUS_STATE.md"
CURRENT_STATE = "CURRENT_STATE.md"
NOTES = "NOTES_AND_LEARNINGS.md"
TODOS = "TODOS.md"

PROTOCOL_FILES = {
    "plan": PLAN,
    "rlm_instructions": RLM_INSTRUCTIONS,
    "next_ralph": NEXT_RALPH,
    "rlm_context": RLM_CONTEXT,
    "previous_state": PREVIOUS_STATE,
    "current_state": CURRENT_STATE,
    "notes": NOTES,
    "todos": TODOS,
}

STATE_DIR = ".ralph"
AGENTS_DIR = f"{STATE_DIR}/agents"
REVIEWS_DIR = f"{STATE_DIR}/reviews"
LOG_DIR = f"{STATE_DIR}/logs"
PEEKABLE_FILES = (PLAN, CURRENT_STATE, PREVIOUS_STATE, NOTES)
HEADING_PATTERN = re.compile(r"^#{1,6}\s+")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def clamp_lines(text: str, max_lines: int) -> str:
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[:max_lines]) + f"\n\n...(truncated to {max_lines} lines)...\n"


def extract_headings(markdown: str, max_headings: int) -> str:
    headings: list[str] = []
    for line in markdown.splitlines():
        if HEADING_PATTERN.match(line):
            headings.append(line.strip())
            if len(headings) >= max_headings:
                break
    return "\n".join(headings)


def is_complete(text: str, templates: PromptTemplates) -> bool:
    """Structural completion check for sub-task and reviewer scratch documents."""
    return (
        templates.subtask_done_heading in text or templates.subtask_done_sentinel in text
    )


def bootstrap_protocol_files(store: DocumentStore, templates: PromptTemplates) -> list[str]:
    timestamp = utcnow_iso()
    defaults = {
        PLAN: (
            "# Plan\n\n## Definition of Done\n- (fill in)\n\n## Milestones\n- [ ] (fill in)\n\n"
            f"## Changelog\n- {timestamp} created\n"
        ),
        RLM_INSTRUCTIONS: interpolate(templates.bootstrap_instructions, timestamp=timestamp),
        NEXT_RALPH: f"# Next Ralph Context\n\n- {timestamp} created\n",
        RLM_CONTEXT: (
            "# Context For RLM\n\n"
            "(paste large reference documents here; read them through grep + slice)\n"
        ),
        PREVIOUS_STATE: "# Previous State\n\n(none yet)\n",
        CURRENT_STATE: templates.bootstrap_current_state,
        NOTES: f"# Notes and Learnings (append-only)\n\n- {timestamp} created\n",
        TODOS: "# Todos\n\n- [ ] (optional)\n",
    }
    return [name for name, content in defaults.items() if store.ensure(name, content)]


def subtask_dir(name: str) -> str:
    return f"{AGENTS_DIR}/{name}"


def review_dir(name: str) -> str:
    return f"{REVIEWS_DIR}/{name}"


def bootstrap_child_dir(
    store: DocumentStore,
    state_dir: str,
    *,
    title: str,
    goal: str,
    templates: PromptTemplates,
) -> None:
    timestamp = utcnow_iso()
    store.write(
        f"{state_dir}/{PLAN}",
        f"# {title}\n\n## Goal\n{goal}\n\n## Milestones\n- [ ] (fill in)\n\n"
        f"## Changelog\n- {timestamp} created\n",
    )
    # A fresh task under a reused name must not inherit a finished scratch file.
    store.write(f"{state_dir}/{CURRENT_STATE}", templates.bootstrap_current_state)
    store.ensure(f"{state_dir}/{NOTES}", f"# Notes and Learnings\n\n- {timestamp} created\n")
    store.ensure(f"{state_dir}/{PREVIOUS_STATE}", "# Previous State\n\n(none yet)\n")


@dataclass(slots=True)
class RolloverResult:
    timestamp: str
    verdict: str
    summary: str
    next_step: str


def rollover(
    store: DocumentStore,
    templates: PromptTemplates,
    *,
    verdict: str,
    summary: str,
    next_step: str,
    learning: str | None = None,
) -> RolloverResult:
    """Archive the scratch file, reset it, and write the next-attempt summary."""
    timestamp = utcnow_iso()
    current = store.read_or(CURRENT_STATE, "")
    store.write(PREVIOUS_STATE, f"# Previous State (snapshot)\n\nCaptured: {timestamp}\n\n{current}\n")
    store.write(CURRENT_STATE, templates.bootstrap_current_state)
    store.write(
        NEXT_RALPH,
        f"# Next Ralph Context\n\n- Timestamp: {timestamp}\n- Verdict: {verdict}\n\n"
        f"## Summary\n{summary}\n\n## Next Step\n{next_step}\n",
    )
    if learning:
        store.append(NOTES, f"\n- {timestamp} {learning}\n")
    return RolloverResult(timestamp=timestamp, verdict=verdict, summary=summary, next_step=next_step)


def write_done_marker(store: DocumentStore, templates: PromptTemplates) -> str:
    content = interpolate(templates.done_file_content, timestamp=utcnow_iso())
    store.write(NEXT_RALPH, content)
    return content


def load_context_payload(
    store: DocumentStore,
    config: RalphConfig,
    record: SessionRecord,
    *,
    include_headings: bool = True,
    headings_max: int = 80,
) -> dict[str, Any]:
    rlm_raw = store.read_or(RLM_CONTEXT, "")
    payload: dict[str, Any] = {
        "protocol_files": dict(PROTOCOL_FILES),
        "plan": store.read_or(PLAN, "(missing - create PLAN.md)"),
        "rlm_instructions": store.read_or(RLM_INSTRUCTIONS, "(missing - create RLM_INSTRUCTIONS.md)"),
        "agent_context_for_next_ralph": store.read_or(NEXT_RALPH, "(none)"),
        "current_state": store.read_or(CURRENT_STATE, "(empty)"),
        "previous_state": store.read_or(PREVIOUS_STATE, "(none yet)"),
        "notes_and_learnings": clamp_lines(store.read_or(NOTES, "(empty)"), 200),
        "todos": clamp_lines(store.read_or(TODOS, "(empty)"), 200),
        "context_for_rlm": {
            "path": RLM_CONTEXT,
            "headings": (
                extract_headings(rlm_raw, max(1, min(200, headings_max)))
                if include_headings
                else clamp_lines(rlm_raw, 200)
            ),
            "policy": "Use grep + slice to access this file. Never dump it fully.",
        },
        "child_tasks": [task.to_dict() for task in record.child_tasks],
        "session": {
            "role": record.role.value if record.role else None,
            "attempt": record.attempt,
            "context_loaded": record.context_loaded,
        },
    }
    agent_md_path = config.protocol.agent_md_path
    if agent_md_path:
        try:
            agent_md = store.read(agent_md_path)
        except DocumentError:
            agent_md = None
        if agent_md is not None:
            payload["agent_md"] = {
                "path": agent_md_path,
                "content": agent_md,
                "note": (
                    "Static project rules. RLM_INSTRUCTIONS.md governs loop-specific behaviour."
                ),
            }
    return payload


def grep(
    text: str,
    query: str,
    *,
    max_matches: int = 50,
    context_lines: int = 0,
) -> list[dict[str, Any]]:
    try:
        pattern = re.compile(query, re.IGNORECASE)
    except re.error as exc:
        raise ProtocolViolation(
            f"Invalid regex pattern: {query!r} ({exc}). Use a valid regex or a plain string."
        ) from exc

    lines = text.splitlines()
    max_matches = max(1, min(200, max_matches))
    context_lines = max(0, min(10, context_lines))
    results: list[dict[str, Any]] = []
    for index, line in enumerate(lines):
        if not pattern.search(line):
            continue
        match: dict[str, Any] = {"match_line": index + 1, "match_text": line}
        if context_lines:
            start = max(0, index - context_lines)
            end = min(len(lines) - 1, index + context_lines)
            match["context"] = [
                {"line": start + offset + 1, "text": item}
                for offset, item in enumerate(lines[start : end + 1])
            ]
        results.append(match)
        if len(results) >= max_matches:
            break
    return results


def slice_lines(text: str, start_line: int, end_line: int) -> tuple[str, int]:
    lines = text.splitlines()
    return "\n".join(lines[start_line - 1 : end_line]), len(lines)


def apply_patch(root: Path, patch_text: str) -> None:
    """Apply a unified diff to the workspace with ``git apply``."""
    tmp_dir = root / STATE_DIR / "tmp"
    tmp_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w", suffix=".diff", dir=tmp_dir, encoding="utf-8", delete=False
    ) as handle:
        handle.write(patch_text)
        patch_path = Path(handle.name)
    try:
        proc = subprocess.run(
            ["git", "-C", str(root), "apply", "--whitespace=nowarn", str(patch_path)],
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        raise DocumentError("git is required to apply patches but was not found.") from exc
    finally:
        patch_path.unlink(missing_ok=True)
    if proc.returncode != 0:
        raise DocumentError(
            f"Patch did not apply: {proc.stderr.strip() or proc.stdout.strip()}"
        )
