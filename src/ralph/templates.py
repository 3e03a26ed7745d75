from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{(\w+)\}\}")


@dataclass(slots=True, frozen=True)
class PromptTemplates:
    system_prompt: str = "\n".join(
        [
            "FILE-FIRST PROTOCOL:",
            "- Call load_context() at the start of every attempt, before anything else.",
            "- PLAN.md and RLM_INSTRUCTIONS.md are authoritative.",
            "- CONTEXT_FOR_RLM.md is large: read it through grep + slice only.",
            "- CURRENT_STATE.md is scratch for this attempt and is archived on rollover.",
            "- NOTES_AND_LEARNINGS.md is append-only.",
            "- Delegate isolated work with subtask_spawn, inspect with subtask_peek,"
            " collect with subtask_await.",
            "- When blocked on a human decision, use ask(question).",
        ]
    )
    system_prompt_append: str = ""
    compaction_context: str = "\n".join(
        [
            "## Protocol files (reload with load_context on resume)",
            "- PLAN.md                         goals, milestones, definition of done",
            "- RLM_INSTRUCTIONS.md             operating manual and playbooks",
            "- AGENT_CONTEXT_FOR_NEXT_RALPH.md verdict and next step from the last attempt",
            "- CURRENT_STATE.md                scratch for this attempt",
            "- PREVIOUS_STATE.md               scratch archived from the last attempt",
            "- NOTES_AND_LEARNINGS.md          append-only learnings",
            "- CONTEXT_FOR_RLM.md              large reference, grep + slice only",
            "- .ralph/agents/<name>/           sub-task state directories",
        ]
    )
    strategist_prompt: str = "\n".join(
        [
            "You are the strategist for attempt {{attempt}}.",
            "",
            "1. Call load_context() and read AGENT_CONTEXT_FOR_NEXT_RALPH.md.",
            "2. Review why the previous attempt failed and update PLAN.md,"
            " RLM_INSTRUCTIONS.md and NOTES_AND_LEARNINGS.md.",
            "3. Do NOT do the verified work yourself.",
            "4. Call spawn_worker(instructions) exactly once with precise instructions.",
            "",
            "Last attempt summary:",
            "{{summary}}",
        ]
    )
    worker_prompt: str = "\n".join(
        [
            "You are the worker for attempt {{attempt}}.",
            "",
            "- Call load_context() FIRST. write/edit/bash are rejected until you do.",
            "- Follow PLAN.md and RLM_INSTRUCTIONS.md.",
            "- Keep CURRENT_STATE.md updated as you work.",
            "- Call report_progress() during long stretches of work.",
            "- Stop when you believe verification will pass; the supervisor verifies.",
            "",
            "Instructions from the strategist:",
            "{{instructions}}",
        ]
    )
    continue_prompt: str = "\n".join(
        [
            "Attempt {{attempt}}: continue (previous verdict: {{verdict}}).",
            "",
            "- Call load_context() FIRST (required before any write/edit/bash).",
            "- Treat PLAN.md and RLM_INSTRUCTIONS.md as authoritative.",
            "- Use grep / slice for CONTEXT_FOR_RLM.md, never read it whole.",
            "- Durable changes go to PLAN.md and NOTES_AND_LEARNINGS.md.",
            "",
            "Objective: make the verification pass.",
        ]
    )
    done_file_content: str = "\n".join(
        [
            "# Next Ralph Context",
            "",
            "- {{timestamp}} DONE",
            "",
            "Verification passed. Loop complete.",
            "",
        ]
    )
    subtask_prompt: str = "\n".join(
        [
            'You are sub-task "{{name}}".',
            "",
            "Goal: {{goal}}",
            "{{context}}",
            "",
            "- Your working files live under {{state_dir}}/.",
            "- Keep CURRENT_STATE.md updated (objective, hypothesis, actions, evidence, result).",
            "- Append durable learnings to NOTES_AND_LEARNINGS.md.",
            '- When finished, write your answer under a "{{done_heading}}" heading'
            " in CURRENT_STATE.md,",
            "  then print this phrase on its own line: {{done_sentinel}}",
        ]
    )
    subtask_done_sentinel: str = "SUB_AGENT_DONE"
    subtask_done_heading: str = "## Final Result"
    reviewer_prompt: str = "\n".join(
        [
            'You are reviewer "{{name}}" for attempt {{attempt}}. You only read and report.',
            "",
            "Review request: {{note}}",
            "",
            "- Call load_context() first, then inspect the current changes.",
            "- Do not edit project files.",
            "- Record findings in {{state_dir}}/CURRENT_STATE.md.",
            '- Finish with a "{{done_heading}}" heading containing your verdict,'
            " then print {{done_sentinel}}.",
        ]
    )
    bootstrap_instructions: str = "\n".join(
        [
            "# RLM Instructions (operating manual)",
            "",
            "## Fixed Header (do not remove)",
            "- Call load_context() at the start of EVERY attempt.",
            "- PLAN.md and this file are authoritative.",
            "- grep before reading large files; prefer grep + slice.",
            "- CURRENT_STATE.md is scratch for this attempt only.",
            "- Update PLAN.md only for durable changes.",
            "- Append durable learnings to NOTES_AND_LEARNINGS.md.",
            "- Change this file through update_instructions(patch, reason).",
            "",
            "## Sub-task Playbook (editable)",
            "- subtask_spawn(name, goal, context?) to delegate isolated work.",
            "- subtask_peek(name, file?) to inspect progress.",
            "- subtask_await(name) to collect the result; call it periodically.",
            "",
            "## Debug Playbook (editable)",
            "- grep -> slice -> hypothesize -> verify -> fix -> verify",
            "",
            "## Changelog (append-only)",
            "- {{timestamp}} created",
            "",
        ]
    )
    bootstrap_current_state: str = "\n".join(
        [
            "# Current State (scratch for this attempt)",
            "",
            "- Objective for this loop:",
            "- Hypothesis:",
            "- Actions taken:",
            "- Evidence:",
            "- Verification result:",
            "- Next step:",
            "",
        ]
    )
    context_gate_error: str = (
        "File-first rule violated: call load_context() before using write / edit / bash."
    )

    @property
    def full_system_prompt(self) -> str:
        if self.system_prompt_append:
            return f"{self.system_prompt}\n{self.system_prompt_append}"
        return self.system_prompt


TEMPLATE_NAMES = frozenset(item.name for item in fields(PromptTemplates))


def interpolate(template: str, **values: object) -> str:
    """Replace ``{{token}}`` placeholders; unknown tokens are left untouched."""

    def _substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return str(values[key])
        return match.group(0)

    return TOKEN_PATTERN.sub(_substitute, template)


def resolve_override(raw: str, root: Path) -> str:
    if raw.startswith("@"):
        file_path = Path(raw[1:])
        if not file_path.is_absolute():
            file_path = root / file_path
        return file_path.read_text(encoding="utf-8")
    return raw.replace("\\n", "\n").replace("\\t", "\t")


def resolve_templates(overrides: dict[str, str], root: Path) -> PromptTemplates:
    templates = PromptTemplates()
    resolved: dict[str, str] = {}
    for name, raw in overrides.items():
        if name not in TEMPLATE_NAMES:
            logger.warning("Ignoring unknown template override %r", name)
            continue
        if not raw:
            continue
        try:
            resolved[name] = resolve_override(raw, root)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to load template %s from %s: %s; using default", name, raw, exc)
    if not resolved:
        return templates
    return replace(templates, **resolved)
