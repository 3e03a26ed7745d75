from __future__ import annotations

from ralph.errors import ProtocolViolation
from ralph.registry import SessionRegistry, SessionRole

SAFE_ACTIONS = frozenset(
    {
        "load_context",
        "grep",
        "slice",
        "subtask_peek",
        "subtask_await",
        "subtask_list",
        "verify",
        "report_progress",
        "ask",
    }
)
DESTRUCTIVE_ACTIONS = frozenset(
    {
        "write",
        "edit",
        "bash",
        "delete",
        "move",
        "rename",
        "update_plan",
        "update_instructions",
        "rollover",
        "subtask_spawn",
    }
)
GATED_ROLES = frozenset({SessionRole.WORKER, SessionRole.SUBTASK})


def classify(action: str) -> str:
    if action in SAFE_ACTIONS:
        return "safe"
    if action in DESTRUCTIVE_ACTIONS:
        return "destructive"
    return "ungated"


class ProtocolGate:
    """Rejects destructive actions from coding sessions until context is loaded.

    Read-only with respect to the registry; the load_context handler is what
    flips ``context_loaded``.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        error_message: str,
        enabled: bool = True,
    ) -> None:
        self.registry = registry
        self.error_message = error_message
        self.enabled = enabled

    def allows(self, session_id: str, action: str) -> bool:
        if not self.enabled or classify(action) != "destructive":
            return True
        record = self.registry.peek(session_id)
        if record is None or record.role not in GATED_ROLES:
            return True
        return record.context_loaded

    def check(self, session_id: str, action: str) -> None:
        if self.allows(session_id, action):
            return
        record = self.registry.peek(session_id)
        role = record.role.value if record and record.role else "unknown"
        attempt = record.attempt if record else 0
        raise ProtocolViolation(
            f"{self.error_message} (session {session_id}, role {role}, attempt {attempt}, "
            f"action '{action}' requires load_context first)"
        )
