"""Per-session permission broker for tool calls.

Every tool call passes through PermissionGate.request_permission() exactly
once before it is dispatched. Decisions come from, in order: the always-deny
set, the auto-approve set, approvals remembered for this session, the
blanket read auto-approval, and finally an interactive prompt.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable

from . import fmt

logger = logging.getLogger(__name__)

# Commands starting with one of these words share a single session approval.
DEFAULT_SAFE_COMMAND_CLASSES = ("git", "npm", "ls")

WILDCARD = "*"
READ_CLASS = "read"


class PermissionDecision(str, enum.Enum):
    ALLOW_ONCE = "once"
    ALLOW_SESSION = "session"
    DENY = "deny"
    DENY_AND_BLOCK = "block"


@dataclass
class PermissionState:
    auto_approve: set[str] = field(default_factory=set)
    always_deny: set[str] = field(default_factory=set)
    session_approved: set[str] = field(default_factory=set)


@dataclass
class PermissionRequest:
    tool: str
    description: str
    risk_level: str
    details: dict = field(default_factory=dict)


_TOOL_RISK_LEVELS = {
    "read_file": "read",
    "list_files": "read",
    "grep": "read",
    "fetch_url": "read",
    "write_file": "write",
    "edit_file": "write",
    "run_command": "execute",
}


def risk_level(tool: str) -> str:
    """Risk class of a tool; unknown tools are treated as executing code."""
    return _TOOL_RISK_LEVELS.get(tool, "execute")


def describe_call(tool: str, args: dict) -> str:
    """Human-readable one-line summary of a tool call."""
    if tool == "read_file":
        return f"Read file: {args.get('file_path')}"
    if tool == "write_file":
        return f"Write to file: {args.get('file_path')}"
    if tool == "edit_file":
        return f"Edit file: {args.get('file_path')}"
    if tool == "run_command":
        return f"Execute command: {args.get('command')}"
    if tool == "list_files":
        return f"Search for files: {args.get('pattern')}"
    if tool == "grep":
        return f"Search in files: {args.get('pattern')}"
    if tool == "fetch_url":
        return f"Fetch URL: {args.get('url')}"
    return f"Execute {tool}"


_CHOICES = {
    "y": PermissionDecision.ALLOW_ONCE,
    "a": PermissionDecision.ALLOW_SESSION,
    "n": PermissionDecision.DENY,
    "b": PermissionDecision.DENY_AND_BLOCK,
}


def prompt_decision(request: PermissionRequest) -> PermissionDecision:
    """Ask the user on the terminal. EOF or Ctrl-C counts as a denial."""
    from prompt_toolkit import prompt

    fmt.permission_request(
        request.tool, request.description, request.risk_level, request.details
    )
    while True:
        try:
            answer = prompt(
                "  Allow? [y] once  [a] session  [n] deny  [b] block tool: "
            )
        except (EOFError, KeyboardInterrupt):
            return PermissionDecision.DENY
        choice = _CHOICES.get(answer.strip().lower()[:1])
        if choice is not None:
            return choice
        fmt.warning("please answer y, a, n or b")


class PermissionGate:
    """Turns a tool request into an allow/deny decision for one session."""

    def __init__(
        self,
        auto_approve=(),
        safe_command_classes=DEFAULT_SAFE_COMMAND_CLASSES,
        decide: Callable[[PermissionRequest], PermissionDecision] | None = None,
    ):
        self.state = PermissionState(auto_approve=set(auto_approve))
        self.safe_command_classes = tuple(safe_command_classes)
        self.decide = decide or prompt_decision

    def scope_key(self, tool: str, details: dict | None = None) -> str:
        """Key under which an allow-session approval is remembered.

        Shell commands of a safe class (e.g. every ``git ...``) collapse to
        one key per class. File tools are keyed by tool name only, not path.
        """
        if tool == "run_command" and details:
            command = details.get("command")
            if isinstance(command, str):
                command = command.strip()
                for prefix in self.safe_command_classes:
                    if command == prefix or command.startswith(prefix + " "):
                        return f"{tool}:{prefix}"
        return tool

    def request_permission(
        self,
        tool: str,
        description: str,
        risk_level: str,
        details: dict | None = None,
    ) -> bool:
        state = self.state
        if tool in state.always_deny:
            fmt.warning(f'tool "{tool}" is blocked for this session')
            return False

        if tool in state.auto_approve or WILDCARD in state.auto_approve:
            return True

        key = self.scope_key(tool, details)
        if key in state.session_approved:
            logger.debug("session approval %s covers %s", key, description)
            return True

        if risk_level == READ_CLASS and READ_CLASS in state.auto_approve:
            return True

        decision = self.decide(
            PermissionRequest(tool, description, risk_level, dict(details or {}))
        )
        logger.debug("permission decision for %s: %s", tool, decision.value)

        if decision is PermissionDecision.ALLOW_ONCE:
            return True
        if decision is PermissionDecision.ALLOW_SESSION:
            state.session_approved.add(key)
            fmt.info(f"{key} approved for session")
            return True
        if decision is PermissionDecision.DENY_AND_BLOCK:
            state.always_deny.add(tool)
            fmt.info(f"{tool} blocked for session")
            return False
        return False

    def summary(self) -> str:
        """Multi-line description of the current permission state."""
        state = self.state
        lines = [
            "Auto-approved: " + (", ".join(sorted(state.auto_approve)) or "none"),
            "Session-approved: " + (", ".join(sorted(state.session_approved)) or "none"),
            "Blocked: " + (", ".join(sorted(state.always_deny)) or "none"),
            "Safe command classes: " + (", ".join(self.safe_command_classes) or "none"),
        ]
        return "\n".join(lines)
