"""Core records shared by the parser, the tool registry and the reasoning loop."""

import enum
import json
from dataclasses import dataclass, field
from typing import Any

ROLES = ("user", "assistant", "system", "tool")


@dataclass
class ToolResult:
    """Uniform outcome envelope returned by every tool."""

    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **metadata) -> "ToolResult":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, error_type: str | None = None, **metadata) -> "ToolResult":
        if error_type is not None:
            metadata["error_type"] = error_type
        return cls(success=False, error=error, metadata=metadata)

    def to_dict(self) -> dict:
        out: dict = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        if self.metadata:
            out["metadata"] = self.metadata
        return out

    def observation(self) -> str:
        """Render the primary textual payload as an observation string.

        Plain-text data wins, then ``content``, then ``stdout``, then a JSON
        rendering of whatever is left. Failures render as ``Error: ...``.
        """
        if not self.success:
            return f"Error: {self.error or 'unknown error'}"
        data = self.data
        if data is None:
            return ""
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            if isinstance(data.get("content"), str):
                return data["content"]
            if isinstance(data.get("stdout"), str):
                out = data["stdout"]
                if data.get("stderr"):
                    out += f"\n[stderr]\n{data['stderr']}"
                if data.get("exitCode") not in (None, 0):
                    out += f"\n[exit code {data['exitCode']}]"
                return out
        return json.dumps(data, indent=2, default=str, ensure_ascii=False)


@dataclass
class ToolCall:
    tool: str
    parameters: dict = field(default_factory=dict)
    id: str | None = None
    result: ToolResult | None = None


@dataclass
class Message:
    """One turn in a conversation."""

    role: str
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(
                f"invalid message role {self.role!r}, expected one of: {', '.join(ROLES)}"
            )
        if self.content is None:
            self.content = ""


@dataclass
class ReasoningStep:
    thought: str
    action: ToolCall | None = None
    observation: str | None = None
    finish: bool = False

    @property
    def complete(self) -> bool:
        return self.action is None or self.observation is not None


@dataclass
class ParsedResponse:
    steps: list[ReasoningStep] = field(default_factory=list)
    final_answer: str | None = None
    requires_more_actions: bool = False


class LoopStatus(enum.Enum):
    RUNNING = "Running"
    RECOVERING = "Recovering"
    FINISHED = "Finished"
    ABORTED = "Aborted"
    STOPPED = "Stopped"


@dataclass
class LoopState:
    """Transient bookkeeping for one run of the reasoning loop."""

    max_steps: int = 10
    max_consecutive_errors: int = 3
    step_count: int = 0
    consecutive_errors: int = 0
    reasoning_chain: list[str] = field(default_factory=list)
    status: LoopStatus = LoopStatus.RUNNING

    @property
    def exhausted(self) -> bool:
        return self.step_count >= self.max_steps

    def record_success(self) -> None:
        self.consecutive_errors = 0

    def record_failure(self) -> bool:
        """Count a tool failure. Returns True when the error budget is spent."""
        self.consecutive_errors += 1
        return self.consecutive_errors >= self.max_consecutive_errors
