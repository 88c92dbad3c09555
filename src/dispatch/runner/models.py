"""Execution engine contract.

The session coordinator treats the agent execution engine as an opaque
capability: it hands over a message and an ExecutionContext, receives a
stream of ProgressEvents through an awaited callback, and gets exactly one
RunOutcome back. Any engine that satisfies AgentRunner can be plugged in.

ProgressEvent is a closed union of four frozen dataclasses. Consumers
dispatch on it with isinstance checks ending in typing.assert_never, so a
new progress kind is a type-checked decision rather than a silently ignored
branch.
"""

from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from pydantic import BaseModel, Field

from src.dispatch.config import McpServerConfig, PermissionMode


class ExecutionContext(BaseModel):
    """Everything the engine needs for one run.

    Built fresh for every run from the agent definition plus ambient
    credentials; never persisted.

    Attributes:
        working_directory: Directory the agent operates in.
        instructions: System prompt for the agent.
        model_selector: Model to use; engine default when None.
        allowed_capabilities: Tools the agent may use without asking.
        disallowed_capabilities: Tools the agent may never use.
        external_integrations: MCP servers keyed by name.
        permission_policy: Tool permission mode.
        turn_limit: Maximum conversation turns, or None for engine default.
        environment: Extra environment variables for the engine.
    """

    working_directory: str
    instructions: Optional[str] = None
    model_selector: Optional[str] = None
    allowed_capabilities: List[str] = Field(default_factory=list)
    disallowed_capabilities: List[str] = Field(default_factory=list)
    external_integrations: Dict[str, McpServerConfig] = Field(default_factory=dict)
    permission_policy: PermissionMode = PermissionMode.ACCEPT_EDITS
    turn_limit: Optional[int] = None
    environment: Dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True)
class ThinkingProgress:
    """Internal extended reasoning from the model."""

    content: str


@dataclass(frozen=True)
class ToolUseProgress:
    """The agent invoked a tool.

    Attributes:
        tool_name: Name of the tool, e.g. "Edit" or "Task".
        tool_input: Arguments the tool was called with.
    """

    tool_name: str
    tool_input: Dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return self.tool_name


@dataclass(frozen=True)
class OutputProgress:
    """Text the agent produced for the user."""

    content: str


@dataclass(frozen=True)
class ErrorProgress:
    """A non-fatal error reported by the engine during the run."""

    content: str
    details: Dict[str, Any] = field(default_factory=dict)


ProgressEvent = Union[ThinkingProgress, ToolUseProgress, OutputProgress, ErrorProgress]

ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]


@dataclass
class RunOutcome:
    """Terminal result of a run, produced exactly once.

    Attributes:
        success: True when the agent finished its task.
        output: Final response text.
        error: Failure detail when success is False.
        stopped: True when the run ended because stop() was called. A
                 stopped run is a failure, but not an execution error.
        files_changed: Files the agent wrote or edited.
        duration_seconds: Wall-clock execution time.
    """

    success: bool
    output: str = ""
    error: Optional[str] = None
    stopped: bool = False
    files_changed: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@runtime_checkable
class AgentRunner(Protocol):
    """Execution capability consumed by the session coordinator.

    run() invokes on_progress zero or more times, awaiting each call, and
    then resolves exactly once. stop() makes an in-flight run resolve
    promptly with RunOutcome(success=False, stopped=True).
    """

    name: str

    async def run(
        self,
        message: str,
        context: ExecutionContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunOutcome:
        ...

    async def stop(self) -> None:
        ...


RunnerFactory = Callable[[], AgentRunner]
