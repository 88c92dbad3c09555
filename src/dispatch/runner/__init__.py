"""Agent execution engine contract and the Claude Code CLI runner."""

from src.dispatch.runner.claude import ClaudeCodeRunner, create_claude_runner
from src.dispatch.runner.models import (
    AgentRunner,
    ErrorProgress,
    ExecutionContext,
    OutputProgress,
    ProgressCallback,
    ProgressEvent,
    RunnerFactory,
    RunOutcome,
    ThinkingProgress,
    ToolUseProgress,
)

__all__ = [
    "AgentRunner",
    "ClaudeCodeRunner",
    "ErrorProgress",
    "ExecutionContext",
    "OutputProgress",
    "ProgressCallback",
    "ProgressEvent",
    "RunOutcome",
    "RunnerFactory",
    "ThinkingProgress",
    "ToolUseProgress",
    "create_claude_runner",
]
