"""Dispatch service: runs an AI coding agent for Linear agent sessions.

This package provides:
- Linear agent-session webhook verification and parsing
- Per-work-item git worktree provisioning
- A session coordinator that runs the agent and reports progress as
  agent activities
- The Claude Code CLI as the agent execution engine
- Structured session events and Prometheus metrics
"""
