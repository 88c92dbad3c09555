"""Dispatch service configuration using pydantic-settings.

This module defines the DispatchSettings class that reads configuration
from environment variables with the DISPATCH_ prefix, and the agent
definition model that the session coordinator turns into an execution
context for every run.

The agent definition is a nested model populated from DISPATCH_AGENT__*
variables (for example DISPATCH_AGENT__MODEL=sonnet). Lists and mappings
are given as JSON (DISPATCH_AGENT__ALLOWED_TOOLS='["Read", "Edit"]').
"""

import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PermissionMode(str, Enum):
    """How the agent engine asks for permission before using tools."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"


class McpServerConfig(BaseModel):
    """An external integration (MCP server) exposed to the agent.

    Attributes:
        type: Transport kind. "stdio" servers are launched with command/args,
              "sse" and "http" servers are reached at url.
        command: Executable for stdio servers.
        args: Arguments for stdio servers.
        env: Environment for stdio servers.
        url: Endpoint for sse/http servers.
        headers: Extra request headers for sse/http servers.
    """

    type: Literal["stdio", "sse", "http"] = "stdio"
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    def to_cli_dict(self) -> Dict[str, object]:
        """Render in the shape the agent CLI expects in --mcp-config."""
        if self.type == "stdio":
            rendered: Dict[str, object] = {"type": "stdio", "command": self.command}
            if self.args:
                rendered["args"] = list(self.args)
            if self.env:
                rendered["env"] = dict(self.env)
            return rendered

        rendered = {"type": self.type, "url": self.url}
        if self.headers:
            rendered["headers"] = dict(self.headers)
        return rendered


class AgentDefinition(BaseModel):
    """Statically configured agent that handles every session.

    Attributes:
        id: Stable identifier used in logs and events.
        name: Human-readable agent name.
        system_prompt: Instructions prepended to every run.
        model: Model selector passed to the execution engine.
        allowed_tools: Tools the agent may use without asking.
        disallowed_tools: Tools the agent may never use.
        mcp_servers: External integrations keyed by name.
        permission_mode: Tool permission policy.
        max_turns: Upper bound on conversation turns per run.
        env: Extra environment variables for the engine process.
    """

    id: str = Field(default="default", min_length=1)
    name: str = Field(default="Dispatch Agent", min_length=1)
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    allowed_tools: List[str] = Field(default_factory=list)
    disallowed_tools: List[str] = Field(default_factory=list)
    mcp_servers: Dict[str, McpServerConfig] = Field(default_factory=dict)
    permission_mode: PermissionMode = PermissionMode.ACCEPT_EDITS
    max_turns: Optional[int] = Field(default=None, ge=1)
    env: Dict[str, str] = Field(default_factory=dict)


class DispatchSettings(BaseSettings):
    """Dispatch service configuration from environment variables.

    All environment variables are prefixed with DISPATCH_ (e.g.,
    DISPATCH_LINEAR_ACCESS_TOKEN).

    Required fields (must be set via environment variables):
    - linear_access_token: OAuth token used to post agent activities
    """

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        env_nested_delimiter="__",
        env_parse_none_str="none",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Tracker Configuration
    # -------------------------------------------------------------------------
    linear_access_token: str

    # When set, webhook requests must carry a valid linear-signature header
    linear_webhook_secret: Optional[str] = None

    linear_api_url: str = "https://api.linear.app/graphql"

    # Endpoint auto-supplied to agents that do not declare a "linear" integration
    linear_mcp_url: str = "https://mcp.linear.app/sse"

    # -------------------------------------------------------------------------
    # Workspace Configuration
    # -------------------------------------------------------------------------
    repository_path: str = Field(default_factory=os.getcwd)

    worktree_base_path: str = Field(
        default_factory=lambda: str(Path.home() / ".dispatch" / "worktrees")
    )

    worktree_branch_prefix: str = "dispatch/"

    git_timeout_seconds: int = 120

    workspace_retention_hours: int = 168

    # -------------------------------------------------------------------------
    # Execution Configuration
    # -------------------------------------------------------------------------
    claude_cli_path: str = "claude"

    # "none" means runs are never bounded
    run_timeout_seconds: Optional[int] = 3600

    agent: AgentDefinition = Field(default_factory=AgentDefinition)

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    log_level: str = "INFO"

    host: str = "0.0.0.0"

    port: int = 3000

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("linear_access_token")
    @classmethod
    def validate_access_token(cls, v: str) -> str:
        """Validate that the access token is not empty."""
        if not v or not v.strip():
            raise ValueError("linear_access_token cannot be empty")
        return v

    @field_validator("linear_webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: Optional[str]) -> Optional[str]:
        """Treat a blank webhook secret as unset."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("linear_api_url", "linear_mcp_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate that tracker URLs are http(s) URLs."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @field_validator("repository_path", "worktree_base_path")
    @classmethod
    def validate_absolute_path(cls, v: str) -> str:
        """Validate that filesystem locations are absolute paths."""
        if not Path(v).expanduser().is_absolute():
            raise ValueError("path must be absolute")
        return str(Path(v).expanduser())

    @field_validator("worktree_branch_prefix")
    @classmethod
    def validate_branch_prefix(cls, v: str) -> str:
        """Validate that the branch prefix cannot produce an invalid ref."""
        if " " in v or ".." in v:
            raise ValueError("worktree_branch_prefix is not a valid ref prefix")
        return v

    @field_validator(
        "git_timeout_seconds", "workspace_retention_hours", "run_timeout_seconds"
    )
    @classmethod
    def validate_positive(cls, v: Optional[int]) -> Optional[int]:
        """Validate that durations are positive."""
        if v is not None and v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that the log level is a standard level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> DispatchSettings:
    """Create and return a DispatchSettings instance.

    Returns:
        DispatchSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return DispatchSettings()
