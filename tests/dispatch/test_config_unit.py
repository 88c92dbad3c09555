"""Unit tests for DispatchSettings and the agent definition models."""
import pytest
from pydantic import ValidationError

from src.dispatch.config import (
    AgentDefinition,
    DispatchSettings,
    McpServerConfig,
    PermissionMode,
    get_settings,
)


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("DISPATCH_LINEAR_ACCESS_TOKEN", "lin_test_token")
    return monkeypatch


class TestDispatchSettings:

    def test_defaults(self, env):
        settings = get_settings()

        assert settings.linear_access_token == "lin_test_token"
        assert settings.linear_webhook_secret is None
        assert settings.linear_api_url == "https://api.linear.app/graphql"
        assert settings.worktree_branch_prefix == "dispatch/"
        assert settings.run_timeout_seconds == 3600
        assert settings.log_level == "INFO"
        assert settings.port == 3000
        assert settings.agent == AgentDefinition()

    def test_access_token_required(self, env):
        env.delenv("DISPATCH_LINEAR_ACCESS_TOKEN")

        with pytest.raises(ValidationError):
            DispatchSettings()

    def test_blank_access_token_rejected(self, env):
        env.setenv("DISPATCH_LINEAR_ACCESS_TOKEN", "   ")

        with pytest.raises(ValidationError, match="cannot be empty"):
            DispatchSettings()

    def test_blank_webhook_secret_is_unset(self, env):
        env.setenv("DISPATCH_LINEAR_WEBHOOK_SECRET", " ")

        assert DispatchSettings().linear_webhook_secret is None

    def test_paths_must_be_absolute(self, env):
        env.setenv("DISPATCH_REPOSITORY_PATH", "relative/repo")

        with pytest.raises(ValidationError, match="absolute"):
            DispatchSettings()

    def test_absolute_paths_accepted(self, env, tmp_path):
        env.setenv("DISPATCH_REPOSITORY_PATH", str(tmp_path))
        env.setenv("DISPATCH_WORKTREE_BASE_PATH", str(tmp_path / "worktrees"))

        settings = DispatchSettings()

        assert settings.repository_path == str(tmp_path)
        assert settings.worktree_base_path == str(tmp_path / "worktrees")

    def test_invalid_branch_prefix(self, env):
        env.setenv("DISPATCH_WORKTREE_BRANCH_PREFIX", "bad prefix/")

        with pytest.raises(ValidationError):
            DispatchSettings()

    def test_run_timeout_can_be_disabled(self, env):
        env.setenv("DISPATCH_RUN_TIMEOUT_SECONDS", "none")

        assert DispatchSettings().run_timeout_seconds is None

    def test_non_positive_timeout_rejected(self, env):
        env.setenv("DISPATCH_GIT_TIMEOUT_SECONDS", "0")

        with pytest.raises(ValidationError, match="at least 1"):
            DispatchSettings()

    def test_log_level_normalized(self, env):
        env.setenv("DISPATCH_LOG_LEVEL", "debug")

        assert DispatchSettings().log_level == "DEBUG"

    def test_unknown_log_level_rejected(self, env):
        env.setenv("DISPATCH_LOG_LEVEL", "chatty")

        with pytest.raises(ValidationError):
            DispatchSettings()

    def test_port_range(self, env):
        env.setenv("DISPATCH_PORT", "70000")

        with pytest.raises(ValidationError):
            DispatchSettings()

    def test_tracker_url_must_be_http(self, env):
        env.setenv("DISPATCH_LINEAR_API_URL", "ftp://linear")

        with pytest.raises(ValidationError):
            DispatchSettings()


class TestAgentDefinitionFromEnvironment:

    def test_agent_from_json(self, env):
        env.setenv(
            "DISPATCH_AGENT",
            '{"model": "opus", "allowed_tools": ["Read", "Edit"], "max_turns": 20}',
        )

        agent = DispatchSettings().agent

        assert agent.model == "opus"
        assert agent.allowed_tools == ["Read", "Edit"]
        assert agent.max_turns == 20

    def test_agent_from_nested_variables(self, env):
        env.setenv("DISPATCH_AGENT__MODEL", "sonnet")
        env.setenv("DISPATCH_AGENT__PERMISSION_MODE", "plan")

        agent = DispatchSettings().agent

        assert agent.model == "sonnet"
        assert agent.permission_mode == PermissionMode.PLAN


class TestMcpServerConfig:

    def test_stdio_rendering(self):
        server = McpServerConfig(command="npx", args=["-y", "server"], env={"K": "v"})

        assert server.to_cli_dict() == {
            "type": "stdio",
            "command": "npx",
            "args": ["-y", "server"],
            "env": {"K": "v"},
        }

    def test_remote_rendering(self):
        server = McpServerConfig(type="http", url="https://mcp.example.com")

        assert server.to_cli_dict() == {"type": "http", "url": "https://mcp.example.com"}

    def test_unknown_transport_rejected(self):
        with pytest.raises(ValidationError):
            McpServerConfig(type="carrier-pigeon")


class TestAgentDefinition:

    def test_max_turns_must_be_positive(self):
        with pytest.raises(ValidationError):
            AgentDefinition(max_turns=0)

    def test_defaults(self):
        agent = AgentDefinition()

        assert agent.permission_mode == PermissionMode.ACCEPT_EDITS
        assert agent.mcp_servers == {}
        assert agent.system_prompt is None
