"""Unit tests for the Claude Code CLI runner.

The subprocess is replaced with a fake process backed by real
asyncio.StreamReaders so the line reader, progress callback and stop path
run exactly as they would against the CLI.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

from src.dispatch.config import McpServerConfig, PermissionMode
from src.dispatch.runner.claude import (
    ClaudeCodeRunner,
    create_claude_runner,
    progress_from_assistant_message,
)
from src.dispatch.runner.models import (
    ExecutionContext,
    OutputProgress,
    ThinkingProgress,
    ToolUseProgress,
)
from tests.dispatch.fakes import run_async

EXEC_TARGET = "src.dispatch.runner.claude.asyncio.create_subprocess_exec"


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process.

    With hang=True stdout stays open until terminate() is called.
    """

    def __init__(self, messages=(), returncode=0, stderr=b"", hang=False):
        self.pid = 4242
        self.stdin = MagicMock()
        self.stdin.drain = AsyncMock()
        self.stdout = asyncio.StreamReader()
        for message in messages:
            raw = message if isinstance(message, str) else json.dumps(message)
            self.stdout.feed_data((raw + "\n").encode("utf-8"))
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_data(stderr)
        self.stderr.feed_eof()
        self.returncode = None
        self.terminated = False
        self._exited = asyncio.Event()
        if not hang:
            self.stdout.feed_eof()
            self._exit(returncode)

    def _exit(self, code):
        self.returncode = code
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.stdout.feed_eof()
        self._exit(-15)

    def kill(self):
        self.stdout.feed_eof()
        self._exit(-9)


def fake_exec(calls, **process_kwargs):
    async def create_subprocess_exec(*args, **kwargs):
        process = FakeProcess(**process_kwargs)
        calls.append((args, kwargs, process))
        return process

    return create_subprocess_exec


def assistant(*blocks):
    return {"type": "assistant", "message": {"content": list(blocks)}}


def success_result(text):
    return {"type": "result", "subtype": "success", "is_error": False, "result": text}


def make_context(tmp_path, **overrides):
    return ExecutionContext(working_directory=str(tmp_path), **overrides)


class TestBuildCommand:

    def test_minimal_command(self, tmp_path):
        command = ClaudeCodeRunner().build_command(make_context(tmp_path))

        assert command == [
            "claude",
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "acceptEdits",
        ]

    def test_full_command(self, tmp_path):
        context = make_context(
            tmp_path,
            instructions="Be careful",
            model_selector="opus",
            allowed_capabilities=["Read", "Edit"],
            disallowed_capabilities=["WebFetch"],
            permission_policy=PermissionMode.BYPASS_PERMISSIONS,
            turn_limit=5,
            external_integrations={
                "linear": McpServerConfig(
                    type="sse",
                    url="https://mcp.example.com/sse",
                    headers={"Authorization": "Bearer t"},
                )
            },
        )

        command = ClaudeCodeRunner(cli_path="/usr/bin/claude").build_command(context)

        assert command[0] == "/usr/bin/claude"
        assert command[command.index("--permission-mode") + 1] == "bypassPermissions"
        assert command[command.index("--model") + 1] == "opus"
        assert command[command.index("--system-prompt") + 1] == "Be careful"
        assert command[command.index("--allowedTools") + 1] == "Read,Edit"
        assert command[command.index("--disallowedTools") + 1] == "WebFetch"
        assert command[command.index("--max-turns") + 1] == "5"
        mcp_config = json.loads(command[command.index("--mcp-config") + 1])
        assert mcp_config == {
            "mcpServers": {
                "linear": {
                    "type": "sse",
                    "url": "https://mcp.example.com/sse",
                    "headers": {"Authorization": "Bearer t"},
                }
            }
        }

    def test_default_model_used_when_context_has_none(self, tmp_path):
        runner = create_claude_runner(default_model="sonnet")

        command = runner.build_command(make_context(tmp_path))

        assert command[command.index("--model") + 1] == "sonnet"


class TestProgressFromAssistantMessage:

    def test_maps_content_blocks_in_order(self):
        message = assistant(
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Looking at the router"},
            {"type": "tool_use", "name": "Edit", "input": {"file_path": "app.py"}},
        )

        assert list(progress_from_assistant_message(message)) == [
            ThinkingProgress(content="hmm"),
            OutputProgress(content="Looking at the router"),
            ToolUseProgress(tool_name="Edit", tool_input={"file_path": "app.py"}),
        ]

    def test_skips_empty_and_unknown_blocks(self):
        message = assistant(
            {"type": "text", "text": ""},
            {"type": "image"},
            "garbage",
            {"type": "tool_use", "name": "Read", "input": "not a dict"},
        )

        assert list(progress_from_assistant_message(message)) == [
            ToolUseProgress(tool_name="Read", tool_input={})
        ]

    def test_message_without_content(self):
        assert list(progress_from_assistant_message({"type": "assistant"})) == []


class TestRun:

    def test_successful_run(self, tmp_path):
        calls = []
        progress = []

        async def on_progress(event):
            progress.append(event)

        messages = [
            {"type": "system", "subtype": "init"},
            assistant({"type": "text", "text": "Fixing the redirect"}),
            "not json",
            assistant(
                {"type": "tool_use", "name": "Edit", "input": {"file_path": "/r/app.py"}},
                {"type": "tool_use", "name": "Write", "input": {"file_path": "/r/new.py"}},
                {"type": "tool_use", "name": "Edit", "input": {"file_path": "/r/app.py"}},
            ),
            success_result("Fixed it."),
        ]
        context = make_context(tmp_path, environment={"CI": "1"})

        with patch(EXEC_TARGET, new=fake_exec(calls, messages=messages)):
            outcome = run_async(ClaudeCodeRunner().run("fix the bug", context, on_progress))

        assert outcome.success
        assert outcome.output == "Fixed it."
        assert outcome.files_changed == ["/r/app.py", "/r/new.py"]
        assert [type(p) for p in progress] == [
            OutputProgress,
            ToolUseProgress,
            ToolUseProgress,
            ToolUseProgress,
        ]

        _, kwargs, process = calls[0]
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["env"]["CI"] == "1"
        process.stdin.write.assert_called_once_with(b"fix the bug")
        process.stdin.close.assert_called_once()

    def test_error_result(self, tmp_path):
        calls = []
        messages = [
            {
                "type": "result",
                "subtype": "error_max_turns",
                "is_error": True,
                "errors": ["Reached max turns"],
            }
        ]

        with patch(EXEC_TARGET, new=fake_exec(calls, messages=messages, returncode=1)):
            outcome = run_async(ClaudeCodeRunner().run("go", make_context(tmp_path)))

        assert not outcome.success
        assert not outcome.stopped
        assert outcome.error == "Reached max turns"

    def test_nonzero_exit_without_result_uses_stderr(self, tmp_path):
        calls = []

        with patch(
            EXEC_TARGET,
            new=fake_exec(calls, returncode=2, stderr=b"authentication failed\n"),
        ):
            outcome = run_async(ClaudeCodeRunner().run("go", make_context(tmp_path)))

        assert not outcome.success
        assert outcome.error == "authentication failed"

    def test_nonzero_exit_without_stderr(self, tmp_path):
        with patch(EXEC_TARGET, new=fake_exec([], returncode=3)):
            outcome = run_async(ClaudeCodeRunner().run("go", make_context(tmp_path)))

        assert outcome.error == "claude exited with code 3"

    def test_missing_executable(self, tmp_path):
        async def missing(*args, **kwargs):
            raise FileNotFoundError(2, "No such file or directory", "claude")

        with patch(EXEC_TARGET, new=missing):
            outcome = run_async(ClaudeCodeRunner().run("go", make_context(tmp_path)))

        assert not outcome.success
        assert outcome.error.startswith("Failed to start claude")


class TestStop:

    def test_stop_terminates_process_and_reports_stopped(self, tmp_path):
        calls = []
        runner = ClaudeCodeRunner()

        async def scenario():
            seen = asyncio.Event()

            async def on_progress(event):
                seen.set()

            task = asyncio.create_task(
                runner.run("go", make_context(tmp_path), on_progress)
            )
            await seen.wait()
            await runner.stop()
            return await task

        messages = [assistant({"type": "text", "text": "Working on it"})]
        with patch(EXEC_TARGET, new=fake_exec(calls, messages=messages, hang=True)):
            outcome = run_async(scenario())

        assert outcome.stopped
        assert not outcome.success
        assert calls[0][2].terminated

    def test_stop_without_run_is_noop(self):
        run_async(ClaudeCodeRunner().stop())

    def test_stop_before_run_never_starts_process(self, tmp_path):
        calls = []
        runner = ClaudeCodeRunner()

        async def scenario():
            await runner.stop()
            return await runner.run("go", make_context(tmp_path))

        with patch(EXEC_TARGET, new=fake_exec(calls, messages=[success_result("done")])):
            outcome = run_async(scenario())

        assert calls == []
        assert outcome.stopped
        assert not outcome.success

    def test_stop_during_spawn_terminates_new_process(self, tmp_path):
        calls = []
        runner = ClaudeCodeRunner()
        spawn = fake_exec(calls, hang=True)

        async def stopping_exec(*args, **kwargs):
            process = await spawn(*args, **kwargs)
            await runner.stop()
            return process

        with patch(EXEC_TARGET, new=stopping_exec):
            outcome = run_async(runner.run("go", make_context(tmp_path)))

        assert outcome.stopped
        assert calls[0][2].terminated
