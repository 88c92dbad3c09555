"""Claude Code CLI subprocess runner.

Executes the `claude` CLI in print mode with stream-JSON output as an async
subprocess in the session's working directory. Output lines are read lazily
and turned into ProgressEvents; the progress callback is awaited for each
event before the next line is read, so a slow consumer holds the reader
back instead of forcing it to buffer.

stop() terminates the process; the in-flight run then resolves with a
stopped outcome rather than an error.
"""

import asyncio
import json
import logging
import os
import time
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

from src.dispatch.runner.models import (
    ExecutionContext,
    OutputProgress,
    ProgressCallback,
    ProgressEvent,
    RunOutcome,
    ThinkingProgress,
    ToolUseProgress,
)

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool inputs and can be far larger than the
# default StreamReader line limit
STREAM_LINE_LIMIT_BYTES = 16 * 1024 * 1024

FILE_CHANGING_TOOLS = {"Edit", "MultiEdit", "Write", "NotebookEdit"}


class ClaudeCodeRunner:
    """Runs one agent task through the Claude Code CLI.

    A runner instance drives a single run; the coordinator creates one
    instance per session run so stop() only affects its own process. A stop
    is sticky: once stop() has been called, run() reports a stopped outcome
    without launching the CLI.

    Attributes:
        cli_path: Path to the claude executable.
        default_model: Model used when the context does not select one.
    """

    name = "claude"

    def __init__(self, cli_path: str = "claude", default_model: Optional[str] = None):
        self.cli_path = cli_path
        self.default_model = default_model
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stopped = False

    async def run(
        self,
        message: str,
        context: ExecutionContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunOutcome:
        """Execute the agent against the context's working directory.

        Args:
            message: Prompt for the agent.
            context: Execution options for this run.
            on_progress: Awaited once per progress event, in order.

        Returns:
            RunOutcome describing how the run ended.
        """
        start_time = time.monotonic()

        if self._stopped:
            logger.info("claude run stopped before start")
            return self._stopped_outcome([], start_time)

        try:
            process = await self._start_process(message, context)
        except OSError as exc:
            return self._handle_os_error(exc, start_time)

        self._process = process
        if self._stopped:
            # stop() arrived while the process was being spawned
            await self._terminate(process)
        try:
            return await self._consume(process, on_progress, start_time)
        finally:
            await self._reap(process)
            self._process = None

    async def stop(self) -> None:
        """Terminate the in-flight run, if any."""
        self._stopped = True
        process = self._process
        if process is None:
            return
        await self._terminate(process)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return

        logger.info("Stopping claude process", extra={"pid": process.pid})
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    def build_command(self, context: ExecutionContext) -> List[str]:
        """Build the CLI argument vector for a context."""
        command = [
            self.cli_path,
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            context.permission_policy.value,
        ]

        model = context.model_selector or self.default_model
        if model:
            command += ["--model", model]
        if context.instructions:
            command += ["--system-prompt", context.instructions]
        if context.allowed_capabilities:
            command += ["--allowedTools", ",".join(context.allowed_capabilities)]
        if context.disallowed_capabilities:
            command += ["--disallowedTools", ",".join(context.disallowed_capabilities)]
        if context.turn_limit is not None:
            command += ["--max-turns", str(context.turn_limit)]
        if context.external_integrations:
            mcp_config = {
                "mcpServers": {
                    name: server.to_cli_dict()
                    for name, server in context.external_integrations.items()
                }
            }
            command += ["--mcp-config", json.dumps(mcp_config)]

        return command

    async def _start_process(
        self, message: str, context: ExecutionContext
    ) -> asyncio.subprocess.Process:
        """Launch the CLI and hand it the prompt on stdin.

        Raises:
            OSError: If the executable cannot be found or started.
        """
        logger.info(
            "Starting claude",
            extra={"workspace": context.working_directory},
        )

        process = await asyncio.create_subprocess_exec(
            *self.build_command(context),
            cwd=context.working_directory,
            env={**os.environ, **context.environment},
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LINE_LIMIT_BYTES,
        )

        if process.stdin is not None:
            process.stdin.write(message.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()

        return process

    async def _consume(
        self,
        process: asyncio.subprocess.Process,
        on_progress: Optional[ProgressCallback],
        start_time: float,
    ) -> RunOutcome:
        """Read the stream until EOF and build the outcome."""
        stderr_task = asyncio.create_task(self._collect_text(process.stderr))
        files_changed: List[str] = []
        final_output = ""
        failure: Optional[str] = None
        saw_result = False

        try:
            async for message in self._read_messages(process.stdout):
                message_type = message.get("type")

                if message_type == "assistant":
                    for progress in progress_from_assistant_message(message):
                        if isinstance(progress, ToolUseProgress):
                            _track_file_change(progress, files_changed)
                        if on_progress is not None:
                            await on_progress(progress)

                elif message_type == "result":
                    saw_result = True
                    if message.get("subtype") == "success" and not message.get(
                        "is_error"
                    ):
                        final_output = _as_text(message.get("result"))
                    else:
                        failure = _result_error(message)

            await process.wait()
            stderr = await stderr_task
        except BaseException:
            # stderr only reaches EOF once run() has reaped the process
            stderr_task.cancel()
            raise

        duration = time.monotonic() - start_time

        if self._stopped:
            logger.info("claude run stopped after %.1fs", duration)
            return self._stopped_outcome(files_changed, start_time)

        if failure is None and not saw_result and process.returncode != 0:
            failure = stderr.strip() or f"claude exited with code {process.returncode}"

        if failure is not None:
            logger.error("claude run failed in %.1fs: %s", duration, failure[:500])
            return RunOutcome(
                success=False,
                error=failure,
                files_changed=files_changed,
                duration_seconds=duration,
            )

        logger.info("claude run completed successfully in %.1fs", duration)
        return RunOutcome(
            success=True,
            output=final_output,
            files_changed=files_changed,
            duration_seconds=duration,
        )

    async def _read_messages(
        self, stream: Optional[asyncio.StreamReader]
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded JSON objects from the stdout stream, one per line."""
        if stream is None:
            return

        while True:
            raw_line = await stream.readline()
            if not raw_line:
                break
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("claude non-JSON output: %s", line)
                continue
            if isinstance(message, dict):
                yield message

    async def _collect_text(self, stream: Optional[asyncio.StreamReader]) -> str:
        if stream is None:
            return ""
        data = await stream.read()
        return data.decode("utf-8", errors="replace")

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Make sure the process is gone, e.g. after cancellation."""
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    def _stopped_outcome(
        self, files_changed: List[str], start_time: float
    ) -> RunOutcome:
        return RunOutcome(
            success=False,
            error="Run was stopped",
            stopped=True,
            files_changed=files_changed,
            duration_seconds=time.monotonic() - start_time,
        )

    def _handle_os_error(self, exc: OSError, start_time: float) -> RunOutcome:
        """Return a failure outcome for OS-level errors (e.g. missing binary)."""
        logger.error("Failed to start claude: %s", exc)
        return RunOutcome(
            success=False,
            error=f"Failed to start claude: {exc}",
            duration_seconds=time.monotonic() - start_time,
        )


def progress_from_assistant_message(message: Dict[str, Any]) -> Iterator[ProgressEvent]:
    """Turn the content blocks of an assistant message into progress events."""
    content = (message.get("message") or {}).get("content")
    if not isinstance(content, list):
        return

    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "thinking" and block.get("thinking"):
            yield ThinkingProgress(content=block["thinking"])
        elif block_type == "text" and block.get("text"):
            yield OutputProgress(content=block["text"])
        elif block_type == "tool_use":
            tool_input = block.get("input")
            yield ToolUseProgress(
                tool_name=_as_text(block.get("name")),
                tool_input=tool_input if isinstance(tool_input, dict) else {},
            )


def _track_file_change(progress: ToolUseProgress, files_changed: List[str]) -> None:
    if progress.tool_name not in FILE_CHANGING_TOOLS:
        return
    file_path = progress.tool_input.get("file_path")
    if isinstance(file_path, str) and file_path not in files_changed:
        files_changed.append(file_path)


def _result_error(message: Dict[str, Any]) -> str:
    errors = message.get("errors")
    if isinstance(errors, list) and errors:
        return "\n".join(str(error) for error in errors)
    return _as_text(message.get("result")) or "Unknown error"


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def create_claude_runner(
    cli_path: str = "claude", default_model: Optional[str] = None
) -> ClaudeCodeRunner:
    """Factory function to create a ClaudeCodeRunner."""
    return ClaudeCodeRunner(cli_path=cli_path, default_model=default_model)
