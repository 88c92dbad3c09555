"""Session coordinator: turns inbound agent-session events into runs.

For each event the coordinator acknowledges the session, acquires the work
item's workspace, builds the execution context, runs the agent with its
progress mapped to activities, and reports the outcome. Stop signals cancel
the run registered for the session.

Failure handling:
- provisioning failure degrades to the repository root and the run continues
- execution failure is reported as an error activity and not retried
- activity delivery failure is logged and ignored
- anything else raised while handling an event becomes a best-effort error
  activity; the registry entry is removed on every path

Each run gets its own runner from the runner factory, so stopping one
session never touches another session's process.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.dispatch.activities.mapper import ActivityPublisher
from src.dispatch.activities.models import Activity
from src.dispatch.activities.sink import ActivitySink
from src.dispatch.config import AgentDefinition, McpServerConfig
from src.dispatch.events.emitter import EventEmitter, NullEventEmitter
from src.dispatch.events.models import EventType, SessionEvent
from src.dispatch.runner.models import (
    AgentRunner,
    ExecutionContext,
    RunnerFactory,
    RunOutcome,
)
from src.dispatch.session.models import SessionRun, SessionStage
from src.dispatch.session.prompt import build_message
from src.dispatch.session.registry import SessionRegistry
from src.dispatch.webhook.models import InboundEvent
from src.dispatch.workspace.worktree import WorkspaceProvisioner

logger = logging.getLogger(__name__)

ACKNOWLEDGMENT_MESSAGE = "Looking into this..."
PREPARING_LABEL = "Preparing"
PREPARING_DETAIL = "workspace"
STARTING_MESSAGE = "Starting work..."
DEFAULT_RESPONSE = "Done. No further output was produced."
DEFAULT_ERROR = "Unknown error occurred"
STOPPED_MESSAGE = "Stopped as requested."

TRACKER_INTEGRATION_NAME = "linear"


class SessionCoordinator:
    """Dispatches inbound session events to agent runs.

    Attributes:
        agent: The agent definition every run uses.
        runner_factory: Creates a fresh AgentRunner for each run.
        provisioner: Acquires per-work-item workspaces.
        sink: Receives the activities of every session.
        repository_path: Repository the workspaces are created from; also
                         the fallback working directory.
        registry: Runs currently executing, by session id.
        event_emitter: Receives SessionEvents for logs and metrics.
        access_token: Tracker token offered to the agent's tracker
                      integration, if any.
        tracker_mcp_url: Endpoint of the tracker integration.
        run_timeout_seconds: Upper bound on a single run, or None.
    """

    def __init__(
        self,
        agent: AgentDefinition,
        runner_factory: RunnerFactory,
        provisioner: WorkspaceProvisioner,
        sink: ActivitySink,
        repository_path: Path,
        registry: Optional[SessionRegistry] = None,
        event_emitter: Optional[EventEmitter] = None,
        access_token: Optional[str] = None,
        tracker_mcp_url: str = "https://mcp.linear.app/sse",
        run_timeout_seconds: Optional[float] = None,
    ):
        self.agent = agent
        self.runner_factory = runner_factory
        self.provisioner = provisioner
        self.sink = sink
        self.repository_path = repository_path
        self.registry = registry if registry is not None else SessionRegistry()
        self.event_emitter = event_emitter or NullEventEmitter()
        self.access_token = access_token
        self.tracker_mcp_url = tracker_mcp_url
        self.run_timeout_seconds = run_timeout_seconds

    async def handle(self, event: InboundEvent) -> Optional[SessionRun]:
        """Handle one inbound event to completion.

        Never raises for failures inside the run; they are reported to the
        session and logged.

        Args:
            event: Normalized agent-session event.

        Returns:
            The SessionRun for created/continued events, None for stop
            signals.
        """
        if event.is_stop:
            await self.stop_session(event.session_id)
            return None

        run = SessionRun(session_id=event.session_id, work_item=event.work_item)
        publisher = ActivityPublisher(self.sink, event.session_id)

        logger.info(
            "Handling session event",
            extra={
                "session_id": event.session_id,
                "work_item_id": event.work_item.id,
                "trigger_kind": event.trigger_kind.value,
            },
        )

        try:
            await self._execute(run, event, publisher)
        except Exception as exc:
            logger.exception(
                "Session handling failed",
                extra={"session_id": run.session_id, "stage": run.stage.value},
            )
            await self._fail(run, exc)
            if run.stage != SessionStage.STOPPED:
                await publisher.publish(Activity.error(f"Processing failed: {exc}"))

        return run

    async def stop_session(self, session_id: str) -> bool:
        """Stop the run executing for a session.

        A session with no executing run is left alone.

        Returns:
            True if a run was stopped.
        """
        run = self.registry.pop(session_id)
        if run is None:
            logger.info(
                "Stop requested for session without an active run",
                extra={"session_id": session_id},
            )
            return False

        logger.info(
            "Stopping session run",
            extra={"session_id": session_id, "work_item_id": run.work_item.id},
        )
        await self._cancel(run)
        await ActivityPublisher(self.sink, session_id).publish(
            Activity.response(STOPPED_MESSAGE)
        )
        return True

    def active_workspaces(self) -> List[Path]:
        """Workspace paths of the runs currently executing."""
        return [
            Path(run.workspace_path)
            for run in self.registry.snapshot()
            if run.workspace_path
        ]

    def resolve_agent(self, event: InboundEvent) -> AgentDefinition:
        """Agent definition for an event. There is a single configured agent."""
        return self.agent

    def build_context(
        self, agent: AgentDefinition, working_directory: Path
    ) -> ExecutionContext:
        """Build the execution context for a run.

        The tracker integration is added when an access token is available
        and the agent does not declare one itself.
        """
        integrations: Dict[str, McpServerConfig] = dict(agent.mcp_servers)
        if self.access_token and TRACKER_INTEGRATION_NAME not in integrations:
            integrations[TRACKER_INTEGRATION_NAME] = McpServerConfig(
                type="sse",
                url=self.tracker_mcp_url,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )

        return ExecutionContext(
            working_directory=str(working_directory),
            instructions=agent.system_prompt,
            model_selector=agent.model,
            allowed_capabilities=list(agent.allowed_tools),
            disallowed_capabilities=list(agent.disallowed_tools),
            external_integrations=integrations,
            permission_policy=agent.permission_mode,
            turn_limit=agent.max_turns,
            environment=dict(agent.env),
        )

    async def _execute(
        self, run: SessionRun, event: InboundEvent, publisher: ActivityPublisher
    ) -> None:
        await publisher.publish(Activity.thought(ACKNOWLEDGMENT_MESSAGE))
        await self._transition(run, SessionStage.ACKNOWLEDGED)

        agent = self.resolve_agent(event)

        await self._transition(run, SessionStage.PROVISIONING)
        await publisher.publish(Activity.action(PREPARING_LABEL, PREPARING_DETAIL))
        working_directory = await self._provision(run)

        context = self.build_context(agent, working_directory)
        runner = self.runner_factory()
        run.runner = runner

        await self._supersede(run.session_id)
        await self._transition(run, SessionStage.EXECUTING)

        with self.registry.track(run):
            message = build_message(event)
            await publisher.publish(Activity.thought(STARTING_MESSAGE))
            if run.is_terminal:
                logger.info(
                    "Run stopped before the agent started",
                    extra={"session_id": run.session_id, "stage": run.stage.value},
                )
                return
            outcome = await self._run_agent(run, runner, message, context, publisher)
            await self._finish(run, outcome, publisher)

    async def _provision(self, run: SessionRun) -> Path:
        """Acquire the workspace, falling back to the repository root."""
        try:
            workspace_path = await self.provisioner.acquire(
                run.work_item.id, self.repository_path
            )
        except Exception:
            logger.warning(
                "Workspace provisioning failed, running in repository root",
                extra={
                    "session_id": run.session_id,
                    "work_item_id": run.work_item.id,
                    "repository": str(self.repository_path),
                },
                exc_info=True,
            )
            run.degraded = True
            run.workspace_path = str(self.repository_path)
            return self.repository_path

        run.workspace_path = str(workspace_path)
        return workspace_path

    async def _supersede(self, session_id: str) -> None:
        """Stop a run already executing for the session, if any."""
        previous = self.registry.pop(session_id)
        if previous is None:
            return
        logger.warning(
            "New event supersedes executing run",
            extra={"session_id": session_id, "work_item_id": previous.work_item.id},
        )
        await self._cancel(previous)

    async def _cancel(self, run: SessionRun) -> None:
        """Mark a run stopped and ask its runner to stop."""
        if not run.is_terminal:
            await self._transition(run, SessionStage.STOPPED)
        try:
            await run.stop()
        except Exception:
            logger.warning(
                "Runner failed to stop",
                extra={"session_id": run.session_id},
                exc_info=True,
            )

    async def _run_agent(
        self,
        run: SessionRun,
        runner: AgentRunner,
        message: str,
        context: ExecutionContext,
        publisher: ActivityPublisher,
    ) -> RunOutcome:
        """Run the agent, bounded by the run timeout when one is set."""
        execution = runner.run(message, context, on_progress=publisher.on_progress)
        if self.run_timeout_seconds is None:
            return await execution

        try:
            return await asyncio.wait_for(execution, timeout=self.run_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(
                "Run timed out after %ss",
                self.run_timeout_seconds,
                extra={"session_id": run.session_id},
            )
            await self._emit(
                run,
                EventType.TIMEOUT,
                {"timeout_seconds": self.run_timeout_seconds, "stage": run.stage.value},
            )
            try:
                await runner.stop()
            except Exception:
                logger.warning(
                    "Runner failed to stop after timeout",
                    extra={"session_id": run.session_id},
                    exc_info=True,
                )
            return RunOutcome(
                success=False,
                error=f"Run timed out after {self.run_timeout_seconds:g} seconds",
            )

    async def _finish(
        self, run: SessionRun, outcome: RunOutcome, publisher: ActivityPublisher
    ) -> None:
        """Report the outcome of a run that was not stopped from outside."""
        if run.is_terminal:
            logger.info(
                "Run ended after being stopped",
                extra={"session_id": run.session_id, "stage": run.stage.value},
            )
            return

        if outcome.stopped:
            await self._transition(run, SessionStage.STOPPED)
            await publisher.publish(Activity.response(STOPPED_MESSAGE))
            return

        if outcome.success:
            await self._transition(run, SessionStage.COMPLETED)
            await publisher.publish(Activity.response(outcome.output or DEFAULT_RESPONSE))
            await self._emit(
                run,
                EventType.COMPLETION,
                {
                    "duration_seconds": outcome.duration_seconds or run.duration_seconds,
                    "files_changed": len(outcome.files_changed),
                    "degraded": run.degraded,
                },
            )
            return

        error = outcome.error or DEFAULT_ERROR
        await self._transition(run, SessionStage.FAILED)
        await publisher.publish(Activity.error(error))
        await self._emit(
            run,
            EventType.ERROR,
            {
                "stage": SessionStage.EXECUTING.value,
                "error_type": "execution",
                "error_message": error,
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(self, run: SessionRun, to_stage: SessionStage) -> None:
        """Transition the run and emit a state-transition event."""
        from_stage = run.transition(to_stage)
        await self._emit(
            run,
            EventType.STATE_TRANSITION,
            {"from_stage": from_stage.value, "to_stage": to_stage.value},
        )

    async def _fail(self, run: SessionRun, exc: Exception) -> None:
        """Move a run that raised to FAILED and emit an error event."""
        stage = run.stage
        if not run.is_terminal:
            await self._transition(run, SessionStage.FAILED)
        await self._emit(
            run,
            EventType.ERROR,
            {
                "stage": stage.value,
                "error_type": type(exc).__name__,
                "error_message": str(exc),
            },
        )

    async def _emit(
        self, run: SessionRun, event_type: EventType, details: Dict[str, Any]
    ) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the run."""
        try:
            await self.event_emitter.emit(
                SessionEvent(
                    event_type=event_type,
                    session_id=run.session_id,
                    work_item_id=run.work_item.id,
                    details=details,
                )
            )
        except Exception:
            logger.exception(
                "Failed to emit session event",
                extra={"event_type": event_type.value, "session_id": run.session_id},
            )
