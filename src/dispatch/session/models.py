"""Session run models and stage machine.

This module defines:
- SessionStage: Enum of the stages a session run moves through
- VALID_TRANSITIONS: Map defining allowed stage transitions
- SessionRun: Mutable per-run record held in the SessionRegistry
- InvalidTransitionError: Raised for transitions outside VALID_TRANSITIONS

Stage flow:
    idle → acknowledged → provisioning → executing → completed
                                                   → failed
                                                   → stopped

Any non-terminal stage can move to failed. Stopped is reachable only from
executing. Terminal stages have no outgoing transitions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from src.dispatch.runner.models import AgentRunner
from src.dispatch.webhook.models import WorkItem


class SessionStage(str, Enum):
    """Stages of a single session run.

    Attributes:
        IDLE: Run created, nothing sent yet.
        ACKNOWLEDGED: Acknowledgment thought sent.
        PROVISIONING: Acquiring the workspace.
        EXECUTING: Agent running; the run is in the registry.
        COMPLETED: Agent finished and the response was sent.
        FAILED: Run ended with an error.
        STOPPED: Run cancelled by a stop signal or superseded.
    """

    IDLE = "idle"
    ACKNOWLEDGED = "acknowledged"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


VALID_TRANSITIONS: Dict[SessionStage, List[SessionStage]] = {
    SessionStage.IDLE: [
        SessionStage.ACKNOWLEDGED,
        SessionStage.FAILED,
    ],
    SessionStage.ACKNOWLEDGED: [
        SessionStage.PROVISIONING,
        SessionStage.FAILED,
    ],
    SessionStage.PROVISIONING: [
        SessionStage.EXECUTING,
        SessionStage.FAILED,
    ],
    SessionStage.EXECUTING: [
        SessionStage.COMPLETED,
        SessionStage.FAILED,
        SessionStage.STOPPED,
    ],
    SessionStage.COMPLETED: [],
    SessionStage.FAILED: [],
    SessionStage.STOPPED: [],
}


def is_valid_transition(from_stage: SessionStage, to_stage: SessionStage) -> bool:
    """Check if a stage transition is allowed.

    Example:
        >>> is_valid_transition(SessionStage.EXECUTING, SessionStage.STOPPED)
        True
        >>> is_valid_transition(SessionStage.PROVISIONING, SessionStage.STOPPED)
        False
    """
    return to_stage in VALID_TRANSITIONS.get(from_stage, [])


def is_terminal_stage(stage: SessionStage) -> bool:
    """Check if a stage has no outgoing transitions."""
    return len(VALID_TRANSITIONS.get(stage, [])) == 0


class InvalidTransitionError(Exception):
    """Raised when a session run is moved along a disallowed transition.

    Attributes:
        from_stage: The current stage.
        to_stage: The attempted target stage.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_stage: SessionStage,
        to_stage: SessionStage,
        message: Optional[str] = None,
    ):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.message = message or (
            f"Invalid transition from {from_stage.value} to {to_stage.value}"
        )
        super().__init__(self.message)


@dataclass
class SessionRun:
    """State of one run of a session.

    A SessionRun is created per inbound event and lives in the registry only
    while it is executing. The runner doubles as its cancellation handle.

    Attributes:
        session_id: Tracker session the run reports to.
        work_item: The work item being worked on.
        stage: Current stage.
        runner: Execution engine instance driving this run, once created.
        workspace_path: Directory the agent runs in, once provisioned.
        degraded: True when provisioning failed and the run uses the
                  repository root.
        started_at: When the run was created (UTC).
        finished_at: When the run reached a terminal stage (UTC).
        history: Stages visited, in order, starting with IDLE.
    """

    session_id: str
    work_item: WorkItem
    stage: SessionStage = SessionStage.IDLE
    runner: Optional[AgentRunner] = None
    workspace_path: Optional[str] = None
    degraded: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    history: List[SessionStage] = field(default_factory=lambda: [SessionStage.IDLE])

    @property
    def is_terminal(self) -> bool:
        return is_terminal_stage(self.stage)

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def transition(self, to_stage: SessionStage) -> SessionStage:
        """Move the run to a new stage.

        Args:
            to_stage: Target stage.

        Returns:
            The stage the run was in before the transition.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        from_stage = self.stage
        if not is_valid_transition(from_stage, to_stage):
            raise InvalidTransitionError(from_stage, to_stage)

        self.stage = to_stage
        self.history.append(to_stage)
        if is_terminal_stage(to_stage):
            self.finished_at = datetime.now(timezone.utc)
        return from_stage

    async def stop(self) -> None:
        """Ask the runner to stop, if the run has one."""
        if self.runner is not None:
            await self.runner.stop()
