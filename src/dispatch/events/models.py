"""Session event models for observability.

This module defines the data models for session events:
- EventType: Enum of all event types emitted by the coordinator
- SessionEvent: Structured event with all required metadata

Events are emitted for monitoring, alerting, and debugging. They are
separate from agent activities: activities are what the user sees in the
tracker, events are what operators see in logs and metrics.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the session coordinator.

    Attributes:
        STATE_TRANSITION: A session run moved from one stage to another.
        ERROR: A run failed, or a step of it raised.
        COMPLETION: A run finished successfully.
        TIMEOUT: A run exceeded the configured run timeout.
    """

    STATE_TRANSITION = "state_transition"
    ERROR = "error"
    COMPLETION = "completion"
    TIMEOUT = "timeout"


class SessionEvent(BaseModel):
    """Structured event emitted by the session coordinator.

    Attributes:
        event_type: The category of event.
        session_id: Tracker session the run belongs to.
        work_item_id: Work item the run operates on.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For STATE_TRANSITION events:
            - from_stage: Previous session stage
            - to_stage: New session stage

        For ERROR events:
            - error_message: Human-readable error description
            - error_type: Exception class name or error category
            - stage: Session stage where the error occurred

        For COMPLETION events:
            - duration_seconds: Time from acknowledgment to completion
            - files_changed: Number of files the agent wrote or edited

        For TIMEOUT events:
            - timeout_seconds: Configured timeout value
            - stage: Session stage where the timeout occurred

    Example:
        >>> event = SessionEvent(
        ...     event_type=EventType.STATE_TRANSITION,
        ...     session_id="session-1",
        ...     work_item_id="issue-1",
        ...     details={"from_stage": "provisioning", "to_stage": "executing"},
        ... )
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    session_id: str = Field(
        ...,
        min_length=1,
        description="Tracker agent session id",
    )

    work_item_id: str = Field(
        default="",
        description="Id of the work item the session belongs to",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event into a dictionary for structured logging.

        Example:
            >>> event = SessionEvent(
            ...     event_type=EventType.ERROR,
            ...     session_id="session-1",
            ...     details={"error_message": "claude exited with code 1"},
            ... )
            >>> event.to_log_dict()["event_type"]
            'error'
        """
        return {
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "work_item_id": self.work_item_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
