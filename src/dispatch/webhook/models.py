"""Inbound agent-session event models.

This module defines the normalized event that the session coordinator
consumes. The webhook handler builds one InboundEvent per accepted tracker
webhook; the coordinator consumes it exactly once.

The models use Pydantic for validation, consistent with the service's
configuration approach in config.py, and are frozen so an event cannot be
altered after it is received.
"""

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class TriggerKind(str, Enum):
    """Why the tracker sent the event.

    Attributes:
        CREATED: A new agent session was opened (mention or delegation).
        CONTINUED: The user added a message to an existing session.
        STOP_SIGNAL: The user asked the agent to stop the session.
    """

    CREATED = "created"
    CONTINUED = "continued"
    STOP_SIGNAL = "stop_signal"


class WorkItem(BaseModel):
    """The tracker issue a session is attached to.

    Attributes:
        id: Opaque tracker identifier, used to key the workspace.
        identifier: Human identifier shown to users (e.g. "ENG-123").
        title: Issue title.
        description: Issue body, if any.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    identifier: str = Field(..., min_length=1)
    title: str = ""
    description: Optional[str] = None


class PriorMessage(BaseModel):
    """A message that preceded the event in the session thread."""

    model_config = ConfigDict(frozen=True)

    author: str = ""
    body: str = ""


class InboundEvent(BaseModel):
    """Normalized agent-session event.

    Attributes:
        session_id: Tracker session the activities are addressed to.
        work_item: The issue the session belongs to.
        trigger_kind: Why the event was sent.
        trigger_message: The user message that triggered this event, if any.
        prior_messages: Earlier thread messages, oldest first.
        freeform_context: Thread context rendered by the tracker.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., min_length=1)
    work_item: WorkItem
    trigger_kind: TriggerKind
    trigger_message: Optional[str] = None
    prior_messages: Tuple[PriorMessage, ...] = ()
    freeform_context: str = ""

    @property
    def is_stop(self) -> bool:
        """True when the event asks to stop the session."""
        return self.trigger_kind == TriggerKind.STOP_SIGNAL
