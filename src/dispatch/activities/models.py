"""Agent activity models.

An activity is a typed notification the tracker renders in the session
thread. Thoughts and actions describe progress, a response carries the final
answer, and an error reports a failure attributed to the agent.

Ephemeral activities are replaced by whatever activity is sent next for the
same session, so the thread shows the latest transient state rather than a
growing log.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ActivityKind(str, Enum):
    """Kinds of activity the tracker can render."""

    THOUGHT = "thought"
    ACTION = "action"
    RESPONSE = "response"
    ERROR = "error"


class Activity(BaseModel):
    """A single activity to deliver to a session.

    Attributes:
        kind: What the activity represents.
        body: Text of a thought, response or error; the label of an action.
        detail: Parameter of an action (e.g. a file path). Empty otherwise.
        ephemeral: Replace on the next activity instead of persisting.
    """

    model_config = ConfigDict(frozen=True)

    kind: ActivityKind
    body: str = Field(default="")
    detail: str = Field(default="")
    ephemeral: bool = False

    @classmethod
    def thought(cls, body: str, ephemeral: bool = False) -> "Activity":
        return cls(kind=ActivityKind.THOUGHT, body=body, ephemeral=ephemeral)

    @classmethod
    def action(cls, label: str, detail: str = "") -> "Activity":
        return cls(kind=ActivityKind.ACTION, body=label, detail=detail)

    @classmethod
    def response(cls, body: str) -> "Activity":
        return cls(kind=ActivityKind.RESPONSE, body=body)

    @classmethod
    def error(cls, body: str) -> "Activity":
        return cls(kind=ActivityKind.ERROR, body=body)
