"""Activity sink implementations.

This module defines the ActivitySink interface the session coordinator
reports through, and the sinks that do not need a network:

- LoggingActivitySink: Writes activities as structured log entries
- InMemoryActivitySink: Keeps the trail each session would display

The tracker-backed sink lives in src/dispatch/linear/client.py.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from src.dispatch.activities.models import Activity, ActivityKind

logger = logging.getLogger(__name__)


class ActivitySink(ABC):
    """Destination for session activities.

    Every method may raise on transport failure; callers that must not be
    interrupted by delivery problems go through ActivityPublisher.
    """

    @abstractmethod
    async def send_thought(self, session_id: str, body: str) -> None:
        """Send a persistent thought."""

    @abstractmethod
    async def send_ephemeral_thought(self, session_id: str, body: str) -> None:
        """Send a thought that the next activity replaces."""

    @abstractmethod
    async def send_action(self, session_id: str, label: str, detail: str) -> None:
        """Send a persistent action, e.g. ("Editing", ".../src/app.py")."""

    @abstractmethod
    async def send_response(self, session_id: str, body: str) -> None:
        """Send the final response of a run."""

    @abstractmethod
    async def send_error(self, session_id: str, body: str) -> None:
        """Send an error attributed to the agent."""

    async def close(self) -> None:
        """Release resources. The default implementation does nothing."""
        pass


async def deliver(sink: ActivitySink, session_id: str, activity: Activity) -> None:
    """Route an Activity to the matching sink method."""
    if activity.kind == ActivityKind.THOUGHT:
        if activity.ephemeral:
            await sink.send_ephemeral_thought(session_id, activity.body)
        else:
            await sink.send_thought(session_id, activity.body)
    elif activity.kind == ActivityKind.ACTION:
        await sink.send_action(session_id, activity.body, activity.detail)
    elif activity.kind == ActivityKind.RESPONSE:
        await sink.send_response(session_id, activity.body)
    elif activity.kind == ActivityKind.ERROR:
        await sink.send_error(session_id, activity.body)
    else:
        raise ValueError(f"Unknown activity kind: {activity.kind}")


class LoggingActivitySink(ActivitySink):
    """Sink that only logs activities.

    Useful for running the service without tracker credentials.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def send_thought(self, session_id: str, body: str) -> None:
        self._log(session_id, Activity.thought(body))

    async def send_ephemeral_thought(self, session_id: str, body: str) -> None:
        self._log(session_id, Activity.thought(body, ephemeral=True))

    async def send_action(self, session_id: str, label: str, detail: str) -> None:
        self._log(session_id, Activity.action(label, detail))

    async def send_response(self, session_id: str, body: str) -> None:
        self._log(session_id, Activity.response(body))

    async def send_error(self, session_id: str, body: str) -> None:
        self._log(session_id, Activity.error(body))

    def _log(self, session_id: str, activity: Activity) -> None:
        level = logging.ERROR if activity.kind == ActivityKind.ERROR else logging.INFO
        self._logger.log(
            level,
            "Activity %s for session %s: %s",
            activity.kind.value,
            session_id,
            activity.body,
            extra={
                "session_id": session_id,
                "activity_kind": activity.kind.value,
                "ephemeral": activity.ephemeral,
                "detail": activity.detail,
            },
        )


@dataclass
class ActivityTrail:
    """What a session thread displays.

    Attributes:
        entries: Persistent activities in delivery order.
        transient: The current ephemeral activity, if the last delivered
                   activity was ephemeral.
    """

    entries: List[Activity] = field(default_factory=list)
    transient: Optional[Activity] = None

    def apply(self, activity: Activity) -> None:
        self.transient = None
        if activity.ephemeral:
            self.transient = activity
        else:
            self.entries.append(activity)

    @property
    def visible(self) -> List[Activity]:
        if self.transient is None:
            return list(self.entries)
        return [*self.entries, self.transient]


class InMemoryActivitySink(ActivitySink):
    """Sink that records activities and renders per-session trails.

    Attributes:
        sent: Every (session_id, activity) pair in delivery order.
    """

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Activity]] = []
        self._trails: Dict[str, ActivityTrail] = defaultdict(ActivityTrail)

    def trail(self, session_id: str) -> ActivityTrail:
        return self._trails[session_id]

    def activities(self, session_id: str) -> List[Activity]:
        return [activity for sid, activity in self.sent if sid == session_id]

    async def send_thought(self, session_id: str, body: str) -> None:
        self._record(session_id, Activity.thought(body))

    async def send_ephemeral_thought(self, session_id: str, body: str) -> None:
        self._record(session_id, Activity.thought(body, ephemeral=True))

    async def send_action(self, session_id: str, label: str, detail: str) -> None:
        self._record(session_id, Activity.action(label, detail))

    async def send_response(self, session_id: str, body: str) -> None:
        self._record(session_id, Activity.response(body))

    async def send_error(self, session_id: str, body: str) -> None:
        self._record(session_id, Activity.error(body))

    def _record(self, session_id: str, activity: Activity) -> None:
        self.sent.append((session_id, activity))
        self._trails[session_id].apply(activity)
