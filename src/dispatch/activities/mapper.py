"""Progress to activity mapping.

Reduces the engine's progress stream to the activities a user should see:

- spawning a subtask → persistent action labelled with its purpose
- writing or editing a file → persistent action with a shortened path
- any other tool (read-only exploration) → ephemeral generic thought
- agent output longer than OUTPUT_THOUGHT_MIN_LENGTH → persistent thought
- extended thinking → ephemeral generic thought
- engine error events → logged only; the run outcome reports failures

ActivityPublisher delivers each activity independently: a failed delivery
is logged and never interrupts the run or later deliveries.
"""

import logging
from typing import Optional, assert_never

from src.dispatch.activities.models import Activity
from src.dispatch.activities.sink import ActivitySink, deliver
from src.dispatch.runner.models import (
    ErrorProgress,
    OutputProgress,
    ProgressEvent,
    ThinkingProgress,
    ToolUseProgress,
)

logger = logging.getLogger(__name__)

SUBTASK_TOOLS = frozenset({"Task", "Agent"})

FILE_EDIT_LABELS = {
    "Edit": "Editing",
    "MultiEdit": "Editing",
    "NotebookEdit": "Editing",
    "Write": "Writing",
}

EXPLORING_LABEL = "Exploring the codebase..."
DEFAULT_SUBTASK_LABEL = "Running subtask"
OUTPUT_THOUGHT_MIN_LENGTH = 20
PATH_TAIL_SEGMENTS = 3


def shorten_path(file_path: str) -> str:
    """Render a path by its last three segments.

    Paths with at most three "/"-separated segments are returned unchanged;
    longer ones become ".../" followed by the last three segments. A leading
    "/" yields an empty first segment, so "/a/b/c" counts as four segments.

    Example:
        >>> shorten_path("/a/b/c/d/file.ts")
        '.../c/d/file.ts'
        >>> shorten_path("/a/b/c")
        '.../a/b/c'
        >>> shorten_path("src/app.py")
        'src/app.py'
    """
    segments = file_path.split("/")
    if len(segments) <= PATH_TAIL_SEGMENTS:
        return file_path
    return ".../" + "/".join(segments[-PATH_TAIL_SEGMENTS:])


def activity_for_progress(progress: ProgressEvent) -> Optional[Activity]:
    """Map one progress event to the activity to show, if any."""
    if isinstance(progress, ToolUseProgress):
        return _activity_for_tool_use(progress)

    if isinstance(progress, OutputProgress):
        if len(progress.content) > OUTPUT_THOUGHT_MIN_LENGTH:
            return Activity.thought(progress.content)
        return None

    if isinstance(progress, ThinkingProgress):
        return Activity.thought(EXPLORING_LABEL, ephemeral=True)

    if isinstance(progress, ErrorProgress):
        logger.warning("Engine reported an error: %s", progress.content)
        return None

    assert_never(progress)


def _activity_for_tool_use(progress: ToolUseProgress) -> Activity:
    tool_input = progress.tool_input

    if progress.tool_name in SUBTASK_TOOLS:
        description = tool_input.get("description")
        subagent_type = tool_input.get("subagent_type")
        return Activity.action(
            description if isinstance(description, str) and description
            else DEFAULT_SUBTASK_LABEL,
            subagent_type if isinstance(subagent_type, str) else "",
        )

    label = FILE_EDIT_LABELS.get(progress.tool_name)
    if label is not None:
        file_path = tool_input.get("file_path") or tool_input.get("notebook_path")
        return Activity.action(
            label, shorten_path(file_path) if isinstance(file_path, str) else ""
        )

    return Activity.thought(EXPLORING_LABEL, ephemeral=True)


class ActivityPublisher:
    """Fire-and-forget delivery of activities for one session.

    Attributes:
        sink: Where activities are delivered.
        session_id: Session every activity is addressed to.
        failed_count: Number of deliveries that raised.
    """

    def __init__(self, sink: ActivitySink, session_id: str):
        self.sink = sink
        self.session_id = session_id
        self.failed_count = 0

    async def publish(self, activity: Activity) -> bool:
        """Deliver an activity, logging instead of raising on failure.

        Returns:
            True if the sink accepted the activity.
        """
        try:
            await deliver(self.sink, self.session_id, activity)
        except Exception:
            self.failed_count += 1
            logger.warning(
                "Failed to send %s activity",
                activity.kind.value,
                extra={"session_id": self.session_id},
                exc_info=True,
            )
            return False
        return True

    async def on_progress(self, progress: ProgressEvent) -> None:
        """Progress callback handed to the execution engine."""
        logger.debug(
            "Agent progress",
            extra={"session_id": self.session_id, "progress": type(progress).__name__},
        )
        activity = activity_for_progress(progress)
        if activity is not None:
            await self.publish(activity)
