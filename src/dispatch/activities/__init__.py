"""Session activities: models, sinks, and progress mapping."""

from src.dispatch.activities.mapper import (
    EXPLORING_LABEL,
    ActivityPublisher,
    activity_for_progress,
    shorten_path,
)
from src.dispatch.activities.models import Activity, ActivityKind
from src.dispatch.activities.sink import (
    ActivitySink,
    ActivityTrail,
    InMemoryActivitySink,
    LoggingActivitySink,
    deliver,
)

__all__ = [
    "Activity",
    "ActivityKind",
    "ActivityPublisher",
    "ActivitySink",
    "ActivityTrail",
    "EXPLORING_LABEL",
    "InMemoryActivitySink",
    "LoggingActivitySink",
    "activity_for_progress",
    "deliver",
    "shorten_path",
]
