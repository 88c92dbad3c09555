"""Property-based tests for activity mapping.

- Path shortening is the identity up to three segments and keeps exactly the
  last three segments otherwise.
- Transient activities never accumulate: any stream of read-only tool use
  leaves at most one transient entry and no persisted ones.
"""
from hypothesis import given, settings, strategies as st

from src.dispatch.activities.mapper import ActivityPublisher, shorten_path
from src.dispatch.activities.sink import InMemoryActivitySink
from src.dispatch.runner.models import (
    OutputProgress,
    ThinkingProgress,
    ToolUseProgress,
)
from tests.dispatch.fakes import run_async

segment = st.text(
    alphabet=st.characters(blacklist_characters="/", blacklist_categories=("Cs",)),
    max_size=12,
)
read_only_tools = st.sampled_from(["Read", "Grep", "Glob", "LS", "Bash", "WebSearch"])


@st.composite
def read_only_progress(draw):
    if draw(st.booleans()):
        return ToolUseProgress(
            tool_name=draw(read_only_tools),
            tool_input={"file_path": "/".join(draw(st.lists(segment, max_size=6)))},
        )
    return ThinkingProgress(content=draw(st.text(max_size=40)))


@st.composite
def mixed_progress(draw):
    kind = draw(st.sampled_from(["read", "edit", "output"]))
    if kind == "read":
        return draw(read_only_progress())
    if kind == "edit":
        return ToolUseProgress(
            tool_name="Edit", tool_input={"file_path": draw(segment) + ".py"}
        )
    return OutputProgress(content=draw(st.text(min_size=21, max_size=60)))


class TestShortenPathProperties:

    @given(segments=st.lists(segment, min_size=1, max_size=3))
    @settings(max_examples=100)
    def test_identity_up_to_three_segments(self, segments):
        path = "/".join(segments)
        assert shorten_path(path) == path

    @given(segments=st.lists(segment, min_size=4, max_size=10))
    @settings(max_examples=100)
    def test_keeps_exactly_last_three_segments(self, segments):
        shortened = shorten_path("/".join(segments))

        assert shortened.startswith(".../")
        assert shortened[len(".../"):].split("/") == segments[-3:]


class TestTransientActivityProperties:

    @given(events=st.lists(read_only_progress(), min_size=1, max_size=30))
    @settings(max_examples=100)
    def test_read_only_stream_leaves_single_transient(self, events):
        sink = InMemoryActivitySink()
        publisher = ActivityPublisher(sink, "session-1")

        async def feed():
            for event in events:
                await publisher.on_progress(event)
                trail = sink.trail("session-1")
                assert trail.entries == []
                assert len(trail.visible) <= 1

        run_async(feed())

        assert sink.trail("session-1").transient is not None

    @given(events=st.lists(mixed_progress(), max_size=30))
    @settings(max_examples=100)
    def test_persisted_entries_are_never_ephemeral(self, events):
        sink = InMemoryActivitySink()
        publisher = ActivityPublisher(sink, "session-1")

        async def feed():
            for event in events:
                await publisher.on_progress(event)

        run_async(feed())

        trail = sink.trail("session-1")
        assert all(not activity.ephemeral for activity in trail.entries)
        assert sum(1 for a in trail.visible if a.ephemeral) <= 1
