"""Unit tests for the session stage machine and the session registry."""
import pytest

from src.dispatch.session.models import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    SessionRun,
    SessionStage,
    is_terminal_stage,
    is_valid_transition,
)
from src.dispatch.session.registry import SessionRegistry
from src.dispatch.webhook.models import WorkItem


def make_run(session_id="session-1"):
    return SessionRun(
        session_id=session_id,
        work_item=WorkItem(id="issue-1", identifier="ENG-1", title="Fix it"),
    )


class TestStageMachine:

    def test_happy_path(self):
        run = make_run()
        for stage in (
            SessionStage.ACKNOWLEDGED,
            SessionStage.PROVISIONING,
            SessionStage.EXECUTING,
            SessionStage.COMPLETED,
        ):
            run.transition(stage)

        assert run.history == [
            SessionStage.IDLE,
            SessionStage.ACKNOWLEDGED,
            SessionStage.PROVISIONING,
            SessionStage.EXECUTING,
            SessionStage.COMPLETED,
        ]
        assert run.is_terminal
        assert run.finished_at is not None

    def test_transition_returns_previous_stage(self):
        run = make_run()
        assert run.transition(SessionStage.ACKNOWLEDGED) == SessionStage.IDLE

    @pytest.mark.parametrize(
        "stage",
        [
            SessionStage.IDLE,
            SessionStage.ACKNOWLEDGED,
            SessionStage.PROVISIONING,
            SessionStage.EXECUTING,
        ],
    )
    def test_every_active_stage_can_fail(self, stage):
        assert is_valid_transition(stage, SessionStage.FAILED)

    def test_stopped_only_reachable_from_executing(self):
        sources = [s for s, targets in VALID_TRANSITIONS.items() if SessionStage.STOPPED in targets]
        assert sources == [SessionStage.EXECUTING]

    def test_invalid_transition_raises(self):
        run = make_run()
        with pytest.raises(InvalidTransitionError) as exc_info:
            run.transition(SessionStage.STOPPED)
        assert exc_info.value.from_stage == SessionStage.IDLE
        assert run.stage == SessionStage.IDLE

    def test_terminal_stages(self):
        assert {s for s in SessionStage if is_terminal_stage(s)} == {
            SessionStage.COMPLETED,
            SessionStage.FAILED,
            SessionStage.STOPPED,
        }


class TestSessionRegistry:

    def test_track_registers_and_removes(self):
        registry = SessionRegistry()
        run = make_run()

        with registry.track(run):
            assert "session-1" in registry
            assert registry.get("session-1") is run
            assert len(registry) == 1

        assert "session-1" not in registry
        assert len(registry) == 0

    def test_track_removes_on_exception(self):
        registry = SessionRegistry()

        with pytest.raises(RuntimeError):
            with registry.track(make_run()):
                raise RuntimeError("boom")

        assert len(registry) == 0

    def test_removal_is_identity_checked(self):
        registry = SessionRegistry()
        older = make_run()
        newer = make_run()

        registry.register(older)
        replaced = registry.register(newer)

        assert replaced is older
        assert registry.remove(older) is False
        assert registry.get("session-1") is newer
        assert registry.remove(newer) is True

    def test_pop_missing_returns_none(self):
        assert SessionRegistry().pop("nope") is None

    def test_snapshot_is_a_copy(self):
        registry = SessionRegistry()
        registry.register(make_run("a"))
        registry.register(make_run("b"))

        snapshot = registry.snapshot()
        registry.pop("a")

        assert [run.session_id for run in snapshot] == ["a", "b"]
        assert len(registry) == 1
