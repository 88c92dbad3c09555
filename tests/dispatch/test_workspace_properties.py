"""Property-based tests for workspace path derivation and acquire.

Workspace paths are a pure, collision-free function of the work item id, and
acquiring the same work item any number of times yields one worktree.
"""
import re
import tempfile
from pathlib import Path

from hypothesis import assume, given, settings, strategies as st

from tests.dispatch.fakes import FakeWorkingCopyProvider, make_provisioner, run_async
from src.dispatch.workspace.worktree import sanitize_work_item_id

work_item_ids = st.text(min_size=1, max_size=60)

SAFE_TOKEN = re.compile(r"^[a-zA-Z0-9_-]+$")


class TestSanitizationProperties:

    @given(work_item_id=work_item_ids)
    @settings(max_examples=100)
    def test_token_is_filesystem_safe(self, work_item_id):
        token = sanitize_work_item_id(work_item_id)
        assert SAFE_TOKEN.match(token)

    @given(work_item_id=st.from_regex(r"[a-zA-Z0-9_-]+", fullmatch=True))
    @settings(max_examples=100)
    def test_safe_ids_map_to_themselves(self, work_item_id):
        assert sanitize_work_item_id(work_item_id) == work_item_id

    @given(work_item_id=work_item_ids)
    @settings(max_examples=100)
    def test_sanitization_is_idempotent(self, work_item_id):
        token = sanitize_work_item_id(work_item_id)
        assert sanitize_work_item_id(token) == token

    @given(first=work_item_ids, second=work_item_ids)
    @settings(max_examples=200)
    def test_distinct_ids_get_distinct_tokens(self, first, second):
        assume(first != second)
        assert sanitize_work_item_id(first) != sanitize_work_item_id(second)


class TestPathDeterminism:

    @given(work_item_id=work_item_ids)
    @settings(max_examples=100)
    def test_same_id_same_path(self, work_item_id):
        base = Path("/var/dispatch/worktrees")
        first = make_provisioner(base).path_for(work_item_id)
        second = make_provisioner(base).path_for(work_item_id)

        assert first == second
        assert first.parent == base
        assert first.name == sanitize_work_item_id(work_item_id)


class TestAcquireIdempotency:

    @given(
        work_item_id=work_item_ids,
        attempts=st.integers(min_value=2, max_value=5),
    )
    @settings(max_examples=50, deadline=None)
    def test_repeated_acquire_returns_same_path(self, work_item_id, attempts):
        with tempfile.TemporaryDirectory() as root:
            repo_path = Path(root) / "repo"
            repo_path.mkdir()
            provider = FakeWorkingCopyProvider()
            provisioner = make_provisioner(Path(root) / "worktrees", provider)

            paths = [
                run_async(provisioner.acquire(work_item_id, repo_path))
                for _ in range(attempts)
            ]

            assert len(set(paths)) == 1
            assert len(provider.create_calls) == 1
