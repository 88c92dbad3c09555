"""In-memory registry of executing session runs.

The registry maps a session id to the SessionRun currently executing for
it. A session id is present exactly while a run for it is executing: runs
enter through track() and leave when the with-block exits, whichever way it
exits.

Removal is identity-checked. When a newer run for the same session id has
replaced an older one, the older run's exit leaves the newer entry in place.

The registry is owned by one SessionCoordinator and is only touched from
the event loop thread, so it needs no lock.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from src.dispatch.session.models import SessionRun

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owned map of session id → executing SessionRun."""

    def __init__(self) -> None:
        self._runs: Dict[str, SessionRun] = {}

    @contextmanager
    def track(self, run: SessionRun) -> Iterator[SessionRun]:
        """Register a run for the duration of the with-block.

        Example:
            >>> with registry.track(run):
            ...     outcome = await runner.run(message, context)
        """
        self.register(run)
        try:
            yield run
        finally:
            self.remove(run)

    def register(self, run: SessionRun) -> Optional[SessionRun]:
        """Insert a run, returning the run it replaced, if any."""
        previous = self._runs.get(run.session_id)
        self._runs[run.session_id] = run
        logger.debug(
            "Registered session run",
            extra={"session_id": run.session_id, "active_sessions": len(self._runs)},
        )
        return previous

    def remove(self, run: SessionRun) -> bool:
        """Remove a run if it is still the registered one for its session.

        Returns:
            True if the entry was removed.
        """
        if self._runs.get(run.session_id) is not run:
            return False
        del self._runs[run.session_id]
        logger.debug(
            "Removed session run",
            extra={"session_id": run.session_id, "active_sessions": len(self._runs)},
        )
        return True

    def get(self, session_id: str) -> Optional[SessionRun]:
        return self._runs.get(session_id)

    def pop(self, session_id: str) -> Optional[SessionRun]:
        """Remove and return the run registered for a session id."""
        return self._runs.pop(session_id, None)

    def snapshot(self) -> List[SessionRun]:
        """Registered runs at this moment, in registration order."""
        return list(self._runs.values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)
