"""
Error taxonomy for progression evaluation and session persistence.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import SessionResult


class ProgressionError(Exception):
    """Base class for all strong40 errors."""


class InvalidSpec(ProgressionError):
    """An exercise prescription cannot be evaluated."""


class InvalidState(ProgressionError):
    """Persisted progression state is corrupt or missing."""


class DuplicateSet(ProgressionError):
    """A set number was logged twice for the same exercise in one session."""

    def __init__(self, exercise_id: int, set_number: int, session_id: int | None = None):
        self.exercise_id = exercise_id
        self.set_number = set_number
        self.session_id = session_id
        where = f" in session {session_id}" if session_id is not None else ""
        super().__init__(f"Set {set_number} already logged for exercise {exercise_id}{where}")


class PersistenceFailure(ProgressionError):
    """
    The storage collaborator failed to read or write.

    ``transient`` marks failures worth retrying (lost connections, timeouts).
    """

    def __init__(
        self,
        message: str,
        exercise_id: int | None = None,
        transient: bool = False,
        cause: BaseException | None = None,
    ):
        self.exercise_id = exercise_id
        self.transient = transient
        self.cause = cause
        super().__init__(message)


class SessionPersistenceError(ProgressionError):
    """
    Some exercises of a session could not be committed.

    Carries which exercises were committed and, per exercise, why the
    others were not. The session is left open.
    """

    def __init__(
        self,
        session_id: int,
        results: list[SessionResult],
        committed: list[int],
        failures: dict[int, PersistenceFailure],
    ):
        self.session_id = session_id
        self.results = results
        self.committed = committed
        self.failures = failures
        failed = ", ".join(f"{eid}: {err}" for eid, err in failures.items())
        super().__init__(
            f"Session {session_id}: committed {len(committed)} exercise(s), "
            f"failed {len(failures)} ({failed})"
        )

    @property
    def pending(self) -> list[SessionResult]:
        """Results whose commit still has to be issued."""
        return [r for r in self.results if r.exercise_id in self.failures]
