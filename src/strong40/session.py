"""
Session orchestration: evaluate every exercise of a finished workout and
commit the new progression state.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Protocol

from .config import SETTINGS
from .errors import InvalidState, PersistenceFailure, SessionPersistenceError
from .ledger import SetLedger
from .progression import evaluate
from .retry import retry_on_transient_failure
from .types import (
    ExerciseProgressionState,
    ExerciseSpec,
    LoggedSet,
    SessionInfo,
    SessionReport,
    SessionResult,
)

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ProgressionStore(Protocol):
    """Persistence collaborator used by the orchestrator."""

    async def get_state(self, exercise_id: int) -> ExerciseProgressionState: ...

    async def save_result(self, session_id: int, result: SessionResult) -> None:
        """
        Write the result's new weight and failed attempts together with a
        record of the result against the session, or nothing at all.
        Saving a result already recorded for the session is a no-op.
        """
        ...

    async def get_results(self, session_id: int) -> list[SessionResult]: ...

    async def append_set(self, session_id: int, logged: LoggedSet) -> None: ...

    async def get_sets(self, session_id: int) -> list[LoggedSet]: ...

    async def close_session(
        self, session_id: int, ended_at: datetime, duration_minutes: int
    ) -> None: ...


class WorkoutStore(ProgressionStore, Protocol):
    """Everything the workout service needs on top of ``ProgressionStore``."""

    async def start_session(
        self, workout_id: int, started_at: datetime | None = None
    ) -> SessionInfo: ...

    async def get_session_info(self, session_id: int) -> SessionInfo | None: ...

    async def get_workout_exercises(self, workout_id: int) -> list[ExerciseSpec]: ...

    async def get_states(
        self, exercise_ids: Sequence[int]
    ) -> dict[int, ExerciseProgressionState]: ...


def session_duration_minutes(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes elapsed, truncated; never negative."""
    seconds = (ended_at - started_at).total_seconds()
    return max(0, int(seconds // 60))


def evaluate_session(
    workout_exercises: Sequence[ExerciseSpec],
    ledger: SetLedger,
    prior_states: Mapping[int, ExerciseProgressionState],
    applied: Mapping[int, SessionResult] | None = None,
) -> list[SessionResult]:
    """
    Evaluate each exercise against its own sets and prior state, in workout order.

    Exercises in ``applied`` were already committed for this session; their
    recorded result is reused instead of judging the sets a second time.
    """
    applied = applied or {}
    results: list[SessionResult] = []
    for spec in workout_exercises:
        if spec.exercise_id in applied:
            results.append(applied[spec.exercise_id])
            continue
        prior = prior_states.get(spec.exercise_id)
        if prior is None:
            raise InvalidState(f"No progression state for exercise {spec.exercise_id}")
        result, _ = evaluate(spec, prior, ledger.sets_for(spec.exercise_id))
        results.append(result)
    return results


class SessionOrchestrator:
    """Runs the evaluator over a session and persists its outcome."""

    def __init__(
        self,
        store: ProgressionStore,
        clock: Clock | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.max_retries = max_retries if max_retries is not None else SETTINGS.PERSIST_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else SETTINGS.PERSIST_RETRY_DELAY
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be non-negative, got {self.retry_delay}")

    async def _commit(self, session_id: int, result: SessionResult) -> None:
        save = retry_on_transient_failure(self.max_retries, self.retry_delay)(
            self.store.save_result
        )
        await save(session_id, result)

    async def commit_results(
        self, session_id: int, results: Sequence[SessionResult]
    ) -> tuple[list[int], dict[int, PersistenceFailure]]:
        """
        Issue one atomic state write per non-skipped result.

        Returns the committed exercise ids and the failures keyed by exercise id.
        """
        committed: list[int] = []
        failures: dict[int, PersistenceFailure] = {}
        for result in results:
            if not result.changes_state:
                continue
            try:
                await self._commit(session_id, result)
            except PersistenceFailure as e:
                if e.exercise_id is None:
                    e.exercise_id = result.exercise_id
                logger.error(
                    "Failed to commit %s for exercise %s (%s): %s",
                    result.classification.value,
                    result.exercise_id,
                    result.name,
                    e,
                )
                failures[result.exercise_id] = e
                continue
            committed.append(result.exercise_id)
            logger.info(
                "%s: %s %s -> %s (failed attempts %s -> %s)",
                result.name or result.exercise_id,
                result.classification.value,
                result.previous_weight,
                result.new_weight,
                result.previous_failed_attempts,
                result.new_failed_attempts,
            )
        return committed, failures

    async def close(self, session: SessionInfo) -> SessionInfo:
        """Stamp duration since session start and mark the session closed."""
        ended_at = self.clock.now()
        duration = session_duration_minutes(session.started_at, ended_at)
        close = retry_on_transient_failure(self.max_retries, self.retry_delay)(
            self.store.close_session
        )
        await close(session.session_id, ended_at, duration)
        session.ended_at = ended_at
        session.duration_minutes = duration
        logger.info("Session %s closed after %s min", session.session_id, duration)
        return session

    async def run_session(
        self,
        session: SessionInfo,
        workout_exercises: Sequence[ExerciseSpec],
        ledger: SetLedger,
        prior_states: Mapping[int, ExerciseProgressionState],
    ) -> SessionReport:
        """
        Evaluate, commit and close a session.

        Safe to call again after a failure: results already committed for
        the session are reused, so no exercise progresses twice. Raises
        ``SessionPersistenceError`` when any exercise could not be
        committed; the session then stays open.
        """
        if session.is_closed:
            raise InvalidState(f"Session {session.session_id} is already closed")
        applied = {r.exercise_id: r for r in await self.store.get_results(session.session_id)}
        if applied:
            logger.info(
                "Session %s resumes with %s exercise(s) already committed",
                session.session_id,
                len(applied),
            )
        results = evaluate_session(workout_exercises, ledger, prior_states, applied)
        pending = [r for r in results if r.exercise_id not in applied]
        newly_committed, failures = await self.commit_results(session.session_id, pending)
        done = set(applied) | set(newly_committed)
        committed = [r.exercise_id for r in results if r.exercise_id in done]
        if failures:
            raise SessionPersistenceError(session.session_id, results, committed, failures)
        await self.close(session)
        return SessionReport(
            session_id=session.session_id,
            results=results,
            committed=committed,
            ended_at=session.ended_at,
            duration_minutes=session.duration_minutes,
        )


async def run_session(
    session: SessionInfo,
    workout_exercises: Sequence[ExerciseSpec],
    ledger: SetLedger,
    prior_states: Mapping[int, ExerciseProgressionState],
    store: ProgressionStore,
    clock: Clock | None = None,
) -> SessionReport:
    """Convenience wrapper around ``SessionOrchestrator.run_session``."""
    return await SessionOrchestrator(store, clock).run_session(
        session, workout_exercises, ledger, prior_states
    )
