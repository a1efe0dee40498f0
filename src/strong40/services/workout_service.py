"""
Service for running workout sessions end to end.
"""

import logging

from ..config import SETTINGS
from ..errors import InvalidState
from ..ledger import SetLedger
from ..progression import DELOAD_THRESHOLD, format_weight
from ..session import Clock, SessionOrchestrator, WorkoutStore
from ..types import Classification, LoggedSet, SessionInfo, SessionReport, SessionResult


class WorkoutService:
    """Service for handling workout session operations."""

    def __init__(self, store: WorkoutStore, clock: Clock | None = None, unit: str | None = None):
        self.store = store
        self.orchestrator = SessionOrchestrator(store, clock)
        self.unit = unit or SETTINGS.WEIGHT_UNIT

    async def start_workout(self, workout_id: int) -> SessionInfo:
        """Open a new session for a workout."""
        session = await self.store.start_session(workout_id)
        logging.info("Started session %s for workout %s", session.session_id, workout_id)
        return session

    async def log_set(
        self,
        session_id: int,
        exercise_id: int,
        set_number: int,
        reps: int,
        weight: float,
        rpe: float | None = None,
    ) -> LoggedSet:
        """Persist a set; a repeated set number raises ``DuplicateSet``."""
        if set_number < 1:
            raise ValueError(f"set_number must be positive, got {set_number}")
        logged = LoggedSet(
            exercise_id=exercise_id,
            set_number=set_number,
            reps_completed=reps,
            weight_used=weight,
            rpe=rpe,
        )
        await self.store.append_set(session_id, logged)
        return logged

    async def log_next_set(
        self,
        session_id: int,
        exercise_id: int,
        reps: int,
        weight: float,
        rpe: float | None = None,
    ) -> LoggedSet:
        """Persist a set numbered after the last one logged for the exercise."""
        ledger = SetLedger.from_sets(await self.store.get_sets(session_id), session_id)
        set_number = ledger.next_set_number(exercise_id)
        return await self.log_set(session_id, exercise_id, set_number, reps, weight, rpe)

    async def complete_workout(self, session_id: int) -> SessionReport:
        """Evaluate every exercise of the session, commit new weights and close it."""
        session = await self.store.get_session_info(session_id)
        if session is None:
            raise InvalidState(f"Session {session_id} not found")
        exercises = await self.store.get_workout_exercises(session.workout_id)
        states = await self.store.get_states([spec.exercise_id for spec in exercises])
        ledger = SetLedger.from_sets(await self.store.get_sets(session_id), session_id)
        report = await self.orchestrator.run_session(session, exercises, ledger, states)
        logging.info(
            "Completed session %s: %s",
            session_id,
            ", ".join(
                f"{r.name or r.exercise_id}={r.classification.value}" for r in report.results
            ),
        )
        return report

    def render_result(self, result: SessionResult) -> str:
        name = result.name or f"Exercise {result.exercise_id}"
        unit = self.unit
        before = format_weight(result.previous_weight)
        after = format_weight(result.new_weight)
        if result.classification is Classification.ADVANCE:
            return f"{name}: +{format_weight(result.increment)} {unit} → {after} {unit}"
        if result.classification is Classification.REPEAT:
            return (
                f"{name}: Failed attempt {result.new_failed_attempts}/{DELOAD_THRESHOLD}. "
                f"Repeating {before} {unit}."
            )
        if result.classification is Classification.DELOAD:
            return (
                f"{name}: {before} → {after} {unit}. "
                f"Failed {DELOAD_THRESHOLD} times, deloaded to rebuild strength."
            )
        return f"{name}: skipped, staying at {before} {unit}."

    def render_summary(self, report: SessionReport) -> str:
        """Render a session report as a formatted message."""
        lines = [self.render_result(r) for r in report.results]
        header = "Workout complete"
        if report.duration_minutes is not None:
            header += f" ({report.duration_minutes} min)"
        return "\n".join([f"{header}. Weights adjusted for next session.", "", *lines]).strip()
