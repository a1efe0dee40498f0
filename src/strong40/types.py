"""
Domain records shared by the ledger, the evaluator and the orchestrator.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


class Classification(str, enum.Enum):
    """Outcome of evaluating one exercise for one session."""

    ADVANCE = "Advance"
    REPEAT = "Repeat"
    DELOAD = "Deload"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class ExerciseSpec:
    """Target prescription for an exercise within a workout."""

    exercise_id: int
    name: str
    target_sets: int
    target_reps: int
    weight_increment: float
    deload_percentage: float | None


@dataclass(frozen=True)
class ExerciseProgressionState:
    current_weight: float
    failed_attempts: int = 0


@dataclass(frozen=True)
class LoggedSet:
    """A single set performed during a session."""

    exercise_id: int
    set_number: int
    reps_completed: int
    weight_used: float
    rpe: float | None = None


@dataclass(frozen=True)
class SessionResult:
    """
    Per-exercise outcome of a session.

    ``increment`` is the weight added on an advance and 0 otherwise.
    """

    exercise_id: int
    classification: Classification
    previous_weight: float
    new_weight: float
    previous_failed_attempts: int
    new_failed_attempts: int
    name: str = ""
    increment: float = 0.0

    @property
    def changes_state(self) -> bool:
        return self.classification is not Classification.SKIPPED

    @property
    def previous_state(self) -> ExerciseProgressionState:
        return ExerciseProgressionState(self.previous_weight, self.previous_failed_attempts)

    @property
    def new_state(self) -> ExerciseProgressionState:
        return ExerciseProgressionState(self.new_weight, self.new_failed_attempts)


@dataclass
class SessionInfo:
    """A workout session as seen by the orchestrator."""

    session_id: int
    workout_id: int
    started_at: datetime
    ended_at: datetime | None = None
    duration_minutes: int | None = None

    @property
    def is_closed(self) -> bool:
        return self.ended_at is not None


@dataclass(frozen=True)
class SessionReport:
    """What a completed session produced and committed."""

    session_id: int
    results: list[SessionResult]
    committed: list[int] = field(default_factory=list)
    ended_at: datetime | None = None
    duration_minutes: int | None = None
