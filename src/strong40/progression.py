"""Progression logic for training loads."""

import logging
from collections.abc import Sequence
from decimal import ROUND_DOWN, Decimal

from .errors import InvalidSpec, InvalidState
from .types import Classification, ExerciseProgressionState, ExerciseSpec, LoggedSet, SessionResult

logger = logging.getLogger(__name__)

DELOAD_THRESHOLD = 3
DEADLIFT_INCREMENT = 10.0


def validate_spec(spec: ExerciseSpec) -> None:
    if spec.target_sets <= 0:
        raise InvalidSpec(f"{spec.name}: target_sets must be positive, got {spec.target_sets}")
    if spec.target_reps <= 0:
        raise InvalidSpec(f"{spec.name}: target_reps must be positive, got {spec.target_reps}")
    if spec.weight_increment < 0:
        raise InvalidSpec(
            f"{spec.name}: weight_increment must be non-negative, got {spec.weight_increment}"
        )
    if spec.deload_percentage is None:
        raise InvalidSpec(f"{spec.name}: deload_percentage is required")
    if not 0 <= spec.deload_percentage <= 100:
        raise InvalidSpec(
            f"{spec.name}: deload_percentage must be within 0-100, got {spec.deload_percentage}"
        )


def validate_state(state: ExerciseProgressionState) -> None:
    if state.current_weight < 0:
        raise InvalidState(f"current_weight must be non-negative, got {state.current_weight}")
    if state.failed_attempts < 0:
        raise InvalidState(f"failed_attempts must be non-negative, got {state.failed_attempts}")


def increment_for(spec: ExerciseSpec) -> float:
    """Deadlifts always jump by a fixed 10, whatever the configured increment."""
    if "deadlift" in spec.name.lower():
        return DEADLIFT_INCREMENT
    return spec.weight_increment


def is_complete(spec: ExerciseSpec, logged_sets: Sequence[LoggedSet]) -> bool:
    """
    All target sets were performed and every set hit the target reps.

    A single short set disqualifies the whole exercise.
    """
    if len(logged_sets) < spec.target_sets:
        return False
    return all(s.reps_completed >= spec.target_reps for s in logged_sets)


def deload_weight(current_weight: float, deload_percentage: float) -> float:
    return max(0.0, current_weight - current_weight * deload_percentage / 100)


def evaluate(
    spec: ExerciseSpec,
    prior_state: ExerciseProgressionState,
    logged_sets: Sequence[LoggedSet],
) -> tuple[SessionResult, ExerciseProgressionState]:
    """
    Decide the next working weight for one exercise.

    Returns the session outcome together with the state to persist. Pure:
    the same inputs always produce the same outputs.
    """
    validate_spec(spec)
    validate_state(prior_state)
    logger.debug(
        "Evaluating %s: weight=%s failed=%s sets=%s",
        spec.name,
        prior_state.current_weight,
        prior_state.failed_attempts,
        len(logged_sets),
    )

    weight = prior_state.current_weight
    increment = 0.0
    if not logged_sets:
        classification = Classification.SKIPPED
        new_state = prior_state
    elif is_complete(spec, logged_sets):
        classification = Classification.ADVANCE
        increment = increment_for(spec)
        new_state = ExerciseProgressionState(weight + increment, 0)
    else:
        attempted = prior_state.failed_attempts + 1
        if attempted >= DELOAD_THRESHOLD:
            classification = Classification.DELOAD
            assert spec.deload_percentage is not None
            new_state = ExerciseProgressionState(deload_weight(weight, spec.deload_percentage), 0)
        else:
            classification = Classification.REPEAT
            new_state = ExerciseProgressionState(weight, attempted)

    result = SessionResult(
        exercise_id=spec.exercise_id,
        classification=classification,
        previous_weight=weight,
        new_weight=new_state.current_weight,
        previous_failed_attempts=prior_state.failed_attempts,
        new_failed_attempts=new_state.failed_attempts,
        name=spec.name,
        increment=increment,
    )
    logger.debug(
        "%s: %s %s -> %s", spec.name, classification.value, weight, new_state.current_weight
    )
    return result, new_state


def format_weight(value: float) -> str:
    """Display a weight truncated (not rounded) to one decimal place."""
    truncated = Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_DOWN)
    return f"{truncated}"
