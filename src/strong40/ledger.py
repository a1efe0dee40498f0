"""
Session-scoped record of the sets logged per exercise.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from .errors import DuplicateSet
from .types import LoggedSet

logger = logging.getLogger(__name__)


class SetLedger:
    """
    Append-only collection of logged sets keyed by (exercise, set number).

    Inserts are serialized per exercise; different exercises never contend.
    """

    def __init__(self, session_id: int | None = None):
        self.session_id = session_id
        self._sets: dict[int, dict[int, LoggedSet]] = {}
        self._locks: dict[int, threading.Lock] = {}

    @classmethod
    def from_sets(cls, sets: Iterable[LoggedSet], session_id: int | None = None) -> SetLedger:
        ledger = cls(session_id)
        for logged in sets:
            ledger.record(logged)
        return ledger

    def _lock_for(self, exercise_id: int) -> threading.Lock:
        # dict.setdefault is atomic, so two writers always share one lock
        return self._locks.setdefault(exercise_id, threading.Lock())

    def record(self, logged: LoggedSet) -> None:
        """Append a set, refusing a set number already used for that exercise."""
        if isinstance(logged.set_number, bool) or not isinstance(logged.set_number, int):
            raise ValueError(f"set_number must be an integer, got {logged.set_number!r}")
        if logged.set_number < 1:
            raise ValueError(f"set_number must be positive, got {logged.set_number}")
        with self._lock_for(logged.exercise_id):
            by_number = self._sets.setdefault(logged.exercise_id, {})
            if logged.set_number in by_number:
                raise DuplicateSet(logged.exercise_id, logged.set_number, self.session_id)
            by_number[logged.set_number] = logged
        logger.debug(
            "Recorded set %s for exercise %s: %s reps @ %s",
            logged.set_number,
            logged.exercise_id,
            logged.reps_completed,
            logged.weight_used,
        )

    def sets_for(self, exercise_id: int) -> list[LoggedSet]:
        """Sets logged for an exercise, ordered by set number."""
        lock = self._locks.get(exercise_id)
        if lock is None:
            return []
        with lock:
            by_number = dict(self._sets.get(exercise_id, {}))
        return [by_number[n] for n in sorted(by_number)]

    def next_set_number(self, exercise_id: int) -> int:
        """First unused set number after the highest one logged."""
        lock = self._locks.get(exercise_id)
        if lock is None:
            return 1
        with lock:
            return max(self._sets.get(exercise_id, {}), default=0) + 1

    def exercise_ids(self) -> list[int]:
        return [eid for eid, sets in self._sets.items() if sets]

    def __len__(self) -> int:
        return sum(len(sets) for sets in self._sets.values())
