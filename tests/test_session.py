import os
from datetime import UTC, datetime, timedelta

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from strong40.errors import InvalidState, PersistenceFailure, SessionPersistenceError
from strong40.ledger import SetLedger
from strong40.session import (
    SessionOrchestrator,
    SystemClock,
    evaluate_session,
    run_session,
    session_duration_minutes,
)
from strong40.types import (
    Classification,
    ExerciseProgressionState,
    ExerciseSpec,
    LoggedSet,
    SessionInfo,
    SessionResult,
)

START = datetime(2026, 10, 19, 18, 0, tzinfo=UTC)


class FixedClock:
    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now


class MemoryStore:
    """In-memory persistence collaborator with injectable failures."""

    def __init__(self, states, fail_times=None, permanent=(), close_fails=False):
        self.states = dict(states)
        self.sets: dict[int, list[LoggedSet]] = {}
        self.saves: list[int] = []
        self.outcomes: dict[int, dict[int, SessionResult]] = {}
        self.closed: dict[int, tuple[datetime, int]] = {}
        self.fail_times = dict(fail_times or {})
        self.permanent = set(permanent)
        self.close_fails = close_fails

    async def get_state(self, exercise_id):
        return self.states[exercise_id]

    async def save_result(self, session_id, result):
        exercise_id = result.exercise_id
        if exercise_id in self.permanent:
            raise PersistenceFailure("disk full", exercise_id=exercise_id)
        if self.fail_times.get(exercise_id, 0) > 0:
            self.fail_times[exercise_id] -= 1
            raise PersistenceFailure("connection reset", exercise_id=exercise_id, transient=True)
        recorded = self.outcomes.setdefault(session_id, {})
        if exercise_id in recorded:
            return
        assert self.states[exercise_id] == result.previous_state
        self.states[exercise_id] = result.new_state
        recorded[exercise_id] = result
        self.saves.append(exercise_id)

    async def get_results(self, session_id):
        return list(self.outcomes.get(session_id, {}).values())

    async def append_set(self, session_id, logged):
        self.sets.setdefault(session_id, []).append(logged)

    async def get_sets(self, session_id):
        return list(self.sets.get(session_id, []))

    async def close_session(self, session_id, ended_at, duration_minutes):
        if self.close_fails:
            raise PersistenceFailure("server closed the connection")
        self.closed[session_id] = (ended_at, duration_minutes)


def specs():
    return [
        ExerciseSpec(1, "Squat", 3, 5, 5.0, 10.0),
        ExerciseSpec(2, "Bench Press", 3, 5, 5.0, 10.0),
        ExerciseSpec(3, "Deadlift", 1, 5, 5.0, 10.0),
        ExerciseSpec(4, "Barbell Row", 3, 5, 5.0, 10.0),
    ]


def prior_states():
    return {
        1: ExerciseProgressionState(100, 0),
        2: ExerciseProgressionState(80, 2),
        3: ExerciseProgressionState(150, 1),
        4: ExerciseProgressionState(60, 1),
    }


def ledger():
    led = SetLedger(session_id=1)
    for n in (1, 2, 3):
        led.record(LoggedSet(1, n, 5, 100))
        led.record(LoggedSet(2, n, 4 if n == 2 else 5, 80))
    led.record(LoggedSet(3, 1, 5, 150))
    return led


def session(minutes_ago: float = 0) -> SessionInfo:
    started_at = START - timedelta(minutes=minutes_ago)
    return SessionInfo(session_id=1, workout_id=1, started_at=started_at)


@pytest.mark.asyncio
async def test_run_session_commits_and_closes():
    store = MemoryStore(prior_states())
    orch = SessionOrchestrator(store, FixedClock(START), max_retries=3, retry_delay=0)
    sess = session(minutes_ago=47.9)

    report = await orch.run_session(sess, specs(), ledger(), prior_states())

    by_id = {r.exercise_id: r.classification for r in report.results}
    assert by_id == {
        1: Classification.ADVANCE,
        2: Classification.DELOAD,
        3: Classification.ADVANCE,
        4: Classification.SKIPPED,
    }
    assert store.states[1] == ExerciseProgressionState(105, 0)
    assert store.states[2] == ExerciseProgressionState(72, 0)
    assert store.states[3] == ExerciseProgressionState(160, 0)
    assert store.states[4] == ExerciseProgressionState(60, 1)
    assert store.saves == [1, 2, 3]
    assert report.committed == [1, 2, 3]
    assert report.duration_minutes == 47
    assert store.closed[1] == (START, 47)
    assert sess.is_closed


@pytest.mark.asyncio
async def test_module_level_run_session():
    store = MemoryStore(prior_states())
    sess = session(minutes_ago=30)

    report = await run_session(
        sess, specs(), ledger(), prior_states(), store, clock=FixedClock(START)
    )

    assert report.session_id == 1
    assert report.committed == [1, 2, 3]
    assert report.duration_minutes == 30
    assert store.states[1] == ExerciseProgressionState(105, 0)
    assert store.closed[1] == (START, 30)


@pytest.mark.asyncio
async def test_transient_failure_is_retried():
    store = MemoryStore(prior_states(), fail_times={1: 2})
    orch = SessionOrchestrator(store, FixedClock(START), max_retries=3, retry_delay=0)

    report = await orch.run_session(session(), specs(), ledger(), prior_states())

    assert 1 in report.committed
    assert store.states[1] == ExerciseProgressionState(105, 0)


@pytest.mark.asyncio
async def test_failures_reported_per_exercise_and_session_left_open():
    store = MemoryStore(prior_states(), fail_times={1: 5}, permanent={3})
    orch = SessionOrchestrator(store, FixedClock(START), max_retries=2, retry_delay=0)
    sess = session()

    with pytest.raises(SessionPersistenceError) as exc:
        await orch.run_session(sess, specs(), ledger(), prior_states())

    err = exc.value
    assert err.committed == [2]
    assert set(err.failures) == {1, 3}
    assert err.failures[1].transient
    assert not err.failures[3].transient
    assert [r.exercise_id for r in err.pending] == [1, 3]
    assert not sess.is_closed
    assert store.closed == {}
    # committed exercise has both fields updated, failed ones are untouched
    assert store.states[2] == ExerciseProgressionState(72, 0)
    assert store.states[1] == ExerciseProgressionState(100, 0)

    store.fail_times.clear()
    store.permanent.clear()
    committed, failures = await orch.commit_results(1, err.pending)
    assert committed == [1, 3]
    assert failures == {}


@pytest.mark.asyncio
async def test_rerun_after_partial_failure_applies_each_exercise_once():
    store = MemoryStore(prior_states(), permanent={3})
    orch = SessionOrchestrator(store, FixedClock(START), max_retries=1, retry_delay=0)
    sess = session(minutes_ago=20)

    with pytest.raises(SessionPersistenceError) as exc:
        await orch.run_session(sess, specs(), ledger(), prior_states())
    assert exc.value.committed == [1, 2]
    assert store.states[1] == ExerciseProgressionState(105, 0)

    # the caller re-reads state, which now includes the committed exercises
    store.permanent.clear()
    report = await orch.run_session(sess, specs(), ledger(), dict(store.states))

    assert store.saves == [1, 2, 3]
    assert store.states[1] == ExerciseProgressionState(105, 0)
    assert store.states[2] == ExerciseProgressionState(72, 0)
    assert store.states[3] == ExerciseProgressionState(160, 0)
    assert report.committed == [1, 2, 3]
    by_id = {r.exercise_id: r for r in report.results}
    assert by_id[1].previous_weight == 100
    assert by_id[1].new_weight == 105
    assert by_id[4].classification is Classification.SKIPPED
    assert sess.is_closed


@pytest.mark.asyncio
async def test_rerun_after_close_failure_only_closes():
    store = MemoryStore(prior_states(), close_fails=True)
    orch = SessionOrchestrator(store, FixedClock(START), max_retries=1, retry_delay=0)
    sess = session(minutes_ago=10)

    with pytest.raises(PersistenceFailure):
        await orch.run_session(sess, specs(), ledger(), prior_states())
    assert not sess.is_closed
    after_first = dict(store.states)

    store.close_fails = False
    report = await orch.run_session(sess, specs(), ledger(), dict(store.states))

    assert store.states == after_first
    assert store.saves == [1, 2, 3]
    assert report.committed == [1, 2, 3]
    assert store.closed[1] == (START, 10)


@pytest.mark.asyncio
async def test_closed_session_is_rejected():
    store = MemoryStore(prior_states())
    sess = session()
    sess.ended_at = START
    with pytest.raises(InvalidState):
        await SessionOrchestrator(store, FixedClock(START)).run_session(
            sess, specs(), ledger(), prior_states()
        )


@pytest.mark.parametrize(
    "kwargs",
    [{"max_retries": 0}, {"max_retries": -1}, {"retry_delay": -0.5}],
)
def test_orchestrator_rejects_bad_retry_budget(kwargs):
    with pytest.raises(ValueError):
        SessionOrchestrator(MemoryStore(prior_states()), **kwargs)


def test_system_clock_is_utc():
    now = SystemClock().now()
    assert now.tzinfo is not None
    assert now.utcoffset() == timedelta(0)


def test_missing_prior_state_is_invalid():
    states = prior_states()
    del states[2]
    with pytest.raises(InvalidState):
        evaluate_session(specs(), ledger(), states)


def test_applied_results_are_reused():
    recorded = SessionResult(1, Classification.ADVANCE, 100, 105, 0, 0, name="Squat", increment=5)
    results = evaluate_session(specs(), ledger(), {**prior_states(), 1: None}, {1: recorded})
    assert results[0] is recorded


def test_evaluation_is_order_independent():
    forward = evaluate_session(specs(), ledger(), prior_states())
    backward = evaluate_session(list(reversed(specs())), ledger(), prior_states())
    assert sorted(forward, key=lambda r: r.exercise_id) == sorted(
        backward, key=lambda r: r.exercise_id
    )


@pytest.mark.parametrize(
    ("elapsed", "expected"),
    [
        (timedelta(seconds=59), 0),
        (timedelta(minutes=1), 1),
        (timedelta(minutes=61, seconds=59), 61),
        (timedelta(seconds=-30), 0),
    ],
)
def test_session_duration_truncates(elapsed, expected):
    assert session_duration_minutes(START, START + elapsed) == expected
