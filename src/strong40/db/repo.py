"""
Async SQLAlchemy repository for strong40 database operations.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from importlib import resources
from pathlib import Path
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import SETTINGS, _norm_db_url
from ..errors import DuplicateSet, PersistenceFailure
from ..retry import is_connection_error, retry_on_transient_failure
from ..types import (
    ExerciseProgressionState,
    ExerciseSpec,
    LoggedSet,
    SessionInfo,
    SessionResult,
)
from .models import Base, Exercise, ExerciseSet, SessionOutcome, Workout, WorkoutSession

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session: async_sessionmaker[AsyncSession] | None = None


def _prepare_url(url: str) -> tuple[str, dict]:
    """Return sanitized DB URL and connect args.

    Extracts common SSL query parameters and passes them as ``connect_args``.
    ``ssl=false`` becomes ``sslmode=disable``.
    """

    url_obj = make_url(url)
    query = dict(url_obj.query)
    connect_args: dict[str, object] = {}

    # SSL normalization
    sslmode = query.pop("sslmode", None)
    ssl_val = query.pop("ssl", None)
    if ssl_val is not None:
        sslmode = "disable" if str(ssl_val).lower() in {"0", "false", "off", "no"} else "require"
    if sslmode:
        driver = url_obj.drivername or ""
        if driver.startswith("postgresql+asyncpg"):
            connect_args["ssl"] = sslmode
        else:
            connect_args["sslmode"] = sslmode

    # PgBouncer-friendly settings
    if (url_obj.drivername or "").startswith("postgresql+asyncpg"):
        connect_args.setdefault("statement_cache_size", 0)

    url_obj = url_obj.set(query=query)
    return url_obj.render_as_string(hide_password=False), connect_args


async def _run_migrations(conn: Any) -> None:
    """Execute .sql migration files sequentially.

    Looks for a ``migrations`` directory bundled with the package first,
    falling back to the repository root when running from source.
    """

    paths: list[Any] = []

    try:
        pkg_migrations = resources.files("strong40").joinpath("migrations")
        if pkg_migrations.is_dir():
            paths.extend(p for p in pkg_migrations.iterdir() if p.name.endswith(".sql"))
    except (ModuleNotFoundError, OSError):
        pass

    if not paths:
        fs_dir = Path(__file__).resolve().parents[3] / "migrations"
        if fs_dir.is_dir():
            paths = [p for p in fs_dir.iterdir() if p.suffix == ".sql"]

    if not paths:
        await conn.run_sync(Base.metadata.create_all)
        return

    for path in sorted(paths, key=lambda p: p.name):
        logger.info("Applying migration %s", path.name)
        sql = path.read_text(encoding="utf-8")
        for stmt in sql.split(";"):
            stmt = stmt.strip()
            if stmt:
                await conn.exec_driver_sql(stmt)


async def init_db(url: str | None = None) -> None:
    """
    Initialize the async database engine and sessionmaker, and create tables if needed.
    """
    global _engine, _session
    if _engine:
        return
    db_url = _norm_db_url(url) or SETTINGS.DATABASE_URL
    if not db_url:
        logger.error("DATABASE_URL is required for DB initialization.")
        raise RuntimeError("DATABASE_URL is required")
    db_url, connect_args = _prepare_url(db_url)
    is_sqlite = make_url(db_url).drivername.startswith("sqlite")
    engine_kwargs: dict[str, Any] = {"echo": False, "connect_args": connect_args}
    if not is_sqlite:
        engine_kwargs.update(
            pool_pre_ping=True,
            pool_recycle=3600,  # Recycle connections every hour
            pool_timeout=30,  # Wait up to 30 seconds for available connection
            max_overflow=10,  # Allow up to 10 additional connections beyond pool_size
            pool_size=20,  # Maintain up to 20 connections in the pool
        )
    _engine = create_async_engine(db_url, **engine_kwargs)
    _session = async_sessionmaker(_engine, expire_on_commit=False)
    async with _engine.begin() as conn:
        # SQLite gets tables straight from the models; the SQL migrations target PostgreSQL
        if is_sqlite:
            await conn.run_sync(Base.metadata.create_all)
        else:
            await _run_migrations(conn)


def get_session() -> async_sessionmaker[AsyncSession]:
    """
    Get the async sessionmaker. Raises if DB is not initialized.
    """
    if not _session:
        raise RuntimeError("DB not initialized; call init_db() first")
    return _session


async def close_db() -> None:
    """Dispose of the database engine and reset session state."""

    global _engine, _session
    if _engine:
        await _engine.dispose()
    _engine = None
    _session = None


@contextmanager
def _storage_errors(action: str, exercise_id: int | None = None) -> Iterator[None]:
    """Translate driver errors into ``PersistenceFailure``."""
    try:
        yield
    except (SQLAlchemyError, OSError) as e:
        transient = is_connection_error(e)
        raise PersistenceFailure(
            f"{action} failed: {e}", exercise_id=exercise_id, transient=transient, cause=e
        ) from e


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _to_spec(row: Exercise) -> ExerciseSpec:
    return ExerciseSpec(
        exercise_id=row.id,
        name=row.name,
        target_sets=row.target_sets,
        target_reps=row.target_reps,
        weight_increment=row.weight_increment,
        deload_percentage=row.deload_percentage,
    )


def _to_session_info(row: WorkoutSession) -> SessionInfo:
    return SessionInfo(
        session_id=row.id,
        workout_id=row.workout_id,
        started_at=_aware(row.started_at),
        ended_at=_aware(row.ended_at) if row.ended_at else None,
        duration_minutes=row.duration_minutes,
    )


class SqlProgressionStore:
    """``WorkoutStore`` backed by the SQLAlchemy models above."""

    async def create_workout(
        self, name: str, exercises: Sequence[dict[str, Any]], description: str | None = None
    ) -> int:
        """
        Create a workout and its exercises; returns the workout id.

        Each exercise dict takes the ``Exercise`` column names; list order
        becomes ``sort_order``.
        """
        sessmaker = get_session()
        with _storage_errors("create_workout"):
            async with sessmaker() as s:
                workout = Workout(name=name, description=description)
                s.add(workout)
                await s.flush()
                for order, data in enumerate(exercises):
                    s.add(Exercise(workout_id=workout.id, sort_order=order, **data))
                await s.commit()
                return workout.id

    @retry_on_transient_failure(max_retries=3, delay=0.1)
    async def get_workout_exercises(self, workout_id: int) -> list[ExerciseSpec]:
        sessmaker = get_session()
        with _storage_errors("get_workout_exercises"):
            async with sessmaker() as s:
                res = await s.execute(
                    select(Exercise)
                    .where(Exercise.workout_id == workout_id)
                    .order_by(Exercise.sort_order, Exercise.id)
                )
                return [_to_spec(row) for row in res.scalars().all()]

    @retry_on_transient_failure(max_retries=3, delay=0.1)
    async def get_state(self, exercise_id: int) -> ExerciseProgressionState:
        sessmaker = get_session()
        with _storage_errors("get_state", exercise_id):
            async with sessmaker() as s:
                res = await s.execute(
                    select(Exercise.current_weight, Exercise.failed_attempts).where(
                        Exercise.id == exercise_id
                    )
                )
                row = res.first()
        if row is None:
            raise PersistenceFailure(f"Exercise {exercise_id} not found", exercise_id=exercise_id)
        return ExerciseProgressionState(current_weight=row[0], failed_attempts=row[1])

    @retry_on_transient_failure(max_retries=3, delay=0.1)
    async def get_states(self, exercise_ids: Sequence[int]) -> dict[int, ExerciseProgressionState]:
        sessmaker = get_session()
        with _storage_errors("get_states"):
            async with sessmaker() as s:
                res = await s.execute(
                    select(Exercise.id, Exercise.current_weight, Exercise.failed_attempts).where(
                        Exercise.id.in_(list(exercise_ids))
                    )
                )
                return {
                    eid: ExerciseProgressionState(current_weight=w, failed_attempts=f)
                    for eid, w, f in res.all()
                }

    async def save_result(self, session_id: int, result: SessionResult) -> None:
        """
        Commit the new weight and failed attempts in one UPDATE, guarded by
        the previous state, and record the outcome against the session in
        the same transaction. Saving an outcome the session already recorded
        is a no-op.
        """
        exercise_id = result.exercise_id
        previous, new = result.previous_state, result.new_state
        sessmaker = get_session()
        with _storage_errors("save_result", exercise_id):
            async with sessmaker() as s:
                recorded = (
                    await s.execute(
                        select(SessionOutcome.id).where(
                            SessionOutcome.session_id == session_id,
                            SessionOutcome.exercise_id == exercise_id,
                        )
                    )
                ).first()
                if recorded is not None:
                    logger.info(
                        "Exercise %s already committed for session %s", exercise_id, session_id
                    )
                    return
                res = await s.execute(
                    update(Exercise)
                    .where(
                        Exercise.id == exercise_id,
                        Exercise.current_weight == previous.current_weight,
                        Exercise.failed_attempts == previous.failed_attempts,
                    )
                    .values(
                        current_weight=new.current_weight,
                        failed_attempts=new.failed_attempts,
                        updated_at=datetime.now(UTC),
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    s.add(
                        SessionOutcome(
                            session_id=session_id,
                            exercise_id=exercise_id,
                            classification=result.classification,
                            previous_weight=result.previous_weight,
                            new_weight=result.new_weight,
                            previous_failed_attempts=result.previous_failed_attempts,
                            new_failed_attempts=result.new_failed_attempts,
                            increment=result.increment,
                        )
                    )
                    await s.commit()
                    return
                await s.rollback()
                current = (
                    await s.execute(
                        select(Exercise.current_weight, Exercise.failed_attempts).where(
                            Exercise.id == exercise_id
                        )
                    )
                ).first()
        if current is None:
            raise PersistenceFailure(f"Exercise {exercise_id} not found", exercise_id=exercise_id)
        raise PersistenceFailure(
            f"Exercise {exercise_id} changed concurrently: expected "
            f"{previous.current_weight}/{previous.failed_attempts}, "
            f"found {current[0]}/{current[1]}",
            exercise_id=exercise_id,
        )

    @retry_on_transient_failure(max_retries=3, delay=0.1)
    async def get_results(self, session_id: int) -> list[SessionResult]:
        """Outcomes already committed for a session, in commit order."""
        sessmaker = get_session()
        with _storage_errors("get_results"):
            async with sessmaker() as s:
                res = await s.execute(
                    select(SessionOutcome, Exercise.name)
                    .join(Exercise, Exercise.id == SessionOutcome.exercise_id)
                    .where(SessionOutcome.session_id == session_id)
                    .order_by(SessionOutcome.id)
                )
                return [
                    SessionResult(
                        exercise_id=row.exercise_id,
                        classification=row.classification,
                        previous_weight=row.previous_weight,
                        new_weight=row.new_weight,
                        previous_failed_attempts=row.previous_failed_attempts,
                        new_failed_attempts=row.new_failed_attempts,
                        name=name,
                        increment=row.increment,
                    )
                    for row, name in res.all()
                ]

    async def start_session(
        self, workout_id: int, started_at: datetime | None = None
    ) -> SessionInfo:
        """
        Start a new workout session.
        """
        sessmaker = get_session()
        with _storage_errors("start_session"):
            async with sessmaker() as s:
                ws = WorkoutSession(
                    workout_id=workout_id, started_at=started_at or datetime.now(UTC)
                )
                s.add(ws)
                await s.commit()
                await s.refresh(ws)
                return _to_session_info(ws)

    @retry_on_transient_failure(max_retries=3, delay=0.1)
    async def get_session_info(self, session_id: int) -> SessionInfo | None:
        sessmaker = get_session()
        with _storage_errors("get_session_info"):
            async with sessmaker() as s:
                ws = await s.get(WorkoutSession, session_id)
                return _to_session_info(ws) if ws else None

    async def append_set(self, session_id: int, logged: LoggedSet) -> None:
        """
        Append a set to a workout session.
        """
        sessmaker = get_session()
        try:
            with _storage_errors("append_set", logged.exercise_id):
                async with sessmaker() as s:
                    s.add(
                        ExerciseSet(
                            session_id=session_id,
                            exercise_id=logged.exercise_id,
                            set_number=logged.set_number,
                            reps_completed=logged.reps_completed,
                            weight_used=logged.weight_used,
                            rpe=logged.rpe,
                        )
                    )
                    await s.commit()
        except PersistenceFailure as e:
            if isinstance(e.cause, IntegrityError) and "unique" in str(e.cause).lower():
                raise DuplicateSet(logged.exercise_id, logged.set_number, session_id) from e
            raise

    @retry_on_transient_failure(max_retries=3, delay=0.1)
    async def get_sets(self, session_id: int) -> list[LoggedSet]:
        sessmaker = get_session()
        with _storage_errors("get_sets"):
            async with sessmaker() as s:
                res = await s.execute(
                    select(ExerciseSet)
                    .where(ExerciseSet.session_id == session_id)
                    .order_by(ExerciseSet.exercise_id, ExerciseSet.set_number)
                )
                return [
                    LoggedSet(
                        exercise_id=row.exercise_id,
                        set_number=row.set_number,
                        reps_completed=row.reps_completed,
                        weight_used=row.weight_used,
                        rpe=row.rpe,
                    )
                    for row in res.scalars().all()
                ]

    async def close_session(
        self, session_id: int, ended_at: datetime, duration_minutes: int
    ) -> None:
        sessmaker = get_session()
        with _storage_errors("close_session"):
            async with sessmaker() as s:
                res = await s.execute(
                    update(WorkoutSession)
                    .where(WorkoutSession.id == session_id, WorkoutSession.ended_at.is_(None))
                    .values(ended_at=ended_at, duration_minutes=duration_minutes)
                    .execution_options(synchronize_session=False)
                )
                await s.commit()
                if res.rowcount == 1:
                    return
                ws = await s.get(WorkoutSession, session_id)
        if ws is None:
            raise PersistenceFailure(f"Session {session_id} not found")
        logger.warning("Session %s was already closed", session_id)
