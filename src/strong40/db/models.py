"""
SQLAlchemy ORM models for strong40 database tables.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy import (
    Enum as SAEnum,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..types import Classification


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Workout(Base):
    """A workout template: an ordered list of exercises."""

    __tablename__ = "workouts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120))
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    exercises: Mapped[list[Exercise]] = relationship(
        "Exercise",
        back_populates="workout",
        cascade="all, delete-orphan",
        order_by="Exercise.sort_order",
    )

    def __repr__(self) -> str:
        return f"<Workout id={self.id} name={self.name}>"


class Exercise(Base):
    """
    Prescription and progression state of one exercise.

    Weight and failed attempts live on the same row so one UPDATE commits both.
    """

    __tablename__ = "exercises"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_id: Mapped[int] = mapped_column(ForeignKey("workouts.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    target_sets: Mapped[int] = mapped_column(Integer)
    target_reps: Mapped[int] = mapped_column(Integer)
    weight_increment: Mapped[float] = mapped_column(Float, default=5.0)
    deload_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_weight: Mapped[float] = mapped_column(Float, default=0.0)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    workout: Mapped[Workout] = relationship("Workout", back_populates="exercises")

    def __repr__(self) -> str:
        return (
            f"<Exercise id={self.id} name={self.name} "
            f"weight={self.current_weight} failed={self.failed_attempts}>"
        )


class WorkoutSession(Base):
    """One performance of a workout."""

    __tablename__ = "workout_sessions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_id: Mapped[int] = mapped_column(ForeignKey("workouts.id"), index=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    sets: Mapped[list[ExerciseSet]] = relationship(
        "ExerciseSet", back_populates="session", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<WorkoutSession id={self.id} workout_id={self.workout_id}>"


class ExerciseSet(Base):
    """A single set performed in a workout session."""

    __tablename__ = "exercise_sets"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "exercise_id", "set_number", name="uq_exercise_sets_set_number"
        ),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("workout_sessions.id"), index=True)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("exercises.id"), index=True)
    set_number: Mapped[int] = mapped_column(Integer)
    reps_completed: Mapped[int] = mapped_column(Integer)
    weight_used: Mapped[float] = mapped_column(Float)
    rpe: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    session: Mapped[WorkoutSession] = relationship("WorkoutSession", back_populates="sets")

    def __repr__(self) -> str:
        return (
            f"<ExerciseSet id={self.id} session_id={self.session_id} "
            f"exercise_id={self.exercise_id} set={self.set_number} reps={self.reps_completed}>"
        )


class SessionOutcome(Base):
    """
    Progression result applied to an exercise by a session.

    Written in the same transaction as the exercise's new state, so a
    session that is completed again knows what it already applied.
    """

    __tablename__ = "session_outcomes"
    __table_args__ = (
        UniqueConstraint("session_id", "exercise_id", name="uq_session_outcomes_exercise"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("workout_sessions.id"), index=True)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("exercises.id"), index=True)
    classification: Mapped[Classification] = mapped_column(
        SAEnum(
            Classification,
            name="classification",
            native_enum=False,
            create_constraint=True,
            validate_strings=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    previous_weight: Mapped[float] = mapped_column(Float)
    new_weight: Mapped[float] = mapped_column(Float)
    previous_failed_attempts: Mapped[int] = mapped_column(Integer)
    new_failed_attempts: Mapped[int] = mapped_column(Integer)
    increment: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    def __repr__(self) -> str:
        return (
            f"<SessionOutcome session_id={self.session_id} exercise_id={self.exercise_id} "
            f"classification={self.classification.value}>"
        )
