"""
Services layer for strong40 business logic.
"""

from .workout_service import WorkoutService

__all__ = ["WorkoutService"]
