"""Conversions between real time and accelerated game time.

One real hour is one game week (168x). Every duration in the simulation is
expressed through these helpers so the acceleration factor lives in one place.
"""
from __future__ import annotations

from datetime import datetime, timedelta

TIME_ACCELERATION = 168
MS_PER_HOUR = 60 * 60 * 1000
GAME_HOURS_PER_DAY = 24
GAME_HOURS_PER_WEEK = 24 * 7


def real_ms_to_game_hours(real_ms: float) -> float:
    return (real_ms / MS_PER_HOUR) * TIME_ACCELERATION


def game_hours_to_real_ms(game_hours: float) -> float:
    return (game_hours / TIME_ACCELERATION) * MS_PER_HOUR


def real_hours_to_game_hours(real_hours: float) -> float:
    return real_hours * TIME_ACCELERATION


def game_hours_to_real_hours(game_hours: float) -> float:
    return game_hours / TIME_ACCELERATION


def elapsed_real_ms(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000.0


def elapsed_game_hours(start: datetime, end: datetime) -> float:
    """Game hours between two instants; negative spans count as zero."""

    return max(0.0, real_ms_to_game_hours(elapsed_real_ms(start, end)))


def game_hours_until(deadline: datetime, now: datetime) -> float:
    """Game hours remaining until ``deadline``, clamped at zero once it passes."""

    return max(0.0, real_ms_to_game_hours(elapsed_real_ms(now, deadline)))


def future_real_date(game_hours: float, now: datetime) -> datetime:
    """Real instant reached after ``game_hours`` of game time from ``now``."""

    return now + timedelta(milliseconds=game_hours_to_real_ms(game_hours))


__all__ = [
    "TIME_ACCELERATION",
    "GAME_HOURS_PER_DAY",
    "GAME_HOURS_PER_WEEK",
    "real_ms_to_game_hours",
    "game_hours_to_real_ms",
    "real_hours_to_game_hours",
    "game_hours_to_real_hours",
    "elapsed_real_ms",
    "elapsed_game_hours",
    "game_hours_until",
    "future_real_date",
]
