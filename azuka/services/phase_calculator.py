"""Menstrual cycle phase calculation from raw dates."""

from __future__ import annotations

from datetime import date, timedelta

from azuka.models.schemas import CycleState, Phase


MIN_CYCLE_LENGTH = 21

# Inclusive upper cycle-day bound for each phase; luteal runs to cycle end.
PHASE_THRESHOLDS: tuple[tuple[int, Phase], ...] = (
    (5, Phase.MENSTRUAL),
    (13, Phase.FOLLICULAR),
    (17, Phase.OVULATORY),
)

_PHASE_ORDER = (Phase.MENSTRUAL, Phase.FOLLICULAR, Phase.OVULATORY, Phase.LUTEAL)


def phase_for_day(cycle_day: int) -> Phase:
    """
    Map a 1-indexed cycle day to its phase.

    Thresholds are fixed: day <= 5 menstrual, <= 13 follicular,
    <= 17 ovulatory, otherwise luteal.

    Example:
        >>> phase_for_day(14)
        <Phase.OVULATORY: 'ovulatory'>
    """
    for upper, phase in PHASE_THRESHOLDS:
        if cycle_day <= upper:
            return phase
    return Phase.LUTEAL


def next_phase(phase: Phase) -> Phase:
    """Return the phase that follows ``phase`` (luteal wraps to menstrual)."""
    index = _PHASE_ORDER.index(phase)
    return _PHASE_ORDER[(index + 1) % len(_PHASE_ORDER)]


def _days_until_next_phase(cycle_day: int, cycle_length: int) -> int:
    for upper, _ in PHASE_THRESHOLDS:
        if cycle_day <= upper:
            return upper - cycle_day + 1
    return cycle_length - cycle_day + 1


def compute_phase(last_period_start: date, cycle_length: int, as_of: date) -> CycleState:
    """
    Compute the cycle position for ``as_of``.

    ``day_diff`` counts ``last_period_start`` as day 1 and wraps every
    ``cycle_length`` days, so the result is always in ``[1, cycle_length]``
    (dates before ``last_period_start`` wrap backwards the same way).

    Args:
        last_period_start: First day of the most recent period
        cycle_length: Cycle length in days; callers pass the configured
            default when the profile has none
        as_of: Date to evaluate

    Returns:
        CycleState with day, phase and rounded progress percentage

    Raises:
        ValueError: If ``cycle_length`` is shorter than 21 days

    Example:
        >>> state = compute_phase(date(2026, 1, 1), 28, date(2026, 1, 22))
        >>> state.day, state.phase.value
        (22, 'luteal')
    """
    if cycle_length < MIN_CYCLE_LENGTH:
        raise ValueError(
            f"cycle_length must be at least {MIN_CYCLE_LENGTH} days (got {cycle_length})"
        )

    day_diff = (as_of - last_period_start).days + 1
    cycle_day = ((day_diff - 1) % cycle_length) + 1
    phase = phase_for_day(cycle_day)

    return CycleState(
        day=cycle_day,
        length=cycle_length,
        phase=phase,
        progress_pct=round(cycle_day / cycle_length * 100),
        next_phase=next_phase(phase),
        days_until_next_phase=_days_until_next_phase(cycle_day, cycle_length),
    )


def project_phases(
    last_period_start: date,
    cycle_length: int,
    start: date,
    days: int = 7,
) -> list[tuple[date, CycleState]]:
    """Return ``(date, CycleState)`` pairs for ``days`` consecutive dates from ``start``."""
    return [
        (start + timedelta(days=offset), compute_phase(last_period_start, cycle_length, start + timedelta(days=offset)))
        for offset in range(days)
    ]
