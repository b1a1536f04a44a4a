"""Tests for cycle phase calculation."""
from __future__ import annotations

from datetime import date, timedelta

import pytest

from azuka.models.schemas import Phase
from azuka.services.phase_calculator import compute_phase, next_phase, phase_for_day, project_phases


PERIOD_START = date(2026, 1, 1)


def _on_cycle_day(cycle_day: int) -> date:
    return PERIOD_START + timedelta(days=cycle_day - 1)


@pytest.mark.parametrize(
    "cycle_day, expected",
    [
        (1, Phase.MENSTRUAL),
        (5, Phase.MENSTRUAL),
        (6, Phase.FOLLICULAR),
        (13, Phase.FOLLICULAR),
        (14, Phase.OVULATORY),
        (17, Phase.OVULATORY),
        (18, Phase.LUTEAL),
        (28, Phase.LUTEAL),
    ],
)
def test_phase_boundaries(cycle_day: int, expected: Phase):
    state = compute_phase(PERIOD_START, 28, _on_cycle_day(cycle_day))

    assert state.day == cycle_day
    assert state.phase is expected
    assert phase_for_day(cycle_day) is expected


def test_day_twenty_two_is_luteal():
    state = compute_phase(PERIOD_START, 28, date(2026, 1, 22))

    assert state.day == 22
    assert state.phase is Phase.LUTEAL
    assert state.progress_pct == 79
    assert state.next_phase is Phase.MENSTRUAL
    assert state.days_until_next_phase == 7


def test_cycle_wraps_after_length():
    state = compute_phase(PERIOD_START, 28, _on_cycle_day(29))

    assert state.day == 1
    assert state.phase is Phase.MENSTRUAL


def test_dates_before_period_start_wrap_backwards():
    state = compute_phase(PERIOD_START, 28, PERIOD_START - timedelta(days=1))

    assert state.day == 28
    assert state.phase is Phase.LUTEAL


@pytest.mark.parametrize("cycle_length", [21, 28, 35])
def test_cycle_day_stays_in_range(cycle_length: int):
    for offset in range(-40, 80):
        state = compute_phase(PERIOD_START, cycle_length, PERIOD_START + timedelta(days=offset))
        assert 1 <= state.day <= cycle_length
        assert 0 <= state.progress_pct <= 100
        assert state.days_until_next_phase >= 1


def test_short_cycle_length_rejected():
    with pytest.raises(ValueError):
        compute_phase(PERIOD_START, 20, PERIOD_START)


def test_ovulatory_countdown():
    state = compute_phase(PERIOD_START, 28, _on_cycle_day(14))

    assert state.next_phase is Phase.LUTEAL
    assert state.days_until_next_phase == 4


def test_next_phase_wraps_to_menstrual():
    assert next_phase(Phase.LUTEAL) is Phase.MENSTRUAL
    assert next_phase(Phase.MENSTRUAL) is Phase.FOLLICULAR


def test_project_phases_covers_consecutive_days():
    projection = project_phases(PERIOD_START, 28, _on_cycle_day(16), days=4)

    assert [day for day, _ in projection] == [_on_cycle_day(n) for n in range(16, 20)]
    assert [state.phase for _, state in projection] == [
        Phase.OVULATORY,
        Phase.OVULATORY,
        Phase.LUTEAL,
        Phase.LUTEAL,
    ]
