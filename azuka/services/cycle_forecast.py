"""Seven-day cycle and energy forecast."""
from __future__ import annotations

import logging
from datetime import date

from azuka.models.schemas import CycleState, DayPlan, ForecastDay, Phase
from azuka.models.workout_library import PHASE_READINESS
from azuka.services.phase_calculator import project_phases
from azuka.services.week_builder import PLAN_LENGTH_DAYS, workout_for


logger = logging.getLogger(__name__)

# Energy on a 0-100 scale for an average day of each phase.
PHASE_ENERGY: dict[Phase, int] = {
    Phase.MENSTRUAL: 40,
    Phase.FOLLICULAR: 75,
    Phase.OVULATORY: 85,
    Phase.LUTEAL: 60,
}

PHASE_SYMPTOM_RISK: dict[Phase, list[str]] = {
    Phase.MENSTRUAL: ["Cramps", "Fatigue"],
    Phase.FOLLICULAR: [],
    Phase.OVULATORY: ["Ligament laxity"],
    Phase.LUTEAL: ["Bloating", "Cravings"],
}

# Last days before menstruation.
LATE_LUTEAL_DAYS = 3
LATE_LUTEAL_ENERGY_DROP = 15
LATE_LUTEAL_SYMPTOMS = ["Low mood", "Poor sleep"]


def energy_for(cycle: CycleState) -> int:
    energy = PHASE_ENERGY[cycle.phase]
    if cycle.phase == Phase.LUTEAL and cycle.days_until_next_phase <= LATE_LUTEAL_DAYS:
        energy -= LATE_LUTEAL_ENERGY_DROP
    return energy


def symptom_risk_for(cycle: CycleState) -> list[str]:
    risks = list(PHASE_SYMPTOM_RISK[cycle.phase])
    if cycle.phase == Phase.LUTEAL and cycle.days_until_next_phase <= LATE_LUTEAL_DAYS:
        risks.extend(LATE_LUTEAL_SYMPTOMS)
    return risks


def build_forecast(
    last_period_start: date,
    cycle_length: int,
    start: date,
    planned: dict[date, DayPlan] | None = None,
    days: int = PLAN_LENGTH_DAYS,
) -> list[ForecastDay]:
    """
    Forecast ``days`` days from ``start``.

    The workout focus is the stored plan's workout when the day is planned,
    otherwise the template the week builder would pick for the phase.
    """
    planned = planned or {}
    forecast = []
    for day, cycle in project_phases(last_period_start, cycle_length, start, days):
        day_plan = planned.get(day)
        if day_plan is not None:
            focus = day_plan.workout.title
        else:
            focus = workout_for(PHASE_READINESS[cycle.phase], day).title
        forecast.append(
            ForecastDay(
                date=day,
                cycle_day=cycle.day,
                phase=cycle.phase,
                energy=energy_for(cycle),
                symptom_risk=symptom_risk_for(cycle),
                workout_focus=focus,
            )
        )
    logger.debug("Forecast %d days from %s (%d planned)", len(forecast), start, len(planned))
    return forecast
