"""Deterministic day-plan generation from cycle phase and biometrics."""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable

from pydantic import ValidationError

from azuka.models.schemas import (
    CalorieTarget,
    DayPlan,
    Intensity,
    MacroSplit,
    Phase,
    Readiness,
    UserProfile,
    Workout,
)
from azuka.models.workout_library import (
    LOWEST_TIER_TYPE,
    PHASE_READINESS,
    WORKOUT_LIBRARY,
    is_high_tier,
)
from azuka.services.nutrition_envelope import calorie_range_for, macro_split_for
from azuka.services.phase_calculator import project_phases
from azuka.services.safety_clamp import normalize_day_plan


logger = logging.getLogger(__name__)

PLAN_LENGTH_DAYS = 7

# Callable signature the schedule store uses to obtain fresh days.
BuildDays = Callable[[date, int], list[DayPlan]]

_READINESS_KEYWORDS: tuple[tuple[tuple[str, ...], Readiness], ...] = (
    (("push", "peak", "high"), Readiness.PUSH),
    (("maintain", "build", "medium", "moderate"), Readiness.MAINTAIN),
    (("gentle", "light", "flow"), Readiness.GENTLE),
    (("recover", "rest", "taper"), Readiness.RECOVER),
)

_PHASE_KEYWORDS: tuple[tuple[str, Phase], ...] = (
    ("mens", Phase.MENSTRUAL),
    ("period", Phase.MENSTRUAL),
    ("follic", Phase.FOLLICULAR),
    ("ovul", Phase.OVULATORY),
    ("lute", Phase.LUTEAL),
)

_INTENSITY_KEYWORDS: tuple[tuple[str, Intensity], ...] = (
    ("high", Intensity.HIGH),
    ("hard", Intensity.HIGH),
    ("mod", Intensity.MODERATE),
    ("med", Intensity.MODERATE),
    ("low", Intensity.LOW),
    ("easy", Intensity.LOW),
)


def normalize_readiness(value: Any, default: Readiness = Readiness.MAINTAIN) -> Readiness:
    """
    Map a free-form readiness label onto :class:`Readiness`.

    Example:
        >>> normalize_readiness("peak week")
        <Readiness.PUSH: 'Push'>
    """
    if isinstance(value, Readiness):
        return value
    text = str(value or "").strip().lower()
    for keywords, readiness in _READINESS_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return readiness
    return default


def normalize_phase(value: Any, default: Phase = Phase.FOLLICULAR) -> Phase:
    if isinstance(value, Phase):
        return value
    text = str(value or "").strip().lower()
    for keyword, phase in _PHASE_KEYWORDS:
        if keyword in text:
            return phase
    return default


def normalize_intensity(value: Any, default: Intensity = Intensity.MODERATE) -> Intensity:
    if isinstance(value, Intensity):
        return value
    text = str(value or "").strip().lower()
    for keyword, intensity in _INTENSITY_KEYWORDS:
        if keyword in text:
            return intensity
    return default


def workout_for(readiness: Readiness, day: date) -> Workout:
    """Pick the library template for ``readiness``, rotating by calendar day."""
    templates = WORKOUT_LIBRARY[readiness]
    template = templates[day.toordinal() % len(templates)]
    return Workout(**template)


def build_day(profile: UserProfile, day: date, phase: Phase, readiness: Readiness | None = None) -> DayPlan:
    readiness = readiness or PHASE_READINESS[phase]
    calorie_target = calorie_range_for(profile, phase)
    return normalize_day_plan(
        DayPlan(
            date=day,
            phase=phase,
            readiness=readiness,
            workout=workout_for(readiness, day),
            calorie_target=calorie_target,
            macro_split=macro_split_for(phase),
        )
    )


def build_week(
    profile: UserProfile,
    cycle_length: int,
    start: date,
    days: int = PLAN_LENGTH_DAYS,
) -> list[DayPlan]:
    """
    Build ``days`` consecutive day plans starting at ``start``.

    Readiness follows the phase defaults, workouts rotate through the library
    and calorie/macro targets come from the nutrition envelope. The result is
    already safety clamped and fully deterministic for a given profile.

    Args:
        profile: User biometrics
        cycle_length: Effective cycle length for the user
        start: First date of the run
        days: Number of days to build

    Returns:
        Day plans sorted by date, all in ``planned`` status
    """
    plans = [
        build_day(profile, day, state.phase)
        for day, state in project_phases(profile.last_period_start, cycle_length, start, days)
    ]
    logger.debug("Built %s day plans for %s from %s", len(plans), profile.user_id, start)
    return plans


def day_plan_from_suggestion(
    suggestion: dict[str, Any],
    fallback: DayPlan,
) -> DayPlan:
    """
    Merge a workout source's suggested day into a deterministic day plan.

    Unknown or missing fields keep the deterministic value; numbers are
    normalized afterwards by the caller's clamp pass.
    """
    update: dict[str, Any] = {
        "readiness": normalize_readiness(suggestion.get("readiness"), fallback.readiness),
    }
    if suggestion.get("phase"):
        update["phase"] = normalize_phase(suggestion["phase"], fallback.phase)

    try:
        raw_workout = suggestion.get("workout")
        if isinstance(raw_workout, dict) and raw_workout:
            current = fallback.workout
            update["workout"] = Workout(
                title=str(raw_workout.get("title") or current.title),
                type=str(raw_workout.get("type") or current.type),
                duration_min=raw_workout.get("duration_min") or 0,
                intensity=normalize_intensity(raw_workout.get("intensity"), current.intensity),
            )
        calorie_target = suggestion.get("calorie_target")
        if isinstance(calorie_target, dict) and {"min", "max"} <= calorie_target.keys():
            update["calorie_target"] = CalorieTarget.model_validate(calorie_target)
        macro_split = suggestion.get("macro_split")
        if isinstance(macro_split, dict) and {"protein_pct", "carb_pct", "fat_pct"} <= macro_split.keys():
            update["macro_split"] = MacroSplit.model_validate(macro_split)
    except ValidationError as exc:
        logger.debug("Ignoring unusable suggestion fields for %s: %s", fallback.date, exc)
    return fallback.model_copy(update=update)


def downgrade_day_plan(day: DayPlan) -> DayPlan:
    """
    Take a day down to low intensity for a strained nervous system.

    High-tier sessions become mobility work; readiness drops to at most
    ``Gentle``. Calorie and macro targets are left alone.
    """
    workout = day.workout
    if is_high_tier(workout.type):
        workout = Workout(
            title="Mobility & Breathwork",
            type=LOWEST_TIER_TYPE,
            duration_min=workout.duration_min,
            intensity=Intensity.LOW,
        )
    else:
        workout = workout.model_copy(update={"intensity": Intensity.LOW})

    readiness = day.readiness
    if readiness in (Readiness.PUSH, Readiness.MAINTAIN):
        readiness = Readiness.GENTLE
    return day.model_copy(update={"workout": workout, "readiness": readiness})
