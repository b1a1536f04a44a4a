"""Safety clamp for untrusted numeric output.

Every path that surfaces calorie, macro, duration or risk numbers goes through
this module. Corrections are silent (logged at DEBUG) and the whole module is
idempotent: normalizing an already normalized value returns it unchanged.
"""
from __future__ import annotations

import logging
import math

from azuka.models.schemas import (
    CalorieTarget,
    DayPlan,
    Decision,
    MacroSplit,
    MacroTargets,
    MealAnalysis,
    Workout,
)


logger = logging.getLogger(__name__)

KJ_PER_KCAL = 4.184
KJ_DETECTION_THRESHOLD = 5000

DAILY_CALORIE_MIN = 1200
DAILY_CALORIE_MAX = 4000
RANGE_CALORIE_MAX = 4200
MIN_CALORIE_SPREAD = 100

MACRO_FRACTION_MIN = 0.05
MACRO_FRACTION_MAX = 0.8
MACRO_SUM_MIN = 0.95
MACRO_SUM_MAX = 1.05

MAX_WORKOUT_MINUTES = 180
REST_WORKOUT_TYPES = {"rest", "off", "recovery day"}

KCAL_PER_GRAM = {"protein": 4, "carbs": 4, "fats": 9}


def clamp(value: float, low: float, high: float) -> float:
    """Clamp ``value`` into ``[low, high]``; NaN maps to ``low``."""
    if value is None or math.isnan(value):
        return low
    return max(low, min(value, high))


def clamp_unit(value: float | None) -> float:
    """Clamp a risk/need score into ``[0, 1]``."""
    if value is None:
        return 0.0
    clamped = clamp(float(value), 0.0, 1.0)
    if clamped != value:
        logger.debug("Clamped score %s -> %s", value, clamped)
    return clamped


def _from_kilojoules(value: float) -> float:
    if value > KJ_DETECTION_THRESHOLD:
        converted = value / KJ_PER_KCAL
        logger.debug("Calorie value %s looks like kJ; converted to %.0f kcal", value, converted)
        return converted
    return value


def normalize_calories(value: float) -> int:
    """Normalize a single-day calorie value (kJ correction, then clamp)."""
    kcal = _from_kilojoules(float(value))
    return int(round(clamp(kcal, DAILY_CALORIE_MIN, DAILY_CALORIE_MAX)))


def normalize_calorie_range(target: CalorieTarget) -> CalorieTarget:
    """
    Normalize a two-sided calorie range.

    ``min`` is clamped to the single-day bounds, ``max`` to the range upper
    bound, and ``max`` is pushed up to at least ``min + 100``.

    Example:
        >>> normalize_calorie_range(CalorieTarget(min=8000, max=8800))
        CalorieTarget(min=1912, max=2103)
    """
    low = int(round(clamp(_from_kilojoules(float(target.min)), DAILY_CALORIE_MIN, DAILY_CALORIE_MAX)))
    high = int(round(_from_kilojoules(float(target.max))))
    high = max(low + MIN_CALORIE_SPREAD, min(high, RANGE_CALORIE_MAX))
    return CalorieTarget(min=low, max=high)


def _fraction(value: float) -> float:
    if value > 1:
        value = value / 100
    return clamp(value, MACRO_FRACTION_MIN, MACRO_FRACTION_MAX)


def _rebalance(fractions: dict[str, float]) -> dict[str, float]:
    """Rescale fractions so they sum to 1 without leaving the per-macro bounds."""
    fixed: dict[str, float] = {}
    free = dict(fractions)
    while free:
        remaining = 1.0 - sum(fixed.values())
        scale = remaining / sum(free.values())
        scaled = {name: value * scale for name, value in free.items()}
        pinned = {
            name: clamp(value, MACRO_FRACTION_MIN, MACRO_FRACTION_MAX)
            for name, value in scaled.items()
            if not MACRO_FRACTION_MIN <= value <= MACRO_FRACTION_MAX
        }
        if not pinned:
            return {**fixed, **scaled}
        fixed.update(pinned)
        for name in pinned:
            free.pop(name)
    return fixed


def normalize_macro_split(split: MacroSplit) -> MacroSplit:
    """Fix percentage-vs-fraction confusion, clamp each macro and rebalance the sum."""
    fractions = {
        "protein_pct": _fraction(split.protein_pct),
        "carb_pct": _fraction(split.carb_pct),
        "fat_pct": _fraction(split.fat_pct),
    }
    if not MACRO_SUM_MIN <= sum(fractions.values()) <= MACRO_SUM_MAX:
        logger.debug("Macro split %s sums to %.3f; rebalancing", fractions, sum(fractions.values()))
        fractions = _rebalance(fractions)
    return MacroSplit(**{name: round(value, 3) for name, value in fractions.items()})


def macro_grams(calorie_target: CalorieTarget, split: MacroSplit) -> MacroTargets:
    """Convert a macro split into grams using the calorie range midpoint."""
    midpoint = (calorie_target.min + calorie_target.max) / 2
    return MacroTargets(
        protein=int(round(midpoint * split.protein_pct / KCAL_PER_GRAM["protein"])),
        carbs=int(round(midpoint * split.carb_pct / KCAL_PER_GRAM["carbs"])),
        fats=int(round(midpoint * split.fat_pct / KCAL_PER_GRAM["fats"])),
    )


def is_rest_workout(workout_type: str | None) -> bool:
    return (workout_type or "").strip().lower() in REST_WORKOUT_TYPES


def normalize_duration(minutes: float, workout_type: str | None = None) -> int:
    if is_rest_workout(workout_type):
        return 0
    return int(round(clamp(float(minutes), 0, MAX_WORKOUT_MINUTES)))


def normalize_workout(workout: Workout) -> Workout:
    duration = normalize_duration(workout.duration_min, workout.type)
    if duration == workout.duration_min:
        return workout
    return workout.model_copy(update={"duration_min": duration})


def normalize_day_plan(day: DayPlan) -> DayPlan:
    """Normalize calories, macros and workout duration of one day plan."""
    calorie_target = normalize_calorie_range(day.calorie_target)
    macro_split = normalize_macro_split(day.macro_split)
    return day.model_copy(
        update={
            "calorie_target": calorie_target,
            "macro_split": macro_split,
            "macro_targets": macro_grams(calorie_target, macro_split),
            "workout": normalize_workout(day.workout),
        }
    )


def normalize(decision: Decision) -> Decision:
    """Return ``decision`` with every numeric field inside its safe range."""
    metabolic = decision.metabolic.model_copy(
        update={
            "fuel_risk": clamp_unit(decision.metabolic.fuel_risk),
            "carb_need": clamp_unit(decision.metabolic.carb_need),
        }
    )
    psychology = decision.psychology.model_copy(
        update={"adherence_risk": clamp_unit(decision.psychology.adherence_risk)}
    )
    focus = decision.today_focus
    today_focus = focus.model_copy(
        update={
            "calories": normalize_calories(focus.calories),
            "duration_min": normalize_duration(focus.duration_min, focus.workout_type),
            "macro_split": normalize_macro_split(focus.macro_split),
        }
    )
    week_preview = None
    if decision.week_preview is not None:
        week_preview = [normalize_day_plan(day) for day in decision.week_preview]

    return decision.model_copy(
        update={
            "metabolic": metabolic,
            "psychology": psychology,
            "today_focus": today_focus,
            "week_preview": week_preview,
        }
    )


def normalize_meal(analysis: MealAnalysis) -> MealAnalysis:
    """Clamp a single meal estimate; meals have no daily minimum."""
    kcal = _from_kilojoules(float(analysis.calories))
    return analysis.model_copy(
        update={
            "calories": int(round(clamp(kcal, 0, DAILY_CALORIE_MAX))),
            "protein": max(0, analysis.protein),
            "carbs": max(0, analysis.carbs),
            "fat": max(0, analysis.fat),
            "cycle_match_score": clamp_unit(analysis.cycle_match_score),
        }
    )
