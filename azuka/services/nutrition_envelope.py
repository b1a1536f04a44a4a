"""Energy and macro targets derived from profile biometrics and cycle phase."""

from __future__ import annotations

import logging
from datetime import date

from azuka.models.schemas import (
    CalorieTarget,
    DayPlan,
    MacroSplit,
    NutritionTarget,
    Phase,
    UserProfile,
)
from azuka.services.phase_calculator import project_phases
from azuka.services.safety_clamp import (
    macro_grams,
    normalize_calorie_range,
    normalize_calories,
    normalize_macro_split,
)


logger = logging.getLogger(__name__)

DEFAULT_ACTIVITY_FACTOR = 1.375

ACTIVITY_FACTORS: dict[str, float] = {
    "sedentary": 1.2,
    "lightly active": 1.375,
    "light": 1.375,
    "moderately active": 1.55,
    "moderate": 1.55,
    "very active": 1.725,
    "active": 1.725,
}

# Luteal and menstrual phases raise resting metabolic rate; extra intake
# also blunts cravings.
PHASE_CALORIE_ADJUSTMENT: dict[Phase, int] = {
    Phase.MENSTRUAL: 200,
    Phase.FOLLICULAR: 0,
    Phase.OVULATORY: 0,
    Phase.LUTEAL: 200,
}

PHASE_MACRO_SPLIT: dict[Phase, MacroSplit] = {
    Phase.MENSTRUAL: MacroSplit(protein_pct=0.3, carb_pct=0.4, fat_pct=0.3),
    Phase.FOLLICULAR: MacroSplit(protein_pct=0.3, carb_pct=0.45, fat_pct=0.25),
    Phase.OVULATORY: MacroSplit(protein_pct=0.3, carb_pct=0.45, fat_pct=0.25),
    Phase.LUTEAL: MacroSplit(protein_pct=0.35, carb_pct=0.4, fat_pct=0.25),
}

DEFICIT_GOALS = {"fat loss", "weight loss", "lose weight"}
SURPLUS_GOALS = {"muscle gain", "gain muscle", "strength"}
GOAL_DEFICIT_KCAL = -300
GOAL_SURPLUS_KCAL = 200
CALORIE_BAND_HALF_WIDTH = 100


def resolve_activity_factor(value: float | str | None) -> float:
    """
    Resolve an activity factor given either as a multiplier or as a label.

    Example:
        >>> resolve_activity_factor("Moderately Active")
        1.55
    """
    if value is None:
        return DEFAULT_ACTIVITY_FACTOR
    if isinstance(value, str):
        factor = ACTIVITY_FACTORS.get(value.strip().lower())
        if factor is None:
            logger.debug("Unknown activity level %r; using %.3f", value, DEFAULT_ACTIVITY_FACTOR)
            return DEFAULT_ACTIVITY_FACTOR
        return factor
    if value <= 0:
        return DEFAULT_ACTIVITY_FACTOR
    return float(value)


def basal_metabolic_rate(profile: UserProfile) -> float:
    """
    Mifflin-St Jeor BMR for women.

    ``(10 * weight_kg) + (6.25 * height_cm) - (5 * age) - 161``
    """
    return (10 * profile.weight_kg) + (6.25 * profile.height_cm) - (5 * profile.age) - 161


def goal_adjustment(profile: UserProfile) -> int:
    """Return the daily kcal offset implied by the profile goal."""
    if profile.target_weight_kg is not None:
        if profile.target_weight_kg < profile.weight_kg:
            return GOAL_DEFICIT_KCAL
        if profile.target_weight_kg > profile.weight_kg:
            return GOAL_SURPLUS_KCAL
        return 0

    goal = profile.goal.strip().lower()
    if goal in DEFICIT_GOALS:
        return GOAL_DEFICIT_KCAL
    if goal in SURPLUS_GOALS:
        return GOAL_SURPLUS_KCAL
    return 0


def daily_energy_target(profile: UserProfile, phase: Phase) -> int:
    """
    Daily kcal target: TDEE plus goal and phase adjustments, safety clamped.

    Args:
        profile: User biometrics and goal
        phase: Cycle phase of the target day

    Returns:
        Calories in kcal within the safe single-day range
    """
    tdee = basal_metabolic_rate(profile) * resolve_activity_factor(profile.activity_factor)
    target = tdee + goal_adjustment(profile) + PHASE_CALORIE_ADJUSTMENT[phase]
    return normalize_calories(target)


def calorie_range_for(profile: UserProfile, phase: Phase) -> CalorieTarget:
    target = daily_energy_target(profile, phase)
    return normalize_calorie_range(
        CalorieTarget(min=target - CALORIE_BAND_HALF_WIDTH, max=target + CALORIE_BAND_HALF_WIDTH)
    )


def macro_split_for(phase: Phase) -> MacroSplit:
    return PHASE_MACRO_SPLIT[phase].model_copy()


def envelope_from_days(days: list[DayPlan]) -> list[NutritionTarget]:
    """Project plan days onto nutrition targets (numbers re-normalized)."""
    envelope = []
    for day in days:
        calorie_target = normalize_calorie_range(day.calorie_target)
        split = normalize_macro_split(day.macro_split)
        envelope.append(
            NutritionTarget(
                date=day.date,
                calorie_target=calorie_target,
                macro_split=split,
                macro_targets=macro_grams(calorie_target, split),
            )
        )
    return envelope


def projected_envelope(
    profile: UserProfile,
    cycle_length: int,
    start: date,
    days: int = 7,
) -> list[NutritionTarget]:
    """Build a nutrition envelope from biometrics alone (no plan required)."""
    envelope = []
    for day, state in project_phases(profile.last_period_start, cycle_length, start, days):
        calorie_target = calorie_range_for(profile, state.phase)
        split = normalize_macro_split(macro_split_for(state.phase))
        envelope.append(
            NutritionTarget(
                date=day,
                calorie_target=calorie_target,
                macro_split=split,
                macro_targets=macro_grams(calorie_target, split),
            )
        )
    return envelope
