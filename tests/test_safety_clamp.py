"""Tests for the numeric safety clamp."""
from __future__ import annotations

from datetime import date

import pytest

from azuka.models.schemas import (
    CalorieTarget,
    DayPlan,
    Decision,
    MacroSplit,
    MealAnalysis,
    MetabolicAssessment,
    Phase,
    PsychologyAssessment,
    Readiness,
    TodayFocus,
    Workout,
)
from azuka.services.phase_calculator import compute_phase
from azuka.services.safety_clamp import (
    clamp_unit,
    macro_grams,
    normalize,
    normalize_calorie_range,
    normalize_calories,
    normalize_day_plan,
    normalize_macro_split,
    normalize_meal,
)


DAY = date(2026, 3, 10)


def _day_plan(**changes) -> DayPlan:
    data = {
        "date": DAY,
        "phase": Phase.LUTEAL,
        "readiness": Readiness.MAINTAIN,
        "workout": Workout(title="Lower Body Strength", type="Strength", duration_min=45, intensity="High"),
        "calorie_target": CalorieTarget(min=8000, max=8800),
        "macro_split": MacroSplit(protein_pct=30, carb_pct=40, fat_pct=30),
    }
    data.update(changes)
    return DayPlan(**data)


def _decision(preview: list[DayPlan] | None = None, metabolic=None, psychology=None, **focus_changes) -> Decision:
    focus = {"workout_type": "Strength", "intensity": "High", "duration_min": 400, "calories": 9000}
    focus.update(focus_changes)
    return Decision(
        user_id="ada",
        date=DAY,
        cycle=compute_phase(date(2026, 2, 17), 28, DAY),
        metabolic=metabolic or MetabolicAssessment(fuel_risk=1.4, carb_need=-0.3),
        psychology=psychology or PsychologyAssessment(adherence_risk=float("nan")),
        today_focus=TodayFocus(**focus),
        week_preview=[_day_plan()] if preview is None else preview,
    )


def test_kilojoule_range_is_converted():
    assert normalize_calorie_range(CalorieTarget(min=8000, max=8800)) == CalorieTarget(min=1912, max=2103)


@pytest.mark.parametrize(
    "value, expected",
    [
        (500, 1200),
        (2000, 2000),
        (4500, 4000),
        (6000, 1434),
        (1999.6, 2000),
    ],
)
def test_single_day_calories(value, expected):
    assert normalize_calories(value) == expected


def test_calorie_range_keeps_minimum_spread():
    assert normalize_calorie_range(CalorieTarget(min=2500, max=2550)) == CalorieTarget(min=2500, max=2600)


def test_calorie_range_upper_bound():
    assert normalize_calorie_range(CalorieTarget(min=3000, max=4500)) == CalorieTarget(min=3000, max=4200)


def test_percentages_become_fractions():
    split = normalize_macro_split(MacroSplit(protein_pct=30, carb_pct=40, fat_pct=30))

    assert split == MacroSplit(protein_pct=0.3, carb_pct=0.4, fat_pct=0.3)


def test_macro_split_rebalanced_inside_bounds():
    split = normalize_macro_split(MacroSplit(protein_pct=0.01, carb_pct=0.01, fat_pct=0.98))

    assert split.fat_pct == pytest.approx(0.8)
    assert split.protein_pct == pytest.approx(0.1)
    assert split.carb_pct == pytest.approx(0.1)


def test_oversized_split_sums_to_one():
    split = normalize_macro_split(MacroSplit(protein_pct=0.9, carb_pct=0.9, fat_pct=0.9))
    total = split.protein_pct + split.carb_pct + split.fat_pct

    assert 0.95 <= total <= 1.05
    for value in (split.protein_pct, split.carb_pct, split.fat_pct):
        assert 0.05 <= value <= 0.8


def test_macro_grams_use_range_midpoint():
    grams = macro_grams(CalorieTarget(min=1900, max=2100), MacroSplit(protein_pct=0.3, carb_pct=0.4, fat_pct=0.3))

    assert (grams.protein, grams.carbs, grams.fats) == (150, 200, 67)


@pytest.mark.parametrize("value, expected", [(1.4, 1.0), (-0.3, 0.0), (0.42, 0.42), (float("nan"), 0.0), (None, 0.0)])
def test_clamp_unit(value, expected):
    assert clamp_unit(value) == expected


def test_normalize_decision_fields():
    decision = normalize(_decision())

    assert decision.metabolic.fuel_risk == 1.0
    assert decision.metabolic.carb_need == 0.0
    assert decision.psychology.adherence_risk == 0.0
    assert decision.today_focus.calories == 2151
    assert decision.today_focus.duration_min == 180
    day = decision.week_preview[0]
    assert day.calorie_target == CalorieTarget(min=1912, max=2103)
    assert day.macro_split == MacroSplit(protein_pct=0.3, carb_pct=0.4, fat_pct=0.3)
    assert day.macro_targets.protein > 0


def test_rest_day_has_zero_duration():
    decision = normalize(_decision(workout_type="Rest", duration_min=45))

    assert decision.today_focus.duration_min == 0


NAN = float("nan")
INF = float("inf")


@pytest.mark.parametrize(
    "decision",
    [
        _decision(),
        _decision(calories=8800, preview=[_day_plan(calorie_target=CalorieTarget(min=8000, max=8800))]),
        _decision(preview=[_day_plan(macro_split=MacroSplit(protein_pct=25, carb_pct=50, fat_pct=25))]),
        _decision(macro_split=MacroSplit(protein_pct=30, carb_pct=40, fat_pct=30)),
        _decision(
            metabolic=MetabolicAssessment(fuel_risk=NAN, carb_need=-2.0),
            psychology=PsychologyAssessment(adherence_risk=-0.5),
        ),
        _decision(metabolic=MetabolicAssessment(fuel_risk=INF, carb_need=-INF), calories=NAN),
        _decision(
            duration_min=600,
            preview=[_day_plan(workout=Workout(title="Ultra", type="Cardio", duration_min=400))],
        ),
        _decision(
            workout_type="Rest",
            duration_min=45,
            preview=[_day_plan(workout=Workout(title="Rest", type="Rest", duration_min=45))],
        ),
        _decision(preview=[_day_plan(calorie_target=CalorieTarget(min=3000, max=1000))]),
        _decision(preview=[_day_plan(calorie_target=CalorieTarget(min=4500, max=-200))]),
        _decision(macro_split=MacroSplit(protein_pct=INF, carb_pct=NAN, fat_pct=0.3), preview=[]),
    ],
    ids=[
        "defaults",
        "kilojoule_range",
        "percentage_split_in_preview",
        "percentage_split_today",
        "nan_and_negative_scores",
        "infinite_scores",
        "long_durations",
        "rest_workout",
        "inverted_range",
        "inverted_kilocalorie_range",
        "non_finite_split",
    ],
)
def test_normalize_is_idempotent(decision: Decision):
    once = normalize(decision)

    assert normalize(once) == once
    assert 1200 <= once.today_focus.calories <= 4000
    assert 0 <= once.today_focus.duration_min <= 180
    for score in (once.metabolic.fuel_risk, once.metabolic.carb_need, once.psychology.adherence_risk):
        assert 0.0 <= score <= 1.0
    for day in once.week_preview:
        assert day.calorie_target.min + 100 <= day.calorie_target.max <= 4200
        assert 0 <= day.workout.duration_min <= 180


@pytest.mark.parametrize(
    "split",
    [
        MacroSplit(protein_pct=0.9, carb_pct=0.9, fat_pct=0.9),
        MacroSplit(protein_pct=0.01, carb_pct=0.01, fat_pct=0.98),
        MacroSplit(protein_pct=25, carb_pct=50, fat_pct=25),
    ],
)
def test_macro_normalization_is_idempotent(split: MacroSplit):
    once = normalize_macro_split(split)

    assert normalize_macro_split(once) == once


def test_day_plan_normalization_is_idempotent():
    once = normalize_day_plan(_day_plan(workout=Workout(title="Long Ride", type="Cardio", duration_min=300)))

    assert once.workout.duration_min == 180
    assert normalize_day_plan(once) == once


def test_meal_estimate_clamped():
    analysis = normalize_meal(
        MealAnalysis(calories=6276, protein=-5, carbs=40, fat=12.4, cycle_match_score=1.3)
    )

    assert analysis.calories == 1500
    assert analysis.protein == 0
    assert analysis.fat == 12
    assert analysis.cycle_match_score == 1.0
