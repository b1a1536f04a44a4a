"""Reconcile recommendation source opinions into one Decision.

Rules run in a fixed order and each output field is owned by the first rule
whose condition matches. Stress and fuel dominance are re-checked here from
the clamped scores even though the prompts ask the sources to respect them.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError

from azuka.models.schemas import (
    CycleState,
    DayPlan,
    Decision,
    Intensity,
    MacroSplit,
    MetabolicAssessment,
    PlanAction,
    ProviderOpinion,
    PsychologyAssessment,
    TodayFocus,
    Tone,
)
from azuka.models.workout_library import LOWEST_TIER_TYPE, is_high_tier
from azuka.services.recommendation_sources import (
    CRITICAL_STRESS_THRESHOLD,
    FATIGUE,
    METABOLIC,
    NUTRITION,
    PSYCHOLOGY,
    SOURCE_IDS,
    STRESS,
    WORKOUT,
    fallback_opinion,
)
from azuka.services.safety_clamp import clamp_unit
from azuka.services.week_builder import (
    day_plan_from_suggestion,
    downgrade_day_plan,
    normalize_intensity,
)


logger = logging.getLogger(__name__)

FUEL_RISK_THRESHOLD = 0.7
CRITICAL_STRESS_STATES = {"critical", "overloaded"}
LOW_VOLUME_CAP = "low"
LOW_VOLUME_MAX_MINUTES = 20

WORKOUT_FIRST = ["workout", "nutrition"]
NUTRITION_FIRST = ["nutrition", "workout"]

# Output fields rules can own.
WORKOUT_TYPE = "workout_type"
INTENSITY = "intensity"
DURATION = "duration_min"
PLAN_ACTION = "plan_action"
WEEK_PREVIEW = "week_preview"
SUMMARY_ORDER = "summary_order"
RATIONALES = "rationales"
NUTRITION_TIP = "nutrition_tip"

ALL_FIELDS = (
    WORKOUT_TYPE,
    INTENSITY,
    DURATION,
    PLAN_ACTION,
    WEEK_PREVIEW,
    SUMMARY_ORDER,
    RATIONALES,
    NUTRITION_TIP,
)

TONE_PREFIXES: dict[Tone, str] = {
    Tone.SUPPORTIVE: "Be gentle with yourself. ",
    Tone.DIRECTIVE: "Action for today: ",
    Tone.EDUCATIONAL: "What your body needs: ",
}

TONE_TIP_TEMPLATES: dict[Tone, str] = {
    Tone.SUPPORTIVE: "If you can, {tip}",
    Tone.DIRECTIVE: "{tip}. Make it a priority today.",
    Tone.EDUCATIONAL: "{tip} (this supports your {phase} phase).",
}


@dataclass(frozen=True)
class SynthesisInput:
    """Everything rule conditions and effects may read."""

    opinions: Mapping[str, ProviderOpinion]
    day: date
    cycle: CycleState
    base: Mapping[str, Any]

    def risk(self, source_id: str, name: str, default: float = 0.0) -> float:
        return clamp_unit(self.opinions[source_id].risk_scores.get(name, default))

    def recommendation(self, source_id: str, name: str, default: Any = None) -> Any:
        return self.opinions[source_id].recommendation.get(name, default)


@dataclass(frozen=True)
class Rule:
    name: str
    fields: tuple[str, ...]
    condition: Callable[[SynthesisInput], bool]
    effect: Callable[[SynthesisInput], dict[str, Any]]


# Conditions
def stress_is_critical(inputs: SynthesisInput) -> bool:
    state = str(inputs.recommendation(STRESS, "state", "") or "").strip().lower()
    return state in CRITICAL_STRESS_STATES or inputs.risk(STRESS, "stress_score") >= CRITICAL_STRESS_THRESHOLD


def volume_is_capped(inputs: SynthesisInput) -> bool:
    cap = str(inputs.recommendation(FATIGUE, "training_volume_cap", "") or "").strip().lower()
    return cap == LOW_VOLUME_CAP


def fuel_is_at_risk(inputs: SynthesisInput) -> bool:
    return inputs.risk(METABOLIC, "fuel_risk") >= FUEL_RISK_THRESHOLD


def psychology_sets_tone(inputs: SynthesisInput) -> bool:
    return not inputs.opinions[PSYCHOLOGY].is_fallback


def always(inputs: SynthesisInput) -> bool:
    return True


# Effects
def downgrade_for_stress(inputs: SynthesisInput) -> dict[str, Any]:
    workout_type = inputs.base[WORKOUT_TYPE]
    if is_high_tier(workout_type):
        workout_type = LOWEST_TIER_TYPE
    preview = inputs.base[WEEK_PREVIEW]
    if preview is not None:
        preview = [downgrade_day_plan(day) if day.date == inputs.day else day for day in preview]
    return {INTENSITY: Intensity.LOW, WORKOUT_TYPE: workout_type, WEEK_PREVIEW: preview}


def cap_volume(inputs: SynthesisInput) -> dict[str, Any]:
    return {DURATION: min(inputs.base[DURATION], LOW_VOLUME_MAX_MINUTES)}


def lead_with_nutrition(inputs: SynthesisInput) -> dict[str, Any]:
    return {SUMMARY_ORDER: list(NUTRITION_FIRST)}


def resolve_tone(value: Any) -> Tone:
    try:
        return Tone(str(value).strip().lower())
    except ValueError:
        return Tone.SUPPORTIVE


def apply_tone(inputs: SynthesisInput) -> dict[str, Any]:
    tone = resolve_tone(inputs.recommendation(PSYCHOLOGY, "tone"))
    prefix = TONE_PREFIXES[tone]
    rationales = {
        name: f"{prefix}{text}" if text else text
        for name, text in inputs.base[RATIONALES].items()
    }
    tip = inputs.base[NUTRITION_TIP].rstrip(".")
    if tip:
        if tone is Tone.SUPPORTIVE:
            tip = tip[0].lower() + tip[1:]
        tip = TONE_TIP_TEMPLATES[tone].format(tip=tip, phase=inputs.cycle.phase.value)
    return {RATIONALES: rationales, NUTRITION_TIP: tip}


def keep_suggestion(inputs: SynthesisInput) -> dict[str, Any]:
    return {field: inputs.base[field] for field in ALL_FIELDS}


RULES: tuple[Rule, ...] = (
    Rule("stress_dominance", (INTENSITY, WORKOUT_TYPE, WEEK_PREVIEW), stress_is_critical, downgrade_for_stress),
    Rule("volume_cap", (DURATION,), volume_is_capped, cap_volume),
    Rule("fuel_dominance", (SUMMARY_ORDER,), fuel_is_at_risk, lead_with_nutrition),
    Rule("tone_filter", (RATIONALES, NUTRITION_TIP), psychology_sets_tone, apply_tone),
    Rule("default", ALL_FIELDS, always, keep_suggestion),
)


def _preferred(candidates: list[ProviderOpinion]) -> ProviderOpinion:
    """Pick one opinion per source independent of arrival order."""
    return max(
        candidates,
        key=lambda opinion: (
            not opinion.is_fallback,
            opinion.timestamp,
            opinion.rationale,
            json.dumps(opinion.recommendation, sort_keys=True, default=str),
        ),
    )


def index_opinions(opinions: Iterable[ProviderOpinion], cycle: CycleState) -> tuple[dict[str, ProviderOpinion], list[str]]:
    """
    Index opinions by source id and fill gaps with fallbacks.

    Returns:
        The per-source opinion map and the sorted ids served by fallbacks
    """
    grouped: dict[str, list[ProviderOpinion]] = {}
    for opinion in opinions:
        grouped.setdefault(opinion.source_id, []).append(opinion)

    indexed = {source_id: _preferred(candidates) for source_id, candidates in grouped.items()}
    for source_id in SOURCE_IDS:
        if source_id not in indexed:
            indexed[source_id] = fallback_opinion(source_id, cycle)
    unavailable = sorted(source_id for source_id in SOURCE_IDS if indexed[source_id].is_fallback)
    return indexed, unavailable


def _plan_action(value: Any) -> PlanAction:
    try:
        return PlanAction(str(value).strip().lower())
    except ValueError:
        return PlanAction.KEEP


def _finite_number(value: Any) -> float:
    """Read a provider number; missing, non-numeric and non-finite values read as 0."""
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _macro_split(value: Any) -> MacroSplit:
    if isinstance(value, dict) and {"protein_pct", "carb_pct", "fat_pct"} <= value.keys():
        try:
            return MacroSplit.model_validate(value)
        except ValidationError:
            logger.debug("Ignoring unusable macro split %s", value)
    return MacroSplit()


def _week_preview(
    suggestions: Any,
    baseline_week: list[DayPlan] | None,
) -> list[DayPlan] | None:
    if not baseline_week:
        return None
    if not isinstance(suggestions, list):
        return list(baseline_week)

    by_date: dict[str, dict[str, Any]] = {}
    undated: list[dict[str, Any]] = []
    for suggestion in suggestions:
        if not isinstance(suggestion, dict):
            continue
        if suggestion.get("date"):
            by_date[str(suggestion["date"])] = suggestion
        else:
            undated.append(suggestion)

    preview = []
    for index, day in enumerate(baseline_week):
        suggestion = by_date.get(day.date.isoformat())
        if suggestion is None and index < len(undated):
            suggestion = undated[index]
        preview.append(day_plan_from_suggestion(suggestion, day) if suggestion else day)
    return preview


def base_values(
    opinions: Mapping[str, ProviderOpinion],
    baseline_week: list[DayPlan] | None,
) -> dict[str, Any]:
    """The workout, nutrition and rationale values before any rule runs."""
    workout = opinions[WORKOUT].recommendation
    nutrition = opinions[NUTRITION].recommendation
    plan_action = _plan_action(workout.get("plan_action", PlanAction.KEEP.value))

    preview = None
    if plan_action is PlanAction.GENERATE_NEW:
        preview = _week_preview(workout.get("week_preview"), baseline_week)

    duration = _finite_number(workout.get("duration_min"))

    return {
        WORKOUT_TYPE: str(workout.get("workout_type") or "Rest"),
        INTENSITY: normalize_intensity(workout.get("intensity"), Intensity.LOW),
        DURATION: duration,
        PLAN_ACTION: plan_action,
        WEEK_PREVIEW: preview,
        SUMMARY_ORDER: list(WORKOUT_FIRST),
        RATIONALES: {
            METABOLIC: opinions[METABOLIC].rationale,
            PSYCHOLOGY: opinions[PSYCHOLOGY].rationale,
        },
        NUTRITION_TIP: str(nutrition.get("nutrition_tip") or ""),
    }


def resolve_fields(inputs: SynthesisInput, rules: Iterable[Rule] = RULES) -> tuple[dict[str, Any], list[str]]:
    """Run ``rules`` in order; the first matching rule owns each field."""
    owned: dict[str, Any] = {}
    applied: list[str] = []
    for rule in rules:
        open_fields = [field for field in rule.fields if field not in owned]
        if not open_fields or not rule.condition(inputs):
            continue
        values = rule.effect(inputs)
        for field in open_fields:
            owned[field] = values[field]
        applied.append(rule.name)
    return owned, applied


def synthesize(
    opinions: Iterable[ProviderOpinion],
    *,
    user_id: str,
    day: date,
    cycle: CycleState,
    baseline_week: list[DayPlan] | None = None,
) -> Decision:
    """
    Build the Decision for one orchestration pass.

    Pure and deterministic: the same opinion set yields the same Decision no
    matter the order it arrives in. Missing sources are served by their
    fallback opinions and mark the Decision as degraded. Numbers are not
    clamped here; callers pass the result through ``safety_clamp.normalize``.

    Args:
        opinions: Opinions collected from the sources (any order, duplicates allowed)
        user_id: Owner of the Decision
        day: Date the Decision is for
        cycle: Cycle state computed for ``day``
        baseline_week: Deterministic days used when a new week is suggested

    Returns:
        Decision with ``applied_rules`` listing every rule that fired
    """
    indexed, unavailable = index_opinions(opinions, cycle)
    inputs = SynthesisInput(opinions=indexed, day=day, cycle=cycle, base=base_values(indexed, baseline_week))
    fields, applied = resolve_fields(inputs)

    metabolic = indexed[METABOLIC]
    psychology = indexed[PSYCHOLOGY]
    nutrition = indexed[NUTRITION].recommendation

    calories = _finite_number(nutrition.get("calories"))

    decision = Decision(
        user_id=user_id,
        date=day,
        cycle=cycle,
        metabolic=MetabolicAssessment(
            fuel_risk=inputs.risk(METABOLIC, "fuel_risk"),
            carb_need=inputs.risk(METABOLIC, "carb_need"),
            rationale=fields[RATIONALES][METABOLIC],
        ),
        psychology=PsychologyAssessment(
            motivation_state=str(psychology.recommendation.get("motivation_state") or "stable"),
            adherence_risk=inputs.risk(PSYCHOLOGY, "adherence_risk"),
            tone=resolve_tone(psychology.recommendation.get("tone")),
            rationale=fields[RATIONALES][PSYCHOLOGY],
        ),
        plan_action=fields[PLAN_ACTION],
        today_focus=TodayFocus(
            workout_type=fields[WORKOUT_TYPE],
            intensity=fields[INTENSITY],
            duration_min=fields[DURATION],
            nutrition_tip=fields[NUTRITION_TIP],
            calories=calories,
            macro_split=_macro_split(nutrition.get("macro_split")),
        ),
        week_preview=fields[WEEK_PREVIEW],
        summary_order=fields[SUMMARY_ORDER],
        applied_rules=applied,
        unavailable_sources=unavailable,
        degraded=bool(unavailable),
    )
    logger.debug("Synthesized decision for %s on %s (rules=%s)", user_id, day, applied)
    return decision
