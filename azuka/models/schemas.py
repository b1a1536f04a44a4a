"""Pydantic models describing engine entities and API payloads."""
from __future__ import annotations

import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Phase(str, Enum):
    MENSTRUAL = "menstrual"
    FOLLICULAR = "follicular"
    OVULATORY = "ovulatory"
    LUTEAL = "luteal"


class Readiness(str, Enum):
    PUSH = "Push"
    MAINTAIN = "Maintain"
    GENTLE = "Gentle"
    RECOVER = "Recover"


class Intensity(str, Enum):
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"


class DayStatus(str, Enum):
    PLANNED = "planned"
    COMPLETED = "completed"
    MISSED = "missed"
    RESCHEDULED = "rescheduled"


class PlanAction(str, Enum):
    KEEP = "keep"
    GENERATE_NEW = "generate_new"


class Tone(str, Enum):
    SUPPORTIVE = "supportive"
    DIRECTIVE = "directive"
    EDUCATIONAL = "educational"


def _round_number(value: Any) -> Any:
    """Coerce float-like values to whole numbers before int validation; NaN and inf become 0."""
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        return int(round(value))
    return value


# Cycle & user context
class CycleState(BaseModel):
    """Cycle position derived from the last period start; never persisted."""

    model_config = ConfigDict(frozen=True)

    day: int = Field(ge=1)
    length: int = Field(ge=21)
    phase: Phase
    progress_pct: int = Field(ge=0, le=100)
    next_phase: Phase
    days_until_next_phase: int = Field(ge=1)


class UserProfile(BaseModel):
    """Profile fields every recommendation source may read."""

    user_id: str
    name: str | None = None
    age: int = Field(ge=12, le=100)
    weight_kg: float = Field(gt=0)
    height_cm: float = Field(gt=0)
    activity_factor: float | str = 1.375
    cycle_length: int | None = Field(default=None, ge=21)
    last_period_start: date
    goal: str = "maintenance"
    target_weight_kg: float | None = Field(default=None, gt=0)


class ProfileUpsert(BaseModel):
    """Schema for creating or replacing a profile through the API."""

    name: str | None = None
    age: int = Field(ge=12, le=100)
    weight_kg: float = Field(gt=0)
    height_cm: float = Field(gt=0)
    activity_factor: float | str = 1.375
    cycle_length: int | None = Field(default=None, ge=21)
    last_period_start: date
    goal: str = "maintenance"
    target_weight_kg: float | None = Field(default=None, gt=0)


LogKind = Literal["body", "symptoms", "mindset", "workout", "food"]


class LogEntry(BaseModel):
    """A single day's signal (sleep/stress, symptoms, mood, workout or meal)."""

    user_id: str
    date: date
    kind: LogKind
    payload: dict[str, Any] = Field(default_factory=dict)


class LogCreate(BaseModel):
    date: date
    kind: LogKind
    payload: dict[str, Any] = Field(default_factory=dict)


class UserContext(BaseModel):
    """Read-only context shared by every recommendation source in one pass."""

    model_config = ConfigDict(frozen=True)

    profile: UserProfile
    cycle: CycleState
    today: date
    plan_status: Literal["none", "active", "force_new"] = "active"
    meal_image: str | None = None
    meal_image_media_type: str = "image/jpeg"


# Plan entities
class Workout(BaseModel):
    title: str
    type: str
    duration_min: int = 0
    intensity: Intensity = Intensity.MODERATE

    @field_validator("duration_min", mode="before")
    @classmethod
    def round_duration(cls, value: Any) -> Any:
        return _round_number(value)


class CalorieTarget(BaseModel):
    min: int
    max: int

    @field_validator("min", "max", mode="before")
    @classmethod
    def round_calories(cls, value: Any) -> Any:
        return _round_number(value)


class MacroSplit(BaseModel):
    protein_pct: float = 0.3
    carb_pct: float = 0.4
    fat_pct: float = 0.3


class MacroTargets(BaseModel):
    """Daily macro targets in grams."""

    protein: int = 0
    carbs: int = 0
    fats: int = 0


class DayPlan(BaseModel):
    """One day of a weekly plan, with its lifecycle status."""

    date: date
    phase: Phase
    readiness: Readiness
    workout: Workout
    calorie_target: CalorieTarget
    macro_split: MacroSplit = Field(default_factory=MacroSplit)
    macro_targets: MacroTargets = Field(default_factory=MacroTargets)
    status: DayStatus = DayStatus.PLANNED
    auto_replanned: bool = False
    feedback: str | None = None
    completed_at: datetime | None = None
    status_history: list[DayStatus] = Field(default_factory=list)
    notes: str | None = None


class WeeklyPlan(BaseModel):
    """A contiguous run of day plans owned by one user."""

    plan_id: str
    user_id: str
    week_start: date
    week_end: date
    days: list[DayPlan]
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def check_days(self) -> "WeeklyPlan":
        dates = [day.date for day in self.days]
        if len(dates) != len(set(dates)):
            raise ValueError("WeeklyPlan days must have unique dates")
        self.days.sort(key=lambda day: day.date)
        if self.days and (self.days[0].date < self.week_start or self.days[-1].date > self.week_end):
            raise ValueError("WeeklyPlan days must fall inside week_start..week_end")
        return self

    def day_for(self, target: date) -> DayPlan | None:
        for day in self.days:
            if day.date == target:
                return day
        return None

    def covers(self, target: date) -> bool:
        return self.week_start <= target <= self.week_end


# Recommendation source results
class ProviderOpinion(BaseModel):
    """One recommendation source's scored output for a single pass."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    risk_scores: dict[str, float] = Field(default_factory=dict)
    recommendation: dict[str, Any] = Field(default_factory=dict)
    rationale: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    is_fallback: bool = False


class Ok(BaseModel):
    model_config = ConfigDict(frozen=True)

    opinion: ProviderOpinion

    @property
    def source_id(self) -> str:
        return self.opinion.source_id


class Unavailable(BaseModel):
    """A source that timed out or produced unusable output."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    reason: Literal["timeout", "malformed", "error"]
    detail: str = ""


SourceResult = Ok | Unavailable


# Decision (synthesis output)
class MetabolicAssessment(BaseModel):
    fuel_risk: float
    carb_need: float
    rationale: str = ""


class PsychologyAssessment(BaseModel):
    motivation_state: str = "stable"
    adherence_risk: float
    tone: Tone = Tone.SUPPORTIVE
    rationale: str = ""


class TodayFocus(BaseModel):
    workout_type: str
    intensity: Intensity
    duration_min: int = 0
    nutrition_tip: str = ""
    calories: int
    macro_split: MacroSplit = Field(default_factory=MacroSplit)

    @field_validator("calories", "duration_min", mode="before")
    @classmethod
    def round_numbers(cls, value: Any) -> Any:
        return _round_number(value)


class Decision(BaseModel):
    """The single synthesized, safety-clamped output for a user and day."""

    user_id: str
    date: date
    cycle: CycleState
    metabolic: MetabolicAssessment
    psychology: PsychologyAssessment
    plan_action: PlanAction = PlanAction.KEEP
    today_focus: TodayFocus
    week_preview: list[DayPlan] | None = None
    summary_order: list[str] = Field(default_factory=lambda: ["workout", "nutrition"])
    applied_rules: list[str] = Field(default_factory=list)
    unavailable_sources: list[str] = Field(default_factory=list)
    degraded: bool = False


class NutritionTarget(BaseModel):
    """One day of the shared 7-day nutrition envelope."""

    date: date
    calorie_target: CalorieTarget
    macro_split: MacroSplit
    macro_targets: MacroTargets


# API payloads
class WorkoutCompletionUpdate(BaseModel):
    """Schema for marking a planned workout as complete."""

    feedback: str | None = None
    calories_burned: int | None = Field(default=None, ge=0)


class DayPlanUpdate(BaseModel):
    """Partial update for one planned day; unset fields are left alone."""

    title: str | None = None
    type: str | None = None
    duration_min: int | None = Field(default=None, ge=0)
    intensity: Intensity | None = None
    readiness: str | None = None
    notes: str | None = None


class MealPhotoRequest(BaseModel):
    image_base64: str = Field(min_length=1)
    media_type: str = "image/jpeg"
    meal_date: date | None = None


class MealAnalysis(BaseModel):
    """Normalized nutrition-vision result for a single meal."""

    meal_identification: list[str] = Field(default_factory=list)
    calories: int
    protein: int
    carbs: int
    fat: int
    cycle_match_score: float
    missing_elements: list[str] = Field(default_factory=list)
    rationale: str = ""
    degraded: bool = False

    @field_validator("calories", "protein", "carbs", "fat", mode="before")
    @classmethod
    def round_amounts(cls, value: Any) -> Any:
        return _round_number(value)


class ForecastDay(BaseModel):
    """Projected phase, energy and symptom risk for one day."""

    date: date
    cycle_day: int = Field(ge=1)
    phase: Phase
    energy: int = Field(ge=0, le=100)
    symptom_risk: list[str] = Field(default_factory=list)
    workout_focus: str


class Dashboard(BaseModel):
    """Today's Decision together with the stored day plan and nutrition target."""

    decision: Decision
    today_plan: DayPlan | None = None
    nutrition: NutritionTarget | None = None
