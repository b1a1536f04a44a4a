"""Recommendation sources backed by Claude, with a uniform failure contract."""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, ClassVar

import yaml
from anthropic import Anthropic, APIConnectionError, APIStatusError, APITimeoutError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from azuka.config import Settings
from azuka.exceptions import MalformedSourceOutput, SourceUnavailable
from azuka.models.schemas import (
    CycleState,
    Intensity,
    LogEntry,
    Ok,
    PlanAction,
    ProviderOpinion,
    SourceResult,
    Tone,
    Unavailable,
    UserContext,
)


logger = logging.getLogger(__name__)

CYCLE = "cycle"
STRESS = "stress"
FATIGUE = "fatigue"
METABOLIC = "metabolic"
PSYCHOLOGY = "psychology"
WORKOUT = "workout"
NUTRITION = "nutrition"
NUTRITION_VISION = "nutrition_vision"

SOURCE_IDS = (CYCLE, STRESS, FATIGUE, METABOLIC, PSYCHOLOGY, WORKOUT, NUTRITION)

CRITICAL_STRESS_THRESHOLD = 0.75
STRESS_SYMPTOMS = {"anxiety", "brain fog", "palpitations"}


# Fallback opinions used whenever a source is Unavailable.
METABOLIC_FALLBACK = {
    "risk_scores": {"fuel_risk": 0.5, "carb_need": 0.5},
    "recommendation": {},
    "rationale": "Data unavailable. Sticking to baseline.",
}
PSYCHOLOGY_FALLBACK = {
    "risk_scores": {"adherence_risk": 0.1},
    "recommendation": {"motivation_state": "stable", "tone": Tone.SUPPORTIVE.value},
    "rationale": "Stay consistent.",
}
STRESS_FALLBACK = {
    "risk_scores": {"stress_score": 0.5, "cortisol_risk": 0.5},
    "recommendation": {"state": "sympathetic"},
    "rationale": "Stress data unavailable.",
}
FATIGUE_FALLBACK = {
    "risk_scores": {"fatigue_score": 0.5},
    "recommendation": {"recovery_status": "recovering", "training_volume_cap": "medium"},
    "rationale": "Recovery data unavailable.",
}
CYCLE_FALLBACK = {
    "risk_scores": {"energy_level": 0.5, "inflammation_risk": 0.1},
    "recommendation": {},
    "rationale": "Using calculated cycle phase.",
}
WORKOUT_FALLBACK = {
    "risk_scores": {},
    "recommendation": {
        "plan_action": PlanAction.KEEP.value,
        "workout_type": "Rest",
        "intensity": Intensity.LOW.value,
        "duration_min": 0,
        "week_preview": None,
    },
    "rationale": "Workout guidance unavailable. Take it easy today.",
}
NUTRITION_FALLBACK = {
    "risk_scores": {},
    "recommendation": {
        "nutrition_tip": "Hydrate",
        "calories": 2000,
        "macro_split": {"protein_pct": 0.3, "carb_pct": 0.4, "fat_pct": 0.3},
    },
    "rationale": "Nutrition guidance unavailable.",
}

FALLBACK_OPINIONS: dict[str, dict[str, Any]] = {
    CYCLE: CYCLE_FALLBACK,
    STRESS: STRESS_FALLBACK,
    FATIGUE: FATIGUE_FALLBACK,
    METABOLIC: METABOLIC_FALLBACK,
    PSYCHOLOGY: PSYCHOLOGY_FALLBACK,
    WORKOUT: WORKOUT_FALLBACK,
    NUTRITION: NUTRITION_FALLBACK,
}


def fallback_opinion(source_id: str, cycle: CycleState | None = None) -> ProviderOpinion:
    """Return the named fallback opinion for ``source_id``."""
    fallback = FALLBACK_OPINIONS[source_id]
    recommendation = dict(fallback["recommendation"])
    if source_id == CYCLE and cycle is not None:
        recommendation["phase"] = cycle.phase.value
    return ProviderOpinion(
        source_id=source_id,
        risk_scores=dict(fallback["risk_scores"]),
        recommendation=recommendation,
        rationale=fallback["rationale"],
        is_fallback=True,
    )


def extract_json(source_id: str, text: str) -> dict[str, Any]:
    """
    Pull the JSON object out of a model response.

    Everything between the first ``{`` and the last ``}`` is parsed; models
    often wrap the object in prose or code fences.

    Raises:
        MalformedSourceOutput: If no object is present or it is not a dict
        json.JSONDecodeError: If the extracted text is not valid JSON
    """
    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        raise MalformedSourceOutput(source_id, "no JSON object in response")
    result = json.loads(text[start:end])
    if not isinstance(result, dict):
        raise MalformedSourceOutput(source_id, "response JSON is not an object")
    return result


# Response payloads
class SourcePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    rationale: str = ""


class CyclePayload(SourcePayload):
    phase: str | None = None
    energy_level: float
    inflammation_risk: float


class StressPayload(SourcePayload):
    stress_score: float
    cortisol_risk: float = 0.5
    nervous_system_state: str = "sympathetic"

    @field_validator("nervous_system_state")
    @classmethod
    def lower_state(cls, value: str) -> str:
        return value.strip().lower()


class FatiguePayload(SourcePayload):
    fatigue_score: float
    recovery_status: str = "recovering"
    training_volume_cap: str = "medium"

    @field_validator("training_volume_cap")
    @classmethod
    def lower_cap(cls, value: str) -> str:
        return value.strip().lower()


class MetabolicPayload(SourcePayload):
    fuel_risk: float
    carb_need: float


class PsychologyPayload(SourcePayload):
    motivation_state: str = "stable"
    adherence_risk: float
    tone: Tone = Tone.SUPPORTIVE

    @field_validator("tone", mode="before")
    @classmethod
    def lower_tone(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class WorkoutPayload(SourcePayload):
    plan_action: PlanAction = PlanAction.KEEP
    workout_type: str
    intensity: Intensity
    duration_min: float = 0
    week_preview: list[dict[str, Any]] | None = None

    @field_validator("intensity", mode="before")
    @classmethod
    def title_intensity(cls, value: Any) -> Any:
        return value.strip().capitalize() if isinstance(value, str) else value


class NutritionPayload(SourcePayload):
    nutrition_tip: str
    calories: float
    macro_split: dict[str, float] = Field(default_factory=dict)


class MealMacros(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    calories: float
    protein: float = 0
    carbs: float = 0
    fat: float = 0


class MealVisionPayload(SourcePayload):
    meal_identification: list[str] = Field(default_factory=list)
    macros: MealMacros
    cycle_match_score: float
    missing_elements: list[str] = Field(default_factory=list)


# Source implementations
class RecommendationSource(ABC):
    """
    Uniform adapter around one recommendation provider.

    ``evaluate`` never raises: every failure is logged and returned as an
    :class:`Unavailable` result so the orchestrator can substitute a fallback.
    """

    source_id: ClassVar[str]
    payload_model: ClassVar[type[SourcePayload]]

    async def evaluate(self, context: UserContext, recent_logs: list[LogEntry]) -> SourceResult:
        try:
            body = await self._fetch(context, recent_logs)
            payload = self.payload_model.model_validate(extract_json(self.source_id, body))
            return Ok(opinion=self._to_opinion(payload, context, recent_logs))
        except (json.JSONDecodeError, ValidationError, MalformedSourceOutput) as exc:
            logger.warning("Source %s returned malformed output: %s", self.source_id, exc)
            return Unavailable(source_id=self.source_id, reason="malformed", detail=str(exc))
        except (asyncio.TimeoutError, SourceUnavailable) as exc:
            logger.warning("Source %s timed out or is unreachable: %s", self.source_id, exc)
            return Unavailable(source_id=self.source_id, reason="timeout", detail=str(exc))
        except Exception as exc:
            logger.warning("Source %s failed: %s", self.source_id, exc, exc_info=True)
            return Unavailable(source_id=self.source_id, reason="error", detail=str(exc))

    @abstractmethod
    async def _fetch(self, context: UserContext, recent_logs: list[LogEntry]) -> str:
        """Return the raw response body for one evaluation."""

    @abstractmethod
    def _to_opinion(
        self,
        payload: SourcePayload,
        context: UserContext,
        recent_logs: list[LogEntry],
    ) -> ProviderOpinion:
        """Map a validated payload onto risk scores and a recommendation."""


def serialize_context(context: UserContext, recent_logs: list[LogEntry]) -> dict[str, Any]:
    profile = context.profile.model_dump(mode="json", exclude={"user_id"})
    return {
        "today": context.today.isoformat(),
        "plan_status": context.plan_status,
        "profile": profile,
        "cycle": context.cycle.model_dump(mode="json"),
        "recent_logs": [log.model_dump(mode="json", exclude={"user_id"}) for log in recent_logs],
    }


def load_source_prompts(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh)


class ClaudeSource(RecommendationSource):
    """Recommendation source that asks Claude for a JSON opinion."""

    def __init__(
        self,
        client: Anthropic,
        model: str,
        prompt_config: dict[str, Any],
        max_tokens: int = 2048,
    ) -> None:
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = float(prompt_config.get("temperature", 0.3))
        self.system_prompt = prompt_config.get("system")
        self.template = prompt_config["template"]
        self.prompt = prompt_config["sources"][self.source_id]

    def _build_prompt(self, context: UserContext, recent_logs: list[LogEntry]) -> str:
        return self.template.format(
            role=self.prompt["role"],
            instructions=self.prompt["instructions"].strip(),
            context_json=json.dumps(serialize_context(context, recent_logs), indent=2),
            schema=self.prompt["schema"].strip(),
        )

    def _message_content(self, context: UserContext, prompt: str) -> str | list[dict[str, Any]]:
        return prompt

    async def _fetch(self, context: UserContext, recent_logs: list[LogEntry]) -> str:
        prompt = self._build_prompt(context, recent_logs)
        request_payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": self._message_content(context, prompt)}],
        }
        if self.system_prompt:
            request_payload["system"] = self.system_prompt

        try:
            # The Anthropic client is synchronous; keep the event loop free.
            response = await asyncio.to_thread(self.client.messages.create, **request_payload)
        except (APITimeoutError, APIConnectionError) as exc:
            raise SourceUnavailable(self.source_id, str(exc)) from exc
        except APIStatusError as exc:
            if exc.status_code >= 500 or exc.status_code == 429:
                raise SourceUnavailable(self.source_id, f"HTTP {exc.status_code}") from exc
            raise

        if not response.content:
            raise MalformedSourceOutput(self.source_id, "empty response")
        return response.content[0].text


class CycleSource(ClaudeSource):
    source_id = CYCLE
    payload_model = CyclePayload

    def _to_opinion(self, payload, context, recent_logs):
        return ProviderOpinion(
            source_id=self.source_id,
            risk_scores={
                "energy_level": payload.energy_level,
                "inflammation_risk": payload.inflammation_risk,
            },
            # The calculated phase is authoritative; the model's label is advisory.
            recommendation={"phase": context.cycle.phase.value, "reported_phase": payload.phase},
            rationale=payload.rationale,
        )


def has_stress_symptoms(recent_logs: list[LogEntry]) -> bool:
    for log in recent_logs:
        if log.kind != "symptoms":
            continue
        symptoms = log.payload.get("symptoms") or []
        if isinstance(symptoms, str):
            symptoms = [symptoms]
        if any(str(symptom).strip().lower() in STRESS_SYMPTOMS for symptom in symptoms):
            return True
    return False


class StressSource(ClaudeSource):
    source_id = STRESS
    payload_model = StressPayload

    def _to_opinion(self, payload, context, recent_logs):
        stress_score = payload.stress_score
        if has_stress_symptoms(recent_logs) and stress_score < CRITICAL_STRESS_THRESHOLD:
            logger.info("Stress symptoms logged; raising stress score %.2f to %.2f", stress_score, CRITICAL_STRESS_THRESHOLD)
            stress_score = CRITICAL_STRESS_THRESHOLD
        return ProviderOpinion(
            source_id=self.source_id,
            risk_scores={"stress_score": stress_score, "cortisol_risk": payload.cortisol_risk},
            recommendation={"state": payload.nervous_system_state},
            rationale=payload.rationale,
        )


class FatigueSource(ClaudeSource):
    source_id = FATIGUE
    payload_model = FatiguePayload

    def _to_opinion(self, payload, context, recent_logs):
        return ProviderOpinion(
            source_id=self.source_id,
            risk_scores={"fatigue_score": payload.fatigue_score},
            recommendation={
                "recovery_status": payload.recovery_status,
                "training_volume_cap": payload.training_volume_cap,
            },
            rationale=payload.rationale,
        )


class MetabolicSource(ClaudeSource):
    source_id = METABOLIC
    payload_model = MetabolicPayload

    def _to_opinion(self, payload, context, recent_logs):
        return ProviderOpinion(
            source_id=self.source_id,
            risk_scores={"fuel_risk": payload.fuel_risk, "carb_need": payload.carb_need},
            rationale=payload.rationale,
        )


class PsychologySource(ClaudeSource):
    source_id = PSYCHOLOGY
    payload_model = PsychologyPayload

    def _to_opinion(self, payload, context, recent_logs):
        return ProviderOpinion(
            source_id=self.source_id,
            risk_scores={"adherence_risk": payload.adherence_risk},
            recommendation={"motivation_state": payload.motivation_state, "tone": payload.tone.value},
            rationale=payload.rationale,
        )


class WorkoutSource(ClaudeSource):
    source_id = WORKOUT
    payload_model = WorkoutPayload

    def _to_opinion(self, payload, context, recent_logs):
        return ProviderOpinion(
            source_id=self.source_id,
            recommendation={
                "plan_action": payload.plan_action.value,
                "workout_type": payload.workout_type,
                "intensity": payload.intensity.value,
                "duration_min": payload.duration_min,
                "week_preview": payload.week_preview,
            },
            rationale=payload.rationale,
        )


class NutritionSource(ClaudeSource):
    source_id = NUTRITION
    payload_model = NutritionPayload

    def _to_opinion(self, payload, context, recent_logs):
        return ProviderOpinion(
            source_id=self.source_id,
            recommendation={
                "nutrition_tip": payload.nutrition_tip,
                "calories": payload.calories,
                "macro_split": payload.macro_split,
            },
            rationale=payload.rationale,
        )


class NutritionVisionSource(ClaudeSource):
    """Meal photo analysis; the image travels in ``UserContext.meal_image``."""

    source_id = NUTRITION_VISION
    payload_model = MealVisionPayload

    def _message_content(self, context, prompt):
        if not context.meal_image:
            return prompt
        return [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": context.meal_image_media_type,
                    "data": context.meal_image,
                },
            },
            {"type": "text", "text": prompt},
        ]

    def _to_opinion(self, payload, context, recent_logs):
        return ProviderOpinion(
            source_id=self.source_id,
            risk_scores={"cycle_match_score": payload.cycle_match_score},
            recommendation={
                "meal_identification": payload.meal_identification,
                "macros": payload.macros.model_dump(),
                "missing_elements": payload.missing_elements,
            },
            rationale=payload.rationale,
        )


DEFAULT_SOURCE_CLASSES: tuple[type[ClaudeSource], ...] = (
    CycleSource,
    StressSource,
    FatigueSource,
    MetabolicSource,
    PsychologySource,
    WorkoutSource,
    NutritionSource,
)


def build_default_sources(settings: Settings, client: Anthropic | None = None) -> list[RecommendationSource]:
    """Construct the production source set sharing one Anthropic client."""
    client = client or Anthropic(api_key=settings.anthropic_api_key)
    prompt_config = load_source_prompts(settings.source_config_path)
    return [
        source_cls(client, settings.anthropic_model, prompt_config, settings.source_max_tokens)
        for source_cls in DEFAULT_SOURCE_CLASSES
    ]


def build_vision_source(settings: Settings, client: Anthropic | None = None) -> NutritionVisionSource:
    client = client or Anthropic(api_key=settings.anthropic_api_key)
    prompt_config = load_source_prompts(settings.source_config_path)
    return NutritionVisionSource(client, settings.anthropic_model, prompt_config, settings.source_max_tokens)
