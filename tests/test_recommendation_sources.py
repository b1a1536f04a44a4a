"""Tests for recommendation source adapters."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any, Dict, List

import httpx
import pytest
from anthropic import APITimeoutError

from azuka.config import Settings
from azuka.exceptions import MalformedSourceOutput, SourceUnavailable
from azuka.models.schemas import LogEntry, Ok, Unavailable, UserContext, UserProfile
from azuka.services.phase_calculator import compute_phase
from azuka.services.recommendation_sources import (
    CYCLE,
    SOURCE_IDS,
    CycleSource,
    StressSource,
    WorkoutSource,
    build_default_sources,
    build_vision_source,
    extract_json,
    fallback_opinion,
)

from conftest import HEALTHY_BODIES, LAST_PERIOD_START, TODAY, stub_source


@pytest.fixture
def context(profile: UserProfile) -> UserContext:
    return UserContext(profile=profile, cycle=compute_phase(LAST_PERIOD_START, 28, TODAY), today=TODAY)


class DummyMessages:
    def __init__(self, text: str | None = None, error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        content = [] if self.text is None else [SimpleNamespace(text=self.text)]
        return SimpleNamespace(content=content)


class DummyAnthropic:
    def __init__(self, text: str | None = None, error: Exception | None = None) -> None:
        self.messages = DummyMessages(text, error)


def _claude_source(settings: Settings, source_cls, client: DummyAnthropic):
    sources = {source.source_id: source for source in build_default_sources(settings, client)}
    return sources[source_cls.source_id]


def test_default_sources_cover_every_id(settings: Settings):
    sources = build_default_sources(settings, DummyAnthropic("{}"))

    assert tuple(source.source_id for source in sources) == SOURCE_IDS


@pytest.mark.asyncio
async def test_valid_body_becomes_opinion(context: UserContext):
    source = stub_source(CycleSource, {**HEALTHY_BODIES["cycle"], "phase": "follicular"})

    result = await source.evaluate(context, [])

    assert isinstance(result, Ok)
    assert result.source_id == CYCLE
    assert result.opinion.risk_scores == {"energy_level": 0.6, "inflammation_risk": 0.2}
    # Calculated phase wins over the model's label.
    assert result.opinion.recommendation["phase"] == "luteal"
    assert result.opinion.recommendation["reported_phase"] == "follicular"
    assert result.opinion.is_fallback is False


@pytest.mark.asyncio
async def test_json_wrapped_in_prose_is_accepted(context: UserContext):
    body = "Here is my assessment:\n```json\n" + json.dumps(HEALTHY_BODIES["cycle"]) + "\n```\nStay well."
    source = stub_source(CycleSource, body)

    assert isinstance(await source.evaluate(context, []), Ok)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        "I cannot answer that.",
        "{not json}",
        json.dumps({"energy_level": 0.5}),
        json.dumps({"energy_level": "very", "inflammation_risk": 0.1}),
        '{"energy_level": NaN, "inflammation_risk": 0.1}',
        '{"energy_level": 1e400, "inflammation_risk": 0.1}',
    ],
)
async def test_unusable_body_is_malformed(context: UserContext, body: str):
    result = await stub_source(CycleSource, body).evaluate(context, [])

    assert isinstance(result, Unavailable)
    assert result.reason == "malformed"
    assert result.source_id == CYCLE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, reason",
    [
        (asyncio.TimeoutError(), "timeout"),
        (SourceUnavailable(CYCLE, "HTTP 529"), "timeout"),
        (RuntimeError("boom"), "error"),
    ],
)
async def test_fetch_failures_never_raise(context: UserContext, error: Exception, reason: str):
    result = await stub_source(CycleSource, error=error).evaluate(context, [])

    assert isinstance(result, Unavailable)
    assert result.reason == reason


@pytest.mark.asyncio
async def test_stress_symptoms_raise_stress_score(context: UserContext):
    logs = [LogEntry(user_id="ada", date=TODAY, kind="symptoms", payload={"symptoms": ["Anxiety", "bloating"]})]

    result = await stub_source(StressSource, HEALTHY_BODIES["stress"]).evaluate(context, logs)

    assert result.opinion.risk_scores["stress_score"] == 0.75
    assert result.opinion.recommendation["state"] == "parasympathetic"


@pytest.mark.asyncio
async def test_unrelated_symptoms_leave_stress_alone(context: UserContext):
    logs = [LogEntry(user_id="ada", date=TODAY, kind="symptoms", payload={"symptoms": "cramps"})]

    result = await stub_source(StressSource, HEALTHY_BODIES["stress"]).evaluate(context, logs)

    assert result.opinion.risk_scores["stress_score"] == 0.3


@pytest.mark.asyncio
async def test_workout_labels_are_normalized(context: UserContext):
    body = {**HEALTHY_BODIES["workout"], "intensity": "high", "plan_action": "generate_new"}

    result = await stub_source(WorkoutSource, body).evaluate(context, [])

    assert result.opinion.recommendation["intensity"] == "High"
    assert result.opinion.recommendation["plan_action"] == "generate_new"


@pytest.mark.asyncio
async def test_claude_source_sends_context(settings: Settings, context: UserContext):
    client = DummyAnthropic(json.dumps(HEALTHY_BODIES["cycle"]))
    source = _claude_source(settings, CycleSource, client)
    logs = [LogEntry(user_id="ada", date=TODAY, kind="body", payload={"sleep_hours": 6})]

    result = await source.evaluate(context, logs)

    assert isinstance(result, Ok)
    request = client.messages.calls[0]
    assert request["model"] == settings.anthropic_model
    assert request["system"]
    prompt = request["messages"][0]["content"]
    assert TODAY.isoformat() in prompt
    assert '"sleep_hours": 6' in prompt
    assert "user_id" not in prompt


@pytest.mark.asyncio
async def test_claude_timeout_becomes_unavailable(settings: Settings, context: UserContext):
    error = APITimeoutError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
    source = _claude_source(settings, CycleSource, DummyAnthropic(error=error))

    result = await source.evaluate(context, [])

    assert isinstance(result, Unavailable)
    assert result.reason == "timeout"


@pytest.mark.asyncio
async def test_empty_claude_response_is_malformed(settings: Settings, context: UserContext):
    source = _claude_source(settings, CycleSource, DummyAnthropic())

    result = await source.evaluate(context, [])

    assert isinstance(result, Unavailable)
    assert result.reason == "malformed"


@pytest.mark.asyncio
async def test_vision_source_sends_image_block(settings: Settings, context: UserContext):
    body = {
        "meal_identification": ["salmon", "rice"],
        "macros": {"calories": 640, "protein": 38, "carbs": 60, "fat": 22},
        "cycle_match_score": 0.8,
        "missing_elements": ["leafy greens"],
        "rationale": "Good luteal fuel.",
    }
    client = DummyAnthropic(json.dumps(body))
    source = build_vision_source(settings, client)
    meal_context = context.model_copy(update={"meal_image": "aGVsbG8=", "meal_image_media_type": "image/png"})

    result = await source.evaluate(meal_context, [])

    content = client.messages.calls[0]["messages"][0]["content"]
    assert content[0]["type"] == "image"
    assert content[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "aGVsbG8="}
    assert content[1]["type"] == "text"
    assert result.opinion.risk_scores == {"cycle_match_score": 0.8}
    assert result.opinion.recommendation["macros"]["calories"] == 640


@pytest.mark.asyncio
async def test_vision_source_rejects_infinite_macros(settings: Settings, context: UserContext):
    body = '{"macros": {"calories": Infinity, "protein": 20}, "cycle_match_score": 0.5}'
    source = build_vision_source(settings, DummyAnthropic(body))

    result = await source.evaluate(context.model_copy(update={"meal_image": "aGVsbG8="}), [])

    assert isinstance(result, Unavailable)
    assert result.reason == "malformed"


def test_fallback_opinions_use_calculated_phase(context: UserContext):
    cycle = fallback_opinion(CYCLE, context.cycle)

    assert cycle.is_fallback is True
    assert cycle.recommendation["phase"] == "luteal"
    for source_id in SOURCE_IDS:
        assert fallback_opinion(source_id).is_fallback is True


def test_extract_json_requires_object():
    assert extract_json(CYCLE, 'noise {"a": 1} noise') == {"a": 1}
    with pytest.raises(MalformedSourceOutput):
        extract_json(CYCLE, "no braces here")
    with pytest.raises(json.JSONDecodeError):
        extract_json(CYCLE, "{broken}")
