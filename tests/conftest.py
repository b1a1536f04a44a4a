"""Pytest configuration for global fixtures and logging setup."""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

_TMP_DIR = Path(tempfile.mkdtemp(prefix="azuka-tests-"))

os.environ["ANTHROPIC_API_KEY"] = os.environ.get("ANTHROPIC_API_KEY") or "test-anthropic-key"
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'azuka-test.db'}"
os.environ["LOG_DIR"] = str(_TMP_DIR / "logs")

from azuka.logging_config import configure_logging

configure_logging()

from azuka.config import Settings
from azuka.dependencies import get_engine
from azuka.main import app
from azuka.models.schemas import ProfileUpsert, UserProfile
from azuka.services.decision_cache import DecisionCache
from azuka.services.document_store import InMemoryDocumentStore
from azuka.services.planning_engine import PlanningEngine
from azuka.services.recommendation_sources import (
    CycleSource,
    FatigueSource,
    MetabolicSource,
    NutritionSource,
    NutritionVisionSource,
    PsychologySource,
    StressSource,
    WorkoutSource,
)


TODAY = date(2026, 3, 10)
# 2026-02-17 is cycle day 1, so TODAY is cycle day 22 (luteal) for a 28-day cycle.
LAST_PERIOD_START = TODAY - timedelta(days=21)

SOURCE_CLASSES = {
    "cycle": CycleSource,
    "stress": StressSource,
    "fatigue": FatigueSource,
    "metabolic": MetabolicSource,
    "psychology": PsychologySource,
    "workout": WorkoutSource,
    "nutrition": NutritionSource,
}

HEALTHY_BODIES: Dict[str, Dict[str, Any]] = {
    "cycle": {"phase": "luteal", "energy_level": 0.6, "inflammation_risk": 0.2, "rationale": "Late luteal dip."},
    "stress": {"stress_score": 0.3, "cortisol_risk": 0.2, "nervous_system_state": "parasympathetic", "rationale": "Calm."},
    "fatigue": {"fatigue_score": 0.3, "recovery_status": "recovered", "training_volume_cap": "medium", "rationale": "Rested."},
    "metabolic": {"fuel_risk": 0.3, "carb_need": 0.9, "rationale": "Luteal carb need is high."},
    "psychology": {"motivation_state": "stable", "adherence_risk": 0.2, "tone": "supportive", "rationale": "On track."},
    "workout": {
        "plan_action": "keep",
        "workout_type": "Strength",
        "intensity": "High",
        "duration_min": 45,
        "rationale": "Strength block.",
    },
    "nutrition": {
        "nutrition_tip": "Add complex carbs at dinner.",
        "calories": 2100,
        "macro_split": {"protein_pct": 0.3, "carb_pct": 0.45, "fat_pct": 0.25},
        "rationale": "Fuel the luteal phase.",
    },
}


class FixedClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def stub_source(source_cls, body: Any = None, *, delay: float = 0.0, error: BaseException | None = None):
    """
    Build a source that keeps the production payload mapping but answers
    from canned text instead of calling Claude.
    """

    class StubSource(source_cls):
        calls = 0

        def __init__(self) -> None:
            pass

        async def _fetch(self, context, recent_logs):
            type(self).calls += 1
            self.last_context = context
            self.last_logs = recent_logs
            if delay:
                await asyncio.sleep(delay)
            if error is not None:
                raise error
            return body if isinstance(body, str) else json.dumps(body)

    return StubSource()


def build_sources(overrides: Dict[str, Any] | None = None) -> list:
    """Healthy stub sources; ``overrides`` maps a source id to a body or a ready-made source."""
    overrides = overrides or {}
    sources = []
    for source_id, source_cls in SOURCE_CLASSES.items():
        override = overrides.get(source_id, HEALTHY_BODIES[source_id])
        if hasattr(override, "evaluate"):
            sources.append(override)
        else:
            sources.append(stub_source(source_cls, override))
    return sources


def profile_payload(**changes: Any) -> ProfileUpsert:
    data = {
        "name": "Ada",
        "age": 30,
        "weight_kg": 60,
        "height_cm": 165,
        "activity_factor": "Lightly Active",
        "cycle_length": 28,
        "last_period_start": LAST_PERIOD_START,
        "goal": "maintenance",
    }
    data.update(changes)
    return ProfileUpsert(**data)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        anthropic_api_key="test-anthropic-key",
        orchestration_timeout_seconds=0.5,
        decision_cache_ttl_hours=24,
        fallback_cache_ttl_minutes=5,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def profile() -> UserProfile:
    return UserProfile(user_id="ada", **profile_payload().model_dump())


@pytest.fixture
def make_engine(settings: Settings, clock: FixedClock, store: InMemoryDocumentStore) -> Callable[..., PlanningEngine]:
    """Factory for engines over the shared in-memory store and fake clock."""

    def factory(overrides: Dict[str, Any] | None = None, vision_body: Any = None, vision_source=None) -> PlanningEngine:
        cache = DecisionCache(default_ttl=timedelta(hours=24), max_entries=100, clock=clock)
        if vision_source is None and vision_body is not None:
            vision_source = stub_source(NutritionVisionSource, vision_body)
        return PlanningEngine(
            store=store,
            sources=build_sources(overrides),
            cache=cache,
            settings=settings,
            vision_source=vision_source,
            today=lambda: TODAY,
        )

    return factory


@pytest_asyncio.fixture
async def engine(make_engine) -> PlanningEngine:
    """Engine with healthy sources and a stored profile for user ``ada``."""
    planning_engine = make_engine()
    await planning_engine.upsert_profile("ada", profile_payload())
    return planning_engine


@pytest.fixture
def api_engine(make_engine) -> PlanningEngine:
    return make_engine()


@pytest.fixture
def test_client(api_engine: PlanningEngine) -> Iterator[TestClient]:
    """FastAPI test client wired to an in-memory engine."""
    app.dependency_overrides[get_engine] = lambda: api_engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
