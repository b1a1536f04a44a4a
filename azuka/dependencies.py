"""Process-wide service wiring shared by the API and the scheduler."""
from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from anthropic import Anthropic

from azuka.config import get_settings
from azuka.database import SessionLocal
from azuka.services.decision_cache import DecisionCache
from azuka.services.document_store import SqlDocumentStore
from azuka.services.planning_engine import PlanningEngine
from azuka.services.recommendation_sources import build_default_sources, build_vision_source


@lru_cache()
def get_engine() -> PlanningEngine:
    """Return the single PlanningEngine for this process."""

    settings = get_settings()
    client = Anthropic(api_key=settings.anthropic_api_key)
    cache = DecisionCache(
        default_ttl=timedelta(hours=settings.decision_cache_ttl_hours),
        max_entries=settings.cache_max_entries,
    )
    return PlanningEngine(
        store=SqlDocumentStore(SessionLocal),
        sources=build_default_sources(settings, client),
        cache=cache,
        settings=settings,
        vision_source=build_vision_source(settings, client),
    )
