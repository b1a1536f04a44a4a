"""Adaptive planning engine: orchestration pass, caching and plan lifecycle."""
from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from datetime import date, timedelta
from typing import Callable, Sequence

from azuka.config import Settings
from azuka.exceptions import PersistenceFailure, ScheduleConflict, UserNotFound
from azuka.models.schemas import (
    Dashboard,
    DayPlan,
    DayPlanUpdate,
    Decision,
    ForecastDay,
    Intensity,
    LogCreate,
    LogEntry,
    MealAnalysis,
    MealPhotoRequest,
    NutritionTarget,
    Ok,
    PlanAction,
    ProfileUpsert,
    ProviderOpinion,
    SourceResult,
    Unavailable,
    UserContext,
    UserProfile,
    WeeklyPlan,
    Workout,
)
from azuka.services.cycle_forecast import build_forecast
from azuka.services.decision_cache import (
    DASHBOARD,
    DECISION,
    FORECAST,
    NUTRITION_ENVELOPE,
    CacheKey,
    DecisionCache,
)
from azuka.services.document_store import DAILY_LOGS, USERS, DocumentStore, new_document_id
from azuka.services.nutrition_envelope import envelope_from_days, projected_envelope
from azuka.services.phase_calculator import compute_phase
from azuka.services.recommendation_sources import RecommendationSource, fallback_opinion
from azuka.services.safety_clamp import is_rest_workout, normalize, normalize_meal
from azuka.services.schedule_store import ScheduleStore
from azuka.services.synthesizer import synthesize
from azuka.services.week_builder import PLAN_LENGTH_DAYS, BuildDays, build_week


logger = logging.getLogger(__name__)

# Metabolic equivalents per intensity for burned-calorie estimates.
WORKOUT_METS = {
    Intensity.LOW: 3.5,
    Intensity.MODERATE: 5.0,
    Intensity.HIGH: 8.0,
}
DEFAULT_BODY_WEIGHT_KG = 60
DEFAULT_WORKOUT_MINUTES = 30


def estimate_calories_burned(workout: Workout, weight_kg: float | None) -> int:
    """
    Estimate kcal burned by a completed workout.

    ``MET * weight_kg * hours``; rest days burn nothing extra.

    Example:
        >>> estimate_calories_burned(Workout(title="Run", type="Cardio", duration_min=60, intensity="High"), 60)
        480
    """
    if is_rest_workout(workout.type):
        return 0
    minutes = workout.duration_min or DEFAULT_WORKOUT_MINUTES
    weight = weight_kg or DEFAULT_BODY_WEIGHT_KG
    return int(round(WORKOUT_METS[workout.intensity] * weight * minutes / 60))


class PlanningEngine:
    """
    Entry point for every planning operation.

    One orchestration pass runs per (user, day): all recommendation sources
    are queried concurrently, their opinions reconciled by the synthesizer and
    clamped, and the result cached. Writes for a user are serialized with a
    per-user lock; reads of cached values never take it.
    """

    def __init__(
        self,
        store: DocumentStore,
        sources: Sequence[RecommendationSource],
        cache: DecisionCache,
        settings: Settings,
        vision_source: RecommendationSource | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.sources = list(sources)
        self.cache = cache
        self.settings = settings
        self.vision_source = vision_source
        self.schedule = ScheduleStore(store)
        self._today = today
        # Locks live only while some pass holds or awaits them.
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # Helpers
    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    def _ttl(self, degraded: bool) -> timedelta:
        if degraded:
            return timedelta(minutes=self.settings.fallback_cache_ttl_minutes)
        return timedelta(hours=self.settings.decision_cache_ttl_hours)

    def cycle_length_for(self, profile: UserProfile) -> int:
        return profile.cycle_length or self.settings.default_cycle_length

    def build_days_for(self, profile: UserProfile) -> BuildDays:
        cycle_length = self.cycle_length_for(profile)

        def build_days(start: date, count: int):
            return build_week(profile, cycle_length, start, count)

        return build_days

    def _invalidate(self, user_id: str) -> None:
        self.cache.invalidate_user(user_id)

    # Profile and logs
    def get_profile(self, user_id: str) -> UserProfile:
        document = self.store.find_one(USERS, {"_id": user_id})
        if document is None:
            raise UserNotFound(user_id)
        return UserProfile.model_validate(document)

    def list_user_ids(self) -> list[str]:
        return sorted(document["_id"] for document in self.store.find(USERS))

    async def upsert_profile(self, user_id: str, data: ProfileUpsert) -> UserProfile:
        profile = UserProfile(user_id=user_id, **data.model_dump())
        async with self._lock_for(user_id):
            self.store.find_one_and_update(
                USERS,
                {"_id": user_id},
                profile.model_dump(mode="json"),
                upsert=True,
            )
            self._invalidate(user_id)
        logger.info("Stored profile for %s", user_id)
        return profile

    async def record_log(self, user_id: str, data: LogCreate) -> LogEntry:
        self.get_profile(user_id)
        entry = LogEntry(user_id=user_id, **data.model_dump())
        async with self._lock_for(user_id):
            self.store.insert(DAILY_LOGS, {"_id": new_document_id(), **entry.model_dump(mode="json")})
            for purpose in (DECISION, DASHBOARD, NUTRITION_ENVELOPE):
                self.cache.invalidate(CacheKey(purpose, user_id, entry.date.isoformat()))
        logger.info("Recorded %s log for %s on %s", entry.kind, user_id, entry.date)
        return entry

    def recent_logs(self, user_id: str, day: date) -> list[LogEntry]:
        """Most recent logs on or before ``day``, oldest first."""
        entries = [
            LogEntry.model_validate(document)
            for document in self.store.find(DAILY_LOGS, {"user_id": user_id})
        ]
        entries = [entry for entry in entries if entry.date <= day]
        entries.sort(key=lambda entry: entry.date)
        return entries[-self.settings.recent_log_limit:]

    # Orchestration
    async def _gather(self, context: UserContext, logs: list[LogEntry]) -> list[ProviderOpinion]:
        """Fan out to every source; unfinished or failed sources get fallbacks."""
        if not self.sources:
            return []

        tasks = {
            asyncio.create_task(source.evaluate(context, logs)): source.source_id
            for source in self.sources
        }
        done, pending = await asyncio.wait(tasks, timeout=self.settings.orchestration_timeout_seconds)

        results: list[SourceResult] = []
        for task in pending:
            task.cancel()
            results.append(
                Unavailable(
                    source_id=tasks[task],
                    reason="timeout",
                    detail=f"no answer within {self.settings.orchestration_timeout_seconds}s",
                )
            )
            logger.warning("Source %s timed out for %s", tasks[task], context.profile.user_id)
        for task in done:
            if task.exception() is not None:
                logger.warning("Source %s raised past its boundary: %s", tasks[task], task.exception())
                results.append(Unavailable(source_id=tasks[task], reason="error", detail=str(task.exception())))
            else:
                results.append(task.result())

        opinions = [
            result.opinion if isinstance(result, Ok) else fallback_opinion(result.source_id, context.cycle)
            for result in results
        ]
        unavailable = sorted(result.source_id for result in results if isinstance(result, Unavailable))
        logger.info(
            "Orchestration pass for %s on %s: %d ok, %d unavailable %s",
            context.profile.user_id,
            context.today,
            len(results) - len(unavailable),
            len(unavailable),
            unavailable,
        )
        return opinions

    async def _decide(self, user_id: str, day: date, force_new: bool = False) -> Decision:
        """Run one orchestration pass and persist its plan effects. Caller holds the lock."""
        profile = self.get_profile(user_id)
        cycle_length = self.cycle_length_for(profile)
        cycle = compute_phase(profile.last_period_start, cycle_length, day)

        current_plan = self.schedule.find_plan_covering(user_id, day)
        if force_new:
            plan_status = "force_new"
        else:
            plan_status = "active" if current_plan else "none"

        context = UserContext(profile=profile, cycle=cycle, today=day, plan_status=plan_status)
        opinions = await self._gather(context, self.recent_logs(user_id, day))

        baseline_week = None
        if plan_status != "active":
            baseline_week = build_week(profile, cycle_length, day, PLAN_LENGTH_DAYS)
        decision = normalize(
            synthesize(opinions, user_id=user_id, day=day, cycle=cycle, baseline_week=baseline_week)
        )

        try:
            self._persist_plan_effects(profile, day, decision, plan_status)
        except PersistenceFailure:
            logger.exception("Could not persist plan changes for %s on %s", user_id, day)
        except ScheduleConflict as exc:
            logger.warning("Suggested week for %s not stored: %s", user_id, exc)
        # Forecasts covering this day read its stored plan.
        for offset in range(PLAN_LENGTH_DAYS):
            self.cache.invalidate(CacheKey(FORECAST, user_id, (day - timedelta(days=offset)).isoformat()))
        return decision

    def _persist_plan_effects(self, profile: UserProfile, day: date, decision: Decision, plan_status: str) -> None:
        user_id = profile.user_id
        if decision.plan_action == PlanAction.GENERATE_NEW and decision.week_preview:
            self.schedule.save_generated_plan(user_id, day, decision.week_preview)
        elif plan_status == "none":
            self.schedule.get_or_create_current_plan(user_id, day, self.build_days_for(profile))
        elif plan_status == "force_new":
            self.schedule.regenerate_from(user_id, day, self.build_days_for(profile))
        self.schedule.apply_override(user_id, day, decision)

    async def get_daily_decision(self, user_id: str, day: date | None = None) -> Decision:
        """
        Return the Decision for ``user_id`` on ``day`` (default today).

        Cached for 24 hours, or 5 minutes when any source fell back. Repeated
        calls inside the TTL return equal values without a new pass.

        Raises:
            UserNotFound: If no profile is stored for ``user_id``
        """
        day = day or self._today()
        key = CacheKey(DECISION, user_id, day.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Cache HIT for %s decision on %s", user_id, day)
            return cached

        async with self._lock_for(user_id):
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Cache HIT for %s decision on %s (after lock)", user_id, day)
                return cached

            logger.info("Cache MISS - running orchestration for %s on %s", user_id, day)
            decision = await self._decide(user_id, day)
            self.cache.set(key, decision, self._ttl(decision.degraded))
            return decision

    async def get_nutrition_envelope(self, user_id: str, day: date | None = None) -> list[NutritionTarget]:
        """Seven days of calorie and macro targets derived from the current Decision and plan."""
        day = day or self._today()
        key = CacheKey(NUTRITION_ENVELOPE, user_id, day.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Cache HIT for %s nutrition envelope on %s", user_id, day)
            return cached

        decision = await self.get_daily_decision(user_id, day)
        profile = self.get_profile(user_id)
        window = [day + timedelta(days=offset) for offset in range(PLAN_LENGTH_DAYS)]
        planned = {}
        for plan in self.schedule.list_plans(user_id):
            for day_plan in plan.days:
                if day_plan.date in window:
                    planned[day_plan.date] = day_plan

        projected = {
            target.date: target
            for target in projected_envelope(profile, self.cycle_length_for(profile), day, PLAN_LENGTH_DAYS)
        }
        from_plan = {target.date: target for target in envelope_from_days(list(planned.values()))}
        envelope = [from_plan.get(target_day, projected[target_day]) for target_day in window]

        self.cache.set(key, envelope, self._ttl(decision.degraded))
        return envelope

    async def get_dashboard(self, user_id: str, day: date | None = None) -> Dashboard:
        day = day or self._today()
        key = CacheKey(DASHBOARD, user_id, day.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Cache HIT for %s dashboard on %s", user_id, day)
            return cached

        decision = await self.get_daily_decision(user_id, day)
        envelope = await self.get_nutrition_envelope(user_id, day)
        plan = self.schedule.find_plan_covering(user_id, day)
        dashboard = Dashboard(
            decision=decision,
            today_plan=plan.day_for(day) if plan else None,
            nutrition=envelope[0] if envelope else None,
        )
        self.cache.set(key, dashboard, self._ttl(decision.degraded))
        return dashboard

    async def get_cycle_forecast(self, user_id: str, day: date | None = None) -> list[ForecastDay]:
        """Seven days of projected phase, energy and symptom risk from ``day``."""
        day = day or self._today()
        key = CacheKey(FORECAST, user_id, day.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Cache HIT for %s forecast on %s", user_id, day)
            return cached

        profile = self.get_profile(user_id)
        window = {day + timedelta(days=offset) for offset in range(PLAN_LENGTH_DAYS)}
        # Earliest covering plan wins, as in ScheduleStore.get_day.
        planned: dict[date, DayPlan] = {}
        for plan in self.schedule.list_plans(user_id):
            for day_plan in plan.days:
                if day_plan.date in window:
                    planned.setdefault(day_plan.date, day_plan)
        forecast = build_forecast(profile.last_period_start, self.cycle_length_for(profile), day, planned)
        self.cache.set(key, forecast, self._ttl(degraded=False))
        logger.info("Built %d-day forecast for %s from %s", len(forecast), user_id, day)
        return forecast

    # Plan lifecycle
    async def get_weekly_plan(self, user_id: str, day: date | None = None) -> WeeklyPlan:
        """Current plan for ``user_id``; overdue days are swept and replanned first."""
        day = day or self._today()
        profile = self.get_profile(user_id)
        build_days = self.build_days_for(profile)
        async with self._lock_for(user_id):
            if self.schedule.detect_missed(user_id, day, build_days):
                self._invalidate(user_id)
            return self.schedule.get_or_create_current_plan(user_id, day, build_days)

    async def mark_workout_complete(
        self,
        user_id: str,
        day: date,
        feedback: str | None = None,
        calories_burned: int | None = None,
    ) -> WeeklyPlan:
        profile = self.get_profile(user_id)
        async with self._lock_for(user_id):
            plan = self.schedule.mark_complete(user_id, day, feedback)
            workout = plan.day_for(day).workout
            if calories_burned is None:
                calories_burned = estimate_calories_burned(workout, profile.weight_kg)
            self.store.insert(
                DAILY_LOGS,
                {
                    "_id": new_document_id(),
                    **LogEntry(
                        user_id=user_id,
                        date=day,
                        kind="workout",
                        payload={
                            **workout.model_dump(mode="json"),
                            "calories_burned": calories_burned,
                            "feedback": feedback,
                        },
                    ).model_dump(mode="json"),
                },
            )
            self._invalidate(user_id)
        return plan

    async def mark_workout_missed(self, user_id: str, day: date) -> WeeklyPlan:
        profile = self.get_profile(user_id)
        async with self._lock_for(user_id):
            plan = self.schedule.mark_missed(user_id, day, self.build_days_for(profile))
            self._invalidate(user_id)
        return plan

    async def regenerate_plan(self, user_id: str, day: date | None = None) -> WeeklyPlan:
        """
        Force a new week from ``day`` (default today).

        Completed days are preserved; the fresh Decision replaces the cached
        one.

        Raises:
            ScheduleConflict: If the new week would overlap another plan
        """
        day = day or self._today()
        profile = self.get_profile(user_id)
        async with self._lock_for(user_id):
            self._invalidate(user_id)
            decision = await self._decide(user_id, day, force_new=True)
            self.cache.set(CacheKey(DECISION, user_id, day.isoformat()), decision, self._ttl(decision.degraded))
            plan = self.schedule.find_plan_covering(user_id, day)
            if plan is None:
                plan = self.schedule.save_generated_plan(
                    user_id, day, self.build_days_for(profile)(day, PLAN_LENGTH_DAYS)
                )
        logger.info("Regenerated plan %s for %s from %s", plan.plan_id, user_id, day)
        return plan

    async def edit_day(self, user_id: str, day: date, updates: DayPlanUpdate) -> WeeklyPlan:
        self.get_profile(user_id)
        async with self._lock_for(user_id):
            plan = self.schedule.edit_day(user_id, day, updates)
            self._invalidate(user_id)
        return plan

    async def sweep_missed_workouts(self, today: date | None = None) -> dict[str, list[date]]:
        """Mark overdue days missed and replan for every stored user."""
        today = today or self._today()
        swept: dict[str, list[date]] = {}
        for user_id in self.list_user_ids():
            profile = self.get_profile(user_id)
            async with self._lock_for(user_id):
                missed = self.schedule.detect_missed(user_id, today, self.build_days_for(profile))
                if missed:
                    self._invalidate(user_id)
                    swept[user_id] = missed
        logger.info("Missed-workout sweep for %s: %d users replanned", today, len(swept))
        return swept

    # Meals
    async def analyze_meal_photo(self, user_id: str, request: MealPhotoRequest) -> MealAnalysis:
        """Analyze a meal photo against the user's cycle phase and log it."""
        day = request.meal_date or self._today()
        profile = self.get_profile(user_id)
        cycle = compute_phase(profile.last_period_start, self.cycle_length_for(profile), day)
        context = UserContext(
            profile=profile,
            cycle=cycle,
            today=day,
            meal_image=request.image_base64,
            meal_image_media_type=request.media_type,
        )

        result: SourceResult | None = None
        if self.vision_source is not None:
            task = asyncio.create_task(self.vision_source.evaluate(context, self.recent_logs(user_id, day)))
            done, _ = await asyncio.wait({task}, timeout=self.settings.orchestration_timeout_seconds)
            if task in done:
                result = task.result()
            else:
                task.cancel()
                logger.warning("Meal analysis timed out for %s", user_id)

        if isinstance(result, Ok):
            opinion = result.opinion
            macros = opinion.recommendation.get("macros", {})
            analysis = MealAnalysis(
                meal_identification=opinion.recommendation.get("meal_identification", []),
                calories=macros.get("calories", 0),
                protein=macros.get("protein", 0),
                carbs=macros.get("carbs", 0),
                fat=macros.get("fat", 0),
                cycle_match_score=opinion.risk_scores.get("cycle_match_score", 0.5),
                missing_elements=opinion.recommendation.get("missing_elements", []),
                rationale=opinion.rationale,
            )
        else:
            analysis = MealAnalysis(
                calories=0,
                protein=0,
                carbs=0,
                fat=0,
                cycle_match_score=0.5,
                rationale="Meal analysis unavailable. Log the meal manually.",
                degraded=True,
            )
        analysis = normalize_meal(analysis)

        if not analysis.degraded:
            await self.record_log(
                user_id,
                LogCreate(date=day, kind="food", payload={"analysis_id": uuid.uuid4().hex, **analysis.model_dump()}),
            )
        return analysis
