"""Weekly plan persistence and the per-day status lifecycle.

Day status transitions::

    planned -> completed        user confirms the workout
    planned -> missed           the day passes, or the user reports it
    missed  -> rescheduled      the following days were regenerated
    any     -> rescheduled      explicit edit of workout or readiness

Plans of one user never overlap. Regenerating over dates that are already
planned merges by date and keeps completed days as they are.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any

from azuka.exceptions import DayNotPlanned, ScheduleConflict
from azuka.models.schemas import (
    DayPlan,
    DayPlanUpdate,
    DayStatus,
    Decision,
    WeeklyPlan,
    Workout,
)
from azuka.services.document_store import WEEKLY_PLANS, DocumentStore
from azuka.services.safety_clamp import normalize_day_plan
from azuka.services.week_builder import (
    PLAN_LENGTH_DAYS,
    BuildDays,
    downgrade_day_plan,
    normalize_readiness,
)


logger = logging.getLogger(__name__)

STRESS_OVERRIDE_RULE = "stress_dominance"
WORKOUT_EDIT_FIELDS = ("title", "type", "duration_min", "intensity")


def _transition(day: DayPlan, status: DayStatus, **changes: Any) -> DayPlan:
    history = list(day.status_history)
    if day.status != status:
        history.append(day.status)
    return day.model_copy(update={"status": status, "status_history": history, **changes})


def _is_overdue(day: DayPlan, today: date) -> bool:
    """A past day the user never completed and that has not been replanned yet."""
    if day.date >= today:
        return False
    if day.status == DayStatus.PLANNED:
        return True
    return day.status == DayStatus.RESCHEDULED and DayStatus.MISSED not in day.status_history


class ScheduleStore:
    """Weekly plans stored as documents in the ``weekly_plans`` collection."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    # Reads
    def list_plans(self, user_id: str) -> list[WeeklyPlan]:
        documents = self.store.find(WEEKLY_PLANS, {"user_id": user_id})
        plans = [WeeklyPlan.model_validate(document) for document in documents]
        return sorted(plans, key=lambda plan: plan.week_start)

    def find_plan_covering(self, user_id: str, day: date) -> WeeklyPlan | None:
        for plan in self.list_plans(user_id):
            if plan.covers(day):
                return plan
        return None

    def get_day(self, user_id: str, day: date) -> tuple[WeeklyPlan, DayPlan]:
        plan = self.find_plan_covering(user_id, day)
        day_plan = plan.day_for(day) if plan else None
        if plan is None or day_plan is None:
            raise DayNotPlanned(user_id, day)
        return plan, day_plan

    # Writes
    def _save(self, plan: WeeklyPlan) -> WeeklyPlan:
        plan = plan.model_copy(update={"updated_at": datetime.utcnow()})
        document = {**plan.model_dump(mode="json"), "_id": plan.plan_id}
        self.store.find_one_and_update(WEEKLY_PLANS, {"_id": plan.plan_id}, document, upsert=True)
        return plan

    def _replace_day(self, plan: WeeklyPlan, day: DayPlan) -> WeeklyPlan:
        days = [day if existing.date == day.date else existing for existing in plan.days]
        return self._save(plan.model_copy(update={"days": days}))

    def save_generated_plan(self, user_id: str, start: date, days: list[DayPlan]) -> WeeklyPlan:
        """
        Persist freshly generated days starting at ``start``.

        When a plan already covers ``start`` the new days are merged into it by
        date: completed days are preserved, everything from ``start`` on is
        replaced and the plan may grow at its end. Any other overlap is a
        conflict.

        Raises:
            ScheduleConflict: If the days would overlap a different plan
        """
        days = sorted((day for day in days if day.date >= start), key=lambda day: day.date)
        if not days:
            raise ValueError("save_generated_plan needs at least one day on or after start")
        end = days[-1].date

        plans = self.list_plans(user_id)
        covering = next((plan for plan in plans if plan.covers(start)), None)
        new_end = max(end, covering.week_end) if covering else end
        new_start = covering.week_start if covering else start
        for plan in plans:
            if plan is covering:
                continue
            if plan.week_start <= new_end and new_start <= plan.week_end:
                logger.warning(
                    "Schedule conflict for %s: %s..%s overlaps plan %s",
                    user_id,
                    start,
                    end,
                    plan.plan_id,
                )
                raise ScheduleConflict(user_id, start, end, plan.plan_id)

        if covering is None:
            plan = WeeklyPlan(
                plan_id=uuid.uuid4().hex,
                user_id=user_id,
                week_start=start,
                week_end=end,
                days=days,
            )
            logger.info("Created plan %s for %s (%s..%s)", plan.plan_id, user_id, start, end)
            return self._save(plan)

        merged = {day.date: day for day in covering.days}
        for day in days:
            existing = merged.get(day.date)
            if existing is not None and existing.status == DayStatus.COMPLETED:
                continue
            merged[day.date] = day
        plan = covering.model_copy(
            update={"days": sorted(merged.values(), key=lambda day: day.date), "week_end": new_end}
        )
        logger.info("Merged %d generated days into plan %s for %s", len(days), plan.plan_id, user_id)
        return self._save(WeeklyPlan.model_validate(plan.model_dump()))

    def get_or_create_current_plan(self, user_id: str, today: date, build_days: BuildDays) -> WeeklyPlan:
        plan = self.find_plan_covering(user_id, today)
        if plan is not None:
            return plan
        return self.save_generated_plan(user_id, today, build_days(today, PLAN_LENGTH_DAYS))

    def regenerate_from(self, user_id: str, start: date, build_days: BuildDays) -> WeeklyPlan | None:
        """
        Rebuild the days of the plan covering ``start`` from ``start`` on.

        Days before ``start`` and completed days are left untouched; rebuilt
        days are flagged ``auto_replanned``. Returns None when no plan covers
        ``start``.
        """
        plan = self.find_plan_covering(user_id, start)
        if plan is None:
            logger.info("No plan covers %s for %s; nothing to regenerate", start, user_id)
            return None

        count = (plan.week_end - start).days + 1
        fresh = [
            day.model_copy(update={"auto_replanned": True})
            for day in build_days(start, count)
        ]
        logger.info("Regenerating %d days of plan %s for %s from %s", count, plan.plan_id, user_id, start)
        return self.save_generated_plan(user_id, start, fresh)

    def mark_complete(
        self,
        user_id: str,
        day: date,
        feedback: str | None = None,
    ) -> WeeklyPlan:
        plan, day_plan = self.get_day(user_id, day)
        updated = _transition(
            day_plan,
            DayStatus.COMPLETED,
            completed_at=day_plan.completed_at or datetime.utcnow(),
            feedback=feedback if feedback is not None else day_plan.feedback,
        )
        logger.info("Marked %s complete for %s", day, user_id)
        return self._replace_day(plan, updated)

    def mark_missed(self, user_id: str, day: date, build_days: BuildDays) -> WeeklyPlan:
        """Mark ``day`` missed, regenerate the following days and reschedule it."""
        plan, day_plan = self.get_day(user_id, day)
        if day_plan.status == DayStatus.COMPLETED:
            logger.warning("Ignoring missed report for completed day %s of %s", day, user_id)
            return plan

        plan = self._replace_day(plan, _transition(day_plan, DayStatus.MISSED))
        logger.info("Marked %s missed for %s", day, user_id)

        if day < plan.week_end:
            plan = self.regenerate_from(user_id, day + timedelta(days=1), build_days) or plan

        missed = plan.day_for(day)
        return self._replace_day(plan, _transition(missed, DayStatus.RESCHEDULED))

    def edit_day(self, user_id: str, day: date, updates: DayPlanUpdate) -> WeeklyPlan:
        """Apply a manual edit; workout or readiness changes reschedule the day."""
        plan, day_plan = self.get_day(user_id, day)
        changes = updates.model_dump(exclude_unset=True, exclude_none=True)

        workout_changes = {field: changes[field] for field in WORKOUT_EDIT_FIELDS if field in changes}
        update: dict[str, Any] = {}
        if workout_changes:
            update["workout"] = Workout.model_validate({**day_plan.workout.model_dump(), **workout_changes})
        if "readiness" in changes:
            update["readiness"] = normalize_readiness(changes["readiness"], day_plan.readiness)
        if "notes" in changes:
            update["notes"] = changes["notes"]

        edited = day_plan.model_copy(update=update)
        if workout_changes or "readiness" in changes:
            edited = _transition(edited, DayStatus.RESCHEDULED)
        logger.info("Edited %s for %s (fields=%s)", day, user_id, sorted(changes))
        return self._replace_day(plan, normalize_day_plan(edited))

    def apply_override(self, user_id: str, day: date, decision: Decision) -> WeeklyPlan | None:
        """Downgrade the stored day when stress dominance fired for it."""
        if STRESS_OVERRIDE_RULE not in decision.applied_rules:
            return None
        plan = self.find_plan_covering(user_id, day)
        day_plan = plan.day_for(day) if plan else None
        if day_plan is None or day_plan.status == DayStatus.COMPLETED:
            return plan

        downgraded = downgrade_day_plan(day_plan)
        if downgraded == day_plan:
            return plan
        downgraded = downgraded.model_copy(update={"auto_replanned": True})
        logger.info("Stress override downgraded %s for %s", day, user_id)
        return self._replace_day(plan, downgraded)

    def detect_missed(self, user_id: str, today: date, build_days: BuildDays) -> list[date]:
        """
        Sweep past days that were never completed.

        Every overdue day becomes ``missed``, the remaining days from
        ``today`` are regenerated once, and the missed days then move to
        ``rescheduled``. Returns the dates that were marked missed.
        """
        missed_dates: list[date] = []
        for plan in self.list_plans(user_id):
            overdue = [day for day in plan.days if _is_overdue(day, today)]
            if not overdue:
                continue
            overdue_dates = {day.date for day in overdue}
            days = [
                _transition(day, DayStatus.MISSED) if day.date in overdue_dates else day
                for day in plan.days
            ]
            self._save(plan.model_copy(update={"days": days}))
            missed_dates.extend(sorted(overdue_dates))

        if not missed_dates:
            return []

        logger.info("Detected %d missed days for %s", len(missed_dates), user_id)
        self.regenerate_from(user_id, today, build_days)

        for plan in self.list_plans(user_id):
            days = [
                _transition(day, DayStatus.RESCHEDULED) if day.date in missed_dates and day.status == DayStatus.MISSED else day
                for day in plan.days
            ]
            if days != plan.days:
                self._save(plan.model_copy(update={"days": days}))
        return missed_dates
