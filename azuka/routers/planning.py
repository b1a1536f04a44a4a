"""API endpoints for daily decisions, weekly plans and logging."""
from __future__ import annotations

import logging
from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from azuka.dependencies import get_engine
from azuka.exceptions import (
    AzukaError,
    DayNotPlanned,
    PersistenceFailure,
    ScheduleConflict,
    UserNotFound,
)
from azuka.models.schemas import (
    Dashboard,
    DayPlanUpdate,
    Decision,
    ForecastDay,
    LogCreate,
    LogEntry,
    MealAnalysis,
    MealPhotoRequest,
    NutritionTarget,
    ProfileUpsert,
    UserProfile,
    WeeklyPlan,
    WorkoutCompletionUpdate,
)
from azuka.services.planning_engine import PlanningEngine


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users/{user_id}", tags=["planning"])

Engine = Annotated[PlanningEngine, Depends(get_engine)]


def _parse_date(date_str: str) -> date:
    try:
        return date.fromisoformat(date_str)
    except ValueError:
        logger.warning("Invalid request date: %s", date_str)
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")


def _http_error(exc: AzukaError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(exc, (UserNotFound, DayNotPlanned)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ScheduleConflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PersistenceFailure):
        return HTTPException(status_code=503, detail="Storage temporarily unavailable")
    return HTTPException(status_code=500, detail=str(exc))


@router.put("", response_model=UserProfile)
async def upsert_profile(user_id: str, payload: ProfileUpsert, engine: Engine):
    """Create or replace the profile for ``user_id``."""
    try:
        return await engine.upsert_profile(user_id, payload)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to store profile for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to store profile: {str(e)}")


@router.post("/logs", response_model=LogEntry, status_code=201)
async def record_log(user_id: str, payload: LogCreate, engine: Engine):
    try:
        return await engine.record_log(user_id, payload)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to record log for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to record log: {str(e)}")


@router.get("/decision/today", response_model=Decision)
async def get_today_decision(user_id: str, engine: Engine):
    """
    Get today's synthesized Decision.

    The first call of the day runs every recommendation source; later calls
    are served from the cache until it expires.
    """
    try:
        logger.info("Handling decision request for %s (today)", user_id)
        return await engine.get_daily_decision(user_id)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to build today's decision for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to build decision: {str(e)}")


@router.get("/decision/{date_str}", response_model=Decision)
async def get_decision_for_date(user_id: str, date_str: str, engine: Engine):
    """
    Get the Decision for a specific date.

    Args:
        date_str: Date in YYYY-MM-DD format
    """
    target_date = _parse_date(date_str)
    try:
        logger.info("Handling decision request for %s on %s", user_id, target_date.isoformat())
        return await engine.get_daily_decision(user_id, target_date)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to build decision for %s on %s", user_id, date_str)
        raise HTTPException(status_code=500, detail=f"Failed to build decision: {str(e)}")


@router.get("/dashboard", response_model=Dashboard)
async def get_dashboard(user_id: str, engine: Engine):
    try:
        return await engine.get_dashboard(user_id)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to build dashboard for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to build dashboard: {str(e)}")


@router.get("/nutrition/envelope", response_model=list[NutritionTarget])
async def get_nutrition_envelope(user_id: str, engine: Engine):
    """Seven days of calorie and macro targets starting today."""
    try:
        return await engine.get_nutrition_envelope(user_id)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to build nutrition envelope for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to build nutrition envelope: {str(e)}")


@router.get("/forecast", response_model=list[ForecastDay])
async def get_cycle_forecast(user_id: str, engine: Engine):
    """Seven-day cycle and energy forecast starting today."""
    try:
        return await engine.get_cycle_forecast(user_id)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to build forecast for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to build forecast: {str(e)}")


@router.get("/plan", response_model=WeeklyPlan)
async def get_weekly_plan(user_id: str, engine: Engine):
    try:
        plan = await engine.get_weekly_plan(user_id)
        logger.info("Retrieved plan %s for %s (%d days)", plan.plan_id, user_id, len(plan.days))
        return plan
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to retrieve plan for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to retrieve plan: {str(e)}")


@router.post("/plan/regenerate", response_model=WeeklyPlan)
async def regenerate_plan(user_id: str, engine: Engine):
    """Force a fresh week from today; completed days are kept."""
    try:
        return await engine.regenerate_plan(user_id)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to regenerate plan for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to regenerate plan: {str(e)}")


@router.post("/plan/days/{date_str}/complete", response_model=WeeklyPlan)
async def complete_day(
    user_id: str,
    date_str: str,
    engine: Engine,
    payload: WorkoutCompletionUpdate | None = None,
):
    """
    Mark the planned workout for a date as completed.

    Args:
        date_str: Date in YYYY-MM-DD format
        payload: Optional feedback and burned calories (estimated when omitted)
    """
    target_date = _parse_date(date_str)
    payload = payload or WorkoutCompletionUpdate()
    try:
        return await engine.mark_workout_complete(
            user_id,
            target_date,
            feedback=payload.feedback,
            calories_burned=payload.calories_burned,
        )
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to complete %s for %s", date_str, user_id)
        raise HTTPException(status_code=500, detail=f"Failed to update workout: {str(e)}")


@router.post("/plan/days/{date_str}/missed", response_model=WeeklyPlan)
async def miss_day(user_id: str, date_str: str, engine: Engine):
    """Report a missed workout; the following days are replanned."""
    target_date = _parse_date(date_str)
    try:
        return await engine.mark_workout_missed(user_id, target_date)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to mark %s missed for %s", date_str, user_id)
        raise HTTPException(status_code=500, detail=f"Failed to update workout: {str(e)}")


@router.patch("/plan/days/{date_str}", response_model=WeeklyPlan)
async def edit_day(user_id: str, date_str: str, payload: DayPlanUpdate, engine: Engine):
    target_date = _parse_date(date_str)
    try:
        return await engine.edit_day(user_id, target_date, payload)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to edit %s for %s", date_str, user_id)
        raise HTTPException(status_code=500, detail=f"Failed to edit day: {str(e)}")


@router.post("/meals/photo", response_model=MealAnalysis)
async def analyze_meal_photo(user_id: str, payload: MealPhotoRequest, engine: Engine):
    """Estimate a meal's macros from a base64 photo and score its fit for the current phase."""
    try:
        return await engine.analyze_meal_photo(user_id, payload)
    except AzukaError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Failed to analyze meal photo for %s", user_id)
        raise HTTPException(status_code=500, detail=f"Failed to analyze meal: {str(e)}")
