"""Router exposing basic system endpoints."""
from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from azuka.database import get_db
from azuka.dependencies import get_engine
from azuka.services.planning_engine import PlanningEngine


logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("/status")
async def get_status(
    db: Annotated[Session, Depends(get_db)],
    engine: Annotated[PlanningEngine, Depends(get_engine)],
) -> dict:
    """
    Report database reachability and cache occupancy.

    Returns:
        dict: {"status": "online" | "degraded", "database": "ok" | "unavailable", "cached_entries": int}
    """
    database = "ok"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)
        database = "unavailable"

    return {
        "status": "online" if database == "ok" else "degraded",
        "database": database,
        "cached_entries": len(engine.cache),
    }
