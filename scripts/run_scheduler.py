"""Standalone scheduler process for the planning engine."""
from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from filelock import FileLock

from azuka.config import get_settings
from azuka.database import run_migrations
from azuka.dependencies import get_engine
from azuka.logging_config import configure_logging


logger = logging.getLogger("scheduler")


def acquire_lock(lock_path: Path) -> FileLock:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_path))
    lock.acquire(timeout=0)
    return lock


async def prewarm_decisions(user_ids: list[str], target_date: date) -> Dict[str, Dict[str, Any]]:
    """
    Compute today's Decision for every user so the first read is a cache hit.

    Returns:
        dict: mapping user id -> summary (degraded flag and applied rules, or the error)
    """
    engine = get_engine()
    summary: Dict[str, Dict[str, Any]] = {}
    for user_id in user_ids:
        try:
            decision = await engine.get_daily_decision(user_id, target_date)
        except Exception as exc:
            logger.exception("Pre-warm failed for %s", user_id)
            summary[user_id] = {"error": str(exc)}
            continue
        summary[user_id] = {"degraded": decision.degraded, "applied_rules": decision.applied_rules}
    return summary


async def run_daily_job() -> None:
    start = datetime.now(timezone.utc)
    today = date.today()
    logger.info("Daily scheduler job started")
    engine = get_engine()

    try:
        swept = await engine.sweep_missed_workouts(today)
    except Exception:
        logger.exception("Missed-workout sweep failed")
        return

    for user_id, missed in swept.items():
        logger.info(
            "Replanned %s after %d missed day(s): %s",
            user_id,
            len(missed),
            ", ".join(day.isoformat() for day in missed),
        )

    try:
        user_ids = await asyncio.to_thread(engine.list_user_ids)
        prewarmed = await prewarm_decisions(user_ids, today)
    except Exception:
        logger.exception("Decision pre-warm failed")
    else:
        degraded = sum(1 for details in prewarmed.values() if details.get("degraded"))
        logger.info("Pre-warmed %d decisions (%d degraded)", len(prewarmed), degraded)
        for user_id, details in prewarmed.items():
            logger.debug("Detail %s -> %s", user_id, details)

    elapsed = (datetime.now(timezone.utc) - start).total_seconds()
    logger.info("Daily scheduler job finished in %.2fs", elapsed)


async def run_once() -> None:
    await run_daily_job()


async def main(run_now: bool) -> None:
    configure_logging()
    settings = get_settings()
    run_migrations()

    scheduler_log = settings.log_dir / "scheduler.log"
    if not any(isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", "") == str(scheduler_log) for h in logger.handlers):
        handler = logging.FileHandler(scheduler_log, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        logger.addHandler(handler)

    lock_path = settings.scheduler_lock_file
    lock = acquire_lock(lock_path)
    logger.info("Acquired scheduler lock at %s", lock_path)
    try:
        if run_now:
            await run_once()
            return

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            run_daily_job,
            "cron",
            hour=settings.scheduler_hour,
            minute=settings.scheduler_minute,
        )
        scheduler.start()

        logger.info(
            "Scheduler running (cron %02d:%02d). Press Ctrl+C to exit.",
            settings.scheduler_hour,
            settings.scheduler_minute,
        )
        await asyncio.Event().wait()
    finally:
        lock.release()
        logger.info("Released scheduler lock at %s", lock_path)
        if lock_path.exists():
            lock_path.unlink()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run scheduler process")
    parser.add_argument("--run-now", action="store_true", help="Execute job immediately and exit")
    args = parser.parse_args()

    try:
        asyncio.run(main(run_now=args.run_now))
    except TimeoutError:
        logger.warning("Scheduler already running; exiting.")
