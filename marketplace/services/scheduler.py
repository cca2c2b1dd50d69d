"""
Programador del barrido de auto-rechazo (APScheduler en el loop de la app).

- SCHEDULER_ENABLED desactiva el job (tests, réplicas extra)
- coalesce=True, max_instances=1: nunca dos barridos a la vez
"""
import logging
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import get_settings

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None
_last_result: Optional[dict] = None


def start_scheduler(run_sweep: Callable[[], Awaitable[dict]]) -> Optional[AsyncIOScheduler]:
    global _scheduler
    settings = get_settings()

    if not settings.scheduler_enabled:
        logger.info("[cron] Scheduler disabled (SCHEDULER_ENABLED != true)")
        return None

    async def _job() -> None:
        global _last_result
        try:
            _last_result = await run_sweep()
        except Exception:
            logger.exception("[cron] Auto-reject sweep failed")

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        _job,
        "interval",
        minutes=settings.auto_reject_interval_minutes,
        id="auto_reject_pending_bookings",
        name="Auto-reject pending bookings",
        coalesce=True,
        max_instances=1,
        misfire_grace_time=600,
        replace_existing=True,
    )
    _scheduler.start()
    logger.info("[cron] Scheduler started (auto-reject every %s min)", settings.auto_reject_interval_minutes)
    return _scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("[cron] Scheduler stopped")
    _scheduler = None


def get_scheduler_status() -> dict:
    running = _scheduler.running if _scheduler else False
    next_run = None
    if running:
        jobs = _scheduler.get_jobs()
        if jobs and jobs[0].next_run_time:
            next_run = jobs[0].next_run_time.isoformat()
    return {"running": running, "next_run_at": next_run, "last_result": _last_result}
