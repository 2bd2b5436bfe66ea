"""APScheduler integration."""

from __future__ import annotations

import logging
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .lifecycle import complete_finished_events

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        complete_finished_events,
        "interval",
        minutes=settings.auto_complete_interval_minutes,
        id="complete-finished-events",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None


def is_running() -> bool:
    return bool(_scheduler and _scheduler.running)


def submit(func: Callable[..., Any], *args: Any) -> bool:
    """Run ``func`` once, as soon as possible, on the scheduler's pool.

    Returns ``False`` when no scheduler is running so the caller can run the
    work inline instead.
    """
    if not is_running():
        return False
    _scheduler.add_job(func, args=args, misfire_grace_time=None)
    return True
