"""Finalization reconciler.

Turns temporary progress records into final ones once their local midnight
has passed. Both entry points share ``finalize_all_due``:

* lazily, from reads that depend on finalization state (``finalize_due_for_user``
  or a full sweep before a leaderboard is built);
* on a fixed interval through ``FinalizationScheduler``, as a safety net for
  users who never trigger a read.

The transition is a single conditional multi-document update whose filter
re-checks ``finalized: False``, so racing callers never finalize a record
twice and repeated runs are no-ops.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .errors import ProgressValidationError
from .models import FinalizationStats
from .timezones import to_iso, utc_now

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "progress_finalization_sweep"


async def finalize_all_due(
    db: Any,
    now: Optional[datetime] = None,
    *,
    user_id: Optional[str] = None,
    due_before: Optional[datetime] = None,
) -> int:
    """Finalize every temporary record whose deadline is at or before the cutoff.

    The cutoff is ``now`` unless ``due_before`` narrows it. Returns how many
    records this call transitioned.
    """
    now = now or utc_now()
    cutoff = due_before or now
    query = {"finalized": False, "finalize_at": {"$lte": to_iso(cutoff)}}
    if user_id is not None:
        query["user_id"] = user_id

    now_iso = to_iso(now)
    result = await db.progress_records.update_many(
        query,
        {"$set": {"finalized": True, "finalized_at": now_iso, "updated_at": now_iso}},
    )
    count = result.modified_count
    if count:
        logger.info(
            "Finalized %s progress record(s)%s",
            count,
            f" for user {user_id}" if user_id is not None else "",
        )
    return count


async def finalize_due_for_user(db: Any, user_id: str, now: Optional[datetime] = None) -> int:
    return await finalize_all_due(db, now, user_id=user_id)


async def cleanup_old_progress(db: Any, hours_old: int = 24, now: Optional[datetime] = None) -> int:
    """Force-finalize temporary records whose deadline passed over ``hours_old`` hours ago."""
    if isinstance(hours_old, bool) or not isinstance(hours_old, int) or hours_old < 0:
        raise ProgressValidationError("hours_old must be a non-negative integer")
    now = now or utc_now()
    count = await finalize_all_due(db, now, due_before=now - timedelta(hours=hours_old))
    logger.info("Manual cleanup: %s record(s) older than %sh finalized", count, hours_old)
    return count


async def get_finalization_stats(db: Any, now: Optional[datetime] = None) -> FinalizationStats:
    now = now or utc_now()
    total = await db.progress_records.count_documents({})
    finalized = await db.progress_records.count_documents({"finalized": True})
    overdue = await db.progress_records.count_documents(
        {"finalized": False, "finalize_at": {"$lte": to_iso(now)}}
    )
    return FinalizationStats(
        total_records=total,
        finalized_records=finalized,
        temporary_records=total - finalized,
        overdue_records=overdue,
    )


class FinalizationScheduler:
    """Owned handle for the periodic finalization sweep.

    ``start`` schedules ``run_once`` every ``interval_minutes`` (and once
    immediately); ``stop`` prevents further runs without interrupting a sweep
    already in progress.
    """

    def __init__(self, db: Any, interval_minutes: Optional[int] = None):
        self._db = db
        self.interval_minutes = interval_minutes or config.FINALIZATION_INTERVAL_MINUTES
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.last_run_at: Optional[str] = None
        self.last_finalized = 0

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def run_once(self) -> int:
        try:
            count = await finalize_all_due(self._db)
        except Exception:
            # The sweep only has to converge eventually; the next tick retries.
            logger.exception("Scheduled finalization error")
            return 0
        self.last_run_at = to_iso(utc_now())
        self.last_finalized = count
        if not count:
            logger.debug("No overdue progress to finalize")
        return count

    def start(self) -> None:
        if self.running:
            logger.info("Finalization scheduler already running")
            return

        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.run_once,
            IntervalTrigger(minutes=self.interval_minutes, timezone=timezone.utc),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_minutes * 60,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Finalization scheduler started (every %s min)", self.interval_minutes)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Finalization scheduler stopped")
