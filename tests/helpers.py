"""Shared builders for engine tests."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

from progress_backend.finalization import finalize_all_due
from progress_backend.progress import submit_progress
from progress_backend.storage import InMemoryDB


class YieldingDB(InMemoryDB):
    """In-memory store that hands control to the event loop inside every write.

    The yield happens while the statement still holds the database lock, so
    tasks gathered against it genuinely queue up behind each other.
    """

    async def _save_to_disk(self) -> None:
        await asyncio.sleep(0)


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


async def seed_final_day(
    db: Any,
    user_id: str,
    points: int,
    *,
    played_at: datetime,
    finalized_at: datetime,
    time_zone: Optional[str] = "UTC",
):
    """Record ``points`` for ``user_id`` and finalize that user's due records."""
    record = await submit_progress(db, user_id, points, time_zone=time_zone, now=played_at)
    await finalize_all_due(db, finalized_at, user_id=user_id)
    return record
