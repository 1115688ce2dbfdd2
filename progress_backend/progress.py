"""Progress ledger: one record per (user, local day).

The accumulator is the only writer of point totals. Every submission is a
single conditional upsert against ``{user_id, day, finalized: False}``, so
concurrent submissions add up instead of overwriting each other, and a write
can never land on a record the reconciler has already made final (the
upsert then collides with the ``(user_id, day)`` unique index instead).
"""

import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import AlreadyFinalizedError, ProgressValidationError, StorageUnavailableError
from .finalization import finalize_due_for_user
from .models import ProgressRecord, ProgressStatusResponse
from .timezones import as_utc, from_iso, local_date, resolve_day, resolve_zone, to_iso

logger = logging.getLogger(__name__)

PROJECTION = {"_id": 0}
DAY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MAX_RECENT_DAYS = 366
# Attempts at the conditional upsert before giving up on a vanished record.
_SUBMIT_ATTEMPTS = 3


def _require_count(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProgressValidationError(f"{name} must be an integer")
    if value < 0:
        raise ProgressValidationError(f"{name} must not be negative")
    return value


def validate_submission(
    user_id: str,
    points_delta: int,
    questions_delta: int,
    correct_delta: int,
    level: int,
) -> None:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ProgressValidationError("user_id is required")
    _require_count("points_earned", points_delta)
    _require_count("questions_answered", questions_delta)
    _require_count("correct_answers", correct_delta)
    if _require_count("level", level) < 1:
        raise ProgressValidationError("level must be at least 1")
    if correct_delta > questions_delta:
        raise ProgressValidationError("correct_answers cannot exceed questions_answered")


def validate_day(day: str) -> str:
    if not isinstance(day, str) or not DAY_PATTERN.match(day):
        raise ProgressValidationError("date must use YYYY-MM-DD format")
    try:
        datetime.strptime(day, "%Y-%m-%d")
    except ValueError as e:
        raise ProgressValidationError(f"Invalid date: {day}") from e
    return day


async def stored_time_zone(db: Any, user_id: str, *, include_final: bool = False) -> Optional[str]:
    """Zone recorded on the user's most recently updated record."""
    query: Dict[str, Any] = {"user_id": user_id}
    if not include_final:
        query["finalized"] = False
    doc = await db.progress_records.find_one(query, PROJECTION, sort=[("last_update_at", DESCENDING)])
    return doc.get("user_time_zone") if doc else None


async def get_progress(db: Any, user_id: str, day: str) -> Optional[ProgressRecord]:
    doc = await db.progress_records.find_one({"user_id": user_id, "day": day}, PROJECTION)
    return ProgressRecord(**doc) if doc else None


async def submit_progress(
    db: Any,
    user_id: str,
    points_delta: int = 0,
    questions_delta: int = 0,
    correct_delta: int = 0,
    level: int = 1,
    time_zone: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ProgressRecord:
    """Add one game session's deltas to the user's record for their local today.

    Raises ``AlreadyFinalizedError`` (carrying the untouched record) when
    that day is already final; the deltas are dropped in that case.
    """
    validate_submission(user_id, points_delta, questions_delta, correct_delta, level)
    now = as_utc(now)

    if not time_zone:
        time_zone = await stored_time_zone(db, user_id)
    window = resolve_day(time_zone, now)
    now_iso = to_iso(now)

    query = {"user_id": user_id, "day": window.day, "finalized": False}
    update = {
        "$inc": {
            "points_earned": points_delta,
            "questions_answered": questions_delta,
            "correct_answers": correct_delta,
        },
        # A zone switch mid-day may only push the deadline out.
        "$max": {"level": level, "finalize_at": to_iso(window.finalize_at)},
        "$set": {"last_update_at": now_iso, "updated_at": now_iso},
        "$setOnInsert": {
            "id": str(uuid.uuid4()),
            "user_time_zone": window.zone_name,
            "finalized_at": None,
            "created_at": now_iso,
        },
    }

    for _ in range(_SUBMIT_ATTEMPTS):
        try:
            doc = await db.progress_records.find_one_and_update(
                query,
                update,
                projection=PROJECTION,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Either the day is final, or a concurrent first write won the insert.
            doc = await db.progress_records.find_one_and_update(
                query,
                update,
                projection=PROJECTION,
                return_document=ReturnDocument.AFTER,
            )

        if doc is not None:
            record = ProgressRecord(**doc)
            logger.info(
                "Progress update: user=%s day=%s delta=%s points=%s",
                user_id,
                record.day,
                points_delta,
                record.points_earned,
            )
            return record

        existing = await get_progress(db, user_id, window.day)
        if existing is not None and existing.finalized:
            logger.warning(
                "Dropped submission for finalized day: user=%s day=%s delta=%s",
                user_id,
                window.day,
                points_delta,
            )
            raise AlreadyFinalizedError(existing)

    raise StorageUnavailableError(f"Could not apply progress for {user_id} on {window.day}; retry")


async def get_progress_status(
    db: Any,
    user_id: str,
    time_zone: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ProgressStatusResponse:
    """Read-with-repair: finalizes the user's overdue records, then reports today.

    The bounded write guarantees the reader never sees a "temporary" record
    whose deadline has already passed.
    """
    now = as_utc(now)
    if not time_zone:
        time_zone = await stored_time_zone(db, user_id, include_final=True)
    await finalize_due_for_user(db, user_id, now)

    window = resolve_day(time_zone, now)
    record = await get_progress(db, user_id, window.day)
    if record is None:
        return ProgressStatusResponse(
            date=window.day,
            timezone=window.zone_name,
            status="none",
            is_final=False,
            finalize_at=to_iso(window.finalize_at),
            seconds_until_finalize=max(0, int((window.finalize_at - now).total_seconds())),
        )

    remaining = 0
    if not record.finalized:
        remaining = max(0, int((from_iso(record.finalize_at) - now).total_seconds()))
    return ProgressStatusResponse(
        date=record.day,
        timezone=window.zone_name,
        status=record.status,
        is_final=record.finalized,
        finalize_at=record.finalize_at,
        finalized_at=record.finalized_at,
        seconds_until_finalize=remaining,
        record=record,
    )


async def get_recent_progress(
    db: Any,
    user_id: str,
    days: int = 7,
    time_zone: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[ProgressRecord]:
    """Read-with-repair: the user's records for the last ``days`` local days, newest first."""
    if isinstance(days, bool) or not isinstance(days, int) or days < 1:
        raise ProgressValidationError("days must be a positive integer")
    days = min(days, MAX_RECENT_DAYS)
    now = as_utc(now)
    if not time_zone:
        time_zone = await stored_time_zone(db, user_id, include_final=True)
    await finalize_due_for_user(db, user_id, now)

    cutoff = (local_date(resolve_zone(time_zone), now) - timedelta(days=days)).isoformat()
    docs = await (
        db.progress_records.find({"user_id": user_id, "day": {"$gte": cutoff}}, PROJECTION)
        .sort("day", DESCENDING)
        .to_list(None)
    )
    return [ProgressRecord(**d) for d in docs]
