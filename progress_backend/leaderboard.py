from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from pymongo import DESCENDING

from .models import GlobalLeaderboardResult, LeaderboardEntry, LeaderboardResult
from .progress import validate_day
from .timezones import to_iso, utc_now

DEFAULT_DISPLAY_NAME = "Player"
MAX_LIMIT = 100
NO_FINALIZED_MESSAGE = "No finalized scores available yet"


def clamp_limit(limit: int) -> int:
    return max(1, min(MAX_LIMIT, int(limit)))


def _ranking_key(row: Dict[str, Any]):
    # Points first; equal points go to whoever was finalized first, then by id.
    return (-int(row.get("points") or 0), row.get("finalized_at") or "", row.get("user_id") or "")


async def _display_names(db: Any, user_ids: Iterable[str]) -> Dict[str, str]:
    ids = sorted(set(user_ids))
    if not ids:
        return {}
    users = await db.users.find({"id": {"$in": ids}}, {"_id": 0}).to_list(len(ids))
    return {u["id"]: u.get("name") or DEFAULT_DISPLAY_NAME for u in users if u.get("id")}


async def _ranked_entries(
    db: Any,
    rows: List[Dict[str, Any]],
    limit: int,
    current_user_id: Optional[str],
) -> List[LeaderboardEntry]:
    rows = sorted(rows, key=_ranking_key)[:limit]
    names = await _display_names(db, (r["user_id"] for r in rows))
    return [
        LeaderboardEntry(
            rank=idx + 1,
            user_id=r["user_id"],
            display_name=names.get(r["user_id"], DEFAULT_DISPLAY_NAME),
            points=int(r.get("points") or 0),
            is_current_user=r["user_id"] == current_user_id,
        )
        for idx, r in enumerate(rows)
    ]


async def latest_finalized_day(db: Any) -> Optional[str]:
    doc = await db.progress_records.find_one({"finalized": True}, {"_id": 0}, sort=[("day", DESCENDING)])
    return doc["day"] if doc else None


async def build_leaderboard(
    db: Any,
    day: Optional[str] = None,
    limit: int = 10,
    current_user_id: Optional[str] = None,
) -> LeaderboardResult:
    """Rank finalized records for ``day`` (default: latest day with any final record).

    Temporary records are never included, even past their deadline; callers
    that need them counted run the reconciler first.
    """
    limit = clamp_limit(limit)
    if day is None:
        day = await latest_finalized_day(db)
        if day is None:
            return LeaderboardResult(date=None, entries=[], total=0, message=NO_FINALIZED_MESSAGE)
    else:
        validate_day(day)

    docs = await db.progress_records.find({"day": day, "finalized": True}, {"_id": 0}).to_list(None)
    rows = [
        {"user_id": d["user_id"], "points": d.get("points_earned"), "finalized_at": d.get("finalized_at")}
        for d in docs
    ]
    entries = await _ranked_entries(db, rows, limit, current_user_id)
    message = None if entries else f"No finalized scores for {day} yet"
    return LeaderboardResult(date=day, entries=entries, total=len(rows), message=message)


async def build_global_leaderboard(
    db: Any,
    limit: int = 10,
    current_user_id: Optional[str] = None,
) -> GlobalLeaderboardResult:
    """Rank users by their total finalized points across all days."""
    limit = clamp_limit(limit)
    docs = await db.progress_records.find({"finalized": True}, {"_id": 0}).to_list(None)

    totals: Dict[str, int] = defaultdict(int)
    last_finalized: Dict[str, str] = {}
    for d in docs:
        user_id = d["user_id"]
        totals[user_id] += int(d.get("points_earned") or 0)
        finalized_at = d.get("finalized_at") or ""
        if finalized_at > last_finalized.get(user_id, ""):
            last_finalized[user_id] = finalized_at

    rows = [
        {"user_id": user_id, "points": points, "finalized_at": last_finalized.get(user_id)}
        for user_id, points in totals.items()
    ]
    entries = await _ranked_entries(db, rows, limit, current_user_id)
    return GlobalLeaderboardResult(
        entries=entries,
        total=len(rows),
        generated_at=to_iso(utc_now()),
        message=None if entries else NO_FINALIZED_MESSAGE,
    )
