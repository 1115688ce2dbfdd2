import logging
import uuid
from datetime import datetime
from typing import Any, List, NamedTuple, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from .models import Achievement
from .rewards import get_user_total_points
from .timezones import to_iso, utc_now

logger = logging.getLogger(__name__)

ACHIEVEMENT_TYPE_POINTS = "points"


class PointMilestone(NamedTuple):
    points: int
    name: str
    icon: str
    description: str


POINT_MILESTONES = (
    PointMilestone(500, "Novice Miner", "iron", "Earned your first 500 points!"),
    PointMilestone(1000, "Stone Warrior", "gold", "Reached 1,000 points - you're getting strong!"),
    PointMilestone(1500, "Diamond Fighter", "diamond", "Amazing! 1,500 points achieved!"),
    PointMilestone(2000, "Emerald Master", "emerald", "Incredible! 2,000 points unlocked!"),
    PointMilestone(2500, "Redstone Engineer", "redstone", "Legendary! 2,500 points mastered!"),
    PointMilestone(3000, "Math Legend", "diamond", "Ultimate achievement! 3,000 points!"),
)


async def check_point_achievements(db: Any, user_id: str, now: Optional[datetime] = None) -> List[Achievement]:
    """Award every point badge the user's running total has reached; return the new ones."""
    now_iso = to_iso(now or utc_now())
    total = await get_user_total_points(db, user_id)
    awarded: List[Achievement] = []

    for milestone in POINT_MILESTONES:
        if total < milestone.points:
            break
        fields = {
            "id": str(uuid.uuid4()),
            "name": milestone.name,
            "description": milestone.description,
            "icon_type": milestone.icon,
            "is_new": True,
            "unlocked_at": now_iso,
        }
        try:
            result = await db.achievements.update_one(
                {"user_id": user_id, "type": ACHIEVEMENT_TYPE_POINTS, "points_required": milestone.points},
                {"$setOnInsert": fields},
                upsert=True,
            )
        except DuplicateKeyError:
            continue
        if result.upserted_id is not None:
            awarded.append(
                Achievement(
                    user_id=user_id,
                    type=ACHIEVEMENT_TYPE_POINTS,
                    points_required=milestone.points,
                    **fields,
                )
            )

    if awarded:
        logger.info("Achievements unlocked: user=%s %s", user_id, [a.name for a in awarded])
    return awarded


async def list_achievements(db: Any, user_id: str) -> List[Achievement]:
    docs = await (
        db.achievements.find({"user_id": user_id}, {"_id": 0})
        .sort([("unlocked_at", DESCENDING), ("points_required", DESCENDING)])
        .to_list(None)
    )
    return [Achievement(**d) for d in docs]


async def mark_achievement_seen(db: Any, user_id: str, achievement_id: str) -> bool:
    result = await db.achievements.update_one(
        {"id": achievement_id, "user_id": user_id},
        {"$set": {"is_new": False}},
    )
    return result.matched_count > 0
