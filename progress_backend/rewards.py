"""Reward-milestone tracker.

Every ``REWARD_MILESTONE_STEP`` points (finalized or still temporary) earns
one reward opportunity. Opportunities are created insert-if-absent against
the ``(user_id, points_milestone)`` unique index and claimed with a single
update conditioned on ``is_used: False``, so each milestone yields at most
one opportunity and one claim no matter how many requests race.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from . import config
from .errors import OpportunityUnavailableError, ProgressValidationError
from .models import OpportunitiesResponse, RewardOpportunity
from .timezones import to_iso, utc_now

logger = logging.getLogger(__name__)

PROJECTION = {"_id": 0}


def milestone_step() -> int:
    return config.REWARD_MILESTONE_STEP


def milestones_for_total(total_points: int, step: Optional[int] = None) -> List[int]:
    step = step or milestone_step()
    if total_points <= 0:
        return []
    return [step * i for i in range(1, total_points // step + 1)]


def next_milestone(total_points: int, step: Optional[int] = None) -> int:
    step = step or milestone_step()
    return (max(0, total_points) // step + 1) * step


async def get_user_total_points(db: Any, user_id: str) -> int:
    """Running total across every progress record, final or temporary."""
    docs = await db.progress_records.find({"user_id": user_id}, PROJECTION).to_list(None)
    return sum(int(d.get("points_earned") or 0) for d in docs)


async def sync_opportunities(db: Any, user_id: str, now: Optional[datetime] = None) -> List[RewardOpportunity]:
    """Create the opportunities for every crossed milestone; return only the new ones."""
    now_iso = to_iso(now or utc_now())
    total = await get_user_total_points(db, user_id)
    crossed = milestones_for_total(total)
    if not crossed:
        return []

    existing = await db.reward_opportunities.find(
        {"user_id": user_id, "points_milestone": {"$in": crossed}}, PROJECTION
    ).to_list(None)
    known = {d["points_milestone"] for d in existing}

    created: List[RewardOpportunity] = []
    for milestone in crossed:
        if milestone in known:
            continue
        fields = {
            "id": str(uuid.uuid4()),
            "is_used": False,
            "used_at": None,
            "selected_reward_id": None,
            "created_at": now_iso,
        }
        try:
            result = await db.reward_opportunities.update_one(
                {"user_id": user_id, "points_milestone": milestone},
                {"$setOnInsert": fields},
                upsert=True,
            )
        except DuplicateKeyError:
            # A concurrent sync inserted it first.
            continue
        if result.upserted_id is not None:
            created.append(RewardOpportunity(user_id=user_id, points_milestone=milestone, **fields))

    if created:
        logger.info(
            "Reward opportunities created: user=%s milestones=%s total=%s",
            user_id,
            [o.points_milestone for o in created],
            total,
        )
    return created


async def claim_opportunity(
    db: Any,
    user_id: str,
    milestone: int,
    reward_id: str,
    now: Optional[datetime] = None,
) -> RewardOpportunity:
    """Spend the opportunity at ``milestone`` on ``reward_id``. Succeeds once per milestone."""
    if isinstance(milestone, bool) or not isinstance(milestone, int) or milestone <= 0:
        raise ProgressValidationError("points_milestone must be a positive integer")
    if milestone % milestone_step():
        raise ProgressValidationError(f"points_milestone must be a multiple of {milestone_step()}")
    if not isinstance(reward_id, str) or not reward_id.strip():
        raise ProgressValidationError("reward_id is required")

    now_iso = to_iso(now or utc_now())
    doc = await db.reward_opportunities.find_one_and_update(
        {"user_id": user_id, "points_milestone": milestone, "is_used": False},
        {"$set": {"is_used": True, "used_at": now_iso, "selected_reward_id": reward_id.strip()}},
        projection=PROJECTION,
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise OpportunityUnavailableError(user_id, milestone)

    logger.info("Reward claimed: user=%s milestone=%s reward=%s", user_id, milestone, reward_id)
    return RewardOpportunity(**doc)


async def list_opportunities(db: Any, user_id: str, include_used: bool = False) -> List[RewardOpportunity]:
    query = {"user_id": user_id}
    if not include_used:
        query["is_used"] = False
    docs = await (
        db.reward_opportunities.find(query, PROJECTION).sort("points_milestone", DESCENDING).to_list(None)
    )
    return [RewardOpportunity(**d) for d in docs]


async def list_inventory(db: Any, user_id: str) -> List[RewardOpportunity]:
    """Claimed opportunities, most recent claim first."""
    docs = await (
        db.reward_opportunities.find({"user_id": user_id, "is_used": True}, PROJECTION)
        .sort("used_at", DESCENDING)
        .to_list(None)
    )
    return [RewardOpportunity(**d) for d in docs]


async def get_opportunities_overview(db: Any, user_id: str, now: Optional[datetime] = None) -> OpportunitiesResponse:
    await sync_opportunities(db, user_id, now)
    total = await get_user_total_points(db, user_id)
    upcoming = next_milestone(total)
    return OpportunitiesResponse(
        total_points=total,
        next_milestone=upcoming,
        points_to_next=upcoming - total,
        opportunities=await list_opportunities(db, user_id),
    )
