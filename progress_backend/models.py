from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Document(BaseModel):
    # Stored documents may carry fields (e.g. Mongo's _id) the API does not expose.
    model_config = ConfigDict(extra="ignore")


# ============== LEDGER ==============

class ProgressRecord(_Document):
    id: str
    user_id: str
    day: str
    points_earned: int = 0
    questions_answered: int = 0
    correct_answers: int = 0
    level: int = 1
    finalized: bool = False
    finalize_at: str
    finalized_at: Optional[str] = None
    user_time_zone: str
    last_update_at: str
    created_at: str
    updated_at: str

    @property
    def status(self) -> str:
        return "final" if self.finalized else "temporary"

    @property
    def accuracy(self) -> float:
        if self.questions_answered <= 0:
            return 0.0
        return round(self.correct_answers / self.questions_answered * 100, 1)


class SubmitProgressRequest(BaseModel):
    points_earned: int = Field(0, ge=0)
    questions_answered: int = Field(0, ge=0)
    correct_answers: int = Field(0, ge=0)
    level: int = Field(1, ge=1)
    time_zone: Optional[str] = None


class SubmitProgressResponse(BaseModel):
    applied: bool
    status: str  # applied | already_finalized
    message: Optional[str] = None
    record: ProgressRecord


class ProgressStatusResponse(BaseModel):
    date: str
    timezone: str
    status: str  # none | temporary | final
    is_final: bool
    finalize_at: Optional[str] = None
    finalized_at: Optional[str] = None
    seconds_until_finalize: int = 0
    record: Optional[ProgressRecord] = None


# ============== FINALIZATION ==============

class FinalizationStats(BaseModel):
    total_records: int
    finalized_records: int
    temporary_records: int
    overdue_records: int


class FinalizationRunResponse(BaseModel):
    finalized: int
    ran_at: str
    older_than_hours: Optional[int] = None


# ============== LEADERBOARD ==============

class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    display_name: str
    points: int
    is_current_user: bool = False


class LeaderboardResult(BaseModel):
    date: Optional[str] = None
    entries: List[LeaderboardEntry]
    total: int
    message: Optional[str] = None


class GlobalLeaderboardResult(BaseModel):
    entries: List[LeaderboardEntry]
    total: int
    generated_at: str
    message: Optional[str] = None


# ============== REWARDS ==============

class RewardOpportunity(_Document):
    id: str
    user_id: str
    points_milestone: int
    is_used: bool = False
    used_at: Optional[str] = None
    selected_reward_id: Optional[str] = None
    created_at: str


class ClaimRewardRequest(BaseModel):
    points_milestone: int = Field(..., gt=0)
    reward_id: str = Field(..., min_length=1)


class OpportunitiesResponse(BaseModel):
    total_points: int
    next_milestone: int
    points_to_next: int
    opportunities: List[RewardOpportunity]


# ============== ACHIEVEMENTS ==============

class Achievement(_Document):
    id: str
    user_id: str
    type: str
    name: str
    description: str
    icon_type: str
    points_required: int
    is_new: bool = True
    unlocked_at: str
