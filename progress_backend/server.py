import logging
import secrets
from typing import Any, Dict, List, Optional

import jwt
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.middleware.cors import CORSMiddleware

from . import config
from .achievements import check_point_achievements, list_achievements, mark_achievement_seen
from .errors import (
    AlreadyFinalizedError,
    OpportunityUnavailableError,
    ProgressValidationError,
    StorageUnavailableError,
)
from .finalization import FinalizationScheduler, cleanup_old_progress, finalize_all_due, get_finalization_stats
from .leaderboard import DEFAULT_DISPLAY_NAME, build_global_leaderboard, build_leaderboard
from .models import (
    Achievement,
    ClaimRewardRequest,
    FinalizationRunResponse,
    FinalizationStats,
    GlobalLeaderboardResult,
    LeaderboardResult,
    OpportunitiesResponse,
    ProgressRecord,
    ProgressStatusResponse,
    RewardOpportunity,
    SubmitProgressRequest,
    SubmitProgressResponse,
)
from .progress import get_progress_status, get_recent_progress, submit_progress
from .rewards import claim_opportunity, get_opportunities_overview, list_inventory, sync_opportunities
from .storage import connect_storage, storage_backend_name
from .timezones import to_iso, utc_now

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

STORAGE_RETRY_AFTER_SECONDS = 5

# Create the main app without a prefix
app = FastAPI(title="Progress & Finalization Engine")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

security = HTTPBearer()


# ============== DEPENDENCIES ==============

def get_db(request: Request) -> Any:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise StorageUnavailableError("Storage is not initialized")
    return db


async def _upsert_user(db: Any, user_id: str, name: Optional[str]) -> Dict[str, Any]:
    existing = await db.users.find_one({"id": user_id}, {"_id": 0})
    if existing and (not name or existing.get("name") == name):
        return existing

    now = to_iso(utc_now())
    update: Dict[str, Any] = {"$set": {"updated_at": now}, "$setOnInsert": {"created_at": now}}
    if name:
        update["$set"]["name"] = name
    else:
        update["$setOnInsert"]["name"] = DEFAULT_DISPLAY_NAME
    try:
        await db.users.update_one({"id": user_id}, update, upsert=True)
    except DuplicateKeyError:
        await db.users.update_one({"id": user_id}, update)
    user = await db.users.find_one({"id": user_id}, {"_id": 0})
    return user or {"id": user_id, "name": name or DEFAULT_DISPLAY_NAME}


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Any = Depends(get_db),
):
    # Tokens are issued by the platform's auth service; we only verify them.
    try:
        payload = jwt.decode(credentials.credentials, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("user_id") or payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    name = payload.get("name") or payload.get("first_name")
    return await _upsert_user(db, str(user_id), name)


def _require_internal_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> None:
    expected = config.INTERNAL_API_TOKEN
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Internal token not configured")
    if not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


# ============== PROGRESS ROUTES ==============

@api_router.post("/progress", response_model=SubmitProgressResponse)
async def submit_progress_route(
    payload: SubmitProgressRequest,
    current_user: dict = Depends(get_current_user),
    db: Any = Depends(get_db),
):
    try:
        record = await submit_progress(
            db,
            current_user["id"],
            points_delta=payload.points_earned,
            questions_delta=payload.questions_answered,
            correct_delta=payload.correct_answers,
            level=payload.level,
            time_zone=payload.time_zone,
        )
    except AlreadyFinalizedError as e:
        return SubmitProgressResponse(
            applied=False,
            status="already_finalized",
            message="Today's score is already final; these points were not added.",
            record=e.record,
        )
    return SubmitProgressResponse(applied=True, status="applied", record=record)


@api_router.get("/progress/status", response_model=ProgressStatusResponse)
async def get_progress_status_route(
    tz: Optional[str] = None,
    current_user: dict = Depends(get_current_user),
    db: Any = Depends(get_db),
):
    # May finalize this user's overdue records before answering.
    return await get_progress_status(db, current_user["id"], time_zone=tz)


@api_router.get("/progress/recent", response_model=List[ProgressRecord])
async def get_recent_progress_route(
    days: int = 7,
    tz: Optional[str] = None,
    current_user: dict = Depends(get_current_user),
    db: Any = Depends(get_db),
):
    return await get_recent_progress(db, current_user["id"], days=days, time_zone=tz)


# ============== LEADERBOARD ROUTES ==============

@api_router.get("/leaderboard", response_model=LeaderboardResult)
async def get_leaderboard(
    day: Optional[str] = Query(None, alias="date"),
    limit: int = 10,
    current_user: dict = Depends(get_current_user),
    db: Any = Depends(get_db),
):
    await finalize_all_due(db)
    return await build_leaderboard(db, day=day, limit=limit, current_user_id=current_user["id"])


@api_router.get("/leaderboard/global", response_model=GlobalLeaderboardResult)
async def get_global_leaderboard(
    limit: int = 10,
    current_user: dict = Depends(get_current_user),
    db: Any = Depends(get_db),
):
    await finalize_all_due(db)
    return await build_global_leaderboard(db, limit=limit, current_user_id=current_user["id"])


# ============== REWARD ROUTES ==============

@api_router.post("/rewards/sync")
async def sync_rewards(current_user: dict = Depends(get_current_user), db: Any = Depends(get_db)):
    created = await sync_opportunities(db, current_user["id"])
    return {"created": [o.model_dump() for o in created]}


@api_router.get("/rewards/opportunities", response_model=OpportunitiesResponse)
async def get_reward_opportunities(current_user: dict = Depends(get_current_user), db: Any = Depends(get_db)):
    return await get_opportunities_overview(db, current_user["id"])


@api_router.post("/rewards/select", response_model=RewardOpportunity)
async def select_reward(
    payload: ClaimRewardRequest,
    current_user: dict = Depends(get_current_user),
    db: Any = Depends(get_db),
):
    return await claim_opportunity(db, current_user["id"], payload.points_milestone, payload.reward_id)


@api_router.get("/inventory", response_model=List[RewardOpportunity])
async def get_inventory(current_user: dict = Depends(get_current_user), db: Any = Depends(get_db)):
    return await list_inventory(db, current_user["id"])


# ============== ACHIEVEMENT ROUTES ==============

@api_router.get("/achievements", response_model=List[Achievement])
async def get_achievements(current_user: dict = Depends(get_current_user), db: Any = Depends(get_db)):
    return await list_achievements(db, current_user["id"])


@api_router.post("/achievements/check", response_model=List[Achievement])
async def check_achievements(current_user: dict = Depends(get_current_user), db: Any = Depends(get_db)):
    return await check_point_achievements(db, current_user["id"])


@api_router.patch("/achievements/{achievement_id}/mark-seen")
async def mark_seen(achievement_id: str, current_user: dict = Depends(get_current_user), db: Any = Depends(get_db)):
    if not await mark_achievement_seen(db, current_user["id"], achievement_id):
        raise HTTPException(status_code=404, detail="Achievement not found")
    return {"success": True}


# ============== ADMIN ROUTES ==============

@api_router.get("/admin/finalization/stats", response_model=FinalizationStats)
async def finalization_stats(_: None = Depends(_require_internal_token), db: Any = Depends(get_db)):
    return await get_finalization_stats(db)


@api_router.post("/admin/finalization/run", response_model=FinalizationRunResponse)
async def run_finalization(
    older_than_hours: Optional[int] = None,
    _: None = Depends(_require_internal_token),
    db: Any = Depends(get_db),
):
    now = utc_now()
    if older_than_hours is None:
        count = await finalize_all_due(db, now)
    else:
        count = await cleanup_old_progress(db, older_than_hours, now)
    return FinalizationRunResponse(finalized=count, ran_at=to_iso(now), older_than_hours=older_than_hours)


# ============== BASIC ROUTES ==============

@api_router.get("/")
async def root():
    return {"message": "Progress & Finalization Engine API"}

@api_router.get("/health")
async def health_check(request: Request):
    db = getattr(request.app.state, "db", None)
    scheduler: Optional[FinalizationScheduler] = getattr(request.app.state, "finalization_scheduler", None)
    db_state = "ok"
    if db is None:
        db_state = "fail"
    else:
        try:
            await db.progress_records.count_documents({"finalized": False})
        except PyMongoError:
            db_state = "fail"
    return {
        "status": "healthy" if db_state == "ok" else "degraded",
        "db": db_state,
        "storage": storage_backend_name(db) if db is not None else None,
        "scheduler_running": bool(scheduler and scheduler.running),
        "last_sweep_at": scheduler.last_run_at if scheduler else None,
    }

# Include the router in the main app
app.include_router(api_router)


# ============== ERROR HANDLERS ==============

def _storage_unavailable_response(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": detail, "retryable": True},
        headers={"Retry-After": str(STORAGE_RETRY_AFTER_SECONDS)},
    )


@app.exception_handler(ProgressValidationError)
async def _handle_validation_error(request: Request, exc: ProgressValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(OpportunityUnavailableError)
async def _handle_opportunity_unavailable(request: Request, exc: OpportunityUnavailableError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(StorageUnavailableError)
async def _handle_storage_unavailable(request: Request, exc: StorageUnavailableError):
    logger.warning("Storage unavailable: %s", str(exc))
    return _storage_unavailable_response(str(exc))


@app.exception_handler(PyMongoError)
async def _handle_pymongo_error(request: Request, exc: PyMongoError):
    logger.error("Storage error on %s: %s", request.url.path, str(exc))
    return _storage_unavailable_response("Storage temporarily unavailable")


cors_origins = [o.strip() for o in config.CORS_ORIGINS.split(',') if o.strip()]
if not cors_origins:
    cors_origins = ['*']
cors_allow_all = len(cors_origins) == 1 and cors_origins[0] == '*'

app.add_middleware(
    CORSMiddleware,
    # Avoid using '*' with credentials. In production, set CORS_ORIGINS to your frontend URL(s).
    allow_credentials=not cors_allow_all,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_db_client():
    if config.IS_PROD and config.JWT_SECRET_SOURCE == "default":
        raise RuntimeError("JWT_SECRET must be set in production (refusing to start with default secret).")
    if config.JWT_SECRET_SOURCE == "default":
        logger.warning("JWT_SECRET not set; using insecure default. Set JWT_SECRET for token verification.")

    client, db = await connect_storage()
    app.state.mongo_client = client
    app.state.db = db

    scheduler = FinalizationScheduler(db)
    app.state.finalization_scheduler = scheduler
    if config.FINALIZATION_SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("Finalization scheduler disabled; records finalize on read only.")

@app.on_event("shutdown")
async def shutdown_db_client():
    scheduler: Optional[FinalizationScheduler] = getattr(app.state, "finalization_scheduler", None)
    if scheduler is not None:
        scheduler.stop()
        app.state.finalization_scheduler = None
    client = getattr(app.state, "mongo_client", None)
    if client is not None:
        client.close()
        app.state.mongo_client = None
    app.state.db = None
