import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    try:
        value = int(raw) if raw is not None and raw.strip() else default
    except ValueError:
        value = default
    return max(minimum, value)


APP_ENV = os.environ.get("APP_ENV") or os.environ.get("ENV") or "development"
IS_PROD = APP_ENV.lower() in {"prod", "production"}

_DEFAULT_JWT_SECRET = "progress-engine-dev-secret-key-change-me"
_jwt_secret_env = os.environ.get("JWT_SECRET")
JWT_SECRET = _jwt_secret_env or _DEFAULT_JWT_SECRET
JWT_SECRET_SOURCE = "env" if _jwt_secret_env else "default"
JWT_ALGORITHM = "HS256"

# Shared secret for operator-only routes (finalization stats / manual sweep).
INTERNAL_API_TOKEN = os.environ.get("INTERNAL_API_TOKEN")

MONGO_URL = os.environ.get("MONGO_URL")
DB_NAME = os.environ.get("DB_NAME", "progress_engine")
# auto | mongo | file | memory
DB_BACKEND = (os.environ.get("DB_BACKEND") or "auto").strip().lower()
DATA_FILE = os.environ.get("DATA_FILE")
DEFAULT_DATA_FILE = ROOT_DIR / "data" / "db.json"

DEFAULT_TIME_ZONE = os.environ.get("DEFAULT_TIME_ZONE") or "UTC"

FINALIZATION_INTERVAL_MINUTES = _env_int("FINALIZATION_INTERVAL_MINUTES", 5)
FINALIZATION_SCHEDULER_ENABLED = _env_bool("FINALIZATION_SCHEDULER_ENABLED", True)

REWARD_MILESTONE_STEP = _env_int("REWARD_MILESTONE_STEP", 500)

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')
