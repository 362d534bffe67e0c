import os
from pathlib import Path
from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[2]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


ENVIRONMENT = str(os.getenv("ENV") or "development").strip().lower()
QA_MODE = _env_flag("QA_MODE")

DATA_DIR = Path(os.getenv("DATA_DIR") or (_BACKEND_ROOT / "data"))

# 28:45 on the interview screen clock
SESSION_DURATION_SEC = max(1, int(os.getenv("SESSION_DURATION_SEC", "1725")))
TIMER_TICK_SEC = max(0.05, float(os.getenv("TIMER_TICK_SEC", "1.0")))

FREE_PREP_GRANT = max(0, int(os.getenv("FREE_PREP_GRANT", "3")))

LEAVE_POLICY = str(os.getenv("LEAVE_POLICY") or "forfeit").strip().lower()
ANSWER_POLICY = str(os.getenv("ANSWER_POLICY") or "overwrite").strip().lower()

COMPLETION_RETRY_BASE_SEC = max(0.0, float(os.getenv("COMPLETION_RETRY_BASE_SEC", "0.5")))
COMPLETION_RETRY_MAX_SEC = max(0.0, float(os.getenv("COMPLETION_RETRY_MAX_SEC", "15")))
COMPLETION_WAIT_SEC = max(0.0, float(os.getenv("COMPLETION_WAIT_SEC", "5")))  # how long an HTTP end call waits before answering "ending"
LEAVE_ON_DISCONNECT = _env_flag("LEAVE_ON_DISCONNECT", "true")

USE_REDIS_LEDGER = _env_flag("USE_REDIS_LEDGER")
USE_REDIS_COMPLETIONS = _env_flag("USE_REDIS_COMPLETIONS")
REDIS_URL = str(os.getenv("REDIS_URL") or "").strip()

SESSION_CLEANUP_TTL_SEC = max(60, int(os.getenv("SESSION_CLEANUP_TTL_SEC", "1800")))
SESSION_CLEANUP_INTERVAL_SEC = max(30, int(os.getenv("SESSION_CLEANUP_INTERVAL_SEC", "120")))
