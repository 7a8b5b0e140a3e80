import os
from pathlib import Path
from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[1]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)

QA_MODE = os.getenv("QA_MODE", "false").lower() == "true"

METRICS_STREAM_HEARTBEAT_SEC = max(1.0, float(os.getenv("METRICS_STREAM_HEARTBEAT_SEC", "15")))
METRICS_STREAM_IDLE_TIMEOUT_SEC = max(30.0, float(os.getenv("METRICS_STREAM_IDLE_TIMEOUT_SEC", "600")))
METRICS_STREAM_MAX_PENDING = max(8, int(os.getenv("METRICS_STREAM_MAX_PENDING", "256")))
METRICS_SNAPSHOT_TTL_SEC = max(60.0, float(os.getenv("METRICS_SNAPSHOT_TTL_SEC", "3600")))
METRICS_SWEEP_INTERVAL_SEC = max(5.0, float(os.getenv("METRICS_SWEEP_INTERVAL_SEC", "60")))
