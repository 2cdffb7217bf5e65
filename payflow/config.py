import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _flag(name, default="false"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE_DIR / 'payflow.db'}")
QUEUE_DATABASE_URL = os.getenv("QUEUE_DATABASE_URL", f"sqlite:///{BASE_DIR / 'payflow-queue.db'}")
QUEUE_NAME = os.getenv("QUEUE_NAME", "payment-processing")

JWT_SECRET = os.getenv("JWT_SECRET")

PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "simulated")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
GATEWAY_DECLINE_RATE = float(os.getenv("GATEWAY_DECLINE_RATE", "0.1"))
GATEWAY_MIN_LATENCY_MS = int(os.getenv("GATEWAY_MIN_LATENCY_MS", "1000"))
GATEWAY_MAX_LATENCY_MS = int(os.getenv("GATEWAY_MAX_LATENCY_MS", "3000"))

RUN_WORKERS = _flag("RUN_WORKERS")
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "2"))
WORKER_POLL_INTERVAL = float(os.getenv("WORKER_POLL_INTERVAL", "0.5"))
QUEUE_STALL_TIMEOUT_MS = int(os.getenv("QUEUE_STALL_TIMEOUT_MS", "30000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = _flag("LOG_JSON")

# Job policy (milliseconds)
PAYMENT_JOB_DELAY = 1000
PAYMENT_JOB_ATTEMPTS = 3
PAYMENT_JOB_BACKOFF = {"type": "exponential", "delay": 2000}
RETRY_JOB_DELAY = 5000
RETRY_JOB_ATTEMPTS = 2
KEEP_COMPLETED_JOBS = 50
KEEP_FAILED_JOBS = 100
CLEAN_GRACE_MS = 0
CLEAN_LIMIT = 100

NOTIFICATION_FALLBACK_EMAIL = os.getenv("NOTIFICATION_FALLBACK_EMAIL", "user@example.com")
