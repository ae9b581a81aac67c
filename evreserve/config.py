import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Local SQLite file unless a real database is configured
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./evreserve.db")

# Security - signs the scannable check-in payload
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL (CORS)
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Booking rules
PAYMENT_GRACE_MINUTES = int(os.getenv("PAYMENT_GRACE_MINUTES", "15"))  # hold lifetime before expiry
MIN_RESERVATION_MINUTES = int(os.getenv("MIN_RESERVATION_MINUTES", "30"))
MAX_RESERVATION_MINUTES = int(os.getenv("MAX_RESERVATION_MINUTES", "480"))  # 8 hours
CANCELLATION_CUTOFF_MINUTES = int(os.getenv("CANCELLATION_CUTOFF_MINUTES", "60"))
CHECK_IN_EARLY_MINUTES = int(os.getenv("CHECK_IN_EARLY_MINUTES", "15"))
# Tunable: how long a checked-in vehicle may sit without charging before it is a no-show
NO_SHOW_GRACE_MINUTES = int(os.getenv("NO_SHOW_GRACE_MINUTES", "15"))
PAYMENT_REMINDER_LEAD_MINUTES = int(os.getenv("PAYMENT_REMINDER_LEAD_MINUTES", "5"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "BDT")

# Expiry scheduler
EXPIRY_SCHEDULER_ENABLED = os.getenv("EXPIRY_SCHEDULER_ENABLED", "true").lower() == "true"
EXPIRY_SWEEP_INTERVAL_SECONDS = float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "15"))
EXPIRY_SWEEP_BATCH_SIZE = int(os.getenv("EXPIRY_SWEEP_BATCH_SIZE", "200"))
# Consecutive failed sweeps before the scheduler escalates to an alert
EXPIRY_SWEEP_ALERT_AFTER = int(os.getenv("EXPIRY_SWEEP_ALERT_AFTER", "3"))

# Availability index - reload a connector from the store after this many seconds
AVAILABILITY_INDEX_TTL_SECONDS = float(os.getenv("AVAILABILITY_INDEX_TTL_SECONDS", "10"))

# Settlement gateway callbacks
SETTLEMENT_WEBHOOK_SECRET = os.getenv("SETTLEMENT_WEBHOOK_SECRET")
SETTLEMENT_MAX_RETRIES = int(os.getenv("SETTLEMENT_MAX_RETRIES", "3"))

# Deferred per-reservation jobs on the arq worker (the periodic sweep still runs either way)
DEFERRED_JOBS_ENABLED = os.getenv("DEFERRED_JOBS_ENABLED", "false").lower() == "true"

# Redis broadcast of status changes
REDIS_BROADCAST_ENABLED = os.getenv("REDIS_BROADCAST_ENABLED", "false").lower() == "true"
