"""FormTier runtime configuration.

Values come from the environment (``backend/.env`` is loaded first) and fall
back to the production defaults below.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(ROOT_DIR / '.env')


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


# Subscription lifecycle
GRACE_PERIOD_DAYS = _int_env("FORMTIER_GRACE_PERIOD_DAYS", 14)
SUSPENSION_TO_DELETION_DAYS = _int_env("FORMTIER_SUSPENSION_TO_DELETION_DAYS", 90)
PAYMENT_RETRY_INTERVAL_DAYS = _int_env("FORMTIER_PAYMENT_RETRY_INTERVAL_DAYS", 3)

# Quotas
QUOTA_WARNING_THRESHOLD_PERCENT = _int_env("FORMTIER_QUOTA_WARNING_THRESHOLD_PERCENT", 80)

# Rate limiting and paywall escalation (process-local)
RATE_LIMIT_WINDOW_SECONDS = _int_env("FORMTIER_RATE_LIMIT_WINDOW_SECONDS", 3600)
PAYWALL_HARD_AFTER_VIEWS = _int_env("FORMTIER_PAYWALL_HARD_AFTER_VIEWS", 3)
EPHEMERAL_STORE_MAXSIZE = _int_env("FORMTIER_EPHEMERAL_STORE_MAXSIZE", 10000)

# Scheduled sweeps
USAGE_ROLLOVER_INTERVAL_MINUTES = _int_env("FORMTIER_USAGE_ROLLOVER_INTERVAL_MINUTES", 15)
LIFECYCLE_SWEEP_INTERVAL_MINUTES = _int_env("FORMTIER_LIFECYCLE_SWEEP_INTERVAL_MINUTES", 60)

# Trials and early access
TRIAL_ELIGIBILITY_WINDOW_DAYS = _int_env("FORMTIER_TRIAL_ELIGIBILITY_WINDOW_DAYS", 30)
EARLY_ACCESS_FLAG = os.environ.get("FORMTIER_EARLY_ACCESS_FLAG", "early_access")
