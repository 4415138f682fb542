import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./coupon_wallet.db")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_TEST = ENV_NORMALIZED == "test"
IS_PROD = ENV_NORMALIZED in {"prod", "production"}
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# CORS
_cors_env = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and IS_DEV:
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

# Wallet / QR tokens
QR_TOKEN_TTL_SECONDS = int(os.getenv("QR_TOKEN_TTL_SECONDS", "120"))
QR_TOKEN_BYTES = int(os.getenv("QR_TOKEN_BYTES", "32"))
WALLET_EVENT_LIMIT = int(os.getenv("WALLET_EVENT_LIMIT", "25"))

# Coupon approvals
APPROVAL_HISTORY_LIMIT = int(os.getenv("APPROVAL_HISTORY_LIMIT", "10"))

# Billing
BILLING_GRACE_FALLBACK_DAYS = int(os.getenv("BILLING_GRACE_FALLBACK_DAYS", "3"))
SUBSCRIPTION_EVENT_LIMIT = int(os.getenv("SUBSCRIPTION_EVENT_LIMIT", "50"))

# Admin event projection
EVENTS_DEFAULT_LIMIT = int(os.getenv("EVENTS_DEFAULT_LIMIT", "100"))
EVENTS_MAX_LIMIT = int(os.getenv("EVENTS_MAX_LIMIT", "500"))

REPO_ROOT = Path(__file__).resolve().parents[2]
ALEMBIC_CONFIG_PATH = Path(os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini")))
