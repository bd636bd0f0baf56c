import os
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE_DIR / 'gympay.db'}")

JWT_SECRET = os.getenv("JWT_SECRET", "")

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_TIMEOUT_SECONDS = int(os.getenv("STRIPE_TIMEOUT_SECONDS", "20"))
STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2"))
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
CURRENCY = os.getenv("CURRENCY", "usd")

# Without a secret key there is nothing to talk to, so we stay in mock mode.
PAYMENTS_ENABLED = _flag("PAYMENTS_ENABLED") and bool(STRIPE_SECRET_KEY)

# Rate limiting: (requests, window in ms)
REDIS_URL = os.getenv("REDIS_URL", "")
# Only honour X-Forwarded-For / X-Real-IP when a reverse proxy sets them
TRUST_PROXY_HEADERS = _flag("TRUST_PROXY_HEADERS")
WINDOW_MS = 15 * 60 * 1000
RATE_LIMITS = {
    "payments:create": (int(os.getenv("RATE_LIMIT_PAYMENT_CREATE", "5")), WINDOW_MS),
    "payments:confirm": (int(os.getenv("RATE_LIMIT_PAYMENT_CONFIRM", "10")), WINDOW_MS),
    "payments:read": (int(os.getenv("RATE_LIMIT_PAYMENT_READ", "30")), WINDOW_MS),
    "admin:payments:read": (30, WINDOW_MS),
    "admin:payments:create": (10, WINDOW_MS),
    "admin:payments:update": (15, WINDOW_MS),
    "admin:payments:delete": (5, WINDOW_MS),
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
