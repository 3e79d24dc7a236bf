import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class ConfigurationError(Exception):
    """Raised when a required setting is missing at startup"""

    pass


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cnvidas.db")

# Stripe Configuration
# The secret key is validated when the gateway is built, not at import time
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION", "2023-10-16")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "brl")
STRIPE_TIMEOUT_SECONDS = int(os.getenv("STRIPE_TIMEOUT_SECONDS", "30"))
STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2"))

# Consultation payment capture window: appointments starting between
# now + LEAD and now + LEAD + WINDOW are captured on each run
PAYMENT_CAPTURE_LEAD_HOURS = int(os.getenv("PAYMENT_CAPTURE_LEAD_HOURS", "12"))
PAYMENT_CAPTURE_WINDOW_HOURS = int(os.getenv("PAYMENT_CAPTURE_WINDOW_HOURS", "1"))

PAYMENT_JOB_TIMEOUT_SECONDS = int(os.getenv("PAYMENT_JOB_TIMEOUT_SECONDS", "600"))

# Patient-facing dates are shown in Brasilia time
DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "America/Sao_Paulo")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
