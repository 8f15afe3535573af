"""
Application settings
Environment-driven configuration for database, Stripe, email and billing policy
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Settings:
    """Configuration values read once from the environment"""

    def __init__(self):
        # Database
        self.database_url = os.getenv("DATABASE_URL", "postgresql+asyncpg://localhost:5432/clockwork_db")

        # Server
        self.debug = _env_bool("DEBUG")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.port = _env_int("PORT", 3001)
        self.cors_origin = os.getenv("CORS_ORIGIN", "http://localhost:3000")
        self.app_url = os.getenv("APP_URL", "http://localhost:3000")

        # Auth
        self.jwt_secret = os.getenv("JWT_SECRET", "change-me")
        self.jwt_algorithm = "HS256"
        self.jwt_expires_minutes = _env_int("JWT_EXPIRES_MINUTES", 60 * 24 * 7)

        # Stripe
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")

        # Email (Brevo transactional API)
        self.brevo_api_key = os.getenv("BREVO_API_KEY")
        self.email_sender_name = os.getenv("EMAIL_SENDER_NAME", "ClockWork")
        self.email_sender_address = os.getenv("EMAIL_SENDER_ADDRESS", "noreply@clockwork.app")

        # Billing policy
        self.trial_days = _env_int("TRIAL_DAYS", 14)
        self.grace_period_days = _env_int("GRACE_PERIOD_DAYS", 7)
        self.archive_delay_days = _env_int("ARCHIVE_DELAY_DAYS", 7)
        self.archive_inactivity_days = _env_int("ARCHIVE_INACTIVITY_DAYS", 90)
        self.sweep_batch_size = _env_int("SWEEP_BATCH_SIZE", 10)
        self.task_claim_timeout_minutes = _env_int("TASK_CLAIM_TIMEOUT_MINUTES", 30)

        # Feature flags
        self.enable_billing = _env_bool("ENABLE_BILLING", "true")
        self.enable_smart_archive = _env_bool("ENABLE_SMART_ARCHIVE", "true")
        self.enable_usage_tracking = _env_bool("ENABLE_USAGE_TRACKING", "true")

    @property
    def upgrade_url(self) -> str:
        return f"{self.app_url}/billing/upgrade"


settings = Settings()
