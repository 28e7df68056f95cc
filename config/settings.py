"""
Configuration settings for the application
"""
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

# Normalized plan tags stored on user records
PLAN_FREE = "Free"
PLAN_PRO = "Pro"

DEFAULT_DAYS_UNTIL_DUE = 7
MAX_DAYS_UNTIL_DUE = 30


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Shared secret the GPT tool sends on every non-webhook request
    gpt_api_key: Optional[str] = Field(default=None, alias="GPT_API_KEY")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_id: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ID")
    stripe_days_until_due: Optional[str] = Field(default=None, alias="STRIPE_DAYS_UNTIL_DUE")
    stripe_trial_period_days: int = Field(default=1, alias="STRIPE_TRIAL_PERIOD_DAYS")

    # Where the billing portal sends customers back to
    return_url: str = Field(default="https://chat.openai.com", alias="RETURN_URL")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./paywall.db", alias="DATABASE_URL")

    # Requests per minute allowed per API credential
    rate_limit_per_minute: int = Field(default=100, alias="RATE_LIMIT_PER_MINUTE")

    # Comma-separated extra fields accepted by the admin upsert endpoint
    allowed_custom_fields: str = Field(default="", alias="ALLOWED_CUSTOM_FIELDS")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="https://chat.openai.com", alias="FRONTEND_URL")

    # Logging
    log_dir: str = Field(default="./logs", alias="LOG_DIR")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")
    render_external_url: Optional[str] = Field(default=None, alias="RENDER_EXTERNAL_URL")
    render_service_name: Optional[str] = Field(default=None, alias="RENDER_SERVICE_NAME")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "populate_by_name": True,
        "extra": "ignore",
    }

    def days_until_due(self) -> int:
        """
        Days a deferred invoice stays open before it is due.

        Non-numeric values fall back to the default; the result is clamped
        to [0, MAX_DAYS_UNTIL_DUE].
        """
        try:
            parsed = int(self.stripe_days_until_due) if self.stripe_days_until_due else DEFAULT_DAYS_UNTIL_DUE
        except ValueError:
            parsed = DEFAULT_DAYS_UNTIL_DUE
        return min(max(parsed, 0), MAX_DAYS_UNTIL_DUE)

    def custom_field_allowlist(self) -> List[str]:
        return [f.strip() for f in self.allowed_custom_fields.split(",") if f.strip()]


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")
