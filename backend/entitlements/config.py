"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (BillingConfig, PaystackConfig, EmailConfig,
CommentaryConfig) are env-overridable via the double-underscore delimiter, e.g.:
    BILLING__FREE_MAX_SUBMISSIONS_PER_DAY=5
    PAYSTACK__SECRET_KEY=sk_live_xxx
    EMAIL__SMTP_HOST=smtp.example.com
"""

from functools import lru_cache

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingConfig(BaseModel):
    """Plan limits and entitlement durations.

    Env-overridable via BILLING__KEY format. Values that are not positive
    integers fall back to the default instead of failing startup.
    """

    free_max_conversations: int = 5
    free_max_submissions_per_day: int = 3
    pro_max_credits_per_month: int = 200
    # Days of Pro granted per successful payment
    pro_duration_days: int = 30
    renewal_reminder_days: int = 3
    renewal_reminder_batch_size: int = 25
    # Skip users already reminded within the current window instead of on every pass
    renewal_reminder_once_per_window: bool = False

    @field_validator(
        "free_max_conversations",
        "free_max_submissions_per_day",
        "pro_max_credits_per_month",
        "pro_duration_days",
        "renewal_reminder_days",
        "renewal_reminder_batch_size",
        mode="before",
    )
    @classmethod
    def _positive_or_default(cls, value, info: ValidationInfo):
        default = cls.model_fields[info.field_name].default
        try:
            parsed = int(float(value))
        except (TypeError, ValueError):
            return default
        return parsed if parsed > 0 else default


class PaystackConfig(BaseModel):
    """Paystack API and checkout parameters."""

    secret_key: str = ""
    base_url: str = "https://api.paystack.co"
    # Price of one Pro period in the currency's minor units (650.00 KES)
    pro_amount_minor: int = Field(default=65000, gt=0)
    currency: str = Field(default="KES", pattern=r"^[A-Za-z]{3}$")
    callback_url: str = ""
    plan_code: str = ""
    request_timeout_seconds: float = 15.0

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()


class EmailConfig(BaseModel):
    """SMTP delivery settings for transactional email."""

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_secure: bool = False
    from_address: str = "Textopsy <notifications@textopsy.com>"
    reply_to: str = ""
    # Internal address that receives auto-renewal alerts
    billing_alert_email: str = ""
    timeout_seconds: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_port and self.smtp_user and self.smtp_password)


class CommentaryConfig(BaseModel):
    """Commentary model parameters."""

    model: str = "gpt-4o-mini"
    max_tokens: int = 600
    temperature: float = 0.8


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # API Keys
    openai_api_key: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # Public base URL of the web app, used for "manage plan" links in email
    app_url: str = ""

    # Shared secret expected from the cron trigger of the reminder job
    cron_secret: str = ""

    # Comma-separated emails allowed to use the admin endpoints
    admin_emails: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    paystack: PaystackConfig = Field(default_factory=PaystackConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    commentary: CommentaryConfig = Field(default_factory=CommentaryConfig)

    @property
    def admin_email_set(self) -> frozenset[str]:
        return frozenset(e.strip().lower() for e in self.admin_emails.split(",") if e.strip())

    @property
    def plan_management_url(self) -> str | None:
        base = self.app_url.rstrip("/")
        if not base:
            return None
        return f"{base}/plan"

    @property
    def paystack_callback_url(self) -> str | None:
        if self.paystack.callback_url:
            return self.paystack.callback_url
        base = self.app_url.rstrip("/")
        if not base:
            return None
        return f"{base}/paystack/callback"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
