# nutrizen/config/settings.py
"""
Application configuration using pydantic-settings (pydantic v2 style).

Everything environment-driven lives here. Services read `settings` instead of
calling os.getenv inline, so a missing key shows up once at startup rather
than as a silent default deep inside a request.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_ORIGINS = [
    "https://mynutrizen.fr",
    "https://app.mynutrizen.fr",
    "https://www.mynutrizen.fr",
    "http://localhost:5173",
    "http://localhost:3000",
]


class Settings(BaseSettings):
    """
    Application configuration loaded from environment.

    Relevant environment variables:
      - SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY / SUPABASE_ANON_KEY
      - CRON_SECRET
      - N8N_WEBHOOK_BASE / N8N_HMAC_SECRET and the per-job webhook URLs
      - LOVABLE_API_KEY / AI_GATEWAY_URL / AI_MODEL
      - STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET
      - STRIPE_PRICE_CREDITS_50/120/300/700 / ZEN_CREDITS_PRICE_ID
      - BREVO_API_KEY / BREVO_SENDER_EMAIL / BREVO_SENDER_NAME
      - PINTEREST_APP_ID / PINTEREST_APP_SECRET / PINTEREST_REDIRECT_URI
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Supabase
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    cron_secret: Optional[str] = None

    # n8n automation
    n8n_webhook_base: Optional[str] = None
    n8n_hmac_secret: Optional[str] = None
    n8n_analyze_meal_webhook: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "N8N_ANALYZE_MEAL_WEBHOOK",
            "N8N_ANALYZE_MEAL_WEBHOOK_PROD",
            "N8N_ANALYZE_MEAL_WEBHOOK_STAGING",
        ),
    )
    n8n_analyze_fridge_webhook: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "N8N_ANALYZE_FRIDGE_WEBHOOK",
            "N8N_ANALYZE_FRIDGE_WEBHOOK_PROD",
            "N8N_ANALYZE_FRIDGE_WEBHOOK_STAGING",
        ),
    )
    n8n_substitutions_webhook: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "N8N_SUBSTITUTIONS_WEBHOOK",
            "N8N_SUBSTITUTIONS_WEBHOOK_PROD",
            "N8N_SUBSTITUTIONS_WEBHOOK_STAGING",
        ),
    )

    # LLM gateway (OpenAI-compatible)
    lovable_api_key: Optional[str] = None
    ai_gateway_url: str = "https://ai.gateway.lovable.dev/v1"
    ai_model: str = "google/gemini-2.5-flash"

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_essentiel_monthly: Optional[str] = None
    stripe_price_essentiel_yearly: Optional[str] = None
    stripe_price_equilibre: Optional[str] = None
    stripe_price_premium: Optional[str] = None
    checkout_trial_days: int = 7
    # one-off credit packs (lifetime credits)
    stripe_price_credits_50: Optional[str] = None
    stripe_price_credits_120: Optional[str] = None
    stripe_price_credits_300: Optional[str] = None
    stripe_price_credits_700: Optional[str] = None
    zen_credits_price_id: Optional[str] = None

    # Referrals
    referral_ip_salt: str = Field(
        default="referral-salt",
        validation_alias=AliasChoices("REFERRAL_IP_SALT", "HMAC_SECRET"),
    )

    # Brevo
    brevo_api_key: Optional[str] = None
    brevo_sender_email: str = "noreply@mynutrizen.fr"
    brevo_sender_name: str = "NutriZen"

    # Pinterest
    pinterest_app_id: Optional[str] = None
    pinterest_app_secret: Optional[str] = None
    pinterest_redirect_uri: Optional[str] = None

    # App
    app_base_url: str = "https://mynutrizen.fr"
    public_api_url: Optional[str] = None
    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    job_poll_interval: float = 2.0
    job_max_poll_time: float = 120.0
    onboarding_cache_ttl: float = 30.0

    # --- validators / post-init checks ---
    @field_validator(
        "supabase_url",
        "supabase_service_role_key",
        "supabase_anon_key",
        "n8n_webhook_base",
    )
    @classmethod
    def maybe_strip(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("n8n_webhook_base")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v

    def model_post_init(self, __context) -> None:
        """
        Surface disabled integrations in the server logs once, at import time.
        """
        if not self.supabase_url or not self.supabase_service_role_key:
            logger.warning(
                "Supabase credentials are not configured. "
                "Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY to enable DB features."
            )
        if not self.lovable_api_key:
            logger.info("LOVABLE_API_KEY not set. AI analysis features will be disabled.")
        if not self.stripe_secret_key or not self.stripe_webhook_secret:
            logger.info("Stripe keys missing. Billing webhooks will be rejected.")
        if not self.brevo_api_key:
            logger.info("BREVO_API_KEY not set. Transactional email is disabled.")
        if not self.n8n_hmac_secret:
            logger.warning(
                "N8N_HMAC_SECRET not set. Job callbacks will be accepted without a signature."
            )

    @property
    def job_callback_url(self) -> str:
        if self.public_api_url:
            return f"{self.public_api_url.rstrip('/')}/api/jobs/callback"
        return f"{(self.supabase_url or '').rstrip('/')}/functions/v1/job-callback"


# single exporter
settings = Settings()
