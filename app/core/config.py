from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    session_max_age_seconds: int = Field(default=7 * 24 * 3600, alias="SESSION_MAX_AGE_SECONDS")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="genforge", alias="MONGODB_DB_NAME")

    # Redis (arq worker, API key rate limits)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Fernet key (base64) for API key webhook secrets
    token_encryption_key: str = Field(default="", alias="TOKEN_ENCRYPTION_KEY")

    # fal.ai
    fal_api_key: str = Field(default="", alias="FAL_API_KEY")
    fal_queue_url: str = Field(default="https://queue.fal.run", alias="FAL_QUEUE_URL")
    fal_run_url: str = Field(default="https://fal.run", alias="FAL_RUN_URL")
    fal_http_timeout_seconds: float = Field(default=120.0, alias="FAL_HTTP_TIMEOUT_SECONDS")

    # Stripe
    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")

    # x402 (USDC on Base)
    x402_pay_to_address: str = Field(default="", alias="X402_PAY_TO_ADDRESS")
    x402_network: str = Field(default="eip155:8453", alias="X402_NETWORK")
    x402_facilitator_url: str = Field(default="https://x402.org/facilitator", alias="X402_FACILITATOR_URL")
    x402_asset: str = Field(
        default="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",  # USDC on Base
        alias="X402_ASSET",
    )
    x402_max_timeout_seconds: int = Field(default=300, alias="X402_MAX_TIMEOUT_SECONDS")
    x402_markup: float = Field(default=1.30, alias="X402_MARKUP")

    # Reverse proxies whose X-Forwarded-For is trusted (comma-separated IPs/CIDRs, "*" for any)
    trusted_proxies: str = Field(default="", alias="TRUSTED_PROXIES")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    @property
    def x402_enabled(self) -> bool:
        return bool(self.x402_pay_to_address)

    # Credits
    free_signup_credits: float = Field(default=2.0, alias="FREE_SIGNUP_CREDITS")
    reservation_ttl_seconds: int = Field(default=600, alias="RESERVATION_TTL_SECONDS")
    queue_job_ttl_seconds: int = Field(default=3600, alias="QUEUE_JOB_TTL_SECONDS")
    sweep_batch_size: int = Field(default=200, alias="SWEEP_BATCH_SIZE")

    # Gateway
    gateway_batch_limit: int = 10


@lru_cache
def get_settings() -> Settings:
    return Settings()
