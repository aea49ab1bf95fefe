import json
import os
from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "GiftPool Settlement API"
    frontend_url: str = "http://localhost:3000"
    environment: str = "local"
    backend_cors_origins_raw: str = ""  # Comma-separated or JSON array

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "allow",
    }

    @property
    def backend_cors_origins(self) -> list[str]:
        """Parse CORS origins from raw string."""
        raw = os.getenv("BACKEND_CORS_ORIGINS", self.backend_cors_origins_raw).strip()
        if not raw:
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(item).strip() for item in parsed if str(item).strip()]
            except ValueError:
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]

    # Database: sqlite+aiosqlite:///./giftpool.db (dev) | postgresql+asyncpg://... (prod)
    postgres_dsn: str = "sqlite+aiosqlite:///./giftpool.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800
    db_pool_timeout: int = 30

    redis_dsn: str = "redis://localhost:6379/0"
    float_cache_enabled: bool = True

    # Caller identity is issued by the auth service; we only verify it.
    jwt_secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7

    # Reloadly gift card float
    reloadly_client_id: str = ""
    reloadly_client_secret: str = ""
    reloadly_auth_url: str = "https://auth.reloadly.com/oauth/token"
    reloadly_base_url: str = "https://giftcards-sandbox.reloadly.com"
    reloadly_audience: str = "https://giftcards-sandbox.reloadly.com"
    float_fetch_timeout_seconds: float = 5.0
    float_fetch_retries: int = 2
    float_fetch_backoff_seconds: float = 0.2
    # Snapshots older than this are refreshed and never served stale.
    float_balance_max_age_seconds: int = 30

    # Alerting
    slack_webhook_url: str = ""
    slack_timeout_seconds: float = 5.0
    slack_retries: int = 2
    cron_secret: str = ""
    balance_threshold_low: Decimal = Decimal("50")
    balance_threshold_critical: Decimal = Decimal("10")

    # Settlement
    gift_card_min_balance: Decimal = Decimal("1.00")
    gift_card_min_amount: Decimal = Decimal("1.00")
    gift_card_override: str = "auto"  # auto | show | hide

    # Card processing fee schedule
    fee_percent: Decimal = Decimal("0.029")
    fee_fixed: Decimal = Decimal("0.30")

    log_level: str = "INFO"
    log_file: str = ""

    @property
    def reloadly_configured(self) -> bool:
        return bool(self.reloadly_client_id.strip() and self.reloadly_client_secret.strip())

    def validate_secrets(self) -> None:
        """Refuse to start with insecure defaults outside local dev."""
        if self.environment.lower() == "local":
            return
        if self.jwt_secret_key == "CHANGE_ME" or len(self.jwt_secret_key) < 32:
            raise RuntimeError(
                "JWT_SECRET_KEY must be set to a secure value (32+ chars) in production"
            )
        if not self.cron_secret.strip():
            raise RuntimeError("CRON_SECRET must be set so the balance check is not callable anonymously")


settings = Settings()
