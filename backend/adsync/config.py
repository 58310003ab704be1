import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)

# Mount point of the integrations router; Google redirects back to its /callback
INTEGRATIONS_PREFIX = "/api/integrations/google-ads"
OAUTH_CALLBACK_PATH = f"{INTEGRATIONS_PREFIX}/callback"


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/adsync"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Heroku-style URLs come as postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    secret_key: str = "change-me-in-production"
    cors_origins: str = "http://localhost:5173,http://localhost:3333"

    # Field-level encryption (hex-encoded 32-byte keys)
    encryption_key: str = ""
    encryption_key_development: str = ""
    encryption_key_production: str = ""
    previous_encryption_keys: str = ""  # comma-separated, newest first

    # Google Ads OAuth + API
    google_ads_client_id: str = ""
    google_ads_client_secret: str = ""
    google_ads_developer_token: str = ""
    google_ads_login_customer_id: str = ""
    google_ads_api_version: str = "v19"

    # Public URL used to build the OAuth redirect target
    app_url: str = ""
    host: str = "localhost"
    port: int = 3333

    # Sync tuning
    sync_batch_size: int = 100
    sync_bootstrap_days: int = 30
    sync_cache_ttl_minutes: int = 10

    # Token access rate limit (per requesting user)
    token_access_limit: int = 5
    token_access_window_seconds: int = 60

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "SECRET_KEY must be set to a secure value in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.google_ads_client_id or not self.google_ads_client_secret:
                raise ValueError(
                    "GOOGLE_ADS_CLIENT_ID and GOOGLE_ADS_CLIENT_SECRET must be set in production."
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def active_encryption_key(self) -> str:
        """Environment-specific key wins over the generic ENCRYPTION_KEY."""
        env = self.environment.lower()
        if env == "development" and self.encryption_key_development:
            return self.encryption_key_development
        if env == "production" and self.encryption_key_production:
            return self.encryption_key_production
        return self.encryption_key

    @property
    def previous_encryption_key_list(self) -> list[str]:
        return [k.strip() for k in self.previous_encryption_keys.split(",") if k.strip()]

    @property
    def oauth_redirect_uri(self) -> str:
        if self.app_url:
            return f"{self.app_url.rstrip('/')}{OAUTH_CALLBACK_PATH}"
        protocol = "https" if self.is_production else "http"
        port_suffix = f":{self.port}" if self.port not in (80, 443) else ""
        return f"{protocol}://{self.host}{port_suffix}{OAUTH_CALLBACK_PATH}"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
