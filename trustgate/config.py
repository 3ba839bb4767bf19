import warnings
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ── Known insecure default tokens (must never be used in production) ──
_INSECURE_TOKENS = {
    "change_this",
    "change_this_to_a_secure_random_string",
    "secret",
}


class Settings(BaseSettings):
    APP_NAME: str = "TrustGate Decision Engine"
    APP_ENV: str = "development"
    API_V1_STR: str = "/api/v1"

    # Admin API service token (sent as X-Service-Token)
    SERVICE_TOKEN: str = "change_this"

    # Database
    DATABASE_URL: Optional[str] = None  # overrides the POSTGRES_* parts when set
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "trustgate"

    # Store call bounds
    STORE_STATEMENT_TIMEOUT_MS: int = 2000
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 5
    DB_POOL_RECYCLE: int = 1800
    DB_ECHO: bool = False
    SLOW_QUERY_THRESHOLD_MS: int = 500
    STORE_WRITE_RETRIES: int = 3  # admin write path only

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    # Flag / rule cache
    FLAG_CACHE_ENABLED: bool = True
    FLAG_CACHE_LOCAL_TTL: int = 5      # seconds, per-process tier
    FLAG_CACHE_LOCAL_MAXSIZE: int = 2048
    FLAG_CACHE_TTL: int = 5            # seconds, Redis tier; bounds staleness from a late set()
    FLAG_CACHE_REDIS_URL: str = ""     # empty = process-local tier only

    # Audit trail
    AUDIT_RETENTION_DAYS: int = 2555   # 7 years; 0 disables purging
    AUDIT_PURGE_BATCH_SIZE: int = 1000
    AUDIT_WRITE_MAX_RETRIES: int = 8   # Celery retries for security events

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @model_validator(mode="after")
    def _validate_production_security(self) -> "Settings":
        """Block startup if critical secrets are insecure in production / staging."""
        if self.APP_ENV in ("production", "staging"):
            if self.SERVICE_TOKEN in _INSECURE_TOKENS or len(self.SERVICE_TOKEN) < 32:
                raise ValueError(
                    f"SERVICE_TOKEN is insecure ('{self.SERVICE_TOKEN[:8]}…'). "
                    "Set a strong random token (≥ 32 chars) in .env or environment. "
                    f"Hint: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
                )
            if self.DATABASE_URL is None and self.POSTGRES_PASSWORD in ("postgres", ""):
                raise ValueError(
                    "POSTGRES_PASSWORD is set to default 'postgres'. "
                    "Set a strong password in .env or environment."
                )
            if self.AUDIT_RETENTION_DAYS == 0:
                warnings.warn(
                    "AUDIT_RETENTION_DAYS=0 keeps audit rows forever. "
                    "Pick an explicit retention period for production.",
                    UserWarning,
                    stacklevel=2,
                )
        return self

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}/{self.POSTGRES_DB}"
        )

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_staging(self) -> bool:
        return self.APP_ENV == "staging"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"

settings = Settings()
