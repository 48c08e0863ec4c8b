from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
import os


def _get_secret_key() -> str:
    key = os.getenv("SECRET_KEY")
    if not key:
        raise ValueError("SECRET_KEY environment variable is required")
    return key


def _get_database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")
    return url


class Settings(BaseSettings):
    APP_NAME: str = "Bookswap Trading API"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    SECRET_KEY: str = Field(
        default_factory=_get_secret_key, description="Secret used to verify identity tokens"
    )
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    DATABASE_URL: str = Field(
        default_factory=_get_database_url, description="Database connection URL"
    )

    CORS_ORIGINS: str = Field(
        default="http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173",
        description="Comma-separated list of allowed origins",
    )

    RATE_LIMIT_PER_MINUTE: int = 60

    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: str | None = None

    WS_AUTH_TIMEOUT_SECONDS: float = 10.0
    WS_IDLE_TIMEOUT_SECONDS: float = 120.0
    WS_SWEEP_INTERVAL_SECONDS: float = 30.0

    TRADE_LIST_LIMIT: int = 50

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("CORS_ORIGINS")
    @classmethod
    def validate_cors_origins(cls, v: str) -> str:
        if not v:
            raise ValueError("CORS_ORIGINS cannot be empty")

        for origin in (o.strip() for o in v.split(",")):
            if origin and not origin.startswith(("http://", "https://")):
                raise ValueError(
                    f"Invalid CORS origin format: {origin}. Must start with http:// or https://"
                )

        return v

    @field_validator("WS_AUTH_TIMEOUT_SECONDS", "WS_IDLE_TIMEOUT_SECONDS", "WS_SWEEP_INTERVAL_SECONDS")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts and delays must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        return [
            origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()
        ]


settings = Settings()  # type: ignore[call-arg]


def _validate_settings() -> None:
    if not os.getenv("SKIP_CONFIG_VALIDATION"):
        from .core.config_validator import EnvironmentValidator

        EnvironmentValidator.validate_or_exit()


_validate_settings()
