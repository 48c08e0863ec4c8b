import os
import sys
from typing import Callable, TypedDict


def _validate_secret_key(value: str) -> bool:
    return len(value) >= 32 and value != "CHANGE_THIS_TO_A_SECURE_RANDOM_KEY_IN_PRODUCTION"


def _validate_database_url(value: str) -> bool:
    return value.startswith(("postgresql+asyncpg:", "sqlite+aiosqlite:"))


def _validate_debug_setting(value: str, environment: str) -> bool:
    return value.lower() != "true" if environment == "production" else True


class ValidationResult(TypedDict):
    environment: str
    errors: list[str]
    warnings: list[str]
    valid: bool


class EnvironmentValidator:
    REQUIRED_SETTINGS: dict[str, tuple[Callable[[str], bool], str]] = {
        "SECRET_KEY": (
            _validate_secret_key,
            "SECRET_KEY must be at least 32 characters and changed from default",
        ),
        "DATABASE_URL": (
            _validate_database_url,
            "DATABASE_URL must start with postgresql+asyncpg:// or sqlite+aiosqlite:///",
        ),
    }

    NUMERIC_SETTINGS: dict[str, tuple[float, float]] = {
        "RATE_LIMIT_PER_MINUTE": (1, 10000),
        "ACCESS_TOKEN_EXPIRE_MINUTES": (5, 1440),
        "WS_AUTH_TIMEOUT_SECONDS": (1, 120),
        "WS_IDLE_TIMEOUT_SECONDS": (10, 3600),
    }

    @classmethod
    def validate_environment(cls) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        environment = os.getenv("ENVIRONMENT", "development").lower()

        for setting, (validation_func, message) in cls.REQUIRED_SETTINGS.items():
            value = os.getenv(setting)
            if not value:
                errors.append(f"{setting} is required")
            elif not validation_func(value):
                errors.append(f"{setting}: {message}")

        if not _validate_debug_setting(os.getenv("DEBUG", ""), environment):
            errors.append("DEBUG must be false in production environment")

        if environment == "production" and not os.getenv("SENTRY_DSN"):
            warnings.append("SENTRY_DSN should be configured for production monitoring")

        for setting, (min_val, max_val) in cls.NUMERIC_SETTINGS.items():
            value = os.getenv(setting)
            if not value:
                continue
            try:
                num_value = float(value)
            except ValueError:
                warnings.append(f"{setting} should be a number")
                continue
            if not (min_val <= num_value <= max_val):
                warnings.append(f"{setting} should be between {min_val} and {max_val}")

        return ValidationResult(
            environment=environment,
            errors=errors,
            warnings=warnings,
            valid=len(errors) == 0,
        )

    @classmethod
    def validate_or_exit(cls) -> None:
        skip_validation = os.getenv("SKIP_CONFIG_VALIDATION", "").lower() == "true" or any(
            "alembic" in arg for arg in sys.argv
        )
        if skip_validation:
            return

        result = cls.validate_environment()

        for warning in result["warnings"]:
            print(f"WARNING: {warning}", file=sys.stderr)

        if result["errors"]:
            for error in result["errors"]:
                print(f"ERROR: {error}", file=sys.stderr)
            print(
                "Application cannot start with configuration errors. "
                "Generate a SECRET_KEY with: "
                'python -c "import secrets; print(secrets.token_urlsafe(32))"',
                file=sys.stderr,
            )
            sys.exit(1)
