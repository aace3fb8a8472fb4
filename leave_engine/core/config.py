"""
Configuration management for the Leave Accounting Engine
"""
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import Optional, List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database / auth
    DATABASE_URL: str = Field(default="sqlite:///./leave_engine.db", description="SQLAlchemy database URL")
    JWT_SECRET_KEY: str = Field(..., description="JWT secret key used to verify identity tokens")
    JWT_ALGORITHM: str = Field(default="HS256", description="JWT algorithm")
    JWT_EXPIRE_MINUTES: int = Field(default=120, description="JWT token expiration in minutes")

    APP_ENV: str = Field(default="local", description="Application environment: local, staging, prod")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")

    # CORS settings
    ALLOWED_ORIGINS: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins. Use '*' for local only."
    )

    # Version (can be git SHA or semver)
    VERSION: Optional[str] = Field(default=None, description="Application version (git SHA or semver)")

    # Annual statutory quota shared by all non-exempt leave types
    ANNUAL_QUOTA_DAYS: int = Field(default=15, description="Days allocated to the Annual Leave Quota per year")
    ANNUAL_QUOTA_EXEMPT_LEAVE_TYPES: str = Field(
        default="Sick Leave,Maternity Leave",
        description="Comma-separated leave types that never debit the Annual Leave Quota"
    )

    # Ledger concurrency
    LEDGER_LOCK_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Seconds to wait for a ledger lock before failing with a concurrency conflict"
    )
    LEDGER_CONFLICT_RETRIES: int = Field(
        default=3,
        description="Attempts made by callers for operations that hit a concurrency conflict"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Validate APP_ENV"""
        allowed = ["local", "staging", "prod"]
        if v not in allowed:
            raise ValueError(f"APP_ENV must be one of {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate LOG_LEVEL"""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}")
        return v.upper()

    @field_validator("ANNUAL_QUOTA_DAYS", "LEDGER_CONFLICT_RETRIES")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    def validate_production(self) -> None:
        """
        Validate settings for production environment

        Raises:
            ValueError: If production settings are invalid
        """
        if self.APP_ENV == "prod":
            # JWT_SECRET_KEY must be at least 32 characters in production
            if len(self.JWT_SECRET_KEY) < 32:
                raise ValueError(
                    "JWT_SECRET_KEY must be at least 32 characters in production environment"
                )

            # ALLOWED_ORIGINS must not be wildcard in production
            if self.ALLOWED_ORIGINS == "*" or not self.ALLOWED_ORIGINS:
                raise ValueError(
                    "ALLOWED_ORIGINS must be explicitly set (not '*') in production environment"
                )

    def get_allowed_origins_list(self) -> List[str]:
        """
        Get list of allowed CORS origins

        Returns:
            List of allowed origins (or ['*'] for local)
        """
        if self.ALLOWED_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    def get_quota_exempt_leave_types(self) -> List[str]:
        """Leave types that bypass the Annual Leave Quota"""
        return [t.strip() for t in self.ANNUAL_QUOTA_EXEMPT_LEAVE_TYPES.split(",") if t.strip()]


# Create settings instance
settings = Settings()

# Validate production settings if in prod
if settings.APP_ENV == "prod":
    settings.validate_production()
