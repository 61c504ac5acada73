"""
Configuration management with environment variable validation.
Loads and validates all configuration from environment variables.
"""
import json
import sys
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "pdftools-secret-key"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="doctools-server")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001)
    # Comma separated proxy addresses or CIDRs whose X-Forwarded-For is honoured
    forwarded_allow_ips: str = Field(default="")

    # Security
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET)
    session_ttl_seconds: int = Field(default=86400, gt=0)
    admin_password: str = Field(default="admin123")
    bcrypt_rounds: int = Field(default=10, ge=4, le=31)
    max_login_attempts: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=15, ge=1)

    # Storage
    data_dir: Path = Field(default=Path("data"))
    log_dir: Path = Field(default=Path("logs"))

    # Rate Limiting
    rate_limit_window_ms: int = Field(default=60000, gt=0)
    rate_limit_max_requests: int = Field(default=100, gt=0)
    client_rate_limit_max_requests: int = Field(default=30, gt=0)
    block_duration_ms: int = Field(default=300000, gt=0)
    rate_limit_fail_open: bool = Field(default=True)

    # Rapid-request detection
    rapid_threshold: int = Field(default=20, gt=0)
    rapid_window_ms: int = Field(default=10000, gt=0)

    # Bot detection
    humanness_threshold: int = Field(default=35, ge=0, le=100)
    challenge_ttl_ms: int = Field(default=300000, gt=0)

    # Request log
    request_log_capacity: int = Field(default=10000, gt=0)
    request_id_header: str = Field(default="X-Request-ID")

    # Analytics
    analytics_retention_days: int = Field(default=30, gt=0)
    analytics_save_attempts: int = Field(default=3, ge=1)

    # Background sweeps
    background_sweeps_enabled: bool = Field(default=True)
    block_sweep_interval_seconds: float = Field(default=60.0, gt=0)
    retention_sweep_interval_seconds: float = Field(default=86400.0, gt=0)

    # Uploads
    max_file_size_mb: int = Field(default=100, gt=0)

    # Logging
    log_format: str = Field(default="json")
    log_file_enabled: bool = Field(default=False)
    log_file_path: str = Field(default="logs/server.log")
    log_file_max_size: int = Field(default=10485760)  # 10MB
    log_file_backup_count: int = Field(default=5)

    # CORS
    cors_origin: str = Field(default="*")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        allowed = ["json", "console"]
        if v not in allowed:
            raise ValueError(f"log_format must be one of: {allowed}")
        return v

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from a JSON list or a comma separated string."""
        try:
            parsed = json.loads(self.cors_origin)
        except json.JSONDecodeError:
            return [origin.strip() for origin in self.cors_origin.split(",") if origin.strip()]
        return parsed if isinstance(parsed, list) else [str(parsed)]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def analytics_file(self) -> Path:
        return self.data_dir / "analytics.json"

    @property
    def admin_file(self) -> Path:
        return self.data_dir / "admin.json"

    @property
    def request_log_file(self) -> Path:
        return self.log_dir / "requests.log"


def validate_environment(**overrides) -> Settings:
    """
    Validate environment configuration on startup.
    Raises ValueError if variables are invalid.
    """
    try:
        settings = Settings(**overrides)

        if settings.environment == "production":
            if settings.debug:
                raise ValueError("DEBUG must be False in production")
            if settings.jwt_secret == DEFAULT_JWT_SECRET:
                raise ValueError("JWT_SECRET must be set in production")

        return settings

    except Exception as e:
        print("\nEnvironment Configuration Error:", file=sys.stderr)
        print(f"   {e}\n", file=sys.stderr)
        print("Tip: copy .env.example to .env and fill in your values", file=sys.stderr)
        raise


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, validated once."""
    return validate_environment()
