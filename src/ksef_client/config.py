"""
Configuration: typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to a .env file
  - Validate types and constraints at startup

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated via env_nested_delimiter="__", so EXCHANGE__ENVIRONMENT maps
to exchange.environment, SYNC__INTERVAL_MINUTES to sync.interval_minutes, etc.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ksef_client.domain.models import Environment, SubjectType
from ksef_client.errors import ConfigurationError

# Resolve the .env file relative to the project root (two levels above the package).
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

DEFAULT_BASE_URLS: dict[Environment, str] = {
    Environment.TEST: "https://api-test.ksef.mf.gov.pl/v2",
    Environment.DEMO: "https://api-demo.ksef.mf.gov.pl/v2",
    Environment.PRODUCTION: "https://api.ksef.mf.gov.pl/v2",
}


class ExchangeSettings(BaseModel):
    """
    Exchange endpoint and form descriptor.

    `base_url` overrides apply to every environment; leave unset to use the
    published per-environment URLs.
    """

    environment: Environment = Field(default=Environment.TEST)
    base_url: str | None = Field(default=None, description="Override for all environments")
    timeout_seconds: float = Field(default=30.0, gt=0)
    form_system_code: str = Field(default="FA (3)")
    form_schema_version: str = Field(default="1-0E")
    form_value: str = Field(default="FA")
    system_info: str = Field(default="ksef-sync")

    def url_for(self, environment: Environment) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return DEFAULT_BASE_URLS[environment]


class RetrySettings(BaseModel):
    """Backoff for retryable calls (429, 5xx, network)."""

    max_attempts: int = Field(default=4, ge=1, le=10)
    base_delay_seconds: float = Field(default=0.5, gt=0)
    max_delay_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def check_ceiling(self) -> RetrySettings:
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class PollingSettings(BaseModel):
    """Attempt budgets and fixed delays for the three polling loops."""

    auth_max_attempts: int = Field(default=30, ge=1)
    auth_delay_seconds: float = Field(default=2.0, ge=0)
    session_max_attempts: int = Field(default=30, ge=1)
    session_delay_seconds: float = Field(default=2.0, ge=0)
    export_max_attempts: int = Field(default=60, ge=1)
    export_delay_seconds: float = Field(default=5.0, ge=0)


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (host, port, name, username, password). The DSN wins when both
    are provided. `credential_key` is the Fernet key protecting stored Exchange
    tokens. With `apply_schema` the DDL is applied at startup.
    """

    dsn: SecretStr | None = Field(default=None)
    host: str | None = Field(default=None)
    port: int = Field(default=5432, ge=1, le=65535)
    name: str | None = Field(default=None)
    username: str | None = Field(default=None)
    password: SecretStr | None = Field(default=None)
    credential_key: SecretStr = Field(description="Fernet key for tokens at rest")
    apply_schema: bool = Field(default=True)

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """Populate `dsn` from components when DATABASE__DSN is not set."""
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError("Set DATABASE__DSN or provide all of: " + ", ".join(missing))
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        if self.dsn is None:
            raise ConfigurationError("Database DSN is not configured")
        return self.dsn.get_secret_value()


class SyncSettings(BaseModel):
    """Scheduled incremental sync across tenants."""

    interval_minutes: int = Field(default=15, ge=1)
    max_concurrent_tenants: int = Field(default=3, ge=1)
    batch_size: int = Field(default=3, ge=1)
    batch_delay_seconds: float = Field(default=2.0, ge=0)
    subject_types: list[SubjectType] = Field(
        default_factory=lambda: [SubjectType.SUBJECT1, SubjectType.SUBJECT2, SubjectType.SUBJECT3]
    )
    initial_lookback_days: int = Field(default=30, ge=1)
    page_size: int = Field(default=100, ge=10, le=250)
    retrieval_mode: str = Field(default="metadata")

    @field_validator("retrieval_mode")
    @classmethod
    def validate_mode(cls, value: str) -> str:
        mode = value.strip().lower()
        if mode not in ("metadata", "export"):
            raise ValueError(f"retrieval_mode must be 'metadata' or 'export', got {value!r}")
        return mode

    @field_validator("subject_types")
    @classmethod
    def require_subjects(cls, value: list[SubjectType]) -> list[SubjectType]:
        if not value:
            raise ValueError("At least one subject type is required")
        return value


class AppSettings(BaseSettings):
    """
    Root application settings.

    Load order (highest priority first): environment variables, .env file,
    defaults.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseSettings
    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    run_on_startup: bool = Field(default=True)
    log_level: str = Field(default="INFO")
