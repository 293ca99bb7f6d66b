"""
Settings Module
===============

Pydantic-based configuration with environment variable loading.

Version: 0.1.0
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class BackendProvider(str, Enum):
    """Supported backend providers."""

    LOCAL = "local"
    POSTGRESQL = "postgresql"
    AURORA_SERVERLESS = "aurora-serverless"
    AWS = "aws"


class PostgresSettings(BaseSettings):
    """PostgreSQL / Aurora Serverless database configuration."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = "localhost"
    port: int = 5432
    user: str = "mindmeasure"
    password: SecretStr = SecretStr("mindmeasure_dev_password")
    db: str = "mindmeasure"
    ssl: bool = False

    @property
    def async_url(self) -> str:
        """Generate async SQLAlchemy connection URL."""
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{self.host}:{self.port}/{self.db}"

    @property
    def sync_url(self) -> str:
        """Generate sync SQLAlchemy connection URL."""
        pwd = self.password.get_secret_value()
        return f"postgresql://{self.user}:{pwd}@{self.host}:{self.port}/{self.db}"


class AWSSettings(BaseSettings):
    """AWS credentials and service identifiers (Cognito, S3, Lambda)."""

    model_config = SettingsConfigDict(env_prefix="AWS_")

    region: str = "eu-west-2"
    access_key_id: str = ""
    secret_access_key: SecretStr = SecretStr("")
    cognito_client_id: str = ""
    cognito_user_pool_id: str = ""
    s3_bucket_name: str = "mindmeasure-user-content"
    s3_region: str | None = None
    lambda_prefix: str = "mindmeasure-"

    @property
    def storage_region(self) -> str:
        """S3 region, falling back to the main region."""
        return self.s3_region or self.region


class BackendSettings(BaseSettings):
    """Backend provider selection."""

    model_config = SettingsConfigDict(env_prefix="BACKEND_")

    provider: BackendProvider = BackendProvider.LOCAL

    # local provider: persist tables as JSON files when set
    local_data_dir: Path | None = None

    # aws provider: server-side API that proxies database and auth calls
    api_base_url: str = "https://api.mindmeasure.co.uk"
    api_token: SecretStr = SecretStr("")
    api_timeout_seconds: float = 15.0


class JWTSettings(BaseSettings):
    """JWT authentication configuration."""

    model_config = SettingsConfigDict(env_prefix="JWT_")

    secret_key: SecretStr = SecretStr("your-jwt-secret-key-min-32-chars-long")
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    refresh_token_expire_days: int = 7


class CORSSettings(BaseSettings):
    """CORS configuration."""

    model_config = SettingsConfigDict(env_prefix="CORS_")

    origins: str = "http://localhost:3000,http://localhost:5173,capacitor://localhost"
    allow_credentials: bool = True

    @property
    def origins_list(self) -> list[str]:
        """Parse origins string into list."""
        return [o.strip() for o in self.origins.split(",") if o.strip()]


class PrivacySettings(BaseSettings):
    """Pseudonymisation and consent configuration."""

    model_config = SettingsConfigDict(env_prefix="PRIVACY_")

    pepper: SecretStr = SecretStr("mind_measure_privacy_salt_2025")
    consent_version: str = "1.0"
    export_url_ttl_seconds: int = 3600
    phi_encryption_key: SecretStr = SecretStr("")

    @property
    def uses_default_pepper(self) -> bool:
        """True when the development pepper has not been replaced."""
        return self.pepper.get_secret_value() == "mind_measure_privacy_salt_2025"


class SecuritySettings(BaseSettings):
    """Security automation configuration."""

    model_config = SettingsConfigDict(env_prefix="SECURITY_")

    monitoring_enabled: bool = False
    incident_scan_interval_seconds: int = 5 * 60
    compliance_daily_interval_seconds: int = 24 * 60 * 60
    compliance_weekly_interval_seconds: int = 7 * 24 * 60 * 60
    backup_cleanup_interval_seconds: int = 24 * 60 * 60

    audit_lookback_hours: int = 24
    audit_scan_limit: int = 1000
    business_hours_start: int = 9
    business_hours_end: int = 18

    backup_retention_days: int = 30
    backup_tables: str = "profiles,assessment_sessions,fusion_outputs,user_baselines,buddies"

    alert_webhook_url: str | None = None

    # Peers whose X-Forwarded-For header is honoured
    forwarded_allow_ips: str = "127.0.0.1"

    admin_tables: str = (
        "profiles,assessment_sessions,fusion_outputs,user_baselines,"
        "buddies,buddy_invites,user_roles,audit_logs,security_incidents"
    )

    @property
    def admin_tables_list(self) -> list[str]:
        """Tables reachable through the admin database proxy."""
        return [t.strip() for t in self.admin_tables.split(",") if t.strip()]

    @property
    def forwarded_allow_ips_list(self) -> list[str]:
        """Trusted reverse proxy addresses."""
        return [ip.strip() for ip in self.forwarded_allow_ips.split(",") if ip.strip()]

    @property
    def backup_tables_list(self) -> list[str]:
        """Tables included in scheduled backups."""
        return [t.strip() for t in self.backup_tables.split(",") if t.strip()]


class BuddySettings(BaseSettings):
    """Buddy invitation configuration."""

    model_config = SettingsConfigDict(env_prefix="BUDDY_")

    invite_expiry_days: int = 14
    consent_base_url: str = "https://mindmeasure.app/api/buddies/invite/consent"


class ServicePorts(BaseSettings):
    """Service port configuration."""

    app_api: int = Field(default=8000, alias="APP_API_PORT")
    admin: int = Field(default=8001, alias="ADMIN_PORT")


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables with sensible defaults.
    Use the global `settings` singleton or call `get_settings()`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # General
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True
    log_level: LogLevel = LogLevel.INFO

    # Service ports
    ports: ServicePorts = Field(default_factory=ServicePorts)

    # Backend
    backend: BackendSettings = Field(default_factory=BackendSettings)
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)

    # Authentication
    jwt: JWTSettings = Field(default_factory=JWTSettings)

    # Domain
    privacy: PrivacySettings = Field(default_factory=PrivacySettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    buddy: BuddySettings = Field(default_factory=BuddySettings)

    cors: CORSSettings = Field(default_factory=CORSSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str | LogLevel) -> LogLevel:
        """Ensure log level is uppercase."""
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TESTING


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings singleton.
    """
    return Settings()
