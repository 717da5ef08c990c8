# common/config/app_config.py
"""
Complete application configuration with validation.

Covers the database, token authentication and the two external providers
(video rooms and payment pre-authorizations).
"""

from typing import Optional, Any
from pydantic import BaseModel, Field, field_validator, model_validator, SecretStr
from .config_types import EnvLogLevel, DbDriver, SslMode, Environment
from .env_config import (
    require_env,
    get_env,
    get_env_int,
    get_env_float,
    get_env_float_list,
)
from .logging_config import LoggingConfig
from pathlib import Path

_DEV_JWT_SECRET = "dev-only-secret-change-me"


class DatabaseConfig(BaseModel):
    """
    Database configuration with SSL/TLS support.

    Supports both simple (dev) and secure (prod) configurations.
    """

    # Basic connection
    host: str = Field(..., min_length=1)
    port: int = Field(..., gt=0, le=65535)
    name: str = Field(..., min_length=1, description="Database name")
    # Authentication (keep separate from URL for security)
    username: Optional[str] = Field(default=None, min_length=1)
    password: Optional[SecretStr] = Field(default=None)  # Pydantic hides this in logs

    # Connection pooling
    pool_size: int = Field(..., ge=1, le=100)
    max_overflow: int = Field(..., ge=0, le=100)
    pool_timeout: int = Field(..., ge=1, le=300)
    pool_recycle: int = Field(..., ge=300)  # Min 5 minutes

    # SSL/TLS Configuration
    ssl_mode: Optional[SslMode] = Field(default=None)
    ssl_cert_path: Optional[Path] = Field(default=None)
    ssl_key_path: Optional[Path] = Field(default=None)
    ssl_ca_path: Optional[Path] = Field(default=None)

    driver: DbDriver = Field(...)

    model_config = {"frozen": True}

    @field_validator("ssl_cert_path", "ssl_key_path", "ssl_ca_path")
    @classmethod
    def validate_ssl_paths(cls, v: Optional[Path]) -> Optional[Path]:
        """Validate SSL certificate paths exist."""
        if v is not None and not v.exists():
            raise ValueError(f"SSL file not found: {v}")
        return v

    def get_connection_url(self, include_password: bool = False) -> str:
        """
        Build SQLAlchemy connection URL.

        Args:
            include_password: If True, include password in URL (use for actual connections)
                            If False, mask it (use for logging)
        """
        if self.driver == DbDriver.AIOSQLITE:
            # DB_NAME is the file path for sqlite
            return f"sqlite+aiosqlite:///{self.name}"

        if self.username:
            if include_password and self.password:
                password = self.password.get_secret_value()
                auth = f"{self.username}:{password}"
            else:
                auth = f"{self.username}:****"
            return f"postgresql+{self.driver.value}://{auth}@{self.host}:{self.port}/{self.name}"

        return f"postgresql+{self.driver.value}://{self.host}:{self.port}/{self.name}"

    def requires_ssl(self) -> bool:
        """Check if SSL is required based on configuration."""
        return self.ssl_mode in [
            SslMode.REQUIRE,
            SslMode.VERIFY_CA,
            SslMode.VERIFY_FULL,
        ]


class AuthConfig(BaseModel):
    """Signed identity token settings."""

    jwt_secret: SecretStr
    jwt_algorithm: str = Field(default="HS256", pattern=r"^(HS256|HS384|HS512)$")
    cookie_name: str = Field(default="auth_token", min_length=1)
    token_ttl_days: int = Field(default=7, ge=1, le=90)

    model_config = {"frozen": True}


class VideoProviderConfig(BaseModel):
    """
    Daily.co style video provider.

    The API key may be absent at load time so the rest of the service can
    boot; the provisioner raises MissingCredentialError on first use.
    """

    api_key: Optional[SecretStr] = None
    api_url: str = Field(default="https://api.daily.co/v1")
    domain: str = Field(default="cnvidas.daily.co", min_length=1)
    timeout_seconds: float = Field(default=12.0, gt=0, le=60)
    propagation_delays: tuple[float, ...] = Field(default=(5.0, 10.0))
    retry_delay_seconds: float = Field(default=10.0, ge=0, le=60)
    room_ttl_minutes: int = Field(default=120, ge=1)
    token_ttl_minutes: int = Field(default=120, ge=1)
    emergency_token_ttl_minutes: int = Field(default=240, ge=1)

    model_config = {"frozen": True}

    @field_validator("propagation_delays")
    @classmethod
    def validate_delays(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if any(d < 0 for d in v):
            raise ValueError("propagation delays must be non-negative")
        if sum(v) > 30:
            raise ValueError("total propagation wait must stay under 30 seconds")
        return v

    @property
    def api_key_value(self) -> Optional[str]:
        return self.api_key.get_secret_value() if self.api_key else None


class PaymentConfig(BaseModel):
    """Stripe payment-intent settings."""

    secret_key: Optional[SecretStr] = None
    api_url: str = Field(default="https://api.stripe.com/v1")
    timeout_seconds: float = Field(default=12.0, gt=0, le=60)
    currency: str = Field(default="brl", min_length=3, max_length=3)

    model_config = {"frozen": True}

    @property
    def secret_key_value(self) -> Optional[str]:
        return self.secret_key.get_secret_value() if self.secret_key else None


class AppConfig(BaseModel):
    """
    Complete application configuration.

    All configuration is loaded from environment variables and validated
    at startup. Invalid configuration will fail fast with clear error messages.
    """

    app_title: str = Field(..., min_length=1)
    app_version: str = Field(..., pattern=r"^\d+\.\d+\.\d+$")  # Semantic versioning
    environment: Environment

    logging: LoggingConfig
    auth: AuthConfig
    video: VideoProviderConfig = Field(default_factory=VideoProviderConfig)
    payment: PaymentConfig = Field(default_factory=PaymentConfig)
    database: Optional[DatabaseConfig] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_production_settings(self) -> "AppConfig":
        """
        Validate production-specific requirements.
        """
        if self.environment.is_production:
            if self.database is None:
                raise ValueError("Database config required in production")
            if self.logging.log_level == EnvLogLevel.DEBUG:
                raise ValueError("DEBUG log level not allowed in production")
            secret = self.auth.jwt_secret.get_secret_value()
            if secret == _DEV_JWT_SECRET or len(secret) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters in production")
        return self


def load_database_config(environment: Environment) -> Optional[DatabaseConfig]:
    """
    Load database configuration from environment.

    Environment variables:
    Required:
    - DB_HOST, DB_PORT, DB_NAME
    - DB_POOL_SIZE, DB_MAX_OVERFLOW, DB_POOL_TIMEOUT, DB_POOL_RECYCLE
    - DB_DRIVER: Database driver (asyncpg, psycopg, aiosqlite)

    Optional (dev) / Required (prod):
    - DB_USER, DB_PASSWORD, DB_SSL_MODE

    Optional:
    - DB_SSL_CERT, DB_SSL_KEY, DB_SSL_CA
    """

    # Check if database is configured at all
    host = get_env("DB_HOST")
    if not host:
        return None

    port_str = require_env("DB_PORT")
    name = require_env("DB_NAME")
    pool_size_str = require_env("DB_POOL_SIZE")
    max_overflow_str = require_env("DB_MAX_OVERFLOW")
    pool_timeout_str = require_env("DB_POOL_TIMEOUT")
    pool_recycle_str = require_env("DB_POOL_RECYCLE")
    driver_str = require_env("DB_DRIVER")

    try:
        driver = DbDriver(driver_str)
    except ValueError:
        valid_drivers = [d.value for d in DbDriver]
        raise ValueError(
            f"Invalid DB_DRIVER: {driver_str}. Must be one of: {valid_drivers}"
        )

    if environment.is_production:
        # Production: credentials are REQUIRED
        username = require_env("DB_USER")
        password_str = require_env("DB_PASSWORD")
        ssl_mode_str = require_env("DB_SSL_MODE")
    else:
        username = get_env("DB_USER")
        password_str = get_env("DB_PASSWORD")
        ssl_mode_str = get_env("DB_SSL_MODE")

    ssl_mode: Optional[SslMode] = None
    if ssl_mode_str:
        try:
            ssl_mode = SslMode(ssl_mode_str)
        except ValueError:
            valid_modes = [m.value for m in SslMode]
            raise ValueError(
                f"Invalid DB_SSL_MODE: {ssl_mode_str}. Must be one of: {valid_modes}"
            )

    ssl_cert = get_env("DB_SSL_CERT")
    ssl_key = get_env("DB_SSL_KEY")
    ssl_ca = get_env("DB_SSL_CA")

    return DatabaseConfig(
        host=host,
        port=int(port_str),
        name=name,
        username=username,
        password=SecretStr(password_str) if password_str else None,
        pool_size=int(pool_size_str),
        max_overflow=int(max_overflow_str),
        pool_timeout=int(pool_timeout_str),
        pool_recycle=int(pool_recycle_str),
        ssl_mode=ssl_mode,
        ssl_cert_path=Path(ssl_cert) if ssl_cert else None,
        ssl_key_path=Path(ssl_key) if ssl_key else None,
        ssl_ca_path=Path(ssl_ca) if ssl_ca else None,
        driver=driver,
    )


def load_auth_config(environment: Environment) -> AuthConfig:
    """JWT_SECRET is required outside development."""
    if environment.is_development:
        secret = get_env("JWT_SECRET") or _DEV_JWT_SECRET
    else:
        secret = require_env("JWT_SECRET")

    return AuthConfig(
        jwt_secret=SecretStr(secret),
        jwt_algorithm=get_env("JWT_ALGORITHM") or "HS256",
        cookie_name=get_env("AUTH_COOKIE_NAME") or "auth_token",
        token_ttl_days=get_env_int("JWT_TTL_DAYS", 7),
    )


def load_video_config() -> VideoProviderConfig:
    api_key = get_env("DAILY_API_KEY")
    return VideoProviderConfig(
        api_key=SecretStr(api_key) if api_key else None,
        api_url=get_env("DAILY_API_URL") or "https://api.daily.co/v1",
        domain=get_env("DAILY_DOMAIN") or "cnvidas.daily.co",
        timeout_seconds=get_env_float("DAILY_TIMEOUT_SECONDS", 12.0),
        propagation_delays=get_env_float_list("DAILY_PROPAGATION_DELAYS", (5.0, 10.0)),
        retry_delay_seconds=get_env_float("DAILY_RETRY_DELAY_SECONDS", 10.0),
        room_ttl_minutes=get_env_int("DAILY_ROOM_TTL_MINUTES", 120),
        token_ttl_minutes=get_env_int("DAILY_TOKEN_TTL_MINUTES", 120),
        emergency_token_ttl_minutes=get_env_int("DAILY_EMERGENCY_TOKEN_TTL_MINUTES", 240),
    )


def load_payment_config() -> PaymentConfig:
    secret_key = get_env("STRIPE_SECRET_KEY")
    return PaymentConfig(
        secret_key=SecretStr(secret_key) if secret_key else None,
        api_url=get_env("STRIPE_API_URL") or "https://api.stripe.com/v1",
        timeout_seconds=get_env_float("STRIPE_TIMEOUT_SECONDS", 12.0),
    )


def load_app_config() -> AppConfig:
    """
    Load complete application configuration.

    Raises:
        ValidationError: If configuration is invalid
        ConfigurationError: If required env vars are missing
    """
    from .logging_config import load_logging_config

    env_str = require_env("ENVIRONMENT")

    try:
        environment = Environment(env_str)
    except ValueError:
        valid_envs = [e.value for e in Environment]
        raise ValueError(
            f"Invalid ENVIRONMENT: {env_str}. Must be one of: {valid_envs}"
        )

    return AppConfig(
        app_title=require_env("APP_TITLE"),
        app_version=require_env("APP_VERSION"),
        environment=environment,
        logging=load_logging_config(),
        auth=load_auth_config(environment),
        video=load_video_config(),
        payment=load_payment_config(),
        database=load_database_config(environment),
    )


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "AuthConfig",
    "VideoProviderConfig",
    "PaymentConfig",
    "load_app_config",
]
