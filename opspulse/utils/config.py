"""Configuration loader and settings helpers for OpsPulse."""

import base64
import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from boto3.session import Session
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic import (
    ValidationError as PydanticValidationError,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError
from .retry import RetryConfig

ENV_PREFIX = "OPSPULSE_"

logger = logging.getLogger(__name__)


def load_yaml_config(config_path: str | Path) -> dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        ConfigurationError: If file not found or invalid YAML
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
            return config if config else {}
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")


class DatabasePoolSettings(BaseModel):
    """Connection pooling configuration for the SQLAlchemy engine."""

    model_config = ConfigDict(extra="forbid")

    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    recycle_seconds: int = Field(default=1800, ge=0)
    pre_ping: bool = True


class SecretsManagerSettings(BaseModel):
    """AWS Secrets Manager integration settings."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    secret_name: str | None = None
    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None
    overwrite_env: bool = False
    required_env: list[str] = Field(default_factory=list)


class SyncSettings(BaseModel):
    """Scheduling, paging, and timeout knobs for connector synchronization."""

    model_config = ConfigDict(extra="forbid")

    scheduler_enabled: bool = True
    tick_seconds: float = Field(default=30.0, gt=0)
    default_interval_minutes: int = Field(default=30, ge=1)
    page_size: int = Field(default=100, ge=1, le=1000)
    max_records_per_resource: int = Field(default=1000, ge=1)
    request_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    run_timeout_seconds: float = Field(default=1800.0, gt=0)
    token_refresh_margin_seconds: int = Field(default=300, ge=0)
    lock_backend: Literal["memory", "redis"] = "memory"
    lock_ttl_seconds: int = Field(default=3600, ge=1)
    http_retry: RetryConfig = RetryConfig()


class PulseCacheSettings(BaseModel):
    """Pulse cache TTL, backend selection, and warm-up policy."""

    model_config = ConfigDict(extra="forbid")

    backend: Literal["memory", "redis"] = "memory"
    ttl_seconds: int = Field(default=300, ge=1)
    max_entries: int = Field(default=1024, ge=1)
    warmup_enabled: bool = True
    warmup_attempts: int = Field(default=3, ge=1)
    warmup_initial_delay_seconds: float = Field(default=5.0, ge=0)
    warmup_time_ranges: list[str] = Field(default_factory=lambda: ["1m", "3m", "6m"])
    refresh_interval_seconds: float = Field(default=4 * 60 * 60, gt=0)


class SeverityMultipliers(BaseModel):
    """Per-severity scaling factors used by the business impact model."""

    model_config = ConfigDict(extra="forbid")

    low: float = 1.0
    medium: float = 2.0
    high: float = 4.0
    critical: float = 8.0

    def for_severity(self, severity: str) -> float:
        return float(getattr(self, severity, self.low))


class ImpactCostModel(BaseModel):
    """Constants behind the heuristic revenue/cost model for business impact."""

    model_config = ConfigDict(extra="forbid")

    engineer_hourly_cost: float = Field(default=100.0, ge=0)
    direct_multipliers: SeverityMultipliers = SeverityMultipliers()
    support_cost_per_customer: float = Field(default=50.0, ge=0)
    indirect_multipliers: SeverityMultipliers = SeverityMultipliers(
        low=0.5, medium=1.0, high=1.5, critical=2.0
    )
    opportunity_hourly_rate: float = Field(default=150.0, ge=0)
    critical_blocked_team_size: int = Field(default=5, ge=0)
    critical_opportunity_factor: float = Field(default=0.5, ge=0)
    high_blocked_team_size: int = Field(default=2, ge=0)
    high_opportunity_factor: float = Field(default=0.3, ge=0)
    customer_lifetime_value: float = Field(default=1000.0, ge=0)
    churn_risk: SeverityMultipliers = SeverityMultipliers(
        low=0.01, medium=0.02, high=0.05, critical=0.10
    )
    reputation_customer_threshold: int = Field(default=100, ge=0)
    recurring_customer_value: float = Field(default=100.0, ge=0)
    recurring_loss_factor: float = Field(default=0.1, ge=0)
    missing_duration_penalty: float = Field(default=0.2, gt=0, le=1)
    missing_customers_penalty: float = Field(default=0.2, gt=0, le=1)
    missing_resolution_penalty: float = Field(default=0.1, gt=0, le=1)
    missing_revenue_mapping_penalty: float = Field(default=0.2, gt=0, le=1)
    severity_thresholds: dict[str, float] = Field(
        default_factory=lambda: {"critical": 100_000.0, "high": 50_000.0, "medium": 10_000.0}
    )


class OAuthClientSettings(BaseModel):
    """OAuth application credentials for a single vendor."""

    model_config = ConfigDict(extra="forbid")

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    scopes: list[str] | None = None


class VendorOAuthSettings(BaseModel):
    """OAuth application credentials keyed by vendor."""

    model_config = ConfigDict(extra="forbid")

    servicenow: OAuthClientSettings = OAuthClientSettings()
    jira: OAuthClientSettings = OAuthClientSettings()
    slack: OAuthClientSettings = OAuthClientSettings()
    teams: OAuthClientSettings = OAuthClientSettings()

    def for_vendor(self, vendor: str) -> OAuthClientSettings:
        try:
            return getattr(self, vendor)
        except AttributeError as exc:
            raise ConfigurationError(f"No OAuth settings section for vendor '{vendor}'") from exc


class ServiceConfiguration(BaseModel):
    """Validated runtime configuration merged from base and environment overrides."""

    version: int = Field(default=1, ge=1)
    environment: str = "development"
    required_env: list[str] = Field(default_factory=list)
    secrets_manager: SecretsManagerSettings = Field(default_factory=SecretsManagerSettings)

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.lower()


class GlobalSettings(BaseSettings):
    """Global application settings sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    config_profile: str | None = None
    log_level: str = "INFO"
    redis_url: str | None = None
    database_url: str | None = None
    database: DatabasePoolSettings = DatabasePoolSettings()
    config_dir: Path = Path("config")
    aws_region: str | None = None
    secrets_manager: SecretsManagerSettings = SecretsManagerSettings()
    api_keys: list[str] = Field(default_factory=list)
    oauth_state_secret: str = "change-me"
    oauth: VendorOAuthSettings = VendorOAuthSettings()
    sync: SyncSettings = SyncSettings()
    pulse_cache: PulseCacheSettings = PulseCacheSettings()
    impact: ImpactCostModel = ImpactCostModel()

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        """Ensure log level values are uppercase for logging config."""

        return value.upper()

    @field_validator("api_keys", mode="before")
    @classmethod
    def _parse_api_keys(cls, value: Any) -> list[str]:
        """Support comma-separated strings or iterables for API key configuration."""

        if value is None:
            return []
        if isinstance(value, str):
            keys = [item.strip() for item in value.split(",")]
            return [key for key in keys if key]
        if isinstance(value, list | tuple | set):
            return [str(item) for item in value if str(item).strip()]
        raise ValueError("api_keys must be a comma-separated string or iterable of strings")

    @field_validator("config_dir", mode="before")
    @classmethod
    def _expand_paths(cls, value: Any) -> Any:
        """Allow string paths and expand user markers."""

        if isinstance(value, Path):
            return value
        if isinstance(value, str):
            return Path(value).expanduser()
        return value

    @field_validator("config_profile", mode="before")
    @classmethod
    def _normalize_config_profile(cls, value: Any) -> Any:
        if value is None:
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValueError("config_profile must be a non-empty string if provided")
        return value.strip().lower()


def _deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries without mutating the inputs."""

    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


@lru_cache(maxsize=8)
def _load_service_configuration_cached(config_dir: str, profile: str) -> ServiceConfiguration:
    """Load and cache the service configuration for a given profile."""

    directory = Path(config_dir)
    base_path = directory / "settings.base.yaml"
    if not base_path.exists():
        raise ConfigurationError(
            f"Missing base configuration template at '{base_path}'. "
            "Create this file to define shared defaults."
        )

    base_config = load_yaml_config(base_path)

    profile_path = directory / f"settings.{profile}.yaml"
    profile_config: dict[str, Any] = {}
    if profile_path.exists():
        profile_config = load_yaml_config(profile_path)
    else:
        logger.debug("No configuration override found for profile '%s'", profile)

    merged = _deep_merge_dicts(base_config, profile_config)
    merged.setdefault("environment", profile)

    try:
        return ServiceConfiguration.model_validate(merged)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"Invalid configuration template for profile '{profile}': {exc}"
        ) from exc


def get_service_configuration(
    settings: GlobalSettings | None = None,
    *,
    reload: bool = False,
) -> ServiceConfiguration:
    """Return the merged service configuration for the active profile."""

    if settings is None:
        settings = get_settings()

    profile = settings.config_profile or settings.environment

    if reload:
        _load_service_configuration_cached.cache_clear()

    return _load_service_configuration_cached(str(settings.config_dir), profile.lower())


def _fetch_secrets_from_manager(
    *,
    secret_name: str,
    region: str | None,
    profile: str | None,
    endpoint_url: str | None,
) -> dict[str, str]:
    """Retrieve a JSON mapping of environment variables from AWS Secrets Manager."""

    session_kwargs: dict[str, Any] = {}
    if region:
        session_kwargs["region_name"] = region
    if profile:
        session_kwargs["profile_name"] = profile

    client = Session(**session_kwargs).client("secretsmanager", endpoint_url=endpoint_url)

    try:
        response = client.get_secret_value(SecretId=secret_name)
    except (BotoCoreError, ClientError) as exc:
        raise ConfigurationError(
            f"Unable to retrieve secret '{secret_name}' from AWS Secrets Manager: {exc}"
        ) from exc

    secret_string = response.get("SecretString")
    if secret_string is None:
        secret_binary = response.get("SecretBinary")
        if secret_binary is None:
            return {}
        secret_string = base64.b64decode(secret_binary).decode("utf-8")

    try:
        payload = json.loads(secret_string)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            "Secrets Manager payload must be valid JSON mapping of environment variables"
        ) from exc

    if not isinstance(payload, dict):
        raise ConfigurationError("Secrets Manager payload must be a JSON object of key/value pairs")

    return {
        str(key): value if isinstance(value, str) else json.dumps(value)
        for key, value in payload.items()
        if value is not None
    }


def _inject_secrets_into_environment(secrets: dict[str, str], *, overwrite: bool) -> None:
    """Inject OPSPULSE_-prefixed secrets into os.environ respecting the overwrite flag."""

    for key, value in secrets.items():
        env_key = key.upper()
        if not env_key.startswith(ENV_PREFIX):
            logger.debug("Ignoring secret %s without %s prefix", env_key, ENV_PREFIX)
            continue
        if not overwrite and env_key in os.environ:
            continue
        os.environ[env_key] = value


def load_runtime_secrets(
    settings: GlobalSettings,
    service_config: ServiceConfiguration,
) -> dict[str, str]:
    """Load secrets (for example vendor OAuth client secrets) and inject them into the env."""

    secrets_cfg = settings.secrets_manager
    config_cfg = service_config.secrets_manager

    if not (secrets_cfg.enabled or config_cfg.enabled):
        return {}

    secret_name = secrets_cfg.secret_name or config_cfg.secret_name
    if not secret_name:
        raise ConfigurationError("Secrets Manager enabled but no secret_name configured")

    secrets = _fetch_secrets_from_manager(
        secret_name=secret_name,
        region=secrets_cfg.region or config_cfg.region or settings.aws_region,
        profile=secrets_cfg.profile or config_cfg.profile,
        endpoint_url=secrets_cfg.endpoint_url or config_cfg.endpoint_url,
    )

    _inject_secrets_into_environment(
        secrets, overwrite=secrets_cfg.overwrite_env or config_cfg.overwrite_env
    )
    return secrets


def ensure_runtime_configuration(settings: GlobalSettings | None = None) -> GlobalSettings:
    """Validate configuration templates, load secrets, and ensure required env vars."""

    settings = settings or get_settings()

    service_config = get_service_configuration(settings=settings, reload=True)

    secrets = load_runtime_secrets(settings, service_config)
    if secrets:
        logger.info("Loaded %d secrets from AWS Secrets Manager", len(secrets))
        settings = get_settings(reload=True)

    required_env: set[str] = set(service_config.required_env)
    required_env.update(service_config.secrets_manager.required_env)
    required_env.update({f"{ENV_PREFIX}DATABASE_URL", f"{ENV_PREFIX}API_KEYS"})

    missing = sorted(var for var in required_env if not os.environ.get(var))

    if missing:
        joined = ", ".join(missing)
        raise ConfigurationError(
            "Missing required environment variables: "
            f"{joined}. Configure them via configuration templates, Secrets Manager, or .env files."
        )

    return settings


@lru_cache(maxsize=1)
def _get_settings_cached() -> GlobalSettings:
    return GlobalSettings()


def get_settings(*, reload: bool = False) -> GlobalSettings:
    """Return cached settings, optionally forcing a reload."""

    if reload:
        _get_settings_cached.cache_clear()
    return _get_settings_cached()


get_settings.cache_clear = _get_settings_cached.cache_clear  # type: ignore[attr-defined]
