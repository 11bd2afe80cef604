"""Configuration loading and Pydantic models for r2pilot."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

from r2pilot.errors import ConfigError
from r2pilot.models import MAX_SIGNED_URL_EXPIRES, MIB

DEFAULT_CONFIG_PATH = Path("~/.config/r2pilot/config.yaml")

# Environment variables that override credential values from the file.
ENV_OVERRIDES = {
    "R2_ACCESS_KEY_ID": "access_key_id",
    "R2_SECRET_ACCESS_KEY": "secret_access_key",
    "R2_API_TOKEN": "api_token",
}


class CloudflareConfig(BaseModel):
    """Account, endpoint, and credential configuration."""

    model_config = ConfigDict(frozen=True)

    account_id: str = ""
    endpoint: str = ""
    api_token: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @property
    def endpoint_url(self) -> str:
        """The S3 endpoint, derived from the account ID when not set."""
        if self.endpoint:
            return self.endpoint.rstrip("/")
        if self.account_id:
            return f"https://{self.account_id}.r2.cloudflarestorage.com"
        return ""


class R2Config(BaseModel):
    """Bucket defaults."""

    model_config = ConfigDict(frozen=True)

    default_bucket: str = ""
    region: str = "auto"
    default_expiration: int = 7200


class TransferConfig(BaseModel):
    """Multipart, retry, and signed-URL policy."""

    model_config = ConfigDict(frozen=True)

    multipart_threshold_mb: int = Field(default=100, ge=1)
    part_size_mb: int = Field(default=100, ge=5)
    max_concurrency: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.2, ge=0)
    part_retries: int = Field(default=2, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    expiry_policy: Literal["reject", "clamp"] = "reject"

    @property
    def multipart_threshold(self) -> int:
        return self.multipart_threshold_mb * MIB

    @property
    def part_size(self) -> int:
        return self.part_size_mb * MIB


class LoggingConfig(BaseModel):
    """Log level and output format."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    format: Literal["text", "json"] = "text"


class ObservabilityConfig(BaseModel):
    """Prometheus metrics toggle."""

    model_config = ConfigDict(frozen=True)

    metrics: bool = False


class R2PilotConfig(BaseModel):
    """Top-level r2pilot configuration snapshot."""

    model_config = ConfigDict(frozen=True)

    cloudflare: CloudflareConfig = Field(default_factory=CloudflareConfig)
    r2: R2Config = Field(default_factory=R2Config)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_cloudflare(data: dict[str, Any] | None, env: dict[str, str]) -> dict[str, Any]:
    """Parse the cloudflare section, applying credential env overrides."""
    result: dict[str, Any] = {}
    if data is not None:
        result = {
            "account_id": str(data.get("account_id", "") or ""),
            "endpoint": str(data.get("endpoint", "") or ""),
            "api_token": data.get("api_token"),
            "access_key_id": data.get("access_key_id"),
            "secret_access_key": data.get("secret_access_key"),
        }
    for var, field_name in ENV_OVERRIDES.items():
        if env.get(var):
            result[field_name] = env[var]
    return result


def _parse_r2(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the r2 section from YAML data."""
    if data is None:
        return {}
    return {
        "default_bucket": data.get("default_bucket", ""),
        "region": data.get("region", "auto"),
        "default_expiration": data.get("default_expiration", 7200),
    }


def _parse_transfer(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the transfer section from YAML data.

    Accepts the older ``advanced`` key names too:
    multipart_chunk_size_mb -> part_size_mb, max_concurrent_uploads ->
    max_concurrency, max_retries -> max_attempts.
    """
    if data is None:
        return {}
    result = dict(data)
    if "multipart_chunk_size_mb" in result:
        result.setdefault("part_size_mb", result.pop("multipart_chunk_size_mb"))
    if "max_concurrent_uploads" in result:
        result.setdefault("max_concurrency", result.pop("max_concurrent_uploads"))
    if "max_retries" in result:
        result.setdefault("max_attempts", result.pop("max_retries"))
    return result


def _parse_logging(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the logging section from YAML data."""
    if data is None:
        return {}
    return {
        "level": str(data.get("level", "INFO")).upper(),
        "format": data.get("format", "text"),
    }


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {"metrics": data.get("metrics", False)}


def load_config(path: Path, env: dict[str, str] | None = None) -> R2PilotConfig:
    """Load an R2PilotConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.
        env: Environment mapping for credential overrides (default os.environ).

    Returns:
        A fully populated R2PilotConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(Path(path).expanduser(), "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    env = dict(os.environ) if env is None else env
    transfer_raw = raw.get("transfer")
    if transfer_raw is None:
        transfer_raw = raw.get("advanced")

    return R2PilotConfig(
        cloudflare=CloudflareConfig(**_parse_cloudflare(raw.get("cloudflare"), env)),
        r2=R2Config(**_parse_r2(raw.get("r2"))),
        transfer=TransferConfig(**_parse_transfer(transfer_raw)),
        logging=LoggingConfig(**_parse_logging(raw.get("logging"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )


def validate_config(config: R2PilotConfig) -> None:
    """Check the configuration is usable for transfers.

    Raises:
        ConfigError: On the first problem found.
    """
    cf = config.cloudflare
    if cf.account_id and len(cf.account_id) != 32:
        raise ConfigError(
            f"Invalid Account ID format (expected 32 characters, got {len(cf.account_id)})"
        )

    has_token = bool(cf.api_token)
    has_keys = bool(cf.access_key_id and cf.secret_access_key)
    if not has_token and not has_keys:
        raise ConfigError(
            "No authentication method configured. Either api_token or "
            "access_key_id + secret_access_key must be set"
        )

    if not cf.endpoint_url:
        raise ConfigError("No endpoint configured and no account_id to derive one from")

    if not config.r2.default_bucket:
        raise ConfigError("Bucket name cannot be empty")

    if config.r2.default_expiration > MAX_SIGNED_URL_EXPIRES:
        raise ConfigError(
            f"Default expiration cannot exceed 7 days ({MAX_SIGNED_URL_EXPIRES} seconds)"
        )
