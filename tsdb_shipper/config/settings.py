"""
Configuration models for the shipper.

Loaded from YAML, with TSDB_* environment variables layered on top.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, get_origin

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from tsdb_shipper.schemas import ResponseHandlerMode

logger = logging.getLogger(__name__)

ENV_PREFIX = "TSDB_"


class EndpointConfig(BaseModel):
    """Remote time-series endpoint and connectivity probe settings."""

    url: str = Field(default="http://localhost:4242", description="Endpoint base URL")
    check_path: str = Field(default="/api/version", description="Health/version probe path")
    check_period: int = Field(default=5, ge=1, description="Seconds between probes")
    connect_timeout: int = Field(default=5000, ge=1, description="Connect timeout (ms)")
    request_timeout: int = Field(default=1500, ge=1, description="Request timeout (ms)")
    probe_request_timeout: Optional[int] = Field(
        default=None, ge=1, description="Probe request timeout (ms), half of request_timeout if unset"
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid endpoint URL [{v}]")
        return v

    @field_validator("check_path")
    @classmethod
    def validate_check_path(cls, v: str) -> str:
        v = v.strip()
        return v if v.startswith("/") else f"/{v}"

    @property
    def check_url(self) -> str:
        return f"{self.url}{self.check_path}"

    @property
    def effective_probe_timeout(self) -> int:
        return self.probe_request_timeout or max(1, self.request_timeout // 2)


class HttpConfig(BaseModel):
    """Data submission settings."""

    compression: bool = True
    retries: int = Field(default=2, ge=0, le=10)
    retry_delay: int = Field(default=2000, ge=0, description="Delay between retries (ms)")
    max_concurrent_flushes: int = Field(
        default_factory=lambda: min(32, max(1, os.cpu_count() or 1)), ge=1, le=32
    )
    response_handler: ResponseHandlerMode = ResponseHandlerMode.ERRORS
    pool_connections: bool = True

    @field_validator("response_handler", mode="before")
    @classmethod
    def parse_handler(cls, v):
        if isinstance(v, str):
            return ResponseHandlerMode.from_name(v)
        return v


class BatchingConfig(BaseModel):
    """Batch buffer flush triggers."""

    size: int = Field(default=100, ge=1, description="Datapoints per batch")
    time_trigger_ms: int = Field(default=5000, ge=1, description="Max batch age (ms)")
    time_in_seconds: bool = Field(default=True, description="Timestamps in seconds, else ms")
    max_pending_batches: int = Field(default=100, ge=1, description="Batches held while the service is not running")


class OfflineConfig(BaseModel):
    """Durable offline storage."""

    enabled: bool = True
    directory: str = Field(default_factory=lambda: str(Path.home() / ".tsdb-offline"))
    app_name: str = Field(default="tsdb-shipper", min_length=1)
    max_file_size: int = Field(default=2048000, ge=64, le=2**31 - 1)

    @property
    def storage_dir(self) -> Path:
        return Path(self.directory).expanduser() / self.app_name

    def candidate_dirs(self) -> List[Path]:
        """Configured directory, then the default, then the temp directory."""
        candidates = [
            self.storage_dir,
            Path.home() / ".tsdb-offline" / self.app_name,
            Path(tempfile.gettempdir()) / ".tsdb-metrics" / self.app_name,
        ]
        unique: List[Path] = []
        for path in candidates:
            if path not in unique:
                unique.append(path)
        return unique


class CacheConfig(BaseModel):
    """Identity cache bounds. Unbounded when both are unset."""

    max_size: Optional[int] = Field(default=None, ge=1)
    ttl_seconds: Optional[float] = Field(default=None, gt=0)


class IdentityConfig(BaseModel):
    """Agent identity merged into every metric."""

    app_name: Optional[str] = None
    host_name: Optional[str] = None
    global_tags: Dict[str, str] = Field(default_factory=dict)

    def effective_tags(self) -> Dict[str, str]:
        tags = dict(self.global_tags)
        if self.app_name:
            tags.setdefault("app", self.app_name)
        if self.host_name:
            tags.setdefault("host", self.host_name)
        return tags


class HeartbeatConfig(BaseModel):
    """Periodic liveness metric."""

    enabled: bool = False
    metric: str = Field(default="tsdb.agent.heartbeat", min_length=1)
    period: int = Field(default=5, ge=1, description="Seconds between heartbeats")
    value: int = 100


class LoggingConfig(BaseModel):
    """Logging setup passed to setup_from_config()."""

    log_dir: str = Field(default_factory=lambda: str(Path.home() / ".local" / "log" / "tsdb-shipper"))
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    use_json: bool = False
    bad_metrics_level: str = "INFO"

    @field_validator("console_level", "file_level", "bad_metrics_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level [{v}]")
        return v


class ShipperConfig(BaseModel):
    """Complete shipper configuration."""

    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    batching: BatchingConfig = Field(default_factory=BatchingConfig)
    offline: OfflineConfig = Field(default_factory=OfflineConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def check_probe_timeout(self) -> "ShipperConfig":
        if self.endpoint.check_period * 1000 < self.endpoint.effective_probe_timeout:
            logger.warning(
                f"Probe timeout {self.endpoint.effective_probe_timeout}ms exceeds "
                f"probe period {self.endpoint.check_period}s"
            )
        return self

    @classmethod
    def from_file(cls, path: str) -> "ShipperConfig":
        """
        Load configuration from a YAML file.

        Missing files produce the default configuration. Environment
        overrides are applied after the file is read.

        Args:
            path: Path to the YAML configuration file

        Returns:
            Loaded configuration
        """
        config_path = Path(path)
        data: dict = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        else:
            logger.warning(f"Config file {path} not found, using defaults")
        return cls.model_validate(apply_env(data))

    @classmethod
    def from_env(cls) -> "ShipperConfig":
        """Build configuration from defaults plus environment overrides."""
        return cls.model_validate(apply_env({}))

    def save(self, path: str) -> None:
        """
        Write configuration to a YAML file.

        Args:
            path: Destination path, parent directories are created
        """
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)


def apply_env(data: dict, environ: Optional[Dict[str, str]] = None) -> dict:
    """
    Overlay TSDB_<SECTION>_<FIELD> environment variables onto raw config data.

    e.g. TSDB_ENDPOINT_URL=http://tsdb:4242 sets endpoint.url.

    Args:
        data: Raw configuration mapping (not mutated)
        environ: Environment to read, defaults to os.environ

    Returns:
        New mapping with overrides applied
    """
    env = os.environ if environ is None else environ
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}
    for section, model in ShipperConfig.model_fields.items():
        section_model = model.annotation
        for field_name, field in getattr(section_model, "model_fields", {}).items():
            key = f"{ENV_PREFIX}{section.upper()}_{field_name.upper()}"
            if key not in env:
                continue
            value: object = env[key]
            if get_origin(field.annotation) is dict:
                value = _parse_pairs(env[key])
            merged.setdefault(section, {})
            merged[section][field_name] = value
    return merged


def _parse_pairs(raw: str) -> Dict[str, str]:
    """Parse `k1=v1,k2=v2` into a dict, skipping malformed pairs."""
    pairs: Dict[str, str] = {}
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            pairs[key.strip()] = value.strip()
    return pairs
