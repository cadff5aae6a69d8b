"""Configuration package."""

from tsdb_shipper.config.settings import (
    ShipperConfig,
    EndpointConfig,
    HttpConfig,
    BatchingConfig,
    OfflineConfig,
    CacheConfig,
    IdentityConfig,
    HeartbeatConfig,
    LoggingConfig,
    apply_env,
)

__all__ = [
    "ShipperConfig",
    "EndpointConfig",
    "HttpConfig",
    "BatchingConfig",
    "OfflineConfig",
    "CacheConfig",
    "IdentityConfig",
    "HeartbeatConfig",
    "LoggingConfig",
    "apply_env",
]
