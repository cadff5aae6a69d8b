"""tsdb-shipper - Durable, connectivity-aware metric shipping to OpenTSDB-style endpoints."""

__version__ = "1.0.0"

from .config import ShipperConfig
from .identity import IdentityCache, MetricIdentity
from .service import ShipperService

__all__ = ["ShipperConfig", "IdentityCache", "MetricIdentity", "ShipperService", "__version__"]
