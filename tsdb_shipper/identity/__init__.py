"""Metric identities and the interning cache."""

from tsdb_shipper.identity.metric import MetricIdentity, content_hash, normalize_tags
from tsdb_shipper.identity.cache import IdentityCache

__all__ = ["MetricIdentity", "IdentityCache", "content_hash", "normalize_tags"]
