"""
Metric identity: an immutable (name, tags) pair with a stable 64-bit content hash.

Each identity pre-renders its name and tags as UTF-8 JSON fragments once, so
rendering a datapoint is a byte copy plus the timestamp/value text.
"""

import json
import math
from numbers import Number
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

import mmh3

from tsdb_shipper.exceptions import InvalidMetricError

# Separates fields in the hash input so ("ab","c") and ("a","bc") differ
_HASH_SEP = b"\x00"


def clean(value) -> str:
    """Trim a name part or tag component, returning "" for None."""
    if value is None:
        return ""
    return str(value).strip()


def normalize_tags(tags: Optional[Mapping]) -> Dict[str, str]:
    """
    Clean a tag mapping.

    Keys and values are trimmed, pairs with an empty key or value are dropped
    and a repeated key keeps the last value.
    """
    result: Dict[str, str] = {}
    if not tags:
        return result
    for key, value in tags.items():
        k = clean(key)
        v = clean(value)
        if not k or not v:
            continue
        result[k] = v
    return result


def compose_name(name, prefix=None, extension=None) -> str:
    """Build `prefix.name.extension`, rejecting an empty base name."""
    base = "".join(clean(name).split())
    if not base:
        raise InvalidMetricError("The metric name was empty")
    parts = ["".join(clean(p).split()) for p in (prefix, base, extension)]
    return ".".join(p for p in parts if p)


def content_hash(name: str, tags: Mapping[str, str]) -> int:
    """
    Compute the unsigned 64-bit content hash of a cleaned identity.

    Murmur3 x64 128-bit over the name and the sorted tag pairs, truncated to
    the low 8 bytes (little-endian).
    """
    parts = [name.encode("utf-8")]
    for key in sorted(tags):
        parts.append(key.encode("utf-8"))
        parts.append(tags[key].encode("utf-8"))
    digest = mmh3.hash_bytes(_HASH_SEP.join(parts), 0, True)
    return int.from_bytes(digest[:8], "little")


def render_value(value) -> bytes:
    """Render a datapoint value as JSON number text."""
    if isinstance(value, bool):
        return b"1" if value else b"0"
    if isinstance(value, int):
        return str(value).encode("ascii")
    if isinstance(value, Number):
        f = float(value)  # type: ignore[arg-type]
        if not math.isfinite(f):
            raise InvalidMetricError(f"Non-finite metric value [{value}]")
        if f.is_integer() and abs(f) < 2**53:
            return str(int(f)).encode("ascii")
        return repr(f).encode("ascii")
    raise InvalidMetricError(f"Metric value [{value!r}] is not a number")


def _json_str(s: str) -> bytes:
    return json.dumps(s, ensure_ascii=False).encode("utf-8")


class MetricIdentity:
    """
    An interned metric name plus tag set.

    Instances are created by IdentityCache and never mutated. Equality is
    structural (name and tag set, ignoring tag order).
    """

    __slots__ = ("_name", "_tags", "_hash", "_metric_fragment", "_tags_fragment", "_released")

    def __init__(self, name, tags: Optional[Mapping] = None, prefix=None, extension=None):
        self._name = compose_name(name, prefix, extension)
        self._tags = MappingProxyType(normalize_tags(tags))
        self._hash = content_hash(self._name, self._tags)
        self._metric_fragment: Optional[bytes] = None
        self._tags_fragment: Optional[bytes] = None
        self._released = False
        self._prerender()

    def _prerender(self) -> Tuple[bytes, bytes]:
        metric_fragment = b'"metric":' + _json_str(self._name)
        tag_fragments = [_json_str(k) + b":" + _json_str(v) for k, v in self._tags.items()]
        tags_fragment = b'"tags":{' + b",".join(tag_fragments) + b"}"
        self._metric_fragment = metric_fragment
        self._tags_fragment = tags_fragment
        return metric_fragment, tags_fragment

    @property
    def name(self) -> str:
        return self._name

    @property
    def tags(self) -> Mapping[str, str]:
        return self._tags

    @property
    def content_hash(self) -> int:
        return self._hash

    @property
    def released(self) -> bool:
        return self._released

    def render(self, timestamp: int, value) -> bytes:
        """
        Render one datapoint for this identity as a JSON object.

        Args:
            timestamp: Epoch timestamp (seconds or millis)
            value: Numeric sample value

        Returns:
            UTF-8 bytes of `{"metric":..,"timestamp":..,"value":..,"tags":{..}}`
        """
        metric_fragment = self._metric_fragment
        tags_fragment = self._tags_fragment
        if metric_fragment is None or tags_fragment is None:
            metric_fragment, tags_fragment = self._prerender()
        try:
            ts = int(timestamp)
        except (TypeError, ValueError):
            raise InvalidMetricError(f"Invalid timestamp [{timestamp!r}]") from None
        return b"".join(
            (
                b"{",
                metric_fragment,
                b',"timestamp":',
                str(ts).encode("ascii"),
                b',"value":',
                render_value(value),
                b",",
                tags_fragment,
                b"}",
            )
        )

    def release(self) -> None:
        """Drop the pre-rendered fragments (called on cache eviction)."""
        self._metric_fragment = None
        self._tags_fragment = None
        self._released = True

    def same_identity(self, name: str, tags: Mapping[str, str]) -> bool:
        return self._name == name and dict(self._tags) == dict(tags)

    def __eq__(self, other) -> bool:
        if self is other:
            return True
        if not isinstance(other, MetricIdentity):
            return NotImplemented
        return self.same_identity(other._name, other._tags)

    def __hash__(self) -> int:
        return self._hash

    def __str__(self) -> str:
        if not self._tags:
            return self._name
        return self._name + ":" + ",".join(f"{k}={v}" for k, v in self._tags.items())

    def __repr__(self) -> str:
        return f"MetricIdentity({self}, hash={self._hash:#018x})"
