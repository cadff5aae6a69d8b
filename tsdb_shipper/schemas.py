"""
Type-safe schemas for the shipper.

Covers the endpoint's put responses, the enums that drive response handling
and drain outcomes, and the statistics models every component reports.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# ENUMS - No magic strings
# ============================================================================


class ResponseHandlerMode(str, Enum):
    """How the endpoint's put response is interpreted."""

    NOTHING = "NOTHING"
    COUNTS = "COUNTS"
    ERRORS = "ERRORS"

    @property
    def put_signature(self) -> str:
        """Query string appended to the put path for this mode."""
        return _PUT_SIGNATURES[self]

    @classmethod
    def from_name(cls, name: str) -> "ResponseHandlerMode":
        """Resolve a mode by case-insensitive name."""
        if not name or not name.strip():
            raise ValueError("The response handler name was empty")
        try:
            return cls(name.strip().upper())
        except ValueError:
            valid = ",".join(m.value for m in cls)
            raise ValueError(
                f"Invalid response handler name [{name}]. Valid values are: {valid}"
            ) from None


_PUT_SIGNATURES = {
    ResponseHandlerMode.NOTHING: "",
    ResponseHandlerMode.COUNTS: "?summary",
    ResponseHandlerMode.ERRORS: "?details",
}


class ConnectivityEvent(str, Enum):
    """Events fired by the connectivity state machine."""

    CONNECTED = "connected"
    RECONNECTED = "reconnected"
    DISCONNECTED = "disconnected"


class FlushOutcome(int, Enum):
    """Result of replaying one offline entry to the endpoint."""

    EMPTY = 0
    FAILED = 1
    BAD_CONTENT = 2
    SUCCESS = 3


# ============================================================================
# ENDPOINT RESPONSES
# ============================================================================


class PutCounts(BaseModel):
    """Failed/success datapoint counts extracted from a put response."""

    model_config = ConfigDict(frozen=True)

    failed: int = Field(0, ge=0)
    success: int = Field(0, ge=0)

    @property
    def total(self) -> int:
        return self.failed + self.success


class PutSummary(BaseModel):
    """Body returned by `/api/put?summary`."""

    failed: int = Field(ge=0)
    success: int = Field(ge=0)


class PutError(BaseModel):
    """One rejected datapoint in a detailed put response."""

    model_config = ConfigDict(extra="allow")

    datapoint: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class PutDetails(BaseModel):
    """Body returned by `/api/put?details`."""

    errors: List[PutError] = Field(default_factory=list)
    failed: int = Field(ge=0)
    success: int = Field(ge=0)


# ============================================================================
# STATISTICS
# ============================================================================


class CacheStats(BaseModel):
    """Identity cache statistics."""

    size: int = Field(ge=0)
    hits: int = Field(ge=0)
    misses: int = Field(ge=0)
    evictions: int = Field(ge=0)
    max_size: Optional[int] = None
    ttl_seconds: Optional[float] = None

    @property
    def hit_rate(self) -> float:
        requests = self.hits + self.misses
        return self.hits / requests if requests else 0.0


class OfflineFileSummary(BaseModel):
    """Description of one offline FIFO file."""

    name: str
    size_bytes: int = Field(ge=0)
    entries: int
    compressed: bool
    current: bool = False


class PersistenceStats(BaseModel):
    """Persistence manager statistics."""

    enabled: bool
    directory: Optional[str] = None
    current_file: Optional[str] = None
    current_file_size: int = -1
    current_file_entries: int = -1
    current_file_compression_rate: float = -1.0
    offline_files: int = 0
    offline_entries: int = 0
    flush_success: int = 0
    flush_failed: int = 0
    flush_bad_content: int = 0


class FlushReport(BaseModel):
    """Aggregate result of one drain of the offline backlog."""

    entries: int = Field(0, ge=0)
    submitted: int = Field(0, ge=0)
    success: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    bad_content: int = Field(0, ge=0)
    timed_out: int = Field(0, ge=0)
    files_deleted: int = Field(0, ge=0)
    interrupted: bool = False
    elapsed_ms: int = Field(0, ge=0)


class ShipperStats(BaseModel):
    """HTTP shipper statistics."""

    url: str
    hard_down: bool
    connected: bool
    compression: bool
    response_handler: ResponseHandlerMode
    sent_metrics: int = 0
    buffered_metrics: int = 0
    successful_metrics: int = 0
    failed_metrics: int = 0
    consecutive_fails: int = 0
    last_send_ms: int = -1


class ServiceStatus(BaseModel):
    """Combined status of a running shipper service."""

    started_at: Optional[datetime] = None
    running: bool
    pending_points: int = 0
    dropped_points: int = 0
    cache: CacheStats
    shipper: ShipperStats
    persistence: PersistenceStats
