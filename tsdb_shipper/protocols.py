"""
Protocols defining contracts between shipper components.

The persistence manager drains through an OfflineSender, and the
connectivity checker notifies ConnectivityListeners. Both are structural so
tests can pass lightweight fakes.
"""

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from tsdb_shipper.schemas import FlushOutcome


# ============================================================================
# CONNECTIVITY
# ============================================================================


@runtime_checkable
class ConnectivityListener(Protocol):
    """Receives connectivity state transitions."""

    def on_connected(self) -> None:
        """
        First successful probe since start.

        Promises:
        - Fired at most once per checker
        - Must not block (schedule long work as a task)
        """
        ...

    def on_reconnected(self) -> None:
        """
        Down to Up after having been connected before.

        Promises:
        - Never fired twice without an intervening disconnect
        """
        ...

    def on_disconnected(self, error: Optional[BaseException]) -> None:
        """
        Up to Down from a failed probe or a failed live send.

        Args:
            error: The failure that caused the transition, if any
        """
        ...


# ============================================================================
# DRAIN
# ============================================================================


@runtime_checkable
class OfflineSender(Protocol):
    """What the persistence manager needs from the shipper to replay a backlog."""

    @property
    def is_hard_down(self) -> bool:
        """True while sends must go to durable storage instead of the network."""
        ...

    @property
    def max_concurrent_flushes(self) -> int:
        """Upper bound on concurrent single-entry sends during a drain."""
        ...

    @property
    def connect_timeout(self) -> int:
        """Connect timeout in milliseconds."""
        ...

    @property
    def request_timeout(self) -> int:
        """Request timeout in milliseconds."""
        ...

    async def send_file(self, path: Path) -> FlushOutcome:
        """
        Send one extracted offline entry.

        Promises:
        - Deletes the file in every case
        - Never raises for transport errors (returns FAILED)
        """
        ...
