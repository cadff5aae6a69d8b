"""
Error taxonomy for the shipper.

Only InvalidMetricError ever reaches producers. Everything else is raised
inside the delivery path and recovered there.
"""


class ShipperError(Exception):
    """Base class for all shipper errors."""


class InvalidMetricError(ShipperError, ValueError):
    """A metric name, tag or value was rejected at intern/record time."""


class IdentityCollisionError(ShipperError):
    """Two structurally different identities produced the same content hash."""

    def __init__(self, content_hash: int, existing: str, incoming: str):
        self.content_hash = content_hash
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            f"Content hash {content_hash:#018x} collides: [{existing}] vs [{incoming}]"
        )


class StorageError(ShipperError):
    """Offline storage could not be created, written or read."""


class DirectoryLockError(StorageError):
    """The offline directory is already locked by another process."""
