"""Durable offline storage: FIFO queue files, directory lock and persistence manager."""

from tsdb_shipper.storage.fifo_file import DurableFifoFile, is_compressed, is_compressed_file
from tsdb_shipper.storage.lock import DirectoryLock
from tsdb_shipper.storage.persistence import MetricPersistence

__all__ = [
    "DurableFifoFile",
    "DirectoryLock",
    "MetricPersistence",
    "is_compressed",
    "is_compressed_file",
]
