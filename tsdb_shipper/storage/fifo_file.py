"""
Durable FIFO file: a header-counted queue of length-prefixed blobs on disk.

File layout (all integers big-endian signed int32):

    [entry count]
    [length][payload]
    [length][payload]
    ...

Payloads are gzip-compressed JSON arrays (one batch each). An entry is
appended and synced before the header count is bumped, so a crash between
the two leaves an uncounted tail that is truncated the next time the file
is opened. Extraction writes each removed entry to its own temp file, then
writes the remaining entries to a replacement file that is renamed over the
original.
"""

import gzip
import io
import logging
import os
import re
import shutil
import struct
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, TextIO

from tsdb_shipper.exceptions import StorageError

logger = logging.getLogger(__name__)

INT32 = struct.Struct(">i")
HEADER_SIZE = INT32.size
MAX_ENTRY_SIZE = 2**31 - 1
GZIP_MAGIC = b"\x1f\x8b"

FILE_NAME_PREFIX = "offlinemetrics"
FILE_NAME_EXT = ".dat"
FILE_NAME_PATTERN = re.compile(r"offlinemetrics(\d+)\.dat")
TMP_FILE_PREFIX = "inprocess-" + FILE_NAME_PREFIX
TMP_FILE_EXT = ".tmp"


def file_name(index: int) -> str:
    """Name of the offline file with the given index."""
    return f"{FILE_NAME_PREFIX}{index}{FILE_NAME_EXT}"


def file_index(path) -> Optional[int]:
    """Index parsed from an offline file name, or None if it is not one."""
    match = FILE_NAME_PATTERN.fullmatch(Path(path).name)
    return int(match.group(1)) if match else None


def is_compressed(data: bytes) -> bool:
    """True if the bytes start with the gzip magic number."""
    return len(data) >= 2 and data[:2] == GZIP_MAGIC


def is_compressed_file(path) -> bool:
    """
    Sniff a file for gzip content.

    Offline queue files are checked at the first payload (after the header
    and the first length), any other file at offset 0.
    """
    path = Path(path)
    offset = HEADER_SIZE * 2 if file_index(path) is not None else 0
    try:
        with open(path, "rb") as f:
            f.seek(offset)
            return is_compressed(f.read(2))
    except OSError:
        return False


def compress(data: bytes) -> bytes:
    return gzip.compress(data)


def decompress(data: bytes) -> bytes:
    return gzip.decompress(data) if is_compressed(data) else data


def _read_int(f: BinaryIO) -> Optional[int]:
    raw = f.read(HEADER_SIZE)
    if len(raw) < HEADER_SIZE:
        return None
    return INT32.unpack(raw)[0]


def read_entries(path) -> List[bytes]:
    """Read the counted payloads of a queue file without modifying it."""
    payloads: List[bytes] = []
    with open(path, "rb") as f:
        count = _read_int(f) or 0
        for _ in range(count):
            length = _read_int(f)
            if length is None or length < 0:
                break
            payload = f.read(length)
            if len(payload) < length:
                break
            payloads.append(payload)
    return payloads


def dump_file(path, stream: Optional[TextIO] = None, preview: int = 120) -> str:
    """Human-readable listing of a queue file, read-only."""
    path = Path(path)
    size = path.stat().st_size
    with open(path, "rb") as f:
        count = _read_int(f)
    out = io.StringIO()
    out.write(f"{path}  size={size} entries={-1 if count is None else count}\n")
    for i, payload in enumerate(read_entries(path)):
        text = decompress(payload).decode("utf-8", errors="replace")
        if len(text) > preview:
            text = text[:preview] + "..."
        gz = "gzip" if is_compressed(payload) else "raw"
        out.write(f"  #{i} {len(payload)} bytes ({gz}): {text}\n")
    listing = out.getvalue()
    if stream is not None:
        stream.write(listing)
    return listing


class DurableFifoFile:
    """
    One offline queue file.

    Instances are shared per absolute path through `get()`; every operation
    on a file is serialized by the instance lock.
    """

    _instances: Dict[Path, "DurableFifoFile"] = {}
    _instances_lock = threading.Lock()

    @classmethod
    def get(cls, path) -> "DurableFifoFile":
        """
        Get the shared instance for a path, creating the file if needed.

        Raises:
            StorageError: The file cannot be created or initialized
        """
        key = Path(path).absolute()
        instance = cls._instances.get(key)
        if instance is not None:
            return instance
        with cls._instances_lock:
            instance = cls._instances.get(key)
            if instance is None:
                instance = cls(key)
                cls._instances[key] = instance
            return instance

    @classmethod
    def existing(cls, path) -> Optional["DurableFifoFile"]:
        """Return the cached instance for a path without creating one."""
        return cls._instances.get(Path(path).absolute())

    @classmethod
    def forget(cls, path) -> None:
        """Drop a path from the instance cache."""
        with cls._instances_lock:
            cls._instances.pop(Path(path).absolute(), None)

    @classmethod
    def clear_cache(cls) -> None:
        with cls._instances_lock:
            cls._instances.clear()

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._compression_count = 0
        self._compression_total = 0.0
        self._last_compression_rate = -1.0
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists() or self.path.stat().st_size < HEADER_SIZE:
                with open(self.path, "wb") as f:
                    f.write(INT32.pack(0))
                    f.flush()
                    os.fsync(f.fileno())
                logger.debug(f"Created offline file {self.path}")
            else:
                self._recover()
        except OSError as e:
            raise StorageError(f"Failed to initialize offline file [{self.path}]: {e}") from e

    def _recover(self) -> None:
        """Truncate bytes past the last counted entry and fix a short count."""
        with open(self.path, "r+b") as f:
            count = _read_int(f) or 0
            valid_end = HEADER_SIZE
            complete = 0
            while complete < count:
                length = _read_int(f)
                if length is None or length < 0:
                    break
                payload = f.read(length)
                if len(payload) < length:
                    break
                complete += 1
                valid_end = f.tell()
            size = f.seek(0, os.SEEK_END)
            if complete != count:
                logger.warning(
                    f"Offline file {self.path.name} header claims {count} entries, "
                    f"{complete} readable. Resetting count"
                )
                f.seek(0)
                f.write(INT32.pack(complete))
            if size > valid_end:
                logger.warning(
                    f"Discarding {size - valid_end} uncounted trailing bytes in {self.path.name}"
                )
                f.truncate(valid_end)
            f.flush()
            os.fsync(f.fileno())

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def index(self) -> Optional[int]:
        return file_index(self.path)

    def write(self, blob: bytes) -> int:
        """
        Append one blob, compressing it unless it already is.

        Args:
            blob: Batch payload, raw JSON or gzip bytes

        Returns:
            The file size after the append

        Raises:
            StorageError: The append or header update failed
        """
        if not blob:
            return self.size()
        data = blob if is_compressed(blob) else self._compress(blob)
        if len(data) > MAX_ENTRY_SIZE:
            raise StorageError(f"Entry of {len(data)} bytes is too large for {self.path.name}")
        with self._lock:
            try:
                with open(self.path, "r+b") as f:
                    count = _read_int(f)
                    if count is None:
                        raise StorageError(f"Offline file [{self.path}] has no header")
                    end = f.seek(0, os.SEEK_END)
                    f.write(INT32.pack(len(data)))
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                    f.seek(0)
                    f.write(INT32.pack(count + 1))
                    f.flush()
                    os.fsync(f.fileno())
                    return end + HEADER_SIZE + len(data)
            except OSError as e:
                raise StorageError(f"Failed to write to offline file [{self.path}]: {e}") from e

    def _compress(self, blob: bytes) -> bytes:
        data = compress(blob)
        rate = (len(blob) - len(data)) / len(blob) * 100
        self._compression_count += 1
        self._compression_total += rate
        self._last_compression_rate = rate
        return data

    def extract(self, n: int) -> List[Path]:
        """
        Remove the oldest entries, each into its own temp file.

        Args:
            n: Maximum number of entries to remove

        Returns:
            Temp file paths in FIFO order, empty when n < 1 or the file is empty

        Raises:
            StorageError: The file cannot be read, or the compaction failed.
                Entries are only removed from the file once every temp file
                has been written.
        """
        if n < 1:
            return []
        with self._lock:
            if not self.path.exists():
                return []
            extracted: List[Path] = []
            try:
                with open(self.path, "rb") as src:
                    count = _read_int(src) or 0
                    if count <= 0:
                        return []
                    take = min(n, count)
                    for _ in range(take):
                        extracted.append(self._extract_entry(src))
                    self._compact(src, count - take)
            except (OSError, StorageError) as e:
                for tmp in extracted:
                    tmp.unlink(missing_ok=True)
                if isinstance(e, StorageError):
                    raise
                raise StorageError(f"Failed to extract from offline file [{self.path}]: {e}") from e
            logger.debug(f"Extracted {len(extracted)} entries from {self.path.name}, {count - take} left")
            return extracted

    def _extract_entry(self, src: BinaryIO) -> Path:
        length = _read_int(src)
        if length is None or length < 0:
            raise StorageError(f"Corrupt entry length in offline file [{self.path}]")
        payload = src.read(length)
        if len(payload) < length:
            raise StorageError(f"Truncated entry in offline file [{self.path}]")
        fd, tmp_name = tempfile.mkstemp(
            prefix=f"inprocess-{self.path.stem}-", suffix=TMP_FILE_EXT, dir=self.path.parent
        )
        with os.fdopen(fd, "wb") as out:
            out.write(payload)
        return Path(tmp_name)

    def _compact(self, src: BinaryIO, remaining: int) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{TMP_FILE_PREFIX}-compact-", suffix=TMP_FILE_EXT, dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "wb") as out:
                out.write(INT32.pack(remaining))
                shutil.copyfileobj(src, out)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def entries(self) -> List[bytes]:
        """Raw payload of each counted entry, oldest first, without removing any."""
        with self._lock:
            return read_entries(self.path)

    def entry_count(self) -> int:
        """Entry count from the header, or -1 if the file is missing or headerless."""
        with self._lock:
            try:
                with open(self.path, "rb") as f:
                    count = _read_int(f)
            except OSError:
                return -1
            return -1 if count is None else count

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except OSError:
            return 0

    def is_compressed(self) -> bool:
        """True if the first payload in this file is gzip data."""
        return is_compressed_file(self.path)

    def delete(self) -> bool:
        """Delete the file from disk and from the instance cache."""
        with self._lock:
            self.forget(self.path)
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                logger.warning(f"Failed to delete offline file {self.path}: {e}")
                return False
            logger.debug(f"Deleted offline file {self.path.name}")
            return True

    @property
    def compression_rate(self) -> float:
        """Average percentage saved by compression, -1 before any write."""
        if not self._compression_count:
            return -1.0
        return self._compression_total / self._compression_count

    @property
    def last_compression_rate(self) -> float:
        return self._last_compression_rate

    @property
    def compression_count(self) -> int:
        return self._compression_count

    def dump(self, stream: Optional[TextIO] = None, preview: int = 120) -> str:
        """
        Write a human-readable listing of the entries.

        Args:
            stream: Text stream to write to (returned as a string as well)
            preview: Characters of each decompressed payload to show

        Returns:
            The listing
        """
        with self._lock:
            return dump_file(self.path, stream, preview)

    def __repr__(self) -> str:
        return f"DurableFifoFile({self.path})"
