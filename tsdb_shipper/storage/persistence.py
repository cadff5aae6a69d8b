"""
Persistence manager: owns the offline files of one storage directory.

Batches that cannot be sent are appended to the current file. Files roll when
they would exceed the maximum size, and sealed files are drained back through
the shipper once the endpoint is reachable again.
"""

import asyncio
import functools
import logging
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence

from tsdb_shipper.exceptions import DirectoryLockError, StorageError
from tsdb_shipper.protocols import OfflineSender
from tsdb_shipper.schemas import FlushOutcome, FlushReport, OfflineFileSummary, PersistenceStats
from tsdb_shipper.storage.fifo_file import (
    HEADER_SIZE,
    TMP_FILE_EXT,
    TMP_FILE_PREFIX,
    DurableFifoFile,
    file_index,
    file_name,
)
from tsdb_shipper.storage.lock import DirectoryLock

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 2048000


class MetricPersistence:
    """Single authority for what gets written where, and what gets drained."""

    def __init__(
        self,
        directory,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        fallback_dirs: Optional[Sequence] = None,
        enabled: bool = True,
    ):
        """
        Initialize persistence manager. Nothing touches disk until open().

        Args:
            directory: Preferred storage directory
            max_file_size: Roll to a new file before a write would exceed this
            fallback_dirs: Directories tried in order if the preferred one is unusable
            enabled: False keeps persistence disabled (batches are dropped)
        """
        if max_file_size < HEADER_SIZE * 3:
            raise ValueError(f"Invalid max file size [{max_file_size}]")
        self.candidates: List[Path] = [Path(directory).expanduser()]
        for fallback in fallback_dirs or ():
            path = Path(fallback).expanduser()
            if path not in self.candidates:
                self.candidates.append(path)
        self.max_file_size = max_file_size
        self.directory: Optional[Path] = None
        self._requested = enabled
        self._enabled = False
        self._lock = threading.RLock()
        self._dir_lock: Optional[DirectoryLock] = None
        self._current: Optional[DurableFifoFile] = None
        self._next_index = 1
        self._flush_lock: Optional[asyncio.Lock] = None
        self._flush_success = 0
        self._flush_failed = 0
        self._flush_bad_content = 0
        self._dropped = 0

    @classmethod
    def from_config(cls, config) -> "MetricPersistence":
        """Build from an OfflineConfig, using its directory fallback chain."""
        dirs = config.candidate_dirs()
        return cls(dirs[0], config.max_file_size, fallback_dirs=dirs[1:], enabled=config.enabled)

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> bool:
        """
        Pick a storage directory, lock it and recover existing files.

        Returns:
            True if persistence is enabled afterwards

        Promises:
        - Never raises; any failure leaves persistence disabled and is logged
        - Fails fast (no fallback) when another instance holds the lock
        """
        with self._lock:
            if self._enabled:
                return True
            if not self._requested:
                logger.info("Offline persistence disabled by configuration")
                return False

            directory = self._select_directory()
            if directory is None:
                logger.error(
                    f"No usable offline directory among {[str(c) for c in self.candidates]}. "
                    "Persistence DISABLED, unsendable metrics will be lost"
                )
                return False

            dir_lock = DirectoryLock(directory)
            try:
                dir_lock.acquire()
            except DirectoryLockError as e:
                logger.error(f"{e}. Persistence DISABLED, unsendable metrics will be lost")
                return False

            self.directory = directory
            self._dir_lock = dir_lock
            try:
                self._purge_temp_files()
                self._next_index = self._recover_files() + 1
            except OSError as e:
                logger.error(f"Failed to scan offline directory {directory}: {e}. Persistence DISABLED")
                dir_lock.release()
                self._dir_lock = None
                return False

            self._enabled = True
            logger.info(
                f"Offline persistence enabled in {directory}: "
                f"{self.offline_file_count()} files, next index {self._next_index}"
            )
            return True

    def _select_directory(self) -> Optional[Path]:
        for candidate in self.candidates:
            try:
                candidate.mkdir(parents=True, exist_ok=True)
                with tempfile.TemporaryFile(dir=candidate):
                    pass
            except OSError as e:
                logger.warning(f"Offline directory {candidate} is not usable: {e}")
                continue
            return candidate
        return None

    def _purge_temp_files(self) -> int:
        assert self.directory is not None
        purged = 0
        for path in self.directory.glob(f"{TMP_FILE_PREFIX}*{TMP_FILE_EXT}"):
            try:
                path.unlink()
                purged += 1
            except OSError as e:
                logger.warning(f"Failed to delete temp file {path}: {e}")
        if purged:
            logger.info(f"Purged {purged} leftover temp files from {self.directory}")
        return purged

    def _recover_files(self) -> int:
        """Discard headerless or empty files and return the highest surviving index."""
        highest = 0
        for path in self._list_files():
            index = file_index(path)
            if index is None:
                continue
            size = path.stat().st_size
            if size <= HEADER_SIZE:
                logger.info(f"Discarding offline file {path.name} ({size} bytes)")
                DurableFifoFile.forget(path)
                path.unlink(missing_ok=True)
                continue
            highest = max(highest, index)
        return highest

    def close(self) -> None:
        """Purge temp files and release the directory lock."""
        with self._lock:
            if not self._enabled:
                return
            self._enabled = False
            try:
                self._purge_temp_files()
            except OSError as e:
                logger.warning(f"Failed to purge temp files on close: {e}")
            current, self._current = self._current, None
            if current is not None and current.entry_count() == 0:
                current.delete()
            if self._dir_lock is not None:
                self._dir_lock.release()
                self._dir_lock = None
            logger.info(f"Offline persistence closed ({self.directory})")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def offline(self, blob: bytes) -> bool:
        """
        Append one batch payload to the current file.

        Args:
            blob: Batch payload, raw JSON array or gzip bytes

        Returns:
            True if the blob was stored, False if it was dropped

        Promises:
        - Never raises; storage failures drop the blob and are logged
        """
        if not blob:
            return False
        if not self._enabled:
            self._dropped += 1
            logger.warning(f"Offline persistence disabled, dropped batch of {len(blob)} bytes")
            return False
        with self._lock:
            try:
                current = self._current or self.roll()
                if current.size() + len(blob) + HEADER_SIZE > self.max_file_size and current.entry_count() > 0:
                    current = self.roll()
                current.write(blob)
                return True
            except StorageError as e:
                self._dropped += 1
                logger.error(f"Failed to persist batch of {len(blob)} bytes: {e}")
                return False

    def roll(self) -> DurableFifoFile:
        """
        Seal the current file and start a new one.

        Returns:
            The new current file

        Raises:
            StorageError: Persistence is disabled or the new file cannot be created
        """
        with self._lock:
            if not self._enabled or self.directory is None:
                raise StorageError("Offline persistence is not enabled")
            path = self.directory / file_name(self._next_index)
            new_file = DurableFifoFile.get(path)
            self._next_index += 1
            previous, self._current = self._current, new_file
            if previous is not None:
                logger.debug(f"Rolled offline file {previous.name} -> {new_file.name}")
            return new_file

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def flush_to_server(self, sender: OfflineSender) -> FlushReport:
        """
        Replay the sealed backlog through the sender.

        Args:
            sender: Shipper used for single-entry sends

        Returns:
            Aggregate counts for this drain

        Promises:
        - Only one drain runs at a time
        - Files drain in index order, entries in write order
        - Stops extracting as soon as the sender is hard-down
        - At most max_concurrent_flushes sends are in flight; a slot frees
          only when its send completes
        - A send still running after (connect_timeout + request_timeout) x
          max_concurrent_flushes is counted as timed out, and its outcome is
          still recorded when it completes
        - Returns only after every submitted send has completed
        """
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()
        report = FlushReport()
        if not self._enabled:
            return report

        async with self._flush_lock:
            loop = asyncio.get_running_loop()
            start = time.monotonic()
            try:
                current = await loop.run_in_executor(None, self.roll)
            except StorageError as e:
                logger.error(f"Flush aborted, cannot roll offline file: {e}")
                return report

            files = await loop.run_in_executor(None, self._list_files)
            sealed = [p for p in files if p != current.path]
            report.entries = await loop.run_in_executor(None, self._count_entries, sealed)
            if report.entries == 0:
                await loop.run_in_executor(None, self._delete_files, sealed)
                return report

            concurrency = max(1, sender.max_concurrent_flushes)
            timeout = (sender.connect_timeout + sender.request_timeout) * concurrency / 1000
            semaphore = asyncio.Semaphore(concurrency)
            sends: List[asyncio.Task] = []
            watchers: List[asyncio.Task] = []
            logger.info(
                f"Flushing {report.entries} offline entries from {len(sealed)} files "
                f"(concurrency {concurrency})"
            )

            for path in sealed:
                fifo = await loop.run_in_executor(None, DurableFifoFile.get, path)
                while await loop.run_in_executor(None, fifo.entry_count) > 0:
                    if sender.is_hard_down:
                        report.interrupted = True
                        break
                    await semaphore.acquire()
                    if sender.is_hard_down:
                        semaphore.release()
                        report.interrupted = True
                        break
                    try:
                        extracted = await loop.run_in_executor(None, fifo.extract, 1)
                    except StorageError as e:
                        semaphore.release()
                        logger.error(f"Failed to extract from {fifo.name}: {e}")
                        break
                    if not extracted:
                        semaphore.release()
                        break
                    report.submitted += 1
                    entry = extracted[0]
                    send = asyncio.create_task(sender.send_file(entry))
                    send.add_done_callback(
                        functools.partial(self._record_outcome, entry, semaphore, report)
                    )
                    sends.append(send)
                    watchers.append(asyncio.create_task(self._watch(send, entry, timeout, report)))
                if report.interrupted:
                    logger.info(
                        f"Flush interrupted: endpoint is down, {fifo.name} kept for the next drain",
                        extra={"file": fifo.name},
                    )
                    break
                if await loop.run_in_executor(None, self._delete_if_drained, fifo):
                    report.files_deleted += 1

            try:
                await asyncio.gather(*watchers, *sends, return_exceptions=True)
            except asyncio.CancelledError:
                for send in sends:
                    send.cancel()
                raise

        report.elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Flush complete in {report.elapsed_ms}ms: success={report.success} failed={report.failed} "
            f"bad_content={report.bad_content} timed_out={report.timed_out}"
        )
        return report

    @staticmethod
    async def _watch(send: asyncio.Task, path: Path, timeout: float, report: FlushReport) -> None:
        # Not cancelled on timeout: the send runs on to its own HTTP timeout
        done, _ = await asyncio.wait({send}, timeout=timeout)
        if not done:
            report.timed_out += 1
            logger.warning(
                f"Offline send of {path.name} did not complete within {timeout:.1f}s",
                extra={"file": path.name},
            )

    def _record_outcome(
        self, path: Path, semaphore: asyncio.Semaphore, report: FlushReport, send: asyncio.Task
    ) -> None:
        semaphore.release()
        if send.cancelled():
            report.failed += 1
            self._flush_failed += 1
            logger.error(f"Offline send of {path.name} was cancelled", extra={"file": path.name})
            return
        error = send.exception()
        if error is not None:
            report.failed += 1
            self._flush_failed += 1
            logger.error(f"Offline send of {path.name} failed: {error}", extra={"file": path.name})
            return

        outcome = send.result()
        if outcome == FlushOutcome.SUCCESS:
            report.success += 1
            self._flush_success += 1
        elif outcome == FlushOutcome.BAD_CONTENT:
            report.bad_content += 1
            self._flush_bad_content += 1
        elif outcome == FlushOutcome.FAILED:
            report.failed += 1
            self._flush_failed += 1

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _list_files(self) -> List[Path]:
        """Offline files in natural index order."""
        if self.directory is None or not self.directory.is_dir():
            return []
        files = [p for p in self.directory.iterdir() if file_index(p) is not None and p.is_file()]
        return sorted(files, key=lambda p: file_index(p) or 0)

    @staticmethod
    def _count_entries(paths: Sequence[Path]) -> int:
        return sum(max(0, DurableFifoFile.get(p).entry_count()) for p in paths)

    @staticmethod
    def _delete_files(paths: Sequence[Path]) -> None:
        for path in paths:
            DurableFifoFile.get(path).delete()

    @staticmethod
    def _delete_if_drained(fifo: DurableFifoFile) -> bool:
        return fifo.entry_count() == 0 and fifo.delete()

    def offline_files(self) -> List[Path]:
        return self._list_files()

    def offline_file_count(self) -> int:
        return len(self._list_files())

    def offline_entry_count(self) -> int:
        return self._count_entries(self._list_files())

    @property
    def current_file(self) -> Optional[DurableFifoFile]:
        return self._current

    @property
    def current_file_name(self) -> Optional[str]:
        return self._current.name if self._current else None

    @property
    def current_file_size(self) -> int:
        return self._current.size() if self._current else -1

    @property
    def current_file_entries(self) -> int:
        return self._current.entry_count() if self._current else -1

    @property
    def dropped(self) -> int:
        return self._dropped

    def file_summary(self) -> List[OfflineFileSummary]:
        current = self._current.path if self._current else None
        summary = []
        for path in self._list_files():
            fifo = DurableFifoFile.get(path)
            summary.append(
                OfflineFileSummary(
                    name=path.name,
                    size_bytes=fifo.size(),
                    entries=fifo.entry_count(),
                    compressed=fifo.is_compressed(),
                    current=path == current,
                )
            )
        return summary

    def stats(self) -> PersistenceStats:
        current = self._current
        return PersistenceStats(
            enabled=self._enabled,
            directory=str(self.directory) if self.directory else None,
            current_file=current.name if current else None,
            current_file_size=current.size() if current else -1,
            current_file_entries=current.entry_count() if current else -1,
            current_file_compression_rate=current.compression_rate if current else -1.0,
            offline_files=self.offline_file_count(),
            offline_entries=self.offline_entry_count(),
            flush_success=self._flush_success,
            flush_failed=self._flush_failed,
            flush_bad_content=self._flush_bad_content,
        )

    def __repr__(self) -> str:
        return f"MetricPersistence(directory={self.directory}, enabled={self._enabled})"
