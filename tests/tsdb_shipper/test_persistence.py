"""
Unit tests for the directory lock and the persistence manager.
"""

import asyncio
import gzip
import json
import os
import threading
from pathlib import Path
from typing import List

import pytest

from tsdb_shipper.exceptions import DirectoryLockError, StorageError
from tsdb_shipper.schemas import FlushOutcome
from tsdb_shipper.storage.fifo_file import DurableFifoFile, file_name
from tsdb_shipper.storage.lock import LOCK_FILE_NAME, DirectoryLock
from tsdb_shipper.storage.persistence import MetricPersistence


def batch(i: int) -> bytes:
    return json.dumps([{"metric": "m", "timestamp": i, "value": i, "tags": {}}]).encode()


class FakeSender:
    """OfflineSender that records payloads and answers with a fixed outcome."""

    def __init__(self, outcome: FlushOutcome = FlushOutcome.SUCCESS, concurrency: int = 1):
        self.outcome = outcome
        self.hard_down = False
        self.concurrency = concurrency
        self.payloads: List[bytes] = []
        self.down_after = None
        self.delay = 0.0
        self.error = None
        self.active = 0
        self.peak = 0

    @property
    def is_hard_down(self) -> bool:
        return self.hard_down

    @property
    def max_concurrent_flushes(self) -> int:
        return self.concurrency

    @property
    def connect_timeout(self) -> int:
        return 50

    @property
    def request_timeout(self) -> int:
        return 50

    async def send_file(self, path: Path) -> FlushOutcome:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            self.payloads.append(gzip.decompress(path.read_bytes()))
            path.unlink()
            if self.down_after is not None and len(self.payloads) >= self.down_after:
                self.hard_down = True
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return self.outcome
        finally:
            self.active -= 1


class TestDirectoryLock:
    """Test exclusive directory locking."""

    def test_acquire_writes_pid(self, tmp_path):
        lock = DirectoryLock(tmp_path)

        lock.acquire()

        assert lock.held
        assert (tmp_path / LOCK_FILE_NAME).read_text() == str(os.getpid())
        assert lock.read_holder() == os.getpid()
        lock.release()

    def test_second_lock_fails(self, tmp_path):
        first = DirectoryLock(tmp_path)
        first.acquire()

        with pytest.raises(DirectoryLockError):
            DirectoryLock(tmp_path).acquire()

        first.release()

    def test_release_deletes_file_and_allows_relock(self, tmp_path):
        with DirectoryLock(tmp_path):
            pass

        assert not (tmp_path / LOCK_FILE_NAME).exists()
        with DirectoryLock(tmp_path) as again:
            assert again.held

    def test_missing_directory(self, tmp_path):
        with pytest.raises(DirectoryLockError):
            DirectoryLock(tmp_path / "missing").acquire()

    def test_double_acquire(self, tmp_path):
        lock = DirectoryLock(tmp_path)
        lock.acquire()
        with pytest.raises(DirectoryLockError):
            lock.acquire()
        lock.release()


class TestOpen:
    """Test directory selection, locking and startup recovery."""

    def test_open_enables_and_locks(self, persistence, storage_dir):
        assert persistence.enabled
        assert persistence.directory == storage_dir
        assert (storage_dir / LOCK_FILE_NAME).exists()
        assert persistence.stats().enabled

    def test_second_manager_is_disabled(self, persistence, storage_dir):
        other = MetricPersistence(storage_dir)

        assert not other.open()
        assert not other.enabled
        assert not other.offline(batch(1))
        assert other.dropped == 1

    def test_falls_back_to_next_directory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        manager = MetricPersistence(blocker / "sub", fallback_dirs=[tmp_path / "fallback"])

        assert manager.open()
        assert manager.directory == tmp_path / "fallback"
        manager.close()

    def test_disabled_by_configuration(self, tmp_path):
        manager = MetricPersistence(tmp_path, enabled=False)
        assert not manager.open()
        assert not manager.offline(batch(1))

    def test_recovery_discards_short_files_and_resumes_index(self, storage_dir):
        kept = DurableFifoFile.get(storage_dir / file_name(3))
        kept.write(batch(1))
        (storage_dir / file_name(5)).write_bytes(b"\x00\x00")
        (storage_dir / file_name(6)).write_bytes(b"\x00\x00\x00\x00")
        (storage_dir / "inprocess-offlinemetrics3-abc.tmp").write_bytes(b"junk")
        DurableFifoFile.clear_cache()

        manager = MetricPersistence(storage_dir)
        assert manager.open()

        assert sorted(p.name for p in manager.offline_files()) == [file_name(3)]
        assert manager.offline_entry_count() == 1
        assert not (storage_dir / "inprocess-offlinemetrics3-abc.tmp").exists()
        assert manager.roll().name == file_name(4)
        manager.close()

    def test_close_releases_lock(self, storage_dir):
        manager = MetricPersistence(storage_dir)
        manager.open()
        manager.offline(batch(1))

        manager.close()

        assert not manager.enabled
        assert not (storage_dir / LOCK_FILE_NAME).exists()
        reopened = MetricPersistence(storage_dir)
        assert reopened.open()
        assert reopened.offline_entry_count() == 1
        reopened.close()


class TestOffline:
    """Test writes and rolling."""

    def test_offline_creates_current_file_lazily(self, persistence, storage_dir):
        assert persistence.current_file is None
        assert persistence.offline_file_count() == 0

        assert persistence.offline(batch(1))

        assert persistence.current_file_name == file_name(1)
        assert persistence.current_file_entries == 1
        assert (storage_dir / file_name(1)).exists()

    def test_rolls_before_exceeding_max_size(self, storage_dir):
        manager = MetricPersistence(storage_dir, max_file_size=200)
        manager.open()

        manager.offline(os.urandom(100))
        manager.offline(os.urandom(100))

        assert manager.offline_file_count() == 2
        assert manager.offline_entry_count() == 2
        assert all(f.size_bytes <= 200 for f in manager.file_summary())
        manager.close()

    def test_oversized_blob_still_stored(self, storage_dir):
        manager = MetricPersistence(storage_dir, max_file_size=64)
        manager.open()

        assert manager.offline(os.urandom(500))
        assert manager.offline_entry_count() == 1
        manager.close()

    def test_roll_requires_enabled(self, tmp_path):
        with pytest.raises(StorageError):
            MetricPersistence(tmp_path).roll()

    def test_file_summary_marks_current(self, persistence):
        persistence.offline(batch(1))
        persistence.roll()
        persistence.offline(batch(2))

        summary = persistence.file_summary()

        assert [s.name for s in summary] == [file_name(1), file_name(2)]
        assert [s.current for s in summary] == [False, True]
        assert all(s.compressed for s in summary)
        assert all(s.entries == 1 for s in summary)


class TestFlushToServer:
    """Test draining the backlog through a sender."""

    @pytest.mark.asyncio
    async def test_drains_in_file_and_write_order(self, persistence):
        for i in range(3):
            persistence.offline(batch(i))
        persistence.roll()
        for i in range(3, 5):
            persistence.offline(batch(i))
        sender = FakeSender()

        report = await persistence.flush_to_server(sender)

        assert sender.payloads == [batch(i) for i in range(5)]
        assert report.entries == 5
        assert report.submitted == 5
        assert report.success == 5
        assert report.files_deleted == 2
        assert not report.interrupted
        assert persistence.offline_entry_count() == 0
        assert persistence.stats().flush_success == 5

    @pytest.mark.asyncio
    async def test_drained_files_are_deleted(self, persistence, storage_dir):
        persistence.offline(batch(1))

        await persistence.flush_to_server(FakeSender(concurrency=4))

        assert not (storage_dir / file_name(1)).exists()
        assert [p.name for p in persistence.offline_files()] == [file_name(2)]

    @pytest.mark.asyncio
    async def test_empty_backlog(self, persistence):
        report = await persistence.flush_to_server(FakeSender())
        assert report.entries == 0
        assert report.submitted == 0

    @pytest.mark.asyncio
    async def test_stops_when_sender_goes_hard_down(self, persistence, storage_dir):
        for i in range(3):
            persistence.offline(batch(i))
        sender = FakeSender()
        sender.down_after = 1

        report = await persistence.flush_to_server(sender)

        assert report.interrupted
        assert sender.payloads == [batch(0)]
        assert persistence.offline_entry_count() == 2
        assert (storage_dir / file_name(1)).exists()

        sender.hard_down = False
        sender.down_after = None
        second = await persistence.flush_to_server(sender)

        assert second.success == 2
        assert sender.payloads == [batch(i) for i in range(3)]

    @pytest.mark.asyncio
    async def test_outcomes_are_counted(self, persistence):
        persistence.offline(batch(1))
        persistence.offline(batch(2))

        report = await persistence.flush_to_server(FakeSender(FlushOutcome.BAD_CONTENT, concurrency=2))

        assert report.bad_content == 2
        assert persistence.stats().flush_bad_content == 2

    @pytest.mark.asyncio
    async def test_slow_send_times_out(self, persistence):
        persistence.offline(batch(1))
        sender = FakeSender()
        sender.delay = 0.3

        report = await persistence.flush_to_server(sender)

        assert report.timed_out == 1
        assert report.success == 1
        assert persistence.stats().flush_success == 1

    @pytest.mark.asyncio
    async def test_timed_out_sends_keep_their_slot(self, persistence):
        for i in range(3):
            persistence.offline(batch(i))
        sender = FakeSender(concurrency=1)
        sender.delay = 0.15

        report = await persistence.flush_to_server(sender)

        assert sender.peak == 1
        assert sender.active == 0
        assert report.timed_out == 3
        assert report.success == 3

    @pytest.mark.asyncio
    async def test_file_io_runs_off_the_loop_thread(self, persistence, monkeypatch):
        persistence.offline(batch(1))
        loop_thread = threading.get_ident()
        threads = []
        list_files = persistence._list_files
        delete_if_drained = MetricPersistence._delete_if_drained

        def tracked_list():
            threads.append(threading.get_ident())
            return list_files()

        def tracked_delete(fifo):
            threads.append(threading.get_ident())
            return delete_if_drained(fifo)

        monkeypatch.setattr(persistence, "_list_files", tracked_list)
        monkeypatch.setattr(persistence, "_delete_if_drained", tracked_delete)

        report = await persistence.flush_to_server(FakeSender())

        assert report.files_deleted == 1
        assert len(threads) == 2
        assert loop_thread not in threads

    @pytest.mark.asyncio
    async def test_raising_send_counts_as_failed(self, persistence):
        persistence.offline(batch(1))
        sender = FakeSender()
        sender.error = ConnectionError("reset")

        report = await persistence.flush_to_server(sender)

        assert report.failed == 1
        assert persistence.stats().flush_failed == 1

    @pytest.mark.asyncio
    async def test_disabled_persistence_returns_empty_report(self, tmp_path):
        manager = MetricPersistence(tmp_path, enabled=False)
        report = await manager.flush_to_server(FakeSender())
        assert report.entries == 0
