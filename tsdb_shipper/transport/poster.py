"""
HTTP shipper: posts batches to the endpoint's put API.

While the endpoint is reachable, batches are (optionally) gzipped and posted,
with transient failures retried before falling back to durable storage. While
hard-down, batches go straight to the persistence manager. A connect or
reconnect drains the stored backlog through `send_file`.
"""

import asyncio
import logging
import socket
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import httpx

from tsdb_shipper.batching import Batch, BatchBuffer
from tsdb_shipper.config import ShipperConfig
from tsdb_shipper.schemas import FlushOutcome, FlushReport, ResponseHandlerMode, ShipperStats
from tsdb_shipper.storage.fifo_file import compress, decompress, is_compressed
from tsdb_shipper.storage.persistence import MetricPersistence
from tsdb_shipper.transport.connectivity import ConnectivityChecker
from tsdb_shipper.transport.response_handlers import ResponseHandler, get_handler

logger = logging.getLogger(__name__)

PUT_PATH = "/api/put"
ANNOTATION_PATH = "/api/annotation"
TRANSIENT_ERRORS = (httpx.ConnectError, httpx.TimeoutException)
MAX_RETRIES = 10
MAX_CONCURRENT_FLUSHES = 32


class HttpMetricsPoster:
    """Connectivity-aware shipper of datapoint batches."""

    def __init__(
        self,
        config: ShipperConfig,
        persistence: Optional[MetricPersistence] = None,
        client: Optional[httpx.AsyncClient] = None,
        checker: Optional[ConnectivityChecker] = None,
    ):
        """
        Initialize the poster. Starts hard-down until a connect is reported.

        Args:
            config: Shipper configuration
            persistence: Durable storage for unsendable batches
            client: HTTP client to use (created lazily when None)
            checker: Connectivity checker told about failed live sends
        """
        self.config = config
        self.url = config.endpoint.url
        self.persistence = persistence
        self.checker = checker
        self._client = client
        self._owns_client = client is None
        self._connect_timeout = config.endpoint.connect_timeout
        self._request_timeout = config.endpoint.request_timeout
        self._retries = config.http.retries
        self._retry_delay = config.http.retry_delay
        self._compression = config.http.compression
        self._max_concurrent_flushes = config.http.max_concurrent_flushes
        self._handler: ResponseHandler = get_handler(config.http.response_handler)
        self.buffer = BatchBuffer(config.batching.size, config.batching.time_trigger_ms)

        self._state_lock = threading.Lock()
        self._hard_down = True
        self._drain_task: Optional[asyncio.Task] = None
        self._last_flush: Optional[FlushReport] = None
        self._sent = 0
        self._buffered = 0
        self._consecutive_fails = 0
        self._last_send_ms = -1
        self._reset_response_counters()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @property
    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self._request_timeout / 1000, connect=self._connect_timeout / 1000)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            keepalive = self._max_concurrent_flushes * 2 if self.config.http.pool_connections else 0
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(
                    max_connections=max(10, self._max_concurrent_flushes * 2),
                    max_keepalive_connections=keepalive,
                ),
            )
            self._owns_client = True
        return self._client

    @property
    def put_url(self) -> str:
        return f"{self.url}{PUT_PATH}{self._handler.put_signature}"

    def _headers(self, compressed: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if compressed:
            headers["Content-Encoding"] = "gzip"
        return headers

    async def close(self) -> None:
        """Cancel a running drain and close the client if this poster created it."""
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, batch: Batch) -> bool:
        """
        Ship one batch.

        Args:
            batch: Ready batch from the buffer

        Returns:
            True if the endpoint answered, False if the batch went to storage

        Promises:
        - No network call while hard-down
        - Transient errors retried up to `retries` times, then stored
        - Never raises for transport errors
        """
        if batch.count == 0:
            return True
        if self.is_hard_down:
            await self._store(batch.payload, batch.count)
            return False

        body = compress(batch.payload) if self._compression else batch.payload
        compressed = self._compression
        attempt = 0
        while True:
            started = time.monotonic()
            try:
                response = await self.client.post(
                    self.put_url, content=body, headers=self._headers(compressed), timeout=self.timeout
                )
            except TRANSIENT_ERRORS as e:
                self._consecutive_fails += 1
                if attempt >= self._retries or self._checker_down():
                    logger.warning(
                        f"Send of {batch.count} datapoints failed after {attempt + 1} attempts: "
                        f"{type(e).__name__}: {e}"
                    )
                    self._report_down(e)
                    await self._store(batch.payload, batch.count)
                    return False
                attempt += 1
                logger.debug(f"Transient send failure ({e}), retry {attempt}/{self._retries}")
                await asyncio.sleep(self._retry_delay / 1000)
                continue
            except httpx.HTTPError as e:
                self._consecutive_fails += 1
                logger.error(f"Send of {batch.count} datapoints failed: {type(e).__name__}: {e}")
                await self._store(batch.payload, batch.count)
                return False

            self._last_send_ms = int((time.monotonic() - started) * 1000)
            self._sent += batch.count
            self._consecutive_fails = 0
            if self._handle_response(response, batch.count, compressed):
                # Rejected only because it was gzipped, keep it for an uncompressed replay
                await self._store(batch.payload, batch.count)
            return True

    def _handle_response(self, response: httpx.Response, count: int, compressed: bool) -> bool:
        """Update counters from a put response. Returns True if compression was auto-disabled."""
        result = self._handler.process(response.status_code, response.content, compressed)
        if result.counts is not None:
            failed = result.counts.failed
            success = result.counts.success
            if result.counts.total == 0:
                success, failed = (count, 0) if response.is_success else (0, count)
            self._successful += success
            self._failed += failed
        if not response.is_success:
            logger.warning(f"Endpoint rejected batch of {count} datapoints: HTTP {response.status_code}")
        if result.disable_compression:
            self.auto_disable_compression()
            return True
        return False

    async def send_file(self, path: Path) -> FlushOutcome:
        """
        Send one entry extracted from an offline file, then delete the file.

        Args:
            path: Temp file holding one stored batch

        Returns:
            SUCCESS (2xx), BAD_CONTENT (other status), FAILED (transport
            error, entry stored again) or EMPTY (missing or too small)
        """
        path = Path(path)
        try:
            try:
                async with aiofiles.open(path, "rb") as f:
                    data = await f.read()
            except FileNotFoundError:
                return FlushOutcome.EMPTY
            if len(data) < 2:
                return FlushOutcome.EMPTY

            if not self._compression and is_compressed(data):
                body = decompress(data)
            elif self._compression and not is_compressed(data):
                body = compress(data)
            else:
                body = data
            compressed = is_compressed(body)

            started = time.monotonic()
            try:
                response = await self.client.post(
                    self.put_url, content=body, headers=self._headers(compressed), timeout=self.timeout
                )
            except httpx.HTTPError as e:
                self._consecutive_fails += 1
                logger.warning(f"Offline send of {path.name} failed: {type(e).__name__}: {e}")
                if isinstance(e, TRANSIENT_ERRORS):
                    self._report_down(e)
                await self._store(data, 0)
                return FlushOutcome.FAILED

            self._last_send_ms = int((time.monotonic() - started) * 1000)
            self._consecutive_fails = 0
            if self._handle_response(response, 0, compressed):
                await self._store(data, 0)
            if response.is_success:
                return FlushOutcome.SUCCESS
            logger.warning(f"Offline entry {path.name} rejected: HTTP {response.status_code}")
            return FlushOutcome.BAD_CONTENT
        finally:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to delete temp file {path}: {e}")

    async def _store(self, payload: bytes, count: int) -> bool:
        if self.persistence is None:
            logger.warning(f"No offline storage, dropped {count or 'stored'} datapoints")
            return False
        loop = asyncio.get_running_loop()
        stored = await loop.run_in_executor(None, self.persistence.offline, payload)
        if stored:
            self._buffered += count
        return stored

    async def send_annotation(
        self, description: str, custom: Optional[Dict[str, Any]] = None, notes: Optional[str] = None
    ) -> bool:
        """
        Post an annotation to the endpoint.

        Returns:
            True if the endpoint accepted it
        """
        if self.is_hard_down:
            return False
        annotation: Dict[str, Any] = {"startTime": int(time.time()), "description": description}
        if notes:
            annotation["notes"] = notes
        if custom:
            annotation["custom"] = {str(k): str(v) for k, v in custom.items()}
        try:
            response = await self.client.post(
                f"{self.url}{ANNOTATION_PATH}", json=annotation, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.debug(f"Annotation post failed: {e}")
            return False
        if not response.is_success:
            logger.debug(f"Annotation rejected: HTTP {response.status_code} {response.text[:200]}")
        return response.is_success

    # ------------------------------------------------------------------
    # Connectivity listener
    # ------------------------------------------------------------------

    def _checker_down(self) -> bool:
        return self.checker is not None and self.checker.is_down

    def _report_down(self, error: BaseException) -> None:
        if self.checker is not None:
            self.checker.mark_down(error)
        else:
            self.on_disconnected(error)

    def _clear_hard_down(self) -> bool:
        with self._state_lock:
            if not self._hard_down:
                return False
            self._hard_down = False
            return True

    def on_connected(self) -> None:
        if self._clear_hard_down():
            logger.info(f"Connected to {self.url}, sending directly")
        self._schedule(self._announce_connect())
        self.schedule_drain()

    def on_reconnected(self) -> None:
        if self._clear_hard_down():
            logger.info(f"Reconnected to {self.url}, draining offline backlog")
        self.schedule_drain()

    def on_disconnected(self, error: Optional[BaseException] = None) -> None:
        with self._state_lock:
            was_up = not self._hard_down
            self._hard_down = True
        if was_up:
            logger.warning(f"Disconnected from {self.url}, buffering to offline storage")

    async def _announce_connect(self) -> None:
        identity = self.config.identity
        agent = identity.app_name or self.config.offline.app_name
        host = identity.host_name or socket.gethostname()
        await self.send_annotation(f"{agent} connected from {host}", custom=identity.effective_tags())

    @staticmethod
    def _schedule(coro) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        return loop.create_task(coro)

    def schedule_drain(self) -> Optional[asyncio.Task]:
        """Start a backlog drain unless one is already running."""
        if self._drain_task is not None and not self._drain_task.done():
            return self._drain_task
        task = self._schedule(self.flush_offline())
        if task is None:
            logger.debug("No running event loop, drain not scheduled")
        self._drain_task = task
        return task

    async def flush_offline(self) -> Optional[FlushReport]:
        """Drain stored batches through send_file."""
        if self.persistence is None or not self.persistence.enabled:
            return None
        try:
            report = await self.persistence.flush_to_server(self)
        except Exception as e:
            logger.error(f"Offline drain failed: {e}")
            return None
        self._last_flush = report
        return report

    # ------------------------------------------------------------------
    # Drain contract and runtime settings
    # ------------------------------------------------------------------

    @property
    def is_hard_down(self) -> bool:
        return self._hard_down

    @property
    def connect_timeout(self) -> int:
        return self._connect_timeout

    @property
    def request_timeout(self) -> int:
        return self._request_timeout

    @property
    def max_concurrent_flushes(self) -> int:
        return self._max_concurrent_flushes

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def retry_delay(self) -> int:
        return self._retry_delay

    @property
    def compression(self) -> bool:
        return self._compression

    @property
    def response_handler(self) -> ResponseHandlerMode:
        return self._handler.mode

    @property
    def batch_size(self) -> int:
        return self.buffer.size_threshold

    @property
    def last_flush(self) -> Optional[FlushReport]:
        return self._last_flush

    def set_retries(self, retries: int) -> None:
        if not 0 <= retries <= MAX_RETRIES:
            raise ValueError(f"Invalid retry count [{retries}]. Must be between 0 and {MAX_RETRIES}")
        self._retries = retries

    def set_retry_delay(self, delay_ms: int) -> None:
        if delay_ms < 0:
            raise ValueError(f"Invalid retry delay [{delay_ms}]")
        self._retry_delay = delay_ms

    def set_batch_size(self, size: int) -> None:
        if size < 1:
            raise ValueError(f"Invalid batch size [{size}]")
        self.buffer.size_threshold = size

    def set_max_concurrent_flushes(self, count: int) -> None:
        if not 1 <= count <= MAX_CONCURRENT_FLUSHES:
            raise ValueError(
                f"Invalid max concurrent flushes [{count}]. Must be between 1 and {MAX_CONCURRENT_FLUSHES}"
            )
        self._max_concurrent_flushes = count

    def set_response_handler(self, name) -> None:
        self._handler = get_handler(name)
        self._reset_response_counters()

    def set_compression(self, enabled: bool) -> None:
        self._compression = bool(enabled)

    def auto_disable_compression(self) -> None:
        if self._compression:
            self._compression = False
            logger.warning(f"Compression auto-disabled: {self.url} does not accept gzip content")

    def _reset_response_counters(self) -> None:
        untracked = self._handler.mode == ResponseHandlerMode.NOTHING
        self._successful = -1 if untracked else 0
        self._failed = -1 if untracked else 0

    def stats(self) -> ShipperStats:
        return ShipperStats(
            url=self.url,
            hard_down=self._hard_down,
            connected=self.checker.is_connected if self.checker else not self._hard_down,
            compression=self._compression,
            response_handler=self._handler.mode,
            sent_metrics=self._sent,
            buffered_metrics=self._buffered,
            successful_metrics=self._successful,
            failed_metrics=self._failed,
            consecutive_fails=self._consecutive_fails,
            last_send_ms=self._last_send_ms,
        )
