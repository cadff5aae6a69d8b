"""
Shipper service: wires the pipeline together and runs its periodic tasks.

Producers call record_measurement() from any thread. Full batches are handed
to the service's event loop, which owns the probe, the buffer time-flush, the
heartbeat and every network send.
"""

import asyncio
import logging
import signal
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Mapping, Optional, Set

import httpx

from tsdb_shipper.batching import Batch
from tsdb_shipper.config import ShipperConfig
from tsdb_shipper.identity import IdentityCache, MetricIdentity
from tsdb_shipper.schemas import ServiceStatus
from tsdb_shipper.storage.persistence import MetricPersistence
from tsdb_shipper.transport.connectivity import ConnectivityChecker
from tsdb_shipper.transport.poster import HttpMetricsPoster

logger = logging.getLogger(__name__)


class ShipperService:
    """
    Composition root of the shipper.

    This service:
    - Interns metric identities and renders datapoints into the batch buffer
    - Ships full or aged batches through the HTTP poster
    - Probes the endpoint and drains the offline backlog on reconnect
    - Emits an optional heartbeat metric
    """

    def __init__(
        self,
        config: Optional[ShipperConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        persistence: Optional[MetricPersistence] = None,
    ):
        """
        Initialize shipper service.

        Args:
            config: Shipper configuration (defaults when None)
            client: HTTP client shared by the poster and the probe
            persistence: Offline storage (built from config.offline when None)
        """
        self.config = config or ShipperConfig()
        self.cache = IdentityCache(
            max_size=self.config.cache.max_size,
            ttl_seconds=self.config.cache.ttl_seconds,
            global_tags=self.config.identity.effective_tags(),
        )
        self.persistence = persistence or MetricPersistence.from_config(self.config.offline)
        self.poster = HttpMetricsPoster(self.config, self.persistence, client=client)
        endpoint = self.config.endpoint
        self.checker = ConnectivityChecker(
            self.poster.client,
            endpoint.check_url,
            check_period=endpoint.check_period,
            connect_timeout=endpoint.connect_timeout,
            request_timeout=endpoint.effective_probe_timeout,
        )
        self.poster.checker = self.checker
        self.checker.add_listener(self.poster)
        self.buffer = self.poster.buffer

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Deque[Batch] = deque()
        self._pending_lock = threading.Lock()
        self._inflight: Set[asyncio.Task] = set()
        self._tasks: List[asyncio.Task] = []
        self._initialized = False
        self._running = False
        self._stopped = False
        self._dropped_points = 0
        self._started_at: Optional[datetime] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def intern(self, name, tags: Optional[Mapping] = None, prefix=None, extension=None) -> MetricIdentity:
        return self.cache.intern(name, tags, prefix, extension)

    def now(self) -> int:
        """Current timestamp in the configured unit."""
        if self.config.batching.time_in_seconds:
            return int(time.time())
        return int(time.time() * 1000)

    def record_measurement(
        self,
        name,
        tags: Optional[Mapping],
        timestamp: Optional[int],
        value,
        prefix=None,
        extension=None,
    ) -> None:
        """
        Record one sample.

        Args:
            name: Metric name
            tags: Metric tags, None for no tags
            timestamp: Sample time, now when None
            value: Numeric value (required)

        Raises:
            InvalidMetricError: Empty name or non-numeric value
        """
        identity = self.cache.intern(name, tags, prefix, extension)
        self.record(identity, timestamp, value)

    def record(self, identity: MetricIdentity, timestamp: Optional[int], value) -> None:
        """Record one sample for an already interned identity."""
        payload = identity.render(self.now() if timestamp is None else timestamp, value)
        batch = self.buffer.append(payload)
        if batch is not None:
            self._dispatch(batch)

    def tick(self) -> bool:
        """
        Ship the buffer if it has aged past the time threshold.

        Returns:
            True if a batch was dispatched
        """
        batch = self.buffer.flush_if_aged()
        if batch is None:
            return False
        self._dispatch(batch)
        return True

    def _dispatch(self, batch: Batch) -> None:
        if self._stopped:
            self._spill(batch, "service stopped")
            return
        loop = self._loop
        if loop is None or not self._running or loop.is_closed():
            with self._pending_lock:
                if len(self._pending) < self.config.batching.max_pending_batches:
                    self._pending.append(batch)
                    return
            self._spill(batch, "pending queue full")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn(batch)
        else:
            loop.call_soon_threadsafe(self._spawn, batch)

    def _spill(self, batch: Batch, reason: str) -> None:
        """Write a batch that cannot be shipped to offline storage, or drop it."""
        if self.persistence.enabled and self.persistence.offline(batch.payload):
            logger.warning(f"Persisted batch of {batch.count} datapoints offline ({reason})")
            return
        with self._pending_lock:
            self._dropped_points += batch.count
            dropped = self._dropped_points
        logger.error(f"Dropped batch of {batch.count} datapoints ({reason}), {dropped} dropped in total")

    def _spawn(self, batch: Batch) -> None:
        task = asyncio.get_running_loop().create_task(self._ship(batch))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _ship(self, batch: Batch) -> None:
        try:
            await self.poster.send(batch)
        except Exception as e:
            logger.error(f"Unexpected error shipping batch of {batch.count} datapoints: {e}")

    def _release_pending(self) -> None:
        with self._pending_lock:
            pending = list(self._pending)
            self._pending.clear()
        for batch in pending:
            self._spawn(batch)
        if pending:
            logger.info(f"Dispatched {len(pending)} batches recorded before start")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open offline storage."""
        if self._initialized:
            return
        loop = asyncio.get_running_loop()
        enabled = await loop.run_in_executor(None, self.persistence.open)
        self._initialized = True
        logger.info(
            f"Shipper initialized for {self.config.endpoint.url} "
            f"(offline={'enabled' if enabled else 'disabled'}, batch={self.config.batching.size}, "
            f"compression={self.config.http.compression})"
        )

    async def start(self) -> None:
        """Start probing, time-flushing and (if enabled) the heartbeat."""
        if self._running:
            logger.warning("Shipper service already running")
            return
        await self.initialize()
        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True
        self._stopped = False
        self._started_at = datetime.now(timezone.utc)

        await self.checker.start()
        self._tasks.append(asyncio.create_task(self._flush_loop()))
        if self.config.heartbeat.enabled:
            self._tasks.append(asyncio.create_task(self._heartbeat_loop()))
        self._release_pending()
        logger.info("Shipper service started")

    async def run(self) -> None:
        """Start, then wait until stop() is called or a signal arrives."""
        await self.start()
        self._register_signal_handlers()
        if self._shutdown_event is not None:
            await self._shutdown_event.wait()

    async def stop(self) -> None:
        """
        Stop periodic tasks, flush the buffer and release storage.

        Batches completed after stop() are written offline while storage is
        still open, and dropped (counted in status().dropped_points) after.
        """
        if not self._running:
            return
        logger.info("Stopping shipper service")
        self._running = False
        self._stopped = True

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.checker.stop()

        final = self.buffer.flush()
        if final is not None:
            await self._ship(final)
        with self._pending_lock:
            pending = list(self._pending)
            self._pending.clear()
        for batch in pending:
            await self._ship(batch)
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

        await self.poster.close()
        await asyncio.get_running_loop().run_in_executor(None, self.persistence.close)
        self._initialized = False
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        logger.info("Shipper service stopped")

    def _register_signal_handlers(self) -> None:
        """Register signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating shutdown")
            loop.create_task(self.stop())

        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Cannot install handler for signal {signum}: {e}")

    async def _flush_loop(self) -> None:
        interval = self.config.batching.time_trigger_ms / 2000
        while self._running:
            await asyncio.sleep(interval)
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Time flush failed: {e}")

    async def _heartbeat_loop(self) -> None:
        heartbeat = self.config.heartbeat
        identity = self.cache.intern(heartbeat.metric)
        while self._running:
            try:
                self.record(identity, None, heartbeat.value)
            except Exception as e:
                logger.error(f"Heartbeat failed: {e}")
            await asyncio.sleep(heartbeat.period)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> ServiceStatus:
        return ServiceStatus(
            started_at=self._started_at,
            running=self._running,
            pending_points=self.buffer.pending,
            dropped_points=self._dropped_points,
            cache=self.cache.stats(),
            shipper=self.poster.stats(),
            persistence=self.persistence.stats(),
        )


async def run_shipper_service(config: Optional[ShipperConfig] = None) -> None:
    """
    Run the shipper until interrupted.

    Args:
        config: Shipper configuration
    """
    service = ShipperService(config)

    try:
        await service.run()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Shipper service error: {e}")
    finally:
        await service.stop()
