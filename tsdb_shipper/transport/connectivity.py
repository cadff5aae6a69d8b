"""
Connectivity state machine for the remote endpoint.

A periodic probe hits the endpoint's version path. Probe outcomes (and live
send failures reported through mark_down) move a single `down` flag with a
compare-and-set, and each real transition is announced to the registered
listeners exactly once.
"""

import asyncio
import logging
import threading
from typing import List, Optional

import httpx

from tsdb_shipper.logging_config import log_connectivity_event
from tsdb_shipper.protocols import ConnectivityListener
from tsdb_shipper.schemas import ConnectivityEvent

logger = logging.getLogger(__name__)


class ConnectivityChecker:
    """Tracks whether the endpoint is reachable and notifies listeners on change."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient],
        url: str,
        check_period: float = 5,
        connect_timeout: int = 5000,
        request_timeout: int = 750,
    ):
        """
        Initialize connectivity checker. Starts Down.

        Args:
            client: Shared HTTP client used for probes
            url: Full probe URL (endpoint base + check path)
            check_period: Seconds between probes
            connect_timeout: Probe connect timeout (ms)
            request_timeout: Probe request timeout (ms)
        """
        self.client = client
        self.url = url
        self.check_period = check_period
        self.timeout = httpx.Timeout(request_timeout / 1000, connect=connect_timeout / 1000)
        self._listeners: List[ConnectivityListener] = []
        self._state_lock = threading.Lock()
        self._down = True
        self._ever_connected = False
        self._good_checks = 0
        self._failed_checks = 0
        self._consecutive_failures = 0
        self._last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_down(self) -> bool:
        return self._down

    @property
    def is_connected(self) -> bool:
        return not self._down

    @property
    def ever_connected(self) -> bool:
        return self._ever_connected

    @property
    def good_checks(self) -> int:
        return self._good_checks

    @property
    def failed_checks(self) -> int:
        return self._failed_checks

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def add_listener(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def process_check_result(
        self, passed: bool, error: Optional[BaseException] = None
    ) -> Optional[ConnectivityEvent]:
        """
        Apply one probe (or send) outcome to the state machine.

        Args:
            passed: Whether the endpoint answered successfully
            error: The failure, when not passed

        Returns:
            The event fired by this outcome, or None if the state did not change
        """
        event: Optional[ConnectivityEvent] = None
        with self._state_lock:
            if passed:
                self._good_checks += 1
                self._consecutive_failures = 0
                self._last_error = None
                if self._down:
                    self._down = False
                    if self._ever_connected:
                        event = ConnectivityEvent.RECONNECTED
                    else:
                        self._ever_connected = True
                        event = ConnectivityEvent.CONNECTED
            else:
                self._failed_checks += 1
                self._consecutive_failures += 1
                self._last_error = str(error) if error is not None else None
                if not self._down:
                    self._down = True
                    event = ConnectivityEvent.DISCONNECTED

        if event is not None:
            log_connectivity_event(
                event.value,
                self.url,
                error if event == ConnectivityEvent.DISCONNECTED else None,
                {"good": self._good_checks, "failed": self._failed_checks},
            )
            self._fire(event, error)
        return event

    def mark_down(self, error: Optional[BaseException] = None) -> Optional[ConnectivityEvent]:
        """Report a failed live send, forcing the Down transition if currently Up."""
        return self.process_check_result(False, error)

    def _fire(self, event: ConnectivityEvent, error: Optional[BaseException]) -> None:
        for listener in list(self._listeners):
            try:
                if event == ConnectivityEvent.CONNECTED:
                    result = listener.on_connected()
                elif event == ConnectivityEvent.RECONNECTED:
                    result = listener.on_reconnected()
                else:
                    result = listener.on_disconnected(error)
                if asyncio.iscoroutine(result):
                    self._schedule(result)
            except Exception as e:
                logger.error(f"Connectivity listener {listener!r} failed on {event.value}: {e}")

    @staticmethod
    def _schedule(coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("Coroutine listener dropped: no running event loop")
            return
        loop.create_task(coro)

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def probe(self) -> bool:
        """
        Run one probe against the endpoint and apply its result.

        Returns:
            True if the endpoint answered 2xx

        Promises:
        - Never raises for transport errors
        """
        if self.client is None:
            raise RuntimeError("ConnectivityChecker has no HTTP client")
        try:
            response = await self.client.get(self.url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Probe of {self.url} failed: {type(e).__name__}: {e}")
            self.process_check_result(False, e)
            return False

        passed = response.is_success
        if passed:
            self.process_check_result(True)
        else:
            error = httpx.HTTPStatusError(
                f"Probe returned HTTP {response.status_code}", request=response.request, response=response
            )
            logger.debug(f"Probe of {self.url} returned HTTP {response.status_code}")
            self.process_check_result(False, error)
        return passed

    async def start(self) -> None:
        """Start the periodic probe task."""
        if self._running:
            logger.warning("Connectivity checker already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._probe_loop())
        logger.info(f"Connectivity checker started for {self.url} every {self.check_period}s")

    async def stop(self) -> None:
        """Cancel the periodic probe task."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Connectivity checker stopped")

    async def _probe_loop(self) -> None:
        while self._running:
            try:
                await self.probe()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Connectivity probe error: {e}")
            await asyncio.sleep(self.check_period)
