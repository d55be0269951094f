"""Connectivity tracking used as a pre-flight check for remote writes."""

import asyncio
import logging
import time
from typing import Callable

import requests

from dermasync.errors import OfflineError

logger = logging.getLogger(__name__)

DEFAULT_PROBE_URL = "https://clients3.google.com/generate_204"


class ReachabilityMonitor:
    """
    Tracks whether the network path is usable.

    State is pushed through `set_connected` (the path update handler) and
    refreshed by a background probe loop started with `start()`. A true
    `is_connected` is no guarantee the next request succeeds; writes are
    still bounded by the timeout wrapper.
    """

    def __init__(
        self,
        probe_url: str = DEFAULT_PROBE_URL,
        interval: float = 5.0,
        probe_timeout: float = 3.0,
        session: requests.Session | None = None,
    ):
        self.probe_url = probe_url
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.session = session or requests.Session()
        self._connected = True
        self._callbacks: list[Callable[[bool], None]] = []
        self._task: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_change(self, callback: Callable[[bool], None]) -> None:
        self._callbacks.append(callback)

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Network is %s", "reachable" if connected else "unreachable")
        for callback in list(self._callbacks):
            callback(connected)

    def ensure_connected(self) -> None:
        if not self._connected:
            raise OfflineError()

    async def wait_until_online(self, timeout: float = 5.0, poll_interval: float = 0.5) -> None:
        """Poll until connected, raising OfflineError after `timeout` seconds."""
        deadline = time.monotonic() + timeout
        while not self._connected:
            if time.monotonic() >= deadline:
                raise OfflineError()
            await asyncio.sleep(poll_interval)

    def probe(self) -> bool:
        """Blocking reachability probe."""
        try:
            response = self.session.head(
                self.probe_url, timeout=self.probe_timeout, allow_redirects=False
            )
        except requests.exceptions.Timeout:
            logger.debug("Reachability probe timed out")
            return False
        except requests.exceptions.RequestException as e:
            logger.debug("Reachability probe failed: %s", e)
            return False
        return response.status_code < 500

    async def _probe_loop(self) -> None:
        while True:
            connected = await asyncio.to_thread(self.probe)
            self.set_connected(connected)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._probe_loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
