"""Connectivity monitor: tracks whether providers are reachable at all.

The online flag is set explicitly (``set_online``) or from periodic HEAD
probes. Probe failures are debounced: the monitor only flips to offline once
probes have failed continuously for ``offline_threshold`` seconds. Listeners
are notified on transitions only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from wellness_ai.gateway.clock import Clock

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    def __init__(
        self,
        clock: Clock,
        probe_url: str = "",
        offline_threshold: float = 0.0,
        client: httpx.AsyncClient | None = None,
        online: bool = True,
    ):
        self._clock = clock
        self.probe_url = probe_url
        self.offline_threshold = offline_threshold
        self._online = online
        self._offline_since: float | None = None
        self._listeners: list[ConnectivityListener] = []
        self._client = client
        self._owns_client = False

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a transition listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set_online(self, online: bool) -> bool:
        """Set the flag immediately. Returns True if this was a transition."""
        self._offline_since = None
        if online == self._online:
            return False

        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")
        return True

    def report_probe(self, reachable: bool) -> None:
        """Feed one probe result through the offline debounce."""
        if reachable:
            self.set_online(True)
            return
        if not self._online:
            return

        now = self._clock.now()
        if self._offline_since is None:
            self._offline_since = now
        if now - self._offline_since >= self.offline_threshold:
            self.set_online(False)

    async def probe(self) -> bool:
        """HEAD the probe URL. Any HTTP response counts as reachable."""
        if not self.probe_url:
            return self._online
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=5.0)
            self._owns_client = True
        try:
            await self._client.head(self.probe_url)
            reachable = True
        except httpx.HTTPError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            reachable = False
        self.report_probe(reachable)
        return reachable

    async def run(self, interval: float) -> None:
        """Poll forever; meant to run as a background task and be cancelled."""
        while True:
            await self.probe()
            await self._clock.sleep(interval)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
