"""
Network availability detection.

A terminal is considered online when the remote store is configured and
its host resolves. Applications that receive OS connectivity events can
override the probe with ``set_online``.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from urllib.parse import urlparse

from .config import SyncConfig

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Decides whether remote calls are worth attempting."""

    def __init__(self, config: SyncConfig) -> None:
        self.config = config
        self._override: bool | None = None
        self._last_state: bool | None = None

    @property
    def last_state(self) -> bool | None:
        """Result of the most recent check (None before the first one)."""
        return self._last_state

    @property
    def probe_host(self) -> str | None:
        if self.config.connectivity_host:
            return self.config.connectivity_host
        if self.config.cosmos_endpoint:
            return urlparse(self.config.cosmos_endpoint).hostname
        return None

    def set_online(self, online: bool | None) -> None:
        """Pin the connectivity state, or pass None to go back to probing."""
        self._override = online

    async def is_online(self) -> bool:
        """Check if remote calls can be attempted.

        Returns:
            True if online, False otherwise
        """
        if not self.config.remote_configured:
            online = False
        elif self._override is not None:
            online = self._override
        else:
            online = await self._probe()

        if self._last_state is not None and online != self._last_state:
            logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        self._last_state = online
        return online

    async def _probe(self) -> bool:
        host = self.probe_host
        if not host:
            return True

        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.getaddrinfo(host, 443, type=socket.SOCK_STREAM),
                timeout=self.config.connectivity_timeout,
            )
            return True
        except (OSError, TimeoutError):
            return False
