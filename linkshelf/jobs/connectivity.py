"""Network availability gates used to hold enrichment jobs while offline."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class NetworkGate(Protocol):
    def is_online(self) -> bool: ...

    async def wait_online(self) -> None: ...


class StaticNetworkGate:
    """Gate whose state is flipped explicitly; starts online unless told otherwise."""

    def __init__(self, online: bool = True) -> None:
        self._online = asyncio.Event()
        if online:
            self._online.set()

    def is_online(self) -> bool:
        return self._online.is_set()

    async def wait_online(self) -> None:
        await self._online.wait()

    def set_online(self) -> None:
        if not self._online.is_set():
            logger.info("network gate opened")
        self._online.set()

    def set_offline(self) -> None:
        if self._online.is_set():
            logger.info("network gate closed")
        self._online.clear()


class ProbingNetworkGate(StaticNetworkGate):
    """Gate driven by periodic HEAD requests against a probe URL."""

    def __init__(
        self,
        probe_url: str,
        *,
        interval_seconds: float = 15.0,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(online=False)
        self.probe_url = probe_url
        self.interval_seconds = max(0.1, interval_seconds)
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._task: asyncio.Task[None] | None = None

    async def probe(self) -> bool:
        try:
            if self._client is not None:
                await self._client.head(self.probe_url)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=False) as client:
                    await client.head(self.probe_url)
        except httpx.HTTPError as exc:
            logger.debug("connectivity probe failed url=%s error=%s", self.probe_url, exc)
            self.set_offline()
            return False
        self.set_online()
        return True

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="linkshelf-connectivity-probe")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await self.probe()
            await asyncio.sleep(self.interval_seconds)
