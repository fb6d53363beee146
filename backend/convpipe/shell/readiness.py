"""Worker readiness strategies for the shell supervisor.

A strategy is awaited after the worker is spawned; it returns once the
worker can serve requests. The supervisor races it against worker exit and
an overall readiness timeout.

- HealthProbe: poll the worker's ``/health`` endpoint until it answers OK
- OutputMarker: wait for a line containing a marker on the worker's streams
- StartupDelay: sleep a fixed delay and assume readiness (legacy heuristic)
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

if TYPE_CHECKING:
    from convpipe.shell.supervisor import WorkerHandle

logger = logging.getLogger(__name__)


class WorkerNotReady(Exception):
    """Health endpoint reachable but not reporting OK yet."""


class Readiness(Protocol):
    async def wait(self, handle: "WorkerHandle") -> None: ...


class StartupDelay:
    """Assume the worker is ready after a fixed delay."""

    def __init__(self, seconds: float = 2.0):
        self.seconds = seconds

    async def wait(self, handle: "WorkerHandle") -> None:
        await asyncio.sleep(self.seconds)

    def __repr__(self) -> str:
        return f"StartupDelay({self.seconds}s)"


class OutputMarker:
    """Ready once the worker prints a line containing ``marker``."""

    def __init__(self, marker: str):
        self.marker = marker

    async def wait(self, handle: "WorkerHandle") -> None:
        await handle.wait_for_line(lambda line: self.marker in line)

    def __repr__(self) -> str:
        return f"OutputMarker({self.marker!r})"


class HealthProbe:
    """Ready once ``GET url`` answers 200 with ``status == "OK"``.

    Connection errors and non-OK answers are retried at a fixed interval
    until ``timeout`` elapses.
    """

    def __init__(self, url: str, *, interval: float = 0.25, timeout: float = 30.0):
        self.url = url
        self.interval = interval
        self.timeout = timeout

    async def _probe(self, client: httpx.AsyncClient) -> None:
        response = await client.get(self.url)
        if response.status_code != 200 or response.json().get("status") != "OK":
            raise WorkerNotReady(f"{self.url} answered {response.status_code}")

    async def wait(self, handle: "WorkerHandle") -> None:
        async with httpx.AsyncClient(timeout=httpx.Timeout(2.0)) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.timeout),
                wait=wait_fixed(self.interval),
                retry=retry_if_exception_type((httpx.TransportError, WorkerNotReady)),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    await self._probe(client)
        logger.info(f"Worker answered health probe at {self.url}")

    def __repr__(self) -> str:
        return f"HealthProbe({self.url})"
