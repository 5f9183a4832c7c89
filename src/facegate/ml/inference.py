"""Bounded execution of blocking pipeline calls.

Architecture:
    route handler -> asyncio.Semaphore(max_concurrent) -> ThreadPoolExecutor -> FacePipeline

Detection and embedding are CPU-bound numpy/ONNX work, so they never run on
the event loop. A request that cannot get a worker within ``queue_timeout``
seconds fails with ``TimeoutError`` (mapped to 503 by the API layer).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from facegate.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time counters of an ``InferencePool``."""

    active: int
    queued: int
    completed: int
    rejected: int


class InferencePool:
    """Runs synchronous pipeline calls on a fixed set of worker threads."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.queue_timeout
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="face-pipeline",
        )
        self._lock = threading.Lock()
        self._active = 0
        self._queued = 0
        self._completed = 0
        self._rejected = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        await self._acquire()
        self._bump(active=1)
        try:
            return await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
        finally:
            self._slots.release()
            self._bump(active=-1, completed=1)

    async def _acquire(self) -> None:
        self._bump(queued=1)
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._timeout)
        except TimeoutError:
            self._bump(rejected=1)
            logger.warning("No pipeline worker free after %.1fs (%d waiting)", self._timeout, self.queue_depth)
            raise
        finally:
            self._bump(queued=-1)

    def _bump(self, active: int = 0, queued: int = 0, completed: int = 0, rejected: int = 0) -> None:
        with self._lock:
            self._active += active
            self._queued += queued
            self._completed += completed
            self._rejected += rejected

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(self._active, self._queued, self._completed, self._rejected)

    @property
    def active_count(self) -> int:
        """Number of pipeline calls currently running."""
        return self.stats().active

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a worker."""
        return self.stats().queued

    def shutdown(self) -> None:
        """Wait for running calls and stop the worker threads."""
        self._executor.shutdown(wait=True)
