"""
Background reaper for expired deletion manifests.

Runs as a cancellable periodic asyncio task. Each sweep purges expired
manifests one at a time through the service, so every purge gets its own
transaction and advisory locks and never blocks unrelated foreground calls.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Set

from .models import ReapReport
from .services import SafeDeleteService

logger = logging.getLogger(__name__)


class ManifestReaper:
    """
    Periodically purges manifests whose retention window has elapsed.

    Example:
        >>> async with ManifestReaper(service, interval=60):
        ...     await serve_forever()
    """

    def __init__(
        self,
        service: SafeDeleteService,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        """
        Initialize the reaper.

        Args:
            service: Safe delete service used to purge manifests
            interval: Seconds between sweeps, defaults to the configured value
            batch_size: Manifests per sweep, defaults to the configured value
        """
        self.service = service
        self.interval = interval or service.config.reaper_interval_seconds
        self.batch_size = batch_size or service.config.reaper_batch_size
        self.last_report: Optional[ReapReport] = None

        self._in_flight: Set[str] = set()
        self._task: Optional["asyncio.Task[None]"] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    async def run_once(self, now: Optional[datetime] = None) -> ReapReport:
        """
        Run one sweep.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            Report of purged, skipped and failed manifests
        """
        report = await self.service.purge_expired(
            now=now, limit=self.batch_size, in_flight=self._in_flight
        )
        self.last_report = report
        return report

    def start(self) -> None:
        """Start the periodic task on the running event loop."""
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="safe-delete-reaper")
        logger.info("Manifest reaper started (interval %.1fs)", self.interval)

    async def stop(self) -> None:
        """Stop the periodic task, letting an ongoing purge finish."""
        if self._task is None:
            return
        assert self._stopping is not None
        self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None
            logger.info("Manifest reaper stopped")

    async def _loop(self) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Manifest reaper sweep failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    async def __aenter__(self) -> "ManifestReaper":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
