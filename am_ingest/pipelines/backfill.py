"""Periodic backfill of Drive identifiers for assets imported without one.

One scheduler instance is built at startup and shared by injection. It runs
a cycle immediately on start and then every ``interval_seconds``. Stopping
takes effect at the next cycle boundary; a cycle in progress is finished.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass

from am_ingest.config import BackfillSettings
from am_ingest.store import Store
from gdrive.resolver import IdentifierResolver

logger = logging.getLogger(__name__)


@dataclass
class CycleSummary:
    selected: int = 0
    resolved: int = 0
    unresolved: int = 0
    skipped: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


class BackfillScheduler:
    """Owns the backfill loop and its start/stop lifecycle."""

    def __init__(self, store: Store, resolver: IdentifierResolver, config: BackfillSettings):
        self.store = store
        self.resolver = resolver
        self.batch_size = config.batch_size
        self.interval_seconds = config.interval_seconds
        self._task: asyncio.Task | None = None
        self._stop_requested: asyncio.Event | None = None
        self._cycle_running = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, batch_size: int | None = None) -> bool:
        """Start the loop; returns False (after applying ``batch_size``) if already running.

        A loop that was asked to stop but is still finishing its cycle is
        re-armed instead, and that counts as a start.
        """
        if batch_size:
            self.batch_size = batch_size
        if self.is_running:
            if self._stop_requested is not None and self._stop_requested.is_set():
                self._stop_requested.clear()
                logger.info("Backfill stop cancelled; loop continues")
                return True
            return False
        self._stop_requested = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_requested), name="identifier-backfill")
        logger.info(f"Backfill started: batch_size={self.batch_size} interval={self.interval_seconds}s")
        return True

    def stop(self) -> bool:
        """Ask the loop to exit at its next cycle boundary."""
        if not self.is_running or self._stop_requested is None:
            return False
        self._stop_requested.set()
        logger.info("Backfill stop requested")
        return True

    async def aclose(self, timeout: float = 5.0) -> None:
        """Stop and wait for the loop, cancelling it after ``timeout`` seconds."""
        task = self._task
        if task is None or task.done():
            return
        self.stop()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _loop(self, stop_requested: asyncio.Event) -> None:
        try:
            while not stop_requested.is_set():
                try:
                    await self.run_cycle()
                except Exception as e:
                    logger.error(f"Backfill cycle failed: {e}", exc_info=True)
                try:
                    await asyncio.wait_for(stop_requested.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Backfill stopped")

    async def run_cycle(self) -> CycleSummary:
        """Resolve up to ``batch_size`` assets that have no identifier yet."""
        if self._cycle_running:
            logger.debug("Backfill cycle already running; skipping")
            return CycleSummary(skipped=True)

        self._cycle_running = True
        try:
            ids = await self.store.list_missing_identifiers(self.batch_size)
            if not ids:
                logger.debug("Backfill: no assets missing identifiers")
                return CycleSummary()

            resolved = await self.resolver.resolve_batch(ids)
            unresolved = [asset_id for asset_id, identifier in resolved.items() if not identifier]
            # Rotate unresolved ids to the back of the queue
            await self.store.touch_assets(unresolved)

            summary = CycleSummary(
                selected=len(ids),
                resolved=len(ids) - len(unresolved),
                unresolved=len(unresolved),
            )
            logger.info(
                f"Backfill cycle: selected={summary.selected} resolved={summary.resolved} "
                f"unresolved={summary.unresolved}"
            )
            return summary
        finally:
            self._cycle_running = False
