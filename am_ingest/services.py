"""Long-lived service objects shared by the API for one process."""
from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings
from .db import build_engine, build_sessionmaker
from .pipelines.backfill import BackfillScheduler
from .runner import BackgroundRunner
from .store import SqlAlchemyStore, Store
from gdrive.client import DriveClient
from gdrive.resolver import IdentifierResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine | None
    store: Store
    drive: DriveClient
    resolver: IdentifierResolver
    runner: BackgroundRunner
    backfill: BackfillScheduler

    async def aclose(self) -> None:
        await self.backfill.aclose()
        await self.runner.shutdown()
        await self.drive.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_services(
    settings: Settings,
    *,
    drive_transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    """Wire the store, Drive client, resolver, runner and scheduler together."""
    engine = build_engine(settings.db)
    store = SqlAlchemyStore(build_sessionmaker(engine))
    drive = DriveClient(settings.drive, transport=drive_transport)
    resolver = IdentifierResolver(store, drive, settings.drive)
    if not settings.drive.enabled:
        logger.warning("DRIVE_FOLDER_ID is not set; identifiers will not be resolved remotely")
    return Services(
        settings=settings,
        engine=engine,
        store=store,
        drive=drive,
        resolver=resolver,
        runner=BackgroundRunner(),
        backfill=BackfillScheduler(store, resolver, settings.backfill),
    )
