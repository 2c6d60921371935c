import logging

import pytest
import pytest_asyncio

from am_ingest.config import DatabaseSettings, IngestSettings
from am_ingest.db import build_engine, build_sessionmaker, create_schema
from am_ingest.store import SqlAlchemyStore


@pytest.fixture
def ingest_settings():
    return IngestSettings(sync_threshold=10_000, default_chunk_size=5000, progress_every=5)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"))
    await create_schema(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def store(engine):
    return SqlAlchemyStore(build_sessionmaker(engine))


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """Drop root handlers installed by setup_logging (e.g. via the app lifespan) after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers and getattr(handler, "_am_ingest", False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
