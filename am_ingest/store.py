"""Storage interface for assets, import jobs and import chunks.

Pipelines depend only on ``Store``; ``SqlAlchemyStore`` is the single
implementation and works with any async SQLAlchemy URL.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import Asset, ImportChunk, ImportJob, JobStatus, utcnow
from .pipelines.records import AssetPayload

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
IN_CLAUSE_BATCH = 500


class ChunkTransactionError(Exception):
    """Raised when a whole-chunk transaction aborts and was rolled back."""
    pass


class RecordUpsertError(Exception):
    """Raised when a single asset record cannot be written."""
    pass


def _batched(items: Sequence[str], size: int = IN_CLAUSE_BATCH) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _apply_payload(asset: Asset | None, payload: AssetPayload) -> Asset:
    """Last-write-wins update; a cached identifier survives a payload without one."""
    now = utcnow()
    if asset is None:
        return Asset(
            id=payload.id,
            predicted_ids=list(payload.predicted_ids),
            scores=list(payload.scores),
            identifier=payload.identifier,
            updated_at=now,
        )
    asset.predicted_ids = list(payload.predicted_ids)
    asset.scores = list(payload.scores)
    if payload.identifier:
        asset.identifier = payload.identifier
    asset.updated_at = now
    return asset


def _missing_identifier():
    return or_(Asset.identifier.is_(None), Asset.identifier == "")


class Store(ABC):
    """CRUD, range queries and transactions over the ingestion relations."""

    # Assets

    @abstractmethod
    async def existing_asset_ids(self, ids: Sequence[str]) -> set[str]: ...

    @abstractmethod
    async def upsert_assets(
        self,
        payloads: Sequence[AssetPayload],
        *,
        on_staged: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Apply every payload in one transaction or none of them.

        ``on_staged`` is awaited once per payload as it joins the transaction.

        Raises:
            ChunkTransactionError: If the transaction aborted
        """

    @abstractmethod
    async def upsert_asset(self, payload: AssetPayload) -> None:
        """Apply one payload in its own transaction.

        Raises:
            RecordUpsertError: If this record cannot be written
        """

    @abstractmethod
    async def clear_assets(self) -> int: ...

    @abstractmethod
    async def get_asset(self, asset_id: str) -> Asset | None: ...

    @abstractmethod
    async def page_asset_ids(self, offset: int, limit: int) -> tuple[int, list[str]]: ...

    @abstractmethod
    async def get_identifiers(self, ids: Sequence[str]) -> dict[str, str]:
        """Cached identifiers for the given ids (unresolved ids are absent)."""

    @abstractmethod
    async def set_identifiers(self, mapping: dict[str, str]) -> int:
        """Persist resolved identifiers onto existing assets; returns rows updated."""

    @abstractmethod
    async def touch_assets(self, ids: Sequence[str]) -> None: ...

    @abstractmethod
    async def has_any_identifier(self) -> bool: ...

    @abstractmethod
    async def clear_identifiers(self) -> int: ...

    @abstractmethod
    async def count_missing_identifiers(self) -> int: ...

    @abstractmethod
    async def list_missing_identifiers(self, limit: int) -> list[str]:
        """Ids without an identifier, least recently updated first."""

    # Jobs and chunks

    @abstractmethod
    async def create_job(
        self,
        job_id: str,
        *,
        total_records: int,
        options: dict[str, Any],
        chunks: Sequence[str],
    ) -> ImportJob: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> ImportJob | None: ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> None: ...

    @abstractmethod
    async def list_recent_jobs(self, limit: int) -> list[ImportJob]: ...

    @abstractmethod
    async def find_active_job(self) -> ImportJob | None: ...

    @abstractmethod
    async def fail_stale_jobs(self, updated_before: datetime, message: str) -> list[str]:
        """Fail pending or processing jobs not updated since ``updated_before``; returns their ids."""

    @abstractmethod
    async def load_chunk(self, job_id: str, chunk_index: int) -> str | None: ...

    @abstractmethod
    async def finish_chunk(self, job_id: str, chunk_index: int, **job_fields: Any) -> None:
        """Delete a consumed chunk and persist the job snapshot atomically."""


class SqlAlchemyStore(Store):
    """``Store`` backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def existing_asset_ids(self, ids: Sequence[str]) -> set[str]:
        found: set[str] = set()
        unique = list(dict.fromkeys(ids))
        async with self._sessions() as session:
            for batch in _batched(unique):
                result = await session.execute(select(Asset.id).where(Asset.id.in_(batch)))
                found.update(result.scalars().all())
        return found

    async def upsert_assets(
        self,
        payloads: Sequence[AssetPayload],
        *,
        on_staged: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        if not payloads:
            return
        ids = list(dict.fromkeys(p.id for p in payloads))
        try:
            async with self._sessions() as session:
                async with session.begin():
                    loaded: dict[str, Asset] = {}
                    for batch in _batched(ids):
                        result = await session.execute(select(Asset).where(Asset.id.in_(batch)))
                        loaded.update({a.id: a for a in result.scalars().all()})
                    for payload in payloads:
                        existing = loaded.get(payload.id)
                        asset = _apply_payload(existing, payload)
                        if existing is None:
                            session.add(asset)
                            loaded[payload.id] = asset
                        if on_staged is not None:
                            await on_staged()
        except SQLAlchemyError as e:
            raise ChunkTransactionError(f"Chunk transaction aborted: {e}") from e

    async def upsert_asset(self, payload: AssetPayload) -> None:
        try:
            async with self._sessions() as session:
                async with session.begin():
                    existing = await session.get(Asset, payload.id)
                    asset = _apply_payload(existing, payload)
                    if existing is None:
                        session.add(asset)
        except OperationalError:
            raise
        except SQLAlchemyError as e:
            raise RecordUpsertError(str(e)) from e

    async def clear_assets(self) -> int:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(delete(Asset))
        return result.rowcount or 0

    async def get_asset(self, asset_id: str) -> Asset | None:
        async with self._sessions() as session:
            return await session.get(Asset, asset_id)

    async def page_asset_ids(self, offset: int, limit: int) -> tuple[int, list[str]]:
        async with self._sessions() as session:
            total = await session.scalar(select(func.count()).select_from(Asset))
            result = await session.execute(
                select(Asset.id).order_by(func.length(Asset.id), Asset.id).offset(offset).limit(limit)
            )
            return int(total or 0), list(result.scalars().all())

    async def get_identifiers(self, ids: Sequence[str]) -> dict[str, str]:
        cached: dict[str, str] = {}
        unique = list(dict.fromkeys(ids))
        async with self._sessions() as session:
            for batch in _batched(unique):
                result = await session.execute(
                    select(Asset.id, Asset.identifier).where(
                        Asset.id.in_(batch),
                        Asset.identifier.is_not(None),
                        Asset.identifier != "",
                    )
                )
                cached.update({row.id: row.identifier for row in result})
        return cached

    async def set_identifiers(self, mapping: dict[str, str]) -> int:
        if not mapping:
            return 0
        updated = 0
        now = utcnow()
        async with self._sessions() as session:
            async with session.begin():
                for asset_id, identifier in mapping.items():
                    result = await session.execute(
                        update(Asset)
                        .where(Asset.id == asset_id)
                        .values(identifier=identifier, updated_at=now)
                    )
                    updated += result.rowcount or 0
        return updated

    async def touch_assets(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        now = utcnow()
        async with self._sessions() as session:
            async with session.begin():
                for batch in _batched(list(ids)):
                    await session.execute(update(Asset).where(Asset.id.in_(batch)).values(updated_at=now))

    async def has_any_identifier(self) -> bool:
        async with self._sessions() as session:
            found = await session.scalar(
                select(Asset.id).where(Asset.identifier.is_not(None), Asset.identifier != "").limit(1)
            )
        return found is not None

    async def clear_identifiers(self) -> int:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(Asset).where(Asset.identifier.is_not(None)).values(identifier=None)
                )
        return result.rowcount or 0

    async def count_missing_identifiers(self) -> int:
        async with self._sessions() as session:
            total = await session.scalar(select(func.count()).select_from(Asset).where(_missing_identifier()))
        return int(total or 0)

    async def list_missing_identifiers(self, limit: int) -> list[str]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Asset.id)
                .where(_missing_identifier())
                .order_by(Asset.updated_at.asc(), Asset.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def create_job(
        self,
        job_id: str,
        *,
        total_records: int,
        options: dict[str, Any],
        chunks: Sequence[str],
    ) -> ImportJob:
        job = ImportJob(
            id=job_id,
            status=JobStatus.PENDING.value,
            total_records=total_records,
            total_chunks=len(chunks),
            options=dict(options),
            error_details=[],
        )
        async with self._sessions() as session:
            async with session.begin():
                session.add(job)
                await session.flush()
                session.add_all(
                    ImportChunk(job_id=job_id, chunk_index=index, payload=payload)
                    for index, payload in enumerate(chunks)
                )
        return job

    async def get_job(self, job_id: str) -> ImportJob | None:
        async with self._sessions() as session:
            return await session.get(ImportJob, job_id)

    async def update_job(self, job_id: str, **fields: Any) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    update(ImportJob).where(ImportJob.id == job_id).values(**{"updated_at": utcnow(), **fields})
                )

    async def list_recent_jobs(self, limit: int) -> list[ImportJob]:
        async with self._sessions() as session:
            result = await session.execute(
                select(ImportJob).order_by(ImportJob.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def find_active_job(self) -> ImportJob | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(ImportJob)
                .where(ImportJob.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]))
                .order_by(ImportJob.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def fail_stale_jobs(self, updated_before: datetime, message: str) -> list[str]:
        active = [JobStatus.PENDING.value, JobStatus.PROCESSING.value]
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    select(ImportJob.id).where(ImportJob.status.in_(active), ImportJob.updated_at < updated_before)
                )
                stale = list(result.scalars().all())
                if stale:
                    await session.execute(
                        update(ImportJob)
                        .where(ImportJob.id.in_(stale), ImportJob.status.in_(active))
                        .values(status=JobStatus.FAILED.value, error_message=message, updated_at=utcnow())
                    )
                    await session.execute(delete(ImportChunk).where(ImportChunk.job_id.in_(stale)))
        return stale

    async def load_chunk(self, job_id: str, chunk_index: int) -> str | None:
        async with self._sessions() as session:
            chunk = await session.get(ImportChunk, (job_id, chunk_index))
            return chunk.payload if chunk else None

    async def finish_chunk(self, job_id: str, chunk_index: int, **job_fields: Any) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    delete(ImportChunk).where(
                        ImportChunk.job_id == job_id,
                        ImportChunk.chunk_index == chunk_index,
                    )
                )
                await session.execute(
                    update(ImportJob).where(ImportJob.id == job_id).values(updated_at=utcnow(), **job_fields)
                )
