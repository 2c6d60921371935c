"""Background chunk processor for import jobs.

A job's chunks are consumed in order. Each chunk is first written in a
single transaction; if that transaction aborts, the chunk is re-applied one
record at a time so a single bad row only costs itself. The guarantee is
therefore record-level durability, not all-or-nothing per chunk.

Counters are written back to the job row every few records so status polls
see near-real-time progress. ``processed`` (and so ``progress``) is only ever
published when it grows. ``imported`` only counts committed rows, so while a
chunk transaction is open ``processed`` runs ahead of
``imported + skipped + errors``; the two agree at every chunk boundary.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Sequence

from am_ingest.config import IngestSettings
from am_ingest.models import JobStatus, utcnow
from am_ingest.pipelines.records import AssetPayload, ImportCounters, RecordValidationError, normalize_record
from am_ingest.store import ChunkTransactionError, RecordUpsertError, Store

logger = logging.getLogger(__name__)


class FatalJobError(Exception):
    """Raised when a job cannot continue (missing chunk, corrupt payload)."""
    pass


class ProgressPublisher:
    """Writes counters to the job row at a bounded rate.

    The base class publishes nothing and serves the inline import path.
    """

    def __init__(self, counters: ImportCounters, every: int = 5):
        self.counters = counters
        self.every = max(1, every)
        self._published = counters.processed
        self._since_last = 0

    async def tick(self) -> None:
        self._since_last += 1
        if self._since_last >= self.every:
            await self.flush()

    async def flush(self) -> None:
        self._since_last = 0
        if self.counters.processed <= self._published:
            return
        await self._write(self.fields())
        self._published = self.counters.processed

    def mark_published(self) -> None:
        self._published = max(self._published, self.counters.processed)
        self._since_last = 0

    def fields(self) -> dict[str, Any]:
        """Current counters, never reporting less than what was published."""
        fields = self.counters.snapshot()
        if fields["processed"] < self._published:
            fields["processed"] = self._published
            total = self.counters.total
            fields["progress"] = round(self._published * 100.0 / total, 2) if total else 100.0
        return fields

    async def _write(self, fields: dict[str, Any]) -> None:
        return None


class JobProgressPublisher(ProgressPublisher):
    def __init__(self, store: Store, job_id: str, counters: ImportCounters, every: int = 5):
        super().__init__(counters, every)
        self.store = store
        self.job_id = job_id

    async def _write(self, fields: dict[str, Any]) -> None:
        await self.store.update_job(self.job_id, **fields)


async def apply_records(
    store: Store,
    raw_records: Sequence[dict[str, Any]],
    *,
    offset: int,
    counters: ImportCounters,
    skip_duplicates: bool,
    publisher: ProgressPublisher,
) -> None:
    """Validate, de-duplicate and upsert one slice of raw records.

    ``offset`` is the position of the slice's first record in the whole
    import; rows in error details are 1-based positions in the import.
    """
    staged: list[tuple[int, AssetPayload]] = []
    for i, raw in enumerate(raw_records):
        row = offset + i + 1
        try:
            staged.append((row, normalize_record(raw)))
        except RecordValidationError as e:
            counters.skipped += 1
            counters.processed += 1
            counters.record_issue("validation", row, str(e))
            await publisher.tick()

    if skip_duplicates and staged:
        seen = await store.existing_asset_ids([p.id for _, p in staged])
        accepted: list[tuple[int, AssetPayload]] = []
        for row, payload in staged:
            if payload.id in seen:
                counters.skipped += 1
                counters.processed += 1
                await publisher.tick()
                continue
            seen.add(payload.id)
            accepted.append((row, payload))
        staged = accepted

    if not staged:
        return

    before = counters.processed

    # Staged rows count as processed; they are imported only once committed
    async def on_staged() -> None:
        counters.processed += 1
        await publisher.tick()

    try:
        await store.upsert_assets([p for _, p in staged], on_staged=on_staged)
    except ChunkTransactionError as e:
        counters.processed = before
        logger.warning(f"Chunk transaction failed, applying {len(staged)} records individually: {e}")
    else:
        counters.imported += len(staged)
        return

    for row, payload in staged:
        try:
            await store.upsert_asset(payload)
            counters.imported += 1
        except RecordUpsertError as e:
            counters.errors += 1
            counters.record_issue("error", row, str(e), asset_id=payload.id)
        counters.processed += 1
        await publisher.tick()


async def process_job(store: Store, job_id: str, ingest: IngestSettings) -> None:
    """Consume every chunk of a pending job and finalize its status.

    Per-record problems are counted and itemized; anything else marks the
    job ``failed`` and stops consumption. There is no automatic retry.
    """
    job = await store.get_job(job_id)
    if job is None:
        logger.error(f"Import job {job_id} not found; nothing to process")
        return
    if job.status != JobStatus.PENDING.value:
        if JobStatus(job.status).is_terminal:
            logger.warning(f"Import job {job_id} already finished as {job.status}; not processing again")
        else:
            logger.warning(f"Import job {job_id} is already being processed")
        return

    options = job.options or {}
    counters = ImportCounters(total=job.total_records, max_error_details=ingest.max_error_details)
    publisher = JobProgressPublisher(store, job_id, counters, every=ingest.progress_every)

    try:
        await store.update_job(job_id, status=JobStatus.PROCESSING.value)

        if options.get("clearExisting"):
            logger.warning(f"Import job {job_id}: clearing all existing assets before import")
            removed = await store.clear_assets()
            logger.warning(f"Import job {job_id}: removed {removed} assets")

        offset = 0
        for index in range(job.total_chunks):
            payload = await store.load_chunk(job_id, index)
            if payload is None:
                raise FatalJobError(f"Chunk {index} of job {job_id} is missing")
            try:
                records = json.loads(payload)
            except ValueError as e:
                raise FatalJobError(f"Chunk {index} of job {job_id} is corrupt: {e}") from e

            await apply_records(
                store,
                records,
                offset=offset,
                counters=counters,
                skip_duplicates=bool(options.get("skipDuplicates")),
                publisher=publisher,
            )
            offset += len(records)

            await store.finish_chunk(job_id, index, processed_chunks=index + 1, **publisher.fields())
            publisher.mark_published()
            logger.info(
                f"Import job {job_id}: chunk {index + 1}/{job.total_chunks} done "
                f"({counters.processed}/{counters.total} records)"
            )

        await store.update_job(job_id, status=JobStatus.COMPLETED.value, **publisher.fields())
        logger.info(
            f"Import job {job_id} completed: imported={counters.imported} "
            f"skipped={counters.skipped} errors={counters.errors}"
        )
    except asyncio.CancelledError:
        await _mark_failed(store, job_id, publisher, "Import cancelled during shutdown")
        raise
    except Exception as e:
        logger.error(f"Import job {job_id} failed: {e}", exc_info=True)
        await _mark_failed(store, job_id, publisher, str(e) or type(e).__name__)


async def _mark_failed(store: Store, job_id: str, publisher: ProgressPublisher, message: str) -> None:
    try:
        await store.update_job(
            job_id,
            status=JobStatus.FAILED.value,
            error_message=message,
            **publisher.fields(),
        )
    except Exception as e:
        logger.error(f"Could not record failure of import job {job_id}: {e}", exc_info=True)


async def reap_stale_jobs(store: Store, ingest: IngestSettings) -> list[str]:
    """Fail unfinished jobs whose processor is gone.

    A running processor writes progress every few records, so a pending or
    processing job with no write for ``stale_job_seconds`` was orphaned by a
    crash or restart. Its leftover chunks are dropped; there is no resume.
    """
    cutoff = utcnow() - timedelta(seconds=ingest.stale_job_seconds)
    reaped = await store.fail_stale_jobs(cutoff, "Import interrupted: no progress since the service restarted or crashed")
    for job_id in reaped:
        logger.warning(f"Import job {job_id} had no progress for {ingest.stale_job_seconds:.0f}s; marked failed")
    return reaped
