"""Import admission: inline processing for small inputs, chunked jobs for large ones.

Admission of a background job only serializes and persists chunks; no
record is validated here, so its cost grows with the number of chunks and
not with per-record work.
"""
from __future__ import annotations

import json
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from am_ingest.config import IngestSettings
from am_ingest.pipelines.chunk_processing import ProgressPublisher, apply_records, process_job, reap_stale_jobs
from am_ingest.pipelines.records import ImportCounters
from am_ingest.runner import BackgroundRunner
from am_ingest.store import Store

logger = logging.getLogger(__name__)


class ImportInProgressError(Exception):
    """Raised when an import is submitted while another is unfinished."""

    def __init__(self, job_id: str):
        super().__init__(f"Import job {job_id} is still running")
        self.job_id = job_id


class ImportOptions(BaseModel):
    """Options accepted with an import (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    clear_existing: bool = False
    skip_duplicates: bool = False
    chunk_size: int | None = Field(default=None, ge=1, le=100_000)


@dataclass
class InlineImportResult:
    """Final result of an import processed within the request."""
    total_records: int
    imported: int
    skipped: int
    errors: int
    error_details: list[dict] = field(default_factory=list)
    status: str = "completed"


@dataclass
class BackgroundImportResult:
    """Handle for an import handed to the background processor."""
    job_id: str
    total_records: int
    total_chunks: int
    status: str = "processing"


def split_into_chunks(records: Sequence[Any], chunk_size: int) -> list[list[Any]]:
    """Contiguous, order-preserving slices of at most ``chunk_size`` records."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    count = math.ceil(len(records) / chunk_size)
    return [list(records[i * chunk_size:(i + 1) * chunk_size]) for i in range(count)]


async def admit_import(
    store: Store,
    records: Sequence[dict[str, Any]],
    options: ImportOptions,
    *,
    runner: BackgroundRunner,
    ingest: IngestSettings,
) -> InlineImportResult | BackgroundImportResult:
    """Accept a parsed record set and either process it now or schedule it.

    Raises:
        ImportInProgressError: If another job is pending or processing
    """
    if ingest.reject_concurrent:
        await reap_stale_jobs(store, ingest)
        active = await store.find_active_job()
        if active is not None:
            raise ImportInProgressError(active.id)

    chunk_size = options.chunk_size or ingest.default_chunk_size
    chunks = split_into_chunks(records, chunk_size)

    if len(records) <= ingest.sync_threshold:
        return await _import_inline(store, chunks, len(records), options, ingest)

    job_id = uuid.uuid4().hex
    persisted_options = {
        "clearExisting": options.clear_existing,
        "skipDuplicates": options.skip_duplicates,
        "chunkSize": chunk_size,
    }
    await store.create_job(
        job_id,
        total_records=len(records),
        options=persisted_options,
        chunks=[json.dumps(chunk, default=str) for chunk in chunks],
    )
    runner.submit(process_job(store, job_id, ingest), name=f"import-{job_id}")
    logger.info(f"Admitted import job {job_id}: {len(records)} records in {len(chunks)} chunks")

    return BackgroundImportResult(job_id=job_id, total_records=len(records), total_chunks=len(chunks))


async def _import_inline(
    store: Store,
    chunks: list[list[dict[str, Any]]],
    total: int,
    options: ImportOptions,
    ingest: IngestSettings,
) -> InlineImportResult:
    counters = ImportCounters(total=total, max_error_details=ingest.max_error_details)
    publisher = ProgressPublisher(counters)

    if options.clear_existing:
        logger.warning("Inline import: clearing all existing assets before import")
        removed = await store.clear_assets()
        logger.warning(f"Inline import: removed {removed} assets")

    offset = 0
    for chunk in chunks:
        await apply_records(
            store,
            chunk,
            offset=offset,
            counters=counters,
            skip_duplicates=options.skip_duplicates,
            publisher=publisher,
        )
        offset += len(chunk)

    logger.info(
        f"Inline import of {total} records: imported={counters.imported} "
        f"skipped={counters.skipped} errors={counters.errors}"
    )
    return InlineImportResult(
        total_records=total,
        imported=counters.imported,
        skipped=counters.skipped,
        errors=counters.errors,
        error_details=counters.error_details,
    )
