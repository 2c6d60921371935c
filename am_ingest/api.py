"""FastAPI app: bulk import admission, job status, identifier backfill control.

Also serves the asset lookups the review client needs (matches with their
Drive identifiers, paginated ids, image passthrough).
"""
from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from io import BytesIO
from typing import Callable

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, get_settings
from .db import create_schema
from .logging_config import setup_logging
from .parsers import ParseError, parse_file
from .pipelines.admission import ImportInProgressError, ImportOptions, InlineImportResult, admit_import
from .pipelines.chunk_processing import reap_stale_jobs
from .pipelines.status import JobNotFoundError, get_status, list_recent_jobs
from .services import Services, build_services
from gdrive.client import DriveError

logger = logging.getLogger(__name__)


# Pydantic response models
class CamelModel(BaseModel):
    """Base for camelCase JSON bodies."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class ImportCompletedResponse(CamelModel):
    """Import processed within the request."""
    total_records: int
    imported: int
    skipped: int
    errors: int
    error_details: list[dict] = Field(default_factory=list)
    status: str = "completed"


class ImportAcceptedResponse(CamelModel):
    """Import handed to the background processor."""
    job_id: str
    total_records: int
    total_chunks: int
    status: str = "processing"


class JobStatusResponse(CamelModel):
    id: str
    status: str
    total_records: int
    total_chunks: int
    processed_chunks: int
    processed: int
    imported: int
    skipped: int
    errors: int
    error_details: list[dict]
    progress: float
    options: dict
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class JobSummaryResponse(CamelModel):
    id: str
    status: str
    total_records: int
    processed: int
    imported: int
    skipped: int
    errors: int
    progress: float
    created_at: datetime
    updated_at: datetime


class PopulateRequest(CamelModel):
    batch_size: int | None = Field(default=None, ge=1, le=500)


class PopulateResponse(CamelModel):
    started: bool
    running: bool
    batch_size: int


class BackgroundStatusResponse(CamelModel):
    background_process_running: bool
    missing_file_ids: int


class StopResponse(CamelModel):
    stopped: bool
    running: bool


class ClearFileIdsResponse(CamelModel):
    cleared: int


class ReferenceDTO(CamelModel):
    file_id: str | None


class PredictedDTO(CamelModel):
    id: str
    score: float | None
    file_id: str | None


class AssetMatchesResponse(CamelModel):
    asset_id: str
    reference: ReferenceDTO | None
    predicted: list[PredictedDTO]


class AssetPageResponse(CamelModel):
    page: int
    page_size: int
    total: int
    page_count: int
    ids: list[str]


def get_services(request: Request) -> Services:
    """Services built by the lifespan for this app."""
    return request.app.state.services


def create_app(
    settings: Settings | None = None,
    *,
    services_factory: Callable[[Settings], Services] = build_services,
) -> FastAPI:
    """Build the FastAPI application; services are created in the lifespan."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown logic."""
        # Startup
        setup_logging(settings.logging)
        logger.info(f"{settings.app_name} v{settings.version} starting up")
        services = services_factory(settings)
        if settings.db.create_schema and services.engine is not None:
            await create_schema(services.engine)
        await reap_stale_jobs(services.store, settings.ingest)
        app.state.services = services
        if settings.backfill.autostart:
            services.backfill.start()

        yield

        # Shutdown
        logger.info("Application shutting down")
        await services.aclose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        description="Chunked bulk import of asset matches with Drive identifier backfill",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],  # Frontend URLs
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    register_routes(app)
    return app


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ParseError)
    async def parse_error_handler(request, exc: ParseError):
        """Handle unreadable uploads."""
        logger.error(f"Parse error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(error="parse_error", detail=str(exc)).model_dump(),
        )

    @app.exception_handler(ImportInProgressError)
    async def import_in_progress_handler(request, exc: ImportInProgressError):
        logger.warning(f"Import rejected: {exc}")
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=ErrorResponse(error="import_in_progress", detail=str(exc)).model_dump(),
        )

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request, exc: JobNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=ErrorResponse(error="not_found", detail=str(exc)).model_dump(),
        )

    @app.exception_handler(DriveError)
    async def drive_error_handler(request, exc: DriveError):
        """Handle Drive failures on passthrough endpoints."""
        logger.error(f"Drive error: {exc}")
        code = status.HTTP_404_NOT_FOUND if exc.status_code == 404 else status.HTTP_502_BAD_GATEWAY
        return JSONResponse(
            status_code=code,
            content=ErrorResponse(error="drive_error", detail=str(exc)).model_dump(),
        )

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request, exc: SQLAlchemyError):
        """Handle store failures."""
        logger.error(f"Store error: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error="store_error", detail=str(exc)).model_dump(),
        )


def register_routes(app: FastAPI) -> None:
    @app.get("/health", response_model=HealthResponse)
    async def health(services: Services = Depends(get_services)) -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="ok", version=services.settings.version)

    @app.get("/")
    async def root(services: Services = Depends(get_services)):
        """Root endpoint with API info."""
        return {
            "app": services.settings.app_name,
            "version": services.settings.version,
            "endpoints": {
                "health": "/health",
                "import": "/import",
                "import_status": "/import-status/{jobId}",
                "import_jobs": "/import-jobs",
                "populate_file_ids": "/populate-file-ids",
                "background_status": "/background-status",
                "stop_background_process": "/stop-background-process",
                "clear_file_ids": "/clear-file-ids",
                "asset": "/assets/{assetId}",
                "assets_page": "/assets-page",
                "image": "/images/{fileId}",
                "docs": "/docs",
            },
        }

    @app.post(
        "/import",
        response_model=ImportCompletedResponse | ImportAcceptedResponse,
    )
    async def import_assets(
        response: Response,
        file: UploadFile = File(..., description="Asset match file (CSV or Excel)"),
        options: str = Form(default="{}", description="JSON: clearExisting, skipDuplicates, chunkSize"),
        services: Services = Depends(get_services),
    ) -> ImportCompletedResponse | ImportAcceptedResponse:
        """Import asset matches.

        Small files are applied before responding. Larger ones are persisted as
        chunks and processed in the background; poll ``/import-status/{jobId}``.
        """
        if not file.filename:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Filename is required",
            )
        try:
            import_options = ImportOptions.model_validate_json(options or "{}")
        except ValidationError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Invalid import options: {e}",
            )

        logger.info(f"Received import upload: {file.filename}")
        try:
            content = await file.read()
        finally:
            await file.close()

        records = await run_in_threadpool(parse_file, BytesIO(content), file.filename)
        result = await admit_import(
            services.store,
            records,
            import_options,
            runner=services.runner,
            ingest=services.settings.ingest,
        )

        if isinstance(result, InlineImportResult):
            return ImportCompletedResponse(
                total_records=result.total_records,
                imported=result.imported,
                skipped=result.skipped,
                errors=result.errors,
                error_details=result.error_details,
            )
        response.status_code = status.HTTP_202_ACCEPTED
        return ImportAcceptedResponse(
            job_id=result.job_id,
            total_records=result.total_records,
            total_chunks=result.total_chunks,
        )

    @app.get("/import-status/{job_id}", response_model=JobStatusResponse)
    async def import_status(job_id: str, services: Services = Depends(get_services)) -> JobStatusResponse:
        """Live state of an import job, read straight from the store."""
        view = await get_status(services.store, job_id)
        return JobStatusResponse(**asdict(view))

    @app.get("/import-jobs", response_model=list[JobSummaryResponse])
    async def import_jobs(
        limit: int = Query(default=10, ge=1, le=100),
        services: Services = Depends(get_services),
    ) -> list[JobSummaryResponse]:
        """Most recent import jobs first."""
        jobs = await list_recent_jobs(services.store, limit)
        return [JobSummaryResponse(**asdict(job)) for job in jobs]

    @app.post("/populate-file-ids", response_model=PopulateResponse)
    async def populate_file_ids(
        body: PopulateRequest | None = None,
        services: Services = Depends(get_services),
    ) -> PopulateResponse:
        """Ensure the identifier backfill loop is running."""
        batch_size = body.batch_size if body else None
        started = services.backfill.start(batch_size=batch_size)
        return PopulateResponse(
            started=started,
            running=services.backfill.is_running,
            batch_size=services.backfill.batch_size,
        )

    @app.get("/background-status", response_model=BackgroundStatusResponse)
    async def background_status(services: Services = Depends(get_services)) -> BackgroundStatusResponse:
        return BackgroundStatusResponse(
            background_process_running=services.backfill.is_running,
            missing_file_ids=await services.store.count_missing_identifiers(),
        )

    @app.post("/stop-background-process", response_model=StopResponse)
    async def stop_background_process(services: Services = Depends(get_services)) -> StopResponse:
        """Stop the backfill loop at its next cycle boundary."""
        stopped = services.backfill.stop()
        return StopResponse(stopped=stopped, running=services.backfill.is_running)

    @app.post("/clear-file-ids", response_model=ClearFileIdsResponse)
    async def clear_file_ids(services: Services = Depends(get_services)) -> ClearFileIdsResponse:
        """Drop every cached Drive identifier."""
        return ClearFileIdsResponse(cleared=await services.resolver.clear())

    @app.get("/assets/{asset_id}", response_model=AssetMatchesResponse)
    async def get_asset_matches(asset_id: str, services: Services = Depends(get_services)) -> AssetMatchesResponse:
        """An asset's predicted matches with Drive identifiers for every image."""
        search_id = asset_id.strip()
        if not search_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="assetId required")

        asset = await services.store.get_asset(search_id)
        if asset is None:
            return AssetMatchesResponse(asset_id=search_id, reference=None, predicted=[])

        predicted_ids = [str(pid) for pid in asset.predicted_ids]
        identifiers = await services.resolver.resolve_batch([search_id, *predicted_ids])
        scores = list(asset.scores)
        predicted = [
            PredictedDTO(
                id=pid,
                score=scores[i] if i < len(scores) else None,
                file_id=identifiers.get(pid),
            )
            for i, pid in enumerate(predicted_ids)
        ]
        return AssetMatchesResponse(
            asset_id=search_id,
            reference=ReferenceDTO(file_id=identifiers.get(search_id)),
            predicted=predicted,
        )

    @app.get("/assets-page", response_model=AssetPageResponse)
    async def assets_page(
        page: int = Query(default=1),
        page_size: int = Query(default=20, alias="pageSize"),
        services: Services = Depends(get_services),
    ) -> AssetPageResponse:
        """Paginated asset ids."""
        page = max(1, page)
        page_size = max(1, min(100, page_size))
        total, ids = await services.store.page_asset_ids((page - 1) * page_size, page_size)
        return AssetPageResponse(
            page=page,
            page_size=page_size,
            total=total,
            page_count=math.ceil(total / page_size) if total else 0,
            ids=ids,
        )

    @app.get("/images/{file_id}")
    async def get_image(file_id: str, services: Services = Depends(get_services)) -> StreamingResponse:
        """Stream an image from Drive by its file id."""
        metadata = await services.drive.get_metadata(file_id)
        media_type = metadata.get("mimeType") or "image/jpeg"
        return StreamingResponse(services.drive.iter_content(file_id), media_type=media_type)


app = create_app()
