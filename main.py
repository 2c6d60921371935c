"""Run the ingestion API under uvicorn (auto-reload when DEBUG is set)."""
import uvicorn

from am_ingest.config import settings


def _redacted_db_url(url: str) -> str:
    return url.rsplit("@", 1)[-1]


if __name__ == "__main__":
    print(f"{settings.app_name} {settings.version}")
    print(f"  database:     {_redacted_db_url(settings.db.url)}")
    print(f"  drive folder: {settings.drive.folder_id or '(unset, remote lookups disabled)'}")
    print(f"  backfill:     every {settings.backfill.interval_seconds:.0f}s, autostart={settings.backfill.autostart}")
    print(f"  reload:       {settings.debug}")

    uvicorn.run(
        "am_ingest.api:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        reload_dirs=["am_ingest", "gdrive"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )
