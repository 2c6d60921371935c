import asyncio
import json
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from am_ingest.api import create_app
from am_ingest.config import BackfillSettings, DatabaseSettings, IngestSettings, LoggingSettings, Settings
from am_ingest.models import JobStatus, utcnow
from am_ingest.services import build_services

from .fakes import FakeDrive, drive_settings

HEADER = "asset_id,predicted_asset_ids,matching_scores\n"


def csv_bytes(count: int, start: int = 1) -> bytes:
    lines = [
        f"{i},\"['{i + 1000}', '{i + 2000}']\",\"[0.91, 0.42]\"\n"
        for i in range(start, start + count)
    ]
    return (HEADER + "".join(lines)).encode("utf-8")


@pytest.fixture
def fake_drive():
    return FakeDrive({"1.jpg": "f1", "1001.png": "f1001", "2.jpg": "f2"})


def make_app(tmp_path, fake_drive):
    settings = Settings(
        db=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"),
        drive=drive_settings(),
        ingest=IngestSettings(sync_threshold=100, default_chunk_size=40, progress_every=10),
        backfill=BackfillSettings(interval_seconds=3600),
        logging=LoggingSettings(format="text"),
    )
    return create_app(
        settings,
        services_factory=lambda s: build_services(s, drive_transport=fake_drive.transport()),
    )


@pytest_asyncio.fixture
async def api(tmp_path, fake_drive):
    app = make_app(tmp_path, fake_drive)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            client.services = app.state.services
            yield client


async def upload(client, content: bytes, filename: str = "matches.csv", **options):
    return await client.post(
        "/import",
        files={"file": (filename, content, "text/csv")},
        data={"options": json.dumps(options)},
    )


async def wait_for_job(client, job_id: str) -> dict:
    for _ in range(200):
        body = (await client.get(f"/import-status/{job_id}")).json()
        if body["status"] in ("completed", "failed"):
            return body
        await asyncio.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


@pytest.mark.asyncio
async def test_health(api):
    response = await api.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_small_import_completes_in_request(api):
    response = await upload(api, csv_bytes(50))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["totalRecords"] == 50
    assert body["imported"] == 50
    assert "jobId" not in body


@pytest.mark.asyncio
async def test_large_import_runs_in_background(api):
    response = await upload(api, csv_bytes(250), chunkSize=60)

    assert response.status_code == 202
    accepted = response.json()
    assert accepted["status"] == "processing"
    assert accepted["totalChunks"] == 5

    status = await wait_for_job(api, accepted["jobId"])

    assert status["status"] == "completed"
    assert status["processed"] == 250
    assert status["imported"] == 250
    assert status["progress"] == 100.0
    assert status["processedChunks"] == 5
    assert status["options"]["chunkSize"] == 60

    jobs = (await api.get("/import-jobs")).json()
    assert [j["id"] for j in jobs] == [accepted["jobId"]]
    assert "errorDetails" not in jobs[0]


@pytest.mark.asyncio
async def test_import_rejected_while_job_active(api):
    await api.services.store.create_job("busy", total_records=1, options={}, chunks=["[]"])

    response = await upload(api, csv_bytes(3))

    assert response.status_code == 409
    assert response.json()["error"] == "import_in_progress"


@pytest.mark.asyncio
async def test_unknown_job_is_404(api):
    response = await api.get("/import-status/does-not-exist")

    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("options", ['{"chunkSize": 0}', "{not json", '{"chunkSize": "many"}'])
async def test_invalid_options_are_422(api, options):
    response = await api.post(
        "/import",
        files={"file": ("matches.csv", csv_bytes(2), "text/csv")},
        data={"options": options},
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unparseable_upload_is_400(api):
    response = await upload(api, b"hello", filename="notes.txt")

    assert response.status_code == 400
    assert response.json()["error"] == "parse_error"


@pytest.mark.asyncio
async def test_asset_lookup_resolves_identifiers(api):
    await upload(api, csv_bytes(2))

    body = (await api.get("/assets/1")).json()

    assert body["assetId"] == "1"
    assert body["reference"] == {"fileId": "f1"}
    assert body["predicted"] == [
        {"id": "1001", "score": 0.91, "fileId": "f1001"},
        {"id": "2001", "score": 0.42, "fileId": None},
    ]


@pytest.mark.asyncio
async def test_unknown_asset_has_no_matches(api):
    body = (await api.get("/assets/nope")).json()

    assert body == {"assetId": "nope", "reference": None, "predicted": []}


@pytest.mark.asyncio
async def test_assets_page(api):
    await upload(api, csv_bytes(12))

    body = (await api.get("/assets-page", params={"page": 2, "pageSize": 5})).json()

    assert body["total"] == 12
    assert body["pageCount"] == 3
    assert body["ids"] == ["6", "7", "8", "9", "10"]


@pytest.mark.asyncio
async def test_backfill_control(api):
    await upload(api, csv_bytes(3))

    status = (await api.get("/background-status")).json()
    assert status == {"backgroundProcessRunning": False, "missingFileIds": 3}

    started = (await api.post("/populate-file-ids", json={"batchSize": 10})).json()
    assert started["started"] is True
    assert started["batchSize"] == 10

    again = (await api.post("/populate-file-ids")).json()
    assert again["started"] is False
    assert again["running"] is True

    for _ in range(100):
        status = (await api.get("/background-status")).json()
        if status["missingFileIds"] == 1:
            break
        await asyncio.sleep(0.05)
    assert status["missingFileIds"] == 1

    stopped = (await api.post("/stop-background-process")).json()
    assert stopped["stopped"] is True
    await api.services.backfill.aclose()
    assert (await api.get("/background-status")).json()["backgroundProcessRunning"] is False


@pytest.mark.asyncio
async def test_clear_file_ids(api):
    await upload(api, csv_bytes(2))
    await api.services.resolver.resolve_batch(["1", "2"])

    body = (await api.post("/clear-file-ids")).json()

    assert body == {"cleared": 2}
    assert (await api.get("/background-status")).json()["missingFileIds"] == 2


@pytest.mark.asyncio
async def test_image_passthrough(api):
    response = await api.get("/images/f1")

    assert response.status_code == 200
    assert response.content == b"\x89PNG-bytes"
    assert response.headers["content-type"].startswith("image/png")


@pytest.mark.asyncio
async def test_missing_image_is_404(api):
    response = await api.get("/images/unknown")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_startup_fails_jobs_orphaned_by_a_crash(tmp_path, fake_drive):
    first = make_app(tmp_path, fake_drive)
    async with first.router.lifespan_context(first):
        store = first.state.services.store
        await store.create_job("crashed", total_records=500, options={}, chunks=["[]"])
        await store.update_job(
            "crashed",
            status=JobStatus.PROCESSING.value,
            updated_at=utcnow() - timedelta(hours=1),
        )

    second = make_app(tmp_path, fake_drive)
    async with second.router.lifespan_context(second):
        job = await second.state.services.store.get_job("crashed")

    assert job.status == JobStatus.FAILED.value
    assert "interrupted" in job.error_message
