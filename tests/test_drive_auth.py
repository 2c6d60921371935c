import json

import httpx
import pytest

from gdrive import auth as drive_auth
from gdrive.auth import DRIVE_READONLY_SCOPE, CredentialsAuth, build_auth
from gdrive.client import DriveClient

from .fakes import drive_settings


class RefreshingCredentials:
    """Stands in for google-auth credentials: starts expired, refresh issues a new token."""

    service_account_email = "importer@example.iam.gserviceaccount.com"

    def __init__(self):
        self.valid = False
        self.token = None
        self.refreshes = 0

    def refresh(self, request) -> None:
        self.refreshes += 1
        self.token = f"token-{self.refreshes}"
        self.valid = True


def recording_transport(seen: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"files": []})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_requests_carry_refreshed_service_account_token():
    credentials = RefreshingCredentials()
    seen: list[httpx.Request] = []
    client = DriveClient(
        drive_settings(),
        transport=recording_transport(seen),
        auth=CredentialsAuth(credentials),
        retry_wait=0,
    )
    try:
        await client.list_folder()
        await client.list_folder()
    finally:
        await client.aclose()

    assert [r.headers["Authorization"] for r in seen] == ["Bearer token-1", "Bearer token-1"]
    assert credentials.refreshes == 1


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_next_request():
    credentials = RefreshingCredentials()
    seen: list[httpx.Request] = []
    client = DriveClient(drive_settings(), transport=recording_transport(seen), auth=CredentialsAuth(credentials))
    try:
        await client.list_folder()
        credentials.valid = False
        await client.list_folder()
    finally:
        await client.aclose()

    assert seen[-1].headers["Authorization"] == "Bearer token-2"


def test_service_account_json_is_preferred(monkeypatch):
    calls = []

    def from_info(info, scopes):
        calls.append((info, scopes))
        return RefreshingCredentials()

    monkeypatch.setattr(drive_auth.service_account.Credentials, "from_service_account_info", from_info)
    key = {"type": "service_account", "client_email": "importer@example.iam.gserviceaccount.com"}

    auth = build_auth(drive_settings(credentials_json=json.dumps(key), access_token="static"))

    assert isinstance(auth, CredentialsAuth)
    assert isinstance(auth.credentials, RefreshingCredentials)
    assert calls == [(key, [DRIVE_READONLY_SCOPE])]


def test_credentials_file_is_loaded(monkeypatch, tmp_path):
    paths = []

    def from_file(path, scopes):
        paths.append(path)
        return RefreshingCredentials()

    monkeypatch.setattr(drive_auth.service_account.Credentials, "from_service_account_file", from_file)
    key_file = tmp_path / "key.json"

    auth = build_auth(drive_settings(credentials_file=str(key_file)))

    assert isinstance(auth, CredentialsAuth)
    assert paths == [str(key_file)]


@pytest.mark.asyncio
async def test_static_token_and_no_auth():
    assert build_auth(drive_settings()) is None

    seen: list[httpx.Request] = []
    config = drive_settings(access_token="static-token")
    client = DriveClient(config, transport=recording_transport(seen), retry_wait=0)
    try:
        await client.list_folder()
    finally:
        await client.aclose()

    assert seen[0].headers["Authorization"] == "Bearer static-token"
