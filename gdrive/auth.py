"""Service-account authentication for Drive requests.

Credentials come from ``DRIVE_CREDENTIALS_JSON`` (the key file contents) or
``DRIVE_CREDENTIALS_FILE`` / ``GOOGLE_APPLICATION_CREDENTIALS`` (a path).
Access tokens are refreshed through google-auth whenever they expire.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from am_ingest.config import DriveSettings

logger = logging.getLogger(__name__)

DRIVE_READONLY_SCOPE = "https://www.googleapis.com/auth/drive.readonly"


def load_service_account(config: DriveSettings) -> service_account.Credentials | None:
    """Service-account credentials from settings, or None when none are configured."""
    scopes = [DRIVE_READONLY_SCOPE]
    if config.credentials_json:
        info = json.loads(config.credentials_json)
        return service_account.Credentials.from_service_account_info(info, scopes=scopes)
    if config.credentials_file:
        return service_account.Credentials.from_service_account_file(config.credentials_file, scopes=scopes)
    return None


class CredentialsAuth(httpx.Auth):
    """Adds a bearer token from google-auth credentials, refreshing it when stale.

    ``refresh`` is blocking (it posts to the token endpoint), so it runs in a
    worker thread; one lock keeps concurrent requests from refreshing twice.
    """

    def __init__(self, credentials):
        self.credentials = credentials
        self._lock = asyncio.Lock()

    async def _ensure_token(self) -> str:
        async with self._lock:
            if not self.credentials.valid:
                await asyncio.to_thread(self.credentials.refresh, GoogleAuthRequest())
                logger.debug("Refreshed Drive access token")
        return self.credentials.token

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self._ensure_token()
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


class _StaticToken:
    """Credentials-like holder for a pre-issued token that is never refreshed."""

    valid = True

    def __init__(self, token: str):
        self.token = token

    def refresh(self, request) -> None:
        return None


def build_auth(config: DriveSettings) -> httpx.Auth | None:
    """Pick the request auth: service account first, then a static OAuth token.

    An API key, if set, is added as a query parameter by the client instead.
    """
    credentials = load_service_account(config)
    if credentials is not None:
        logger.info(f"Drive requests authenticate as {credentials.service_account_email}")
        return CredentialsAuth(credentials)
    if config.access_token:
        logger.warning("Drive uses a static access token; it will stop working when it expires")
        return CredentialsAuth(_StaticToken(config.access_token))
    return None

