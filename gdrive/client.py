"""Async Google Drive v3 client for folder listings and file content.

Only the two operations the service needs are wrapped: listing entries
under a folder (paginated) and fetching content by file id. Transient
failures (transport errors, 429 and 5xx) are retried with exponential
backoff.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable

import httpx
from google.auth.exceptions import GoogleAuthError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from am_ingest.config import DriveSettings
from gdrive.auth import build_auth

logger = logging.getLogger(__name__)

LIST_FIELDS = "nextPageToken, files(id, name)"


class DriveError(Exception):
    """Raised when the Drive API cannot be reached or rejects a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class DriveFile:
    id: str
    name: str


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, DriveError) and exc.status_code is not None:
        return exc.status_code == 429 or exc.status_code >= 500
    return False


def quote_literal(value: str) -> str:
    """Escape a value for use inside a single-quoted Drive query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveClient:
    """Thin async wrapper over the Drive REST API."""

    def __init__(
        self,
        config: DriveSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        auth: httpx.Auth | None = None,
        retry_wait: float = 1.0,
    ):
        self.config = config
        self._retry_wait = retry_wait
        self._http = httpx.AsyncClient(
            base_url=config.base_url,
            auth=auth if auth is not None else build_auth(config),
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _params(self, **extra: Any) -> dict[str, Any]:
        params = {k: v for k, v in extra.items() if v is not None}
        if self.config.api_key:
            params["key"] = self.config.api_key
        return params

    async def _get_json(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(multiplier=self._retry_wait, max=10),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                try:
                    response = await self._http.get(path, params=params)
                except GoogleAuthError as e:
                    raise DriveError(f"Drive authentication failed: {e}") from e
                if response.status_code >= 400:
                    raise DriveError(
                        f"Drive API {path} returned {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )
                try:
                    data = response.json()
                except ValueError as e:
                    raise DriveError(
                        f"Drive API {path} returned a non-JSON body: {response.text[:200]}",
                        status_code=response.status_code,
                    ) from e
                if not isinstance(data, dict):
                    raise DriveError(f"Drive API {path} returned {type(data).__name__}, expected an object")
                return data
        raise DriveError(f"Drive API {path} gave no response")

    async def list_files(self, query: str) -> list[DriveFile]:
        """Every file matching ``query``, following ``nextPageToken``."""
        files: list[DriveFile] = []
        page_token: str | None = None
        pages = 0
        while True:
            data = await self._get_json(
                "/files",
                self._params(
                    q=query,
                    fields=LIST_FIELDS,
                    pageSize=self.config.page_size,
                    pageToken=page_token,
                    supportsAllDrives="true",
                    includeItemsFromAllDrives="true",
                ),
            )
            pages += 1
            files.extend(
                DriveFile(id=item["id"], name=item.get("name", ""))
                for item in data.get("files", [])
                if item.get("id")
            )
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        logger.debug(f"Drive listing returned {len(files)} files in {pages} page(s)")
        return files

    def _folder_clause(self) -> str:
        return f"'{quote_literal(self.config.folder_id)}' in parents and trashed=false"

    async def list_folder(self) -> list[DriveFile]:
        """Full listing of the configured folder."""
        return await self.list_files(self._folder_clause())

    async def find_by_names(self, names: Iterable[str]) -> list[DriveFile]:
        """Files in the folder whose name equals any of ``names`` (one OR query)."""
        names = list(names)
        if not names:
            return []
        ors = " or ".join(f"name='{quote_literal(name)}'" for name in names)
        return await self.list_files(f"({ors}) and {self._folder_clause()}")

    async def get_metadata(self, file_id: str) -> dict[str, Any]:
        return await self._get_json(f"/files/{file_id}", self._params(fields="id, name, mimeType", supportsAllDrives="true"))

    async def iter_content(self, file_id: str) -> AsyncIterator[bytes]:
        """Stream a file's bytes."""
        async with self._http.stream(
            "GET",
            f"/files/{file_id}",
            params=self._params(alt="media", supportsAllDrives="true"),
        ) as response:
            if response.status_code >= 400:
                raise DriveError(f"Drive download of {file_id} returned {response.status_code}", response.status_code)
            async for chunk in response.aiter_bytes():
                yield chunk
