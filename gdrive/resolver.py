"""Resolve asset ids to Drive file ids, caching results on the asset rows.

Images live in one Drive folder named ``<asset id>.<ext>`` and are addressed
by Drive's own file id. Resolved ids are written onto the owning asset
permanently (file names are treated as immutable); only ``clear()`` drops
them. Remote failures never propagate: affected ids resolve to ``None`` and
are picked up later by the backfill loop.
"""
from __future__ import annotations

import asyncio
import logging
import posixpath
from typing import Iterable, Sequence

import httpx
from sqlalchemy.exc import SQLAlchemyError

from am_ingest.config import DriveSettings
from am_ingest.store import Store
from gdrive.client import DriveClient, DriveError, DriveFile

logger = logging.getLogger(__name__)


class ResolverUnavailable(Exception):
    """The remote service failed or timed out; handled inside the resolver."""
    pass


class IdentifierResolver:
    """Batched asset id to Drive file id lookups with a permanent store cache."""

    def __init__(self, store: Store, client: DriveClient | None, config: DriveSettings):
        self.store = store
        self.client = client if config.enabled else None
        self.config = config
        self._extensions = config.extensions

    def index_files(self, files: Iterable[DriveFile]) -> dict[str, str]:
        """Map asset id (file stem) to file id for image files.

        When one stem has several images, the extension listed first in
        ``DRIVE_IMAGE_EXTENSIONS`` wins.
        """
        rank = {ext: i for i, ext in enumerate(self._extensions)}
        best: dict[str, tuple[int, str]] = {}
        for f in files:
            stem, ext = posixpath.splitext(f.name)
            ext = ext.lstrip(".").lower()
            if not stem or ext not in rank:
                continue
            current = best.get(stem)
            if current is None or rank[ext] < current[0]:
                best[stem] = (rank[ext], f.id)
        return {stem: file_id for stem, (_, file_id) in best.items()}

    async def resolve(self, asset_id: str) -> str | None:
        return (await self.resolve_batch([asset_id]))[asset_id]

    async def resolve_batch(self, ids: Sequence[str]) -> dict[str, str | None]:
        """Resolve every id; the result has exactly the requested ids as keys."""
        result: dict[str, str | None] = {asset_id: None for asset_id in ids}
        wanted = [asset_id for asset_id in result if asset_id]
        if not wanted:
            return result

        try:
            cached = await self.store.get_identifiers(wanted)
        except SQLAlchemyError as e:
            logger.warning(f"Identifier cache read failed, resolving remotely: {e}")
            cached = {}
        result.update(cached)

        missing = [asset_id for asset_id in wanted if asset_id not in cached]
        if not missing or self.client is None:
            return result

        try:
            found, to_persist = await asyncio.wait_for(
                self._resolve_remote(missing),
                timeout=self.config.resolve_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Drive lookup timed out, {len(missing)} id(s) left unresolved")
            return result
        except ResolverUnavailable as e:
            logger.warning(f"Drive unavailable, {len(missing)} id(s) left unresolved: {e}")
            return result

        result.update(found)
        if to_persist:
            try:
                written = await self.store.set_identifiers(to_persist)
                logger.debug(f"Cached {written} identifier(s)")
            except SQLAlchemyError as e:
                logger.warning(f"Could not cache {len(to_persist)} identifier(s): {e}")
        return result

    async def _resolve_remote(self, missing: list[str]) -> tuple[dict[str, str], dict[str, str]]:
        """Returns (ids found for this batch, mapping to persist)."""
        try:
            if len(missing) <= self.config.small_batch_max:
                names = [f"{asset_id}.{ext}" for asset_id in missing for ext in self._extensions]
                index = self.index_files(await self.client.find_by_names(names))
                found = {asset_id: index[asset_id] for asset_id in missing if asset_id in index}
                return found, found

            index = self.index_files(await self.client.list_folder())
        except (DriveError, httpx.HTTPError) as e:
            raise ResolverUnavailable(str(e)) from e

        try:
            cold = not await self.store.has_any_identifier()
        except SQLAlchemyError as e:
            logger.warning(f"Identifier cache check failed: {e}")
            cold = False

        found = {asset_id: index[asset_id] for asset_id in missing if asset_id in index}
        if cold:
            logger.info(f"Cold start: caching all {len(index)} identifiers from the folder listing")
            return found, index
        return found, found

    async def clear(self) -> int:
        """Drop every cached identifier."""
        cleared = await self.store.clear_identifiers()
        logger.warning(f"Cleared {cleared} cached identifier(s)")
        return cleared
