"""Record normalization for imported asset rows.

Raw rows come from the tabular parser (or a JSON payload) with list fields
that may be real lists or their textual form, e.g. ``['12', '15']``.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

logger = logging.getLogger(__name__)

ID_FIELD = "asset_id"
PREDICTED_FIELD = "predicted_asset_ids"
SCORES_FIELD = "matching_scores"
IDENTIFIER_FIELD = "file_id"


class RecordValidationError(Exception):
    """Raised when a raw row cannot become an asset record (e.g. missing id)."""
    pass


@dataclass
class AssetPayload:
    """Normalized asset row ready for upsert."""
    id: str
    predicted_ids: list[str]
    scores: list[float | None]
    identifier: str | None = None


@dataclass
class ImportCounters:
    """Running totals for one import, shared by the inline and background paths."""
    total: int
    processed: int = 0
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: list[dict] = field(default_factory=list)
    max_error_details: int = 100

    @property
    def progress(self) -> float:
        if self.total <= 0:
            return 100.0
        return round(min(self.processed, self.total) * 100.0 / self.total, 2)

    def record_issue(self, kind: str, row: int, message: str, asset_id: str | None = None) -> None:
        """Itemize a skip or error, up to ``max_error_details`` entries."""
        if len(self.error_details) >= self.max_error_details:
            return
        self.error_details.append({
            "type": kind,
            "row": row,
            "assetId": asset_id,
            "message": message,
        })

    def snapshot(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_details": list(self.error_details),
            "progress": self.progress,
        }


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def parse_array_field(value: Any) -> list:
    """Decode a list-valued cell.

    JSON is tried first (after turning single quotes into double quotes);
    otherwise the outer brackets are stripped and the text split on commas.
    """
    if isinstance(value, (list, tuple)):
        return list(value)
    if _is_missing(value):
        return []
    text = str(value).strip()
    try:
        parsed = json.loads(text.replace("'", '"'))
        if isinstance(parsed, list):
            return parsed
        return []
    except ValueError:
        pass
    trimmed = re.sub(r"^\[|\]$", "", text)
    if not trimmed:
        return []
    items = (re.sub(r"['\"\s]", "", part) for part in trimmed.split(","))
    return [item for item in items if item]


def _to_score(value: Any) -> float | None:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(score) else score


def normalize_record(raw: Mapping[str, Any]) -> AssetPayload:
    """Turn a raw row into an ``AssetPayload``.

    Raises:
        RecordValidationError: If the row has no usable asset id
    """
    raw_id = raw.get(ID_FIELD)
    if _is_missing(raw_id):
        raise RecordValidationError(f"Missing {ID_FIELD}")

    identifier = raw.get(IDENTIFIER_FIELD)
    return AssetPayload(
        id=str(raw_id).strip(),
        predicted_ids=[str(pid).strip() for pid in parse_array_field(raw.get(PREDICTED_FIELD))],
        scores=[_to_score(s) for s in parse_array_field(raw.get(SCORES_FIELD))],
        identifier=None if _is_missing(identifier) else str(identifier).strip(),
    )
