"""Tabular upload parsing (CSV and Excel) into raw record dicts.

Cells are read as strings so asset ids such as ``00012`` keep their
leading zeros; list-valued columns are decoded later by
``am_ingest.pipelines.records``.
"""
from __future__ import annotations

import logging
import posixpath
from enum import Enum
from typing import Any, BinaryIO, Callable

import pandas as pd

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"


class FileType(str, Enum):
    """Upload formats the importer understands."""
    CSV = "csv"
    EXCEL = "excel"
    UNKNOWN = "unknown"


_SUFFIXES = {
    ".csv": FileType.CSV,
    ".xls": FileType.EXCEL,
    ".xlsx": FileType.EXCEL,
    ".xlsm": FileType.EXCEL,
}


class ParseError(Exception):
    """Raised when an uploaded file cannot be turned into rows."""
    pass


def detect_file_type(filename: str, content: bytes | None = None) -> FileType:
    """Pick the format from the file suffix, falling back to the xlsx zip signature."""
    suffix = posixpath.splitext(filename.lower())[1]
    if suffix in _SUFFIXES:
        return _SUFFIXES[suffix]
    if content and content.startswith(ZIP_MAGIC):
        return FileType.EXCEL
    return FileType.UNKNOWN


def _read_frame(reader: Callable[[], pd.DataFrame], filename: str, label: str) -> list[dict[str, Any]]:
    try:
        df = reader()
    except Exception as e:
        logger.error(f"{label} parsing failed for {filename}: {e}")
        raise ParseError(f"Failed to parse {label}: {e}") from e

    if df.empty:
        raise ParseError(f"{label} file {filename} has no rows")

    df.columns = [str(col).strip() for col in df.columns]
    logger.info(f"Parsed {label} {filename}: {len(df)} rows, columns {list(df.columns)}")
    return df.to_dict("records")


def parse_csv(file_obj: BinaryIO, filename: str) -> list[dict[str, Any]]:
    """Rows of a UTF-8 CSV with a header line.

    Raises:
        ParseError: If the CSV cannot be read or has no data rows
    """
    return _read_frame(
        lambda: pd.read_csv(file_obj, encoding="utf-8", dtype=str, keep_default_na=False),
        filename,
        "CSV",
    )


def parse_excel(file_obj: BinaryIO, filename: str, sheet_name: str | int = 0) -> list[dict[str, Any]]:
    """Rows of one worksheet (the first by default).

    Raises:
        ParseError: If the workbook cannot be read or the sheet has no data rows
    """
    return _read_frame(
        lambda: pd.read_excel(file_obj, sheet_name=sheet_name, engine="openpyxl", dtype=str, keep_default_na=False),
        filename,
        "Excel",
    )


def parse_file(file_obj: BinaryIO, filename: str) -> list[dict[str, Any]]:
    """Dispatch on the detected format.

    Raises:
        ParseError: For unsupported formats or unreadable content
    """
    head = file_obj.read(len(ZIP_MAGIC))
    file_obj.seek(0)
    file_type = detect_file_type(filename, head)

    if file_type is FileType.CSV:
        return parse_csv(file_obj, filename)
    if file_type is FileType.EXCEL:
        return parse_excel(file_obj, filename)
    raise ParseError(f"Unsupported file type: {filename}")
