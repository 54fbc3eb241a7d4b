from __future__ import annotations

import json
import math
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from repo_combiner.config import FileRecord, OutputFormat
from repo_combiner.logging import logger

if TYPE_CHECKING:
    from collections.abc import Iterable

_PUNCTUATION = re.compile(r"[.,/#!$%^&*;:{}=\-_`~()\[\]<>]")
_CHARS_PER_TOKEN = 4

FORMAT_SUFFIX: dict[OutputFormat, str] = {
    OutputFormat.TEXT: ".txt",
    OutputFormat.MARKDOWN: ".md",
    OutputFormat.JSON: ".json",
}


def estimate_tokens(text: str) -> int:
    """Estimate how many LLM tokens a text holds.

    The estimate averages a word count (after padding punctuation with spaces) and
    the UTF-8 byte length divided by four, rounding halves up. Empty text has zero
    tokens; any other text has at least one.

    Args:
        text (str): the text to measure

    Returns:
        int: a non-negative token estimate
    """
    if not text:
        return 0
    words = len(_PUNCTUATION.sub(r" \g<0> ", text).split())
    char_based = math.ceil(len(text.encode("utf-8")) / _CHARS_PER_TOKEN)
    return max(1, (words + char_based + 1) // 2)


def count_lines(text: str) -> int:
    """Count the newline-separated segments of `text` (0 for empty text)."""
    if not text:
        return 0
    return text.count("\n") + 1


def decode_text(data: bytes) -> str:
    """Decode a blob as UTF-8, replacing undecodable sequences and dropping a BOM."""
    return data.decode("utf-8", errors="replace").removeprefix("\ufeff")


def make_record(
    path: str,
    data: bytes,
    last_modified: datetime | None = None,
) -> FileRecord:
    """Build a FileRecord for a text blob.

    Args:
        path (str): path relative to the repository root
        data (bytes): the fetched blob, already known not to be binary
        last_modified (datetime | None): modification time if the source has one

    Returns:
        FileRecord: the record with line count and token estimate filled in
    """
    content = decode_text(data)
    return FileRecord(
        path=path,
        content=content,
        byte_size=len(data),
        line_count=count_lines(content),
        estimated_tokens=estimate_tokens(content),
        last_modified=last_modified,
    )


def now_iso() -> str:
    """Return the current UTC date and time in ISO 8601 format.

    Returns:
        str: e.g. `2025-03-01T12:00:00.000Z`
    """
    return iso_utc(datetime.now(UTC))


def iso_utc(moment: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with millisecond precision and a `Z` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_megabytes(size: int) -> str:
    return f"{size / 1024 / 1024:.2f} MB"


def format_kilobytes(size: int) -> str:
    return f"{size / 1024:.2f} KB"


def format_count(count: int) -> str:
    """Format an integer with thousands separators."""
    return f"{max(0, int(count)):,}"


def total_lines(records: Iterable[FileRecord]) -> int:
    return sum(r.line_count for r in records)


def formatted_datetime(moment: datetime | None = None) -> str:
    """Local date-time stamp used in output file names (`YYYY-MM-DD_HH-MM-SS`)."""
    return (moment or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")  # noqa: DTZ005


def add_datetime_to_filename(path: Path, moment: datetime | None = None) -> Path:
    """Insert a date-time stamp before the suffix of a file name.

    Args:
        path (Path): the requested output path, e.g. `output/repo.md`
        moment (datetime | None): the time to stamp; defaults to now

    Returns:
        Path: e.g. `output/repo_2025-03-01_12-00-00.md`
    """
    return path.with_name(f"{path.stem}_{formatted_datetime(moment)}{path.suffix}")


def write_output(
    output: str | dict[str, Any],
    path: Path,
    fmt: OutputFormat,
    *,
    timestamp: bool = True,
) -> Path:
    """Write rendered output to disk and return the path actually written.

    A missing suffix is filled in from the format, the date-time stamp is added
    unless `timestamp` is False, and parent directories are created. Structured
    records are serialised as indented JSON.

    Args:
        output (str | dict[str, Any]): the rendered output
        path (Path): the requested output path
        fmt (OutputFormat): format used to pick a default suffix
        timestamp (bool): whether to stamp the file name

    Returns:
        Path: the path of the written file
    """
    target = path if path.suffix else path.with_suffix(FORMAT_SUFFIX[fmt])
    if timestamp:
        target = add_datetime_to_filename(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    body = output if isinstance(output, str) else json.dumps(output, indent=2, ensure_ascii=False)
    target.write_text(body, encoding="utf-8")
    logger.info("output_written", path=str(target), chars=len(body))
    return target
