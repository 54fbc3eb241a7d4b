from __future__ import annotations

import io
import json
import posixpath
import re
from itertools import groupby
from typing import TYPE_CHECKING, Any

from repo_combiner.config import OUTPUT_VERSION, TOKEN_BANDS, OutputFormat, TokenBand
from repo_combiner.exceptions import InvalidInputError
from repo_combiner.file_manipulation import (
    format_count,
    format_kilobytes,
    format_megabytes,
    iso_utc,
    now_iso,
    total_lines,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from repo_combiner.config import FileRecord, RunStats

ROOT_DIRECTORY_TITLE = "Root Directory"
_MAX_RULE_WIDTH = 80
_SLUG_JUNK = re.compile(r"[^\w]+")
_BACKTICK_RUN = re.compile(r"`+")


def sort_records(records: Iterable[FileRecord]) -> list[FileRecord]:
    """Order records lexicographically by path."""
    return sorted(records, key=lambda r: r.path)


def token_assessment(count: int) -> TokenBand:
    """Find the size band a token count falls in.

    Args:
        count (int): estimated token count of the whole output

    Returns:
        TokenBand: the band whose `[lower, upper)` range contains `count`
    """
    count = max(0, count)
    for band in TOKEN_BANDS:
        if band.upper is None or count < band.upper:
            return band
    return TOKEN_BANDS[-1]


def _summary_items(records: Sequence[FileRecord], stats: RunStats) -> list[tuple[str, str]]:
    items = [
        ("Total files", format_count(len(records))),
        ("Total size", format_megabytes(sum(r.byte_size for r in records))),
        ("Total lines", format_count(total_lines(records))),
        ("Total tokens", format_count(stats.total_tokens)),
    ]
    if stats.skipped_files:
        items.append(("Skipped files", format_count(stats.skipped_files)))
    if stats.elapsed:
        items.append(("Processing time", f"{stats.elapsed:.2f} seconds"))
    return items


def _rule_width(path: str) -> int:
    return min(len(path) + 6, _MAX_RULE_WIDTH)


def build_text(
    records: Sequence[FileRecord],
    stats: RunStats,
    repo_url: str,
    *,
    generated_at: str | None = None,
) -> str:
    """Render the flat text dump.

    A header block (repository, generation time, totals, token assessment) is
    followed by one block per file: `FILE: <path>`, a `=` underline, size and
    line metadata, a `-` rule, the raw content and two blank lines.

    Args:
        records (Sequence[FileRecord]): collected records, in any order
        stats (RunStats): final statistics of the run
        repo_url (str): repository URL shown in the header
        generated_at (str | None): ISO timestamp; defaults to now

    Returns:
        str: the rendered document
    """
    ordered = sort_records(records)
    band = token_assessment(stats.total_tokens)
    out = io.StringIO()
    out.write(f"Repository: {repo_url}\n\n")
    out.write(f"Generated at: {generated_at or now_iso()}\n\n")
    for key, value in _summary_items(ordered, stats):
        out.write(f"{key}: {value}\n")
    out.write(f"\nToken assessment ({band.label}): {band.advice}\n\n")

    for rec in ordered:
        width = _rule_width(rec.path)
        out.write(f"FILE: {rec.path}\n")
        out.write("=" * width + "\n")
        out.write(f"Size: {format_kilobytes(rec.byte_size)}\n")
        out.write(f"Lines: {format_count(rec.line_count)}\n")
        if rec.last_modified is not None:
            out.write(f"Last Modified: {iso_utc(rec.last_modified)}\n")
        out.write("-" * width + "\n\n")
        out.write(f"{rec.content}\n\n\n")
    return out.getvalue()


def slugify(title: str) -> str:
    return _SLUG_JUNK.sub("-", title.lower())


def code_fence(content: str) -> str:
    """Backtick fence strictly longer than any backtick run inside `content` (at least three)."""
    longest = max((len(m.group(0)) for m in _BACKTICK_RUN.finditer(content)), default=0)
    return "`" * max(3, longest + 1)


def _directory_title(directory: str) -> str:
    return directory or ROOT_DIRECTORY_TITLE


def _by_directory(records: Sequence[FileRecord]) -> list[tuple[str, list[FileRecord]]]:
    keyed = sorted(records, key=lambda r: (r.directory, r.name))
    return [(d, list(group)) for d, group in groupby(keyed, key=lambda r: r.directory)]


def build_markdown(
    records: Sequence[FileRecord],
    stats: RunStats,
    repo_url: str,
    *,
    generated_at: str | None = None,
) -> str:
    """Render the structured document.

    Files are grouped by directory (`Root Directory` for the top level). Each file
    gets a `###` heading, its metadata and a fenced block whose language comes
    from the extension table.

    Args:
        records (Sequence[FileRecord]): collected records, in any order
        stats (RunStats): final statistics of the run
        repo_url (str): repository URL shown in the summary
        generated_at (str | None): ISO timestamp; defaults to now

    Returns:
        str: the markdown document
    """
    groups = _by_directory(records)
    band = token_assessment(stats.total_tokens)
    out = io.StringIO()
    out.write("# Repository Content\n\n")
    out.write(f"**Repository:** {repo_url}  \n")
    out.write(f"**Generated at:** {generated_at or now_iso()}  \n")
    for key, value in _summary_items(records, stats):
        out.write(f"**{key}:** {value}  \n")
    out.write(f"**Token assessment:** {band.advice}\n")

    out.write("\n## Table of Contents\n\n")
    for directory, files in groups:
        title = _directory_title(directory)
        dir_slug = slugify(title)
        out.write(f"- [{title}](#{dir_slug})\n")
        for rec in files:
            out.write(f"  - [{rec.name}](#{dir_slug}-{slugify(rec.name)})\n")
    out.write("\n")

    for directory, files in groups:
        out.write(f"## {_directory_title(directory)}\n\n")
        for rec in files:
            fence = code_fence(rec.content)
            out.write(f"### {rec.name}\n\n")
            out.write(f"**Path:** `{rec.path}`  \n")
            out.write(f"**Size:** {format_kilobytes(rec.byte_size)}  \n")
            out.write(f"**Lines:** {format_count(rec.line_count)}  \n")
            if rec.last_modified is not None:
                out.write(f"**Last Modified:** {iso_utc(rec.last_modified)}  \n")
            out.write("\n")
            out.write(f"{fence}{rec.language}\n{rec.content}\n{fence}\n\n")
    return out.getvalue()


def build_json(
    records: Sequence[FileRecord],
    stats: RunStats,
    repo_url: str,
    *,
    generated_at: str | None = None,
) -> dict[str, Any]:
    """Build the structured record: `{files, stats, meta}`, ready for `json.dumps`."""
    ordered = sort_records(records)
    lines = total_lines(ordered)
    return {
        "files": [
            {
                "path": rec.path,
                "size": rec.byte_size,
                "lines": rec.line_count,
                "extension": rec.extension,
                "last_modified": iso_utc(rec.last_modified) if rec.last_modified is not None else None,
                "content": rec.content,
            }
            for rec in ordered
        ],
        "stats": {
            **stats.model_dump(mode="json", exclude={"total_lines"}),
            "total_lines": lines,
        },
        "meta": {
            "generated_at": generated_at or now_iso(),
            "version": OUTPUT_VERSION,
            "format": str(OutputFormat.JSON),
            "repository": repo_url,
            "total_tokens": stats.total_tokens,
            "total_lines": lines,
        },
    }


def render(
    fmt: OutputFormat | str,
    records: Sequence[FileRecord],
    stats: RunStats,
    repo_url: str,
    *,
    generated_at: str | None = None,
) -> str | dict[str, Any]:
    """Render records in the requested format.

    Raises:
        InvalidInputError: if `fmt` is not a known format.
    """
    try:
        output_format = OutputFormat(str(fmt).lower())
    except ValueError as exc:
        raise InvalidInputError(value=str(fmt), message=f"Unsupported output format: {fmt}") from exc
    if output_format is OutputFormat.JSON:
        return build_json(records, stats, repo_url, generated_at=generated_at)
    if output_format is OutputFormat.MARKDOWN:
        return build_markdown(records, stats, repo_url, generated_at=generated_at)
    return build_text(records, stats, repo_url, generated_at=generated_at)


def parse_structured_record(record: dict[str, Any] | str) -> list[tuple[str, str]]:
    """Read `(path, content)` pairs back from a structured record or its JSON text.

    Raises:
        InvalidInputError: if the value has no `files` array.
    """
    data = json.loads(record) if isinstance(record, str) else record
    files = data.get("files") if isinstance(data, dict) else None
    if not isinstance(files, list):
        raise InvalidInputError(value=type(record).__name__, message="Structured record has no 'files' array.")
    return [(str(item["path"]), str(item["content"])) for item in files]


_TEXT_FILE_HEADER = re.compile(r"^FILE: (?P<path>.+)\n=+\n", re.MULTILINE)
_MD_FILE_BLOCK = re.compile(
    r"^\*\*Path:\*\* `(?P<path>[^`\n]+)`  \n(?:\*\*[^\n]*\n)*\n(?P<fence>`{3,})[^\n`]*\n",
    re.MULTILINE,
)


def parse_text_output(text: str) -> list[tuple[str, str]]:
    """Read `(path, content)` pairs back from a flat text dump.

    Each block ends with the content followed by three newlines, right before
    the next `FILE:` header or the end of the document.
    """
    headers = [m for m in _TEXT_FILE_HEADER.finditer(text) if m.start() == 0 or text.endswith("\n\n", 0, m.start())]
    pairs: list[tuple[str, str]] = []
    for i, m in enumerate(headers):
        width = _rule_width(m.group("path"))
        rule = "\n" + "-" * width + "\n\n"
        body_start = text.index(rule, m.end() - 1) + len(rule)
        body_end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
        pairs.append((m.group("path"), text[body_start:body_end].removesuffix("\n\n\n")))
    return pairs


def parse_markdown_output(text: str) -> list[tuple[str, str]]:
    """Read `(path, content)` pairs back from the structured document."""
    pairs: list[tuple[str, str]] = []
    pos = 0
    while (m := _MD_FILE_BLOCK.search(text, pos)) is not None:
        closing = "\n" + m.group("fence") + "\n"
        end = text.index(closing, m.end() - 1)
        pairs.append((m.group("path"), text[m.end() : end]))
        pos = end + len(closing)
    return pairs


def parse_output(fmt: OutputFormat | str, output: str | dict[str, Any]) -> list[tuple[str, str]]:
    """Read `(path, content)` pairs back from any rendered output."""
    output_format = OutputFormat(str(fmt).lower())
    if output_format is OutputFormat.JSON:
        return parse_structured_record(output)
    if not isinstance(output, str):
        raise InvalidInputError(value=type(output).__name__, message=f"{output_format} output must be text.")
    if output_format is OutputFormat.MARKDOWN:
        return parse_markdown_output(output)
    return parse_text_output(output)
