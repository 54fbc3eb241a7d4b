from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from repo_combiner.config import OutputFormat
from repo_combiner.file_manipulation import (
    add_datetime_to_filename,
    count_lines,
    decode_text,
    estimate_tokens,
    format_count,
    format_kilobytes,
    format_megabytes,
    iso_utc,
    make_record,
    write_output,
)


@pytest.mark.unit
def test_estimate_tokens_empty_text() -> None:
    assert estimate_tokens("") == 0


@pytest.mark.unit
@pytest.mark.parametrize(
    ("text", "expected"),
    [
        # 1 word, 1 byte -> (1 + 1) / 2
        ("a", 1),
        # 2 words, 11 bytes -> (2 + 3) / 2 = 2.5, rounded half up
        ("hello world", 3),
        # `f ( x ) ;` -> 5 words, 5 bytes -> (5 + 2) / 2 = 3.5
        ("f(x);", 4),
        # whitespace only: 0 words, 3 bytes -> (0 + 1) / 2, floored at 1
        ("   ", 1),
    ],
)
def test_estimate_tokens_heuristic(text: str, expected: int) -> None:
    assert estimate_tokens(text) == expected


@pytest.mark.unit
def test_estimate_tokens_counts_utf8_bytes() -> None:
    # 1 word, 6 bytes (3 two-byte chars) -> (1 + 2) / 2 = 1.5 -> 2
    assert estimate_tokens("ééé") == 2


@pytest.mark.unit
def test_count_lines() -> None:
    assert count_lines("") == 0
    assert count_lines("one") == 1
    assert count_lines("# hello\n") == 2
    assert count_lines("a\nb\nc") == 3


@pytest.mark.unit
def test_decode_text_replaces_invalid_bytes_and_drops_bom() -> None:
    assert decode_text(b"\xef\xbb\xbfok") == "ok"
    assert decode_text(b"bad \xff byte") == "bad \ufffd byte"


@pytest.mark.unit
def test_make_record_fills_metrics() -> None:
    record = make_record("src/index.js", b'console.log("hi");\n')

    assert record.byte_size == 19
    assert record.line_count == 2
    assert record.estimated_tokens == estimate_tokens('console.log("hi");\n')
    assert record.extension == ".js"
    assert record.language == "javascript"
    assert record.directory == "src"
    assert record.name == "index.js"


@pytest.mark.unit
def test_formatting_helpers() -> None:
    assert format_kilobytes(2048) == "2.00 KB"
    assert format_megabytes(3 * 1024 * 1024) == "3.00 MB"
    assert format_count(1234567) == "1,234,567"
    assert iso_utc(datetime(2025, 3, 1, 12, 0, tzinfo=UTC)) == "2025-03-01T12:00:00.000Z"


@pytest.mark.unit
def test_add_datetime_to_filename() -> None:
    stamped = add_datetime_to_filename(Path("output/repo.md"), datetime(2025, 3, 1, 9, 5, 7))  # noqa: DTZ001

    assert stamped == Path("output/repo_2025-03-01_09-05-07.md")


@pytest.mark.unit
def test_write_output_adds_suffix_and_creates_parents(tmp_path: Path) -> None:
    target = write_output("hello", tmp_path / "nested" / "combined", OutputFormat.TEXT, timestamp=False)

    assert target == tmp_path / "nested" / "combined.txt"
    assert target.read_text(encoding="utf-8") == "hello"


@pytest.mark.unit
def test_write_output_serialises_records_with_timestamp(tmp_path: Path) -> None:
    target = write_output({"files": []}, tmp_path / "out.json", OutputFormat.JSON)

    assert target.parent == tmp_path
    assert target.name.startswith("out_")
    assert target.suffix == ".json"
    assert json.loads(target.read_text(encoding="utf-8")) == {"files": []}
