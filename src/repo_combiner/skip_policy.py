"""Decide which repository entries are worth fetching and keeping.

The policy is pure: it only looks at a path, an optional declared size and an
optional sample of the first bytes of a blob.
"""

from __future__ import annotations

import codecs
import posixpath
from typing import TYPE_CHECKING

from repo_combiner.config import (
    BINARY_MAX_NULL_BYTES,
    BINARY_MIN_PRINTABLE_RATIO,
    BINARY_SAMPLE_BYTES,
    BINARY_SIGNATURES,
    SkipDecision,
    file_extension,
)

if TYPE_CHECKING:
    from repo_combiner.settings import Settings

_PRINTABLE_ASCII = frozenset(range(0x20, 0x7F)) | {0x09, 0x0A, 0x0D}
_WHITESPACE_CONTROLS = frozenset("\t\n\r")


def _split(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def matching_signature(data: bytes) -> str | None:
    """Return the extension of the binary format whose magic number starts `data`, if any."""
    for signature, ext in BINARY_SIGNATURES:
        if data.startswith(signature):
            return ext
    return None


def printable_ratio(sample: bytes) -> float:
    """Share of printable characters in `sample`.

    A sample that is valid UTF-8 (a multi-byte sequence cut at the end of the
    sample is tolerated) is measured over decoded characters, so accented or
    CJK source text counts as printable. Anything else is measured byte by byte
    against printable ASCII plus tab, newline and carriage return.
    """
    if not sample:
        return 1.0
    try:
        text = codecs.getincrementaldecoder("utf-8")().decode(sample, final=False)
    except UnicodeDecodeError:
        printable = sum(1 for b in sample if b in _PRINTABLE_ASCII)
        return printable / len(sample)
    if not text:
        return 1.0
    printable = sum(1 for ch in text if ch.isprintable() or ch in _WHITESPACE_CONTROLS)
    return printable / len(text)


def is_binary_content(data: bytes) -> bool:
    """Check whether a blob looks binary.

    A blob is binary when it starts with a known signature, when its first KiB
    holds more than one NUL byte, or when less than 80% of that KiB is printable.

    Args:
        data (bytes): the blob, or at least its first bytes

    Returns:
        bool: True if the blob should be skipped as binary
    """
    if not data:
        return False
    if matching_signature(data) is not None:
        return True
    sample = data[:BINARY_SAMPLE_BYTES]
    if sample.count(0) > BINARY_MAX_NULL_BYTES:
        return True
    return printable_ratio(sample) < BINARY_MIN_PRINTABLE_RATIO


class SkipPolicy:
    """Skip rules of one run.

    Rules are checked in a fixed order and the first match wins:
    directory component, file name, extension, declared size, binary content.
    """

    def __init__(
        self,
        skip_dirs: frozenset[str] = frozenset(),
        skip_files: frozenset[str] = frozenset(),
        skip_extensions: frozenset[str] = frozenset(),
        max_file_bytes: int = 0,
    ) -> None:
        self.skip_dirs = frozenset(skip_dirs)
        self.skip_files = frozenset(skip_files)
        self.skip_extensions = frozenset(e.lower() for e in skip_extensions)
        self.max_file_bytes = max_file_bytes

    @classmethod
    def from_settings(cls, settings: Settings) -> SkipPolicy:
        return cls(
            skip_dirs=settings.skip_dirs,
            skip_files=settings.skip_files,
            skip_extensions=settings.skip_extensions,
            max_file_bytes=settings.max_file_bytes,
        )

    def check_dir(self, path: str) -> SkipDecision:
        """Decide whether to descend into the directory at `path`."""
        parts = _split(path)
        if any(part in self.skip_dirs for part in parts):
            return SkipDecision.SKIP_DIR
        if parts and parts[-1] in self.skip_files:
            return SkipDecision.SKIP_NAME
        return SkipDecision.ACCEPT

    def check_path(self, path: str, size: int | None = None) -> SkipDecision:
        """Apply the rules that need no file content: directory, name, extension and size."""
        parts = _split(path)
        if any(part in self.skip_dirs for part in parts[:-1]):
            return SkipDecision.SKIP_DIR
        name = parts[-1] if parts else posixpath.basename(path)
        if name in self.skip_files:
            return SkipDecision.SKIP_NAME
        if file_extension(name) in self.skip_extensions:
            return SkipDecision.SKIP_EXTENSION
        if self.max_file_bytes > 0 and size is not None and size > self.max_file_bytes:
            return SkipDecision.SKIP_SIZE
        return SkipDecision.ACCEPT

    def classify(self, path: str, size: int | None = None, head: bytes | None = None) -> SkipDecision:
        """Classify a file candidate with every rule.

        Args:
            path (str): path relative to the repository root
            size (int | None): declared size in bytes, if known
            head (bytes | None): first bytes of the blob, if already fetched

        Returns:
            SkipDecision: the first matching rule, or ACCEPT
        """
        decision = self.check_path(path, size)
        if decision is not SkipDecision.ACCEPT:
            return decision
        if head is not None and is_binary_content(head):
            return SkipDecision.SKIP_BINARY
        return SkipDecision.ACCEPT
