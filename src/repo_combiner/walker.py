"""Concurrent walk over a repository tree.

The walker keeps a queue of pending listing and file jobs and runs at most
`concurrency` of them at once. Job results are merged by the coordinating
coroutine only, so the statistics have a single writer.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections import Counter, deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from repo_combiner.config import EntryKind, FileRecord, RunStats, SkipDecision, TreeEntry
from repo_combiner.exceptions import (
    AuthFailedError,
    CancelledRunError,
    RateLimitedError,
    RemoteError,
)
from repo_combiner.file_manipulation import format_megabytes, make_record
from repo_combiner.http_client import CancellationToken
from repo_combiner.logging import logger
from repo_combiner.progress import ProgressPhase, ProgressReporter
from repo_combiner.skip_policy import is_binary_content

if TYPE_CHECKING:
    from repo_combiner.skip_policy import SkipPolicy
    from repo_combiner.sources import FetchedBlob, TreeSource

# Blobs above this size are decoded and measured in a worker thread.
OFFLOAD_BYTES = 256 * 1024
PROGRESS_EVERY = 5


class StatsCollector:
    """Mutable run statistics. Only the coordinating coroutine writes to it."""

    def __init__(self) -> None:
        self.total_files = 0
        self.total_bytes = 0
        self.total_tokens = 0
        self.total_lines = 0
        self.skipped_files = 0
        self.skipped_bytes = 0
        self.start: datetime | None = None
        self.end: datetime | None = None

    def begin(self) -> None:
        self.start = datetime.now(UTC)
        self.end = None

    def finish(self) -> None:
        self.end = datetime.now(UTC)

    def add_file(self, record: FileRecord) -> None:
        self.total_files += 1
        self.total_bytes += record.byte_size
        self.total_tokens += record.estimated_tokens
        self.total_lines += record.line_count

    def add_skip(self, size: int) -> None:
        self.skipped_files += 1
        self.skipped_bytes += max(0, size)

    def reconcile(self, files: list[FileRecord] | tuple[FileRecord, ...]) -> None:
        """Recompute the file totals from the collected records."""
        self.total_files = len(files)
        self.total_bytes = sum(f.byte_size for f in files)
        self.total_tokens = sum(f.estimated_tokens for f in files)
        self.total_lines = sum(f.line_count for f in files)

    @property
    def elapsed(self) -> float:
        if self.start is None:
            return 0.0
        end = self.end or datetime.now(UTC)
        return max(0.0, (end - self.start).total_seconds())

    def snapshot(self) -> RunStats:
        return RunStats(
            total_files=self.total_files,
            total_bytes=self.total_bytes,
            total_tokens=self.total_tokens,
            total_lines=self.total_lines,
            skipped_files=self.skipped_files,
            skipped_bytes=self.skipped_bytes,
            start=self.start,
            end=self.end,
            elapsed=self.elapsed,
        )


class WalkResult(BaseModel):
    """Files collected by a walk, and whether the walk was cut short by cancellation."""

    model_config = ConfigDict(frozen=True)

    files: tuple[FileRecord, ...] = ()
    cancelled: bool = False
    skip_reasons: dict[SkipDecision, int] = Field(default_factory=dict)


@dataclass(frozen=True)
class _ListJob:
    path: str


@dataclass(frozen=True)
class _FileJob:
    entry: TreeEntry


@dataclass
class _DirCounter:
    total: int
    done: int = 0


def inspect_blob(entry: TreeEntry, blob: FetchedBlob) -> FileRecord | None:
    """Turn a fetched blob into a record, or None when the blob is binary."""
    if is_binary_content(blob.data):
        return None
    return make_record(entry.path, blob.data, blob.last_modified)


class TreeWalker:
    """Walk a `TreeSource` and collect the text files that pass the skip policy.

    Args:
        source: Where listings and blobs come from.
        policy: Skip rules of the run.
        concurrency: Maximum number of jobs in flight.
        reporter: Progress reporter of the run.
        token: Cancellation token of the run.
        stats: Statistics accumulator of the run.
    """

    def __init__(
        self,
        source: TreeSource,
        policy: SkipPolicy,
        *,
        concurrency: int = 5,
        reporter: ProgressReporter | None = None,
        token: CancellationToken | None = None,
        stats: StatsCollector | None = None,
    ) -> None:
        self.source = source
        self.policy = policy
        self.concurrency = max(1, concurrency)
        self.stats = stats or StatsCollector()
        self.reporter = reporter or ProgressReporter(stats=self.stats.snapshot)
        self.token = token or CancellationToken()
        self.skip_reasons: Counter[SkipDecision] = Counter()
        self._dirs: dict[str, _DirCounter] = {}

    async def walk(self) -> WalkResult:
        """Fetch the default branch, then list and fetch the whole tree.

        Raises:
            RemoteError: when the metadata fetch or the root listing fails, or on
                rate-limit and authentication errors anywhere in the tree.

        Returns:
            WalkResult: the collected records, unordered.
        """
        files: list[FileRecord] = []
        queue: deque[_ListJob | _FileJob] = deque([_ListJob(path="")])
        running: dict[asyncio.Task[Any], _ListJob | _FileJob] = {}
        identity = self.source.identity
        try:
            self.reporter.emit(ProgressPhase.FETCHING, f"Fetching repository: {identity.full_name}", 0.1)
            await self.token.run(self.source.get_default_branch())
            self.reporter.emit(ProgressPhase.FETCHING, "Fetching repository contents...", 0.2)
            while queue or running:
                self.token.raise_if_cancelled()
                while queue and len(running) < self.concurrency:
                    job = queue.popleft()
                    running[asyncio.create_task(self._run(job))] = job
                done, _ = await self.token.run(asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED))
                for task in done:
                    job = running.pop(task)
                    self._merge(job, task, queue, files)
        except CancelledRunError:
            logger.info("walk_cancelled", repo=identity.full_name, collected=len(files))
            return WalkResult(files=tuple(files), cancelled=True, skip_reasons=dict(self.skip_reasons))
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
        return WalkResult(files=tuple(files), cancelled=False, skip_reasons=dict(self.skip_reasons))

    async def _run(self, job: _ListJob | _FileJob) -> list[TreeEntry] | FileRecord | None:
        if isinstance(job, _ListJob):
            return await self.source.list_dir(job.path)
        blob = await self.source.fetch_file(job.entry)
        self.token.raise_if_cancelled()
        if len(blob.data) > OFFLOAD_BYTES:
            return await asyncio.to_thread(inspect_blob, job.entry, blob)
        return inspect_blob(job.entry, blob)

    def _merge(
        self,
        job: _ListJob | _FileJob,
        task: asyncio.Task[Any],
        queue: deque[_ListJob | _FileJob],
        files: list[FileRecord],
    ) -> None:
        if task.cancelled():
            raise CancelledRunError
        exc = task.exception()
        if isinstance(job, _ListJob):
            if exc is not None:
                self._listing_failed(job.path, exc)
                return
            self._enqueue_listing(job.path, task.result(), queue)
            return

        entry = job.entry
        if exc is not None:
            self._file_failed(entry, exc)
        else:
            record: FileRecord | None = task.result()
            if record is None:
                self._skip(entry, SkipDecision.SKIP_BINARY)
            else:
                files.append(record)
                self.stats.add_file(record)
        self._file_done(entry)

    def _enqueue_listing(self, path: str, entries: list[TreeEntry], queue: deque[_ListJob | _FileJob]) -> None:
        accepted = 0
        for entry in entries:
            if entry.kind == EntryKind.DIR:
                decision = self.policy.check_dir(entry.path)
                if decision is SkipDecision.ACCEPT:
                    queue.append(_ListJob(path=entry.path))
                else:
                    logger.debug("skip_directory", path=entry.path, reason=str(decision))
                continue
            decision = self.policy.check_path(entry.path, entry.size)
            if decision is SkipDecision.ACCEPT:
                queue.append(_FileJob(entry=entry))
                accepted += 1
            else:
                self._skip(entry, decision)
        if accepted:
            self._dirs[path] = _DirCounter(total=accepted)
        logger.debug("directory_listed", path=path or "/", entries=len(entries), accepted=accepted)

    def _skip(self, entry: TreeEntry, decision: SkipDecision) -> None:
        self.stats.add_skip(entry.size)
        self.skip_reasons[decision] += 1
        if decision is SkipDecision.SKIP_SIZE:
            message = f"Skipping large file ({format_megabytes(entry.size)}): {entry.path}"
        elif decision is SkipDecision.SKIP_BINARY:
            message = f"Skipping binary file: {entry.path}"
        elif decision is SkipDecision.SKIP_EXTENSION:
            message = f"Skipping excluded file extension: {entry.path}"
        else:
            message = f"Skipping file: {entry.path}"
        self.reporter.emit(ProgressPhase.PROCESSING, message)

    def _file_done(self, entry: TreeEntry) -> None:
        directory = entry.path.rsplit("/", 1)[0] if "/" in entry.path else ""
        counter = self._dirs.get(directory)
        if counter is None:
            return
        counter.done += 1
        if counter.done % PROGRESS_EVERY == 0 or counter.done == counter.total:
            self.reporter.emit(
                ProgressPhase.PROCESSING,
                f"Processed file {counter.done}/{counter.total} in {directory or 'root'}: {entry.path}",
                counter.done / counter.total,
            )

    def _with_context(self, exc: RemoteError, path: str) -> RemoteError:
        where = path or "repository root"
        return dataclasses.replace(
            exc,
            message=f"{exc.message} (while fetching {where} of {self.source.identity.full_name})",
        )

    def _listing_failed(self, path: str, exc: BaseException) -> None:
        if isinstance(exc, CancelledRunError) or not isinstance(exc, RemoteError):
            raise exc
        if not path or isinstance(exc, (RateLimitedError, AuthFailedError)):
            raise self._with_context(exc, path) from exc
        logger.warning("directory_skipped", path=path, error=str(exc))

    def _file_failed(self, entry: TreeEntry, exc: BaseException) -> None:
        if isinstance(exc, CancelledRunError) or not isinstance(exc, RemoteError):
            raise exc
        if isinstance(exc, (RateLimitedError, AuthFailedError)):
            raise self._with_context(exc, entry.path) from exc
        logger.warning("file_skipped", path=entry.path, error=str(exc))
        self.stats.add_skip(entry.size)
        self.reporter.emit(ProgressPhase.PROCESSING, f"Error processing file {entry.path}: {exc}")
