"""Run coordinator: URL in, rendered output out."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from repo_combiner.config import FileRecord, OutputFormat, RepoIdentity, RunStats, SkipDecision
from repo_combiner.exceptions import CancelledRunError, RunFailedError
from repo_combiner.http_client import CancellationToken, GitHubClient
from repo_combiner.logging import logger
from repo_combiner.output_construction import render, sort_records
from repo_combiner.progress import ProgressPhase, ProgressReporter
from repo_combiner.resolver import api_base_for, build_auth_header, parse_repo_url
from repo_combiner.settings import Settings
from repo_combiner.skip_policy import SkipPolicy
from repo_combiner.sources import GitHubTreeSource, LocalTreeSource
from repo_combiner.walker import StatsCollector, TreeWalker

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    import httpx

    from repo_combiner.sources import TreeSource


class CombineResult(BaseModel):
    """Outcome of a successful run."""

    model_config = ConfigDict(frozen=True)

    output: str | dict[str, Any] = Field(..., description="Rendered output (a dict for the json format)")
    files: tuple[FileRecord, ...] = Field(default=(), description="Collected records, sorted by path")
    stats: RunStats
    identity: RepoIdentity
    repo_url: str
    format: OutputFormat
    request_count: int = Field(default=0, ge=0, description="Network round-trips issued by the run")
    skip_reasons: dict[SkipDecision, int] = Field(default_factory=dict)


class _Run:
    """State owned by one run. Nothing here outlives it."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.token = CancellationToken()
        self.stats = StatsCollector()
        self.reporter = ProgressReporter(settings.progress_sink, self.stats.snapshot)
        self.client: GitHubClient | None = None

    @property
    def request_count(self) -> int:
        return self.client.request_count if self.client is not None else 0


class RepoCombiner:
    """Fetch a repository, keep its text files and combine them into one document.

    Args:
        settings: Run settings; defaults to `Settings()`.
        transport: Optional httpx transport handed to the HTTP client.
        sleep: Coroutine function used for rate-limit and backoff delays.
        clock: Returns the current Unix time, compared with rate-limit resets.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._current: _Run | None = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._current is not None

    def abort(self) -> bool:
        """Cancel the run in progress, if any. Safe to call from any thread.

        Returns:
            bool: True if a run was cancelled.
        """
        with self._lock:
            current = self._current
        if current is None:
            return False
        current.token.cancel()
        return True

    def _begin(self) -> _Run:
        run = _Run(self.settings)
        with self._lock:
            if self._current is not None:
                msg = "A run is already in progress"
                raise RuntimeError(msg)
            self._current = run
        return run

    def _end(self) -> None:
        with self._lock:
            self._current = None

    async def process_repo(self, repo_url: str) -> CombineResult:
        """Combine a remote GitHub repository.

        Args:
            repo_url: `https://<host>/<owner>/<repo>` or `git@<host>:<owner>/<repo>.git`.

        Raises:
            InvalidInputError: if the URL cannot be parsed.
            CancelledRunError: if `abort()` was called; carries the partial stats and files.
            RunFailedError: for any other failure; `cause` holds the original error.

        Returns:
            CombineResult: the rendered output with the records and statistics.
        """
        identity = parse_repo_url(repo_url)
        api_base = api_base_for(identity, self.settings.api_base)
        run = self._begin()
        try:
            run.token.bind()
            async with GitHubClient(
                self.settings,
                auth_header=build_auth_header(self.settings.auth),
                reporter=run.reporter,
                token=run.token,
                transport=self._transport,
                sleep=self._sleep,
                clock=self._clock,
            ) as client:
                run.client = client
                source = GitHubTreeSource(identity, client, api_base)
                return await self._execute(run, source, repo_url)
        finally:
            self._end()

    async def process_path(self, path: str | Path) -> CombineResult:
        """Combine a repository checked out in a local directory."""
        source = LocalTreeSource(path)
        run = self._begin()
        try:
            run.token.bind()
            return await self._execute(run, source, source.repo_url)
        finally:
            self._end()

    def run(self, repo_url: str) -> CombineResult:
        """Blocking wrapper around `process_repo`."""
        return asyncio.run(self.process_repo(repo_url))

    def run_path(self, path: str | Path) -> CombineResult:
        """Blocking wrapper around `process_path`."""
        return asyncio.run(self.process_path(path))

    async def _execute(self, run: _Run, source: TreeSource, repo_url: str) -> CombineResult:
        settings = run.settings
        stats = run.stats
        reporter = run.reporter
        stats.begin()
        reporter.emit(ProgressPhase.INITIALIZING, f"Processing repository: {repo_url}", 0.0)
        walker = TreeWalker(
            source,
            SkipPolicy.from_settings(settings),
            concurrency=settings.concurrency,
            reporter=reporter,
            token=run.token,
            stats=stats,
        )
        collected: tuple[FileRecord, ...] = ()
        try:
            result = await walker.walk()
            collected = tuple(sort_records(result.files))
            if result.cancelled:
                raise CancelledRunError
            reporter.emit(ProgressPhase.GENERATING, "Generating output...", 0.9)
            stats.reconcile(collected)
            stats.finish()
            final = stats.snapshot()
            output = render(settings.format, collected, final, source.repo_url)
        except CancelledRunError:
            stats.reconcile(collected)
            stats.finish()
            reporter.emit(ProgressPhase.ABORTED, "Processing aborted")
            logger.info("run_cancelled", repo=repo_url, collected=len(collected), requests=run.request_count)
            raise CancelledRunError(stats=stats.snapshot(), files=collected) from None
        except Exception as exc:  # noqa: BLE001
            stats.finish()
            reporter.emit(ProgressPhase.ERROR, f"Error: {exc}")
            raise RunFailedError(repo_url=repo_url, cause=exc, stats=stats.snapshot()) from exc

        reporter.emit(ProgressPhase.COMPLETE, "Processing complete", 1.0)
        logger.info(
            "run_complete",
            repo=repo_url,
            files=final.total_files,
            skipped=final.skipped_files,
            tokens=final.total_tokens,
            requests=run.request_count,
            elapsed=round(final.elapsed, 3),
        )
        return CombineResult(
            output=output,
            files=collected,
            stats=final,
            identity=source.identity,
            repo_url=source.repo_url,
            format=settings.format,
            request_count=run.request_count,
            skip_reasons=result.skip_reasons,
        )
