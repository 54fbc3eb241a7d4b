"""Rate-limit aware HTTP client for the GitHub REST API.

One `GitHubClient` lives for exactly one run. It owns the response cache, the
in-flight request map and the rate-limit counters of that run, and stops every
wait as soon as the run's `CancellationToken` is tripped.
"""

from __future__ import annotations

import asyncio
import json
import math
import threading
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, NamedTuple

import httpx
from pydantic import BaseModel, ConfigDict, Field

from repo_combiner import __version__
from repo_combiner.config import GITHUB_ACCEPT
from repo_combiner.exceptions import (
    AuthFailedError,
    CancelledRunError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    TimedOutError,
    UnexpectedStatusError,
)
from repo_combiner.logging import logger
from repo_combiner.progress import ProgressPhase, ProgressReporter
from repo_combiner.resolver import auth_fingerprint

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from repo_combiner.exceptions import RemoteError
    from repo_combiner.settings import Settings

USER_AGENT = f"repo-combiner/{__version__}"
_RATE_LIMIT_STATUSES = {403, 429}


class CachedResponse(BaseModel):
    """A fully buffered response that can be handed out any number of times."""

    model_config = ConfigDict(frozen=True)

    url: str
    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    content: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300  # noqa: PLR2004

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:  # noqa: ANN401
        return json.loads(self.content)

    def replay(self) -> CachedResponse:
        """Return an independent copy, so callers never share a headers dict."""
        return self.model_copy(update={"headers": dict(self.headers)})


class CacheKey(NamedTuple):
    method: str
    url: str
    fingerprint: str


class RateLimitState(BaseModel):
    """Last known values of the `x-ratelimit-*` headers."""

    limit: int | None = None
    remaining: int | None = None
    reset_at: float | None = None

    def update(self, headers: Mapping[str, str]) -> bool:
        """Refresh from response headers. Returns True when any counter was present."""
        seen = False
        for attr, header in (
            ("limit", "x-ratelimit-limit"),
            ("remaining", "x-ratelimit-remaining"),
            ("reset_at", "x-ratelimit-reset"),
        ):
            raw = headers.get(header)
            if raw is None:
                continue
            try:
                value = int(raw) if attr != "reset_at" else float(raw)
            except ValueError:
                continue
            setattr(self, attr, value)
            seen = True
        return seen

    def reset_clock(self) -> str:
        """Local wall-clock time of the next reset, e.g. `14:05:09`."""
        if self.reset_at is None:
            return "an unknown time"
        return datetime.fromtimestamp(self.reset_at).strftime("%H:%M:%S")  # noqa: DTZ006


class CancellationToken:
    """Run-wide cancellation flag that every suspension point can await.

    `cancel()` may be called from any thread. Awaitables passed to `run` are
    abandoned as soon as the token trips.
    """

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def bind(self) -> None:
        """Attach the token to the running event loop. Called once at run start."""
        self._loop = asyncio.get_running_loop()
        self._event = asyncio.Event()
        if self._flag.is_set():
            self._event.set()

    def cancel(self) -> None:
        self._flag.set()
        loop, event = self._loop, self._event
        if loop is None or event is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledRunError

    async def run(self, awaitable: Awaitable[Any], timeout: float | None = None) -> Any:  # noqa: ANN401
        """Await `awaitable` unless the token trips or `timeout` expires first.

        Raises:
            CancelledRunError: if the token trips first.
            TimeoutError: if `timeout` expires first.
        """
        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise CancelledRunError
        if self._event is None:
            self.bind()
        waiter = asyncio.ensure_future(self._event.wait())  # type: ignore[union-attr]
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self.cancelled:
            raise CancelledRunError
        raise TimeoutError

    async def sleep(self, seconds: float, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        await self.run(sleep(max(0.0, seconds)))


class GitHubClient:
    """Buffered GET requests with caching, coalescing, retries and rate-limit handling.

    Use as an async context manager:

        async with GitHubClient(settings, auth_header=header) as client:
            repo = (await client.get(url)).json()

    Args:
        settings: Run settings (timeout, retries, concurrency, rate-limit knobs).
        auth_header: Resolved `Authorization` value, or None.
        reporter: Progress reporter used for warning, waiting and retrying events.
        token: Cancellation token of the run.
        transport: Optional httpx transport (tests use `httpx.MockTransport`).
        sleep: Coroutine function used for every delay.
        clock: Returns the current Unix time in seconds.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        auth_header: str | None = None,
        reporter: ProgressReporter | None = None,
        token: CancellationToken | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.auth_header = auth_header
        self.fingerprint = auth_fingerprint(auth_header)
        self.reporter = reporter or ProgressReporter()
        self.token = token or CancellationToken()
        self.rate_limit = RateLimitState()
        self.request_count = 0
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._cache: dict[CacheKey, CachedResponse] = {}
        self._inflight: dict[CacheKey, asyncio.Future[CachedResponse]] = {}
        self._slots: asyncio.Semaphore | None = None
        self._http: httpx.AsyncClient | None = None

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Accept": GITHUB_ACCEPT, "User-Agent": USER_AGENT}
        if self.auth_header:
            headers["Authorization"] = self.auth_header
        return headers

    async def __aenter__(self) -> GitHubClient:
        self._http = httpx.AsyncClient(
            headers=self.headers,
            timeout=self.settings.timeout,
            transport=self._transport,
            follow_redirects=True,
        )
        self._slots = asyncio.Semaphore(self.settings.concurrency)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        pending = list(self._inflight.values())
        for fut in pending:
            fut.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def get(self, url: str, *, path: str = "") -> CachedResponse:
        """Fetch `url`, sharing the round-trip with identical requests of this run.

        Args:
            url: Absolute URL.
            path: Repository path the request is about, used in error messages.

        Raises:
            CancelledRunError: if the run is cancelled while waiting.
            RateLimitedError: if the quota is exhausted for longer than the wait cap.
            AuthFailedError, NotFoundError, ServerError, UnexpectedStatusError:
                for the matching status codes.
            NetworkError: if the transport keeps failing (`TimedOutError` for timeouts).

        Returns:
            CachedResponse: a private copy of the successful response.
        """
        if self._http is None:
            msg = "GitHubClient must be used as an async context manager"
            raise RuntimeError(msg)
        self.token.raise_if_cancelled()
        key = CacheKey("GET", url, self.fingerprint)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("cache_hit", url=url)
            return cached.replay()
        shared = self._inflight.get(key)
        if shared is None:
            shared = asyncio.ensure_future(self._fetch(url, path))
            self._inflight[key] = shared
            shared.add_done_callback(lambda fut: self._settle(key, fut))
        else:
            logger.debug("request_coalesced", url=url)
        response: CachedResponse = await self.token.run(asyncio.shield(shared))
        return response.replay()

    def _settle(self, key: CacheKey, fut: asyncio.Future[CachedResponse]) -> None:
        self._inflight.pop(key, None)
        if fut.cancelled() or fut.exception() is not None:
            return
        self._cache[key] = fut.result()

    async def _fetch(self, url: str, path: str) -> CachedResponse:
        retries_left = self.settings.max_retries
        delay = self.settings.backoff_base
        while True:
            self.token.raise_if_cancelled()
            try:
                response = await self._send(url)
            except (httpx.TransportError, TimeoutError) as exc:
                timed_out = isinstance(exc, (httpx.TimeoutException, TimeoutError))
                if retries_left <= 0:
                    if timed_out:
                        raise TimedOutError(url=url, message=f"Request to {url} timed out.") from exc
                    raise NetworkError(url=url, message=f"Network error while fetching {url}: {exc}") from exc
                retries_left -= 1
                self.reporter.emit(
                    ProgressPhase.RETRYING,
                    f"Network error, retrying in {delay:g} seconds...",
                )
                await self.token.sleep(delay, self._sleep)
                delay *= 2
                continue

            if self.rate_limit.update(response.headers):
                self._warn_if_low_quota()
            if response.ok:
                return response

            if self._quota_exhausted(response):
                wait = self._seconds_until_reset()
                if wait is not None and wait <= self.settings.rate_limit_wait_cap and retries_left > 0:
                    retries_left -= 1
                    self.reporter.emit(
                        ProgressPhase.WAITING,
                        f"Rate limit exceeded, waiting {math.ceil(max(wait, 0))} seconds "
                        f"until {self.rate_limit.reset_clock()}...",
                    )
                    await self.token.sleep(wait, self._sleep)
                    continue
                raise self._rate_limited(url, wait)
            raise self._status_error(response, url, path)

    async def _send(self, url: str) -> CachedResponse:
        assert self._http is not None  # noqa: S101
        assert self._slots is not None  # noqa: S101
        await self.token.run(self._slots.acquire())
        try:
            self.request_count += 1
            logger.debug("http_request", method="GET", url=url)
            raw: httpx.Response = await self.token.run(self._http.get(url), timeout=self.settings.timeout)
        finally:
            self._slots.release()
        return CachedResponse(
            url=url,
            status=raw.status_code,
            headers={k.lower(): v for k, v in raw.headers.items()},
            content=raw.content,
        )

    def _warn_if_low_quota(self) -> None:
        remaining = self.rate_limit.remaining
        if remaining is None or remaining >= self.settings.rate_limit_warn_threshold:
            return
        if self.auth_header:
            return
        limit = self.rate_limit.limit if self.rate_limit.limit is not None else "?"
        self.reporter.emit(
            ProgressPhase.WARNING,
            f"Warning: GitHub API rate limit almost reached ({remaining}/{limit} remaining). "
            f"Limit will reset at {self.rate_limit.reset_clock()}. "
            "Consider authenticating for higher limits.",
        )

    def _quota_exhausted(self, response: CachedResponse) -> bool:
        return response.status in _RATE_LIMIT_STATUSES and response.headers.get("x-ratelimit-remaining") == "0"

    def _seconds_until_reset(self) -> float | None:
        if self.rate_limit.reset_at is None:
            return None
        return self.rate_limit.reset_at - self._clock()

    def _rate_limited(self, url: str, wait: float | None) -> RateLimitedError:
        limit = self.rate_limit.limit
        minutes = f" (in {math.ceil(wait / 60)} minutes)" if wait is not None and wait > 0 else ""
        return RateLimitedError(
            url=url,
            message=(
                f"GitHub API rate limit exceeded. Limit of {limit if limit is not None else '?'} requests "
                f"will reset at {self.rate_limit.reset_clock()}{minutes}. "
                "To avoid this error, authenticate with a GitHub token."
            ),
            reset_at=self.rate_limit.reset_at,
            limit=limit,
        )

    def _status_error(self, response: CachedResponse, url: str, path: str) -> RemoteError:
        status = response.status
        server_message = _server_message(response)
        if status in _RATE_LIMIT_STATUSES and _mentions_rate_limit(server_message):
            return RateLimitedError(
                url=url,
                message=f"GitHub API secondary rate limit triggered: {server_message}",
                reset_at=self.rate_limit.reset_at,
                limit=self.rate_limit.limit,
                secondary=True,
            )
        if status == 401:  # noqa: PLR2004
            return AuthFailedError(url=url, status=status)
        if status == 403:  # noqa: PLR2004
            detail = server_message or "Access forbidden"
            return AuthFailedError(
                url=url,
                message=f"Access denied: {detail}. Check your credentials or token.",
                status=status,
            )
        if status == 404:  # noqa: PLR2004
            return NotFoundError(
                url=url,
                message=(
                    f"Repository path not found: {path or 'root'}. "
                    "The repository might be private or not exist."
                ),
                path=path,
            )
        if status >= 500:  # noqa: PLR2004
            return ServerError(url=url, message=f"GitHub server error ({status}). Try again later.", status=status)
        return UnexpectedStatusError(
            url=url,
            message=f"GitHub API error: {status} {server_message}".rstrip(),
            status=status,
        )


def _server_message(response: CachedResponse) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text().strip()[:200]
    if isinstance(body, dict):
        return str(body.get("message", "")).strip()
    return ""


def _mentions_rate_limit(message: str) -> bool:
    lowered = message.lower()
    return "rate limit" in lowered or "abuse" in lowered
