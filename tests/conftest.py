from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from repo_combiner.settings import AuthConfig, Settings

if TYPE_CHECKING:
    from collections.abc import Callable

    from repo_combiner.progress import ProgressEvent

NOW = 1_700_000_000.0


class FakeGitHub:
    """In-memory GitHub API (metadata, contents and raw downloads) behind `httpx.MockTransport`.

    `queue(path, response)` makes the next request for `path` answer `response`
    instead of the normal route; a callable response is called with the request.
    """

    api = "https://api.github.com"
    raw = "https://raw.githubusercontent.com"

    def __init__(self, owner: str = "octo", repo: str = "demo", branch: str = "main") -> None:
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.files: dict[str, bytes] = {}
        self.declared: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self.delay = 0.0
        self._queued: dict[str, list[Any]] = defaultdict(list)

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def contents_path(self, path: str = "") -> str:
        return f"{self.repo_path}/contents/{path}"

    def raw_url(self, path: str) -> str:
        return f"{self.raw}/{self.owner}/{self.repo}/{self.branch}/{path}"

    def add_file(self, path: str, data: bytes | str, size: int | None = None) -> None:
        blob = data.encode("utf-8") if isinstance(data, str) else data
        self.files[path] = blob
        self.declared[path] = len(blob) if size is None else size

    def queue(self, path: str, response: httpx.Response | Callable[[httpx.Request], httpx.Response]) -> None:
        self._queued[path].append(response)

    def calls_to(self, url_or_path: str) -> int:
        return sum(1 for r in self.requests if str(r.url).split("?")[0].endswith(url_or_path))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        path = request.url.path
        if self._queued.get(path):
            response = self._queued[path].pop(0)
            return response(request) if callable(response) else response
        if request.url.host == "raw.githubusercontent.com":
            prefix = f"/{self.owner}/{self.repo}/{self.branch}/"
            rel = path.removeprefix(prefix)
            if path.startswith(prefix) and rel in self.files:
                return httpx.Response(200, content=self.files[rel])
            return httpx.Response(404, text="404: Not Found")
        if path == self.repo_path:
            return httpx.Response(200, json={"full_name": f"{self.owner}/{self.repo}", "default_branch": self.branch})
        prefix = f"{self.repo_path}/contents"
        if path.startswith(prefix):
            return self._contents(path.removeprefix(prefix).strip("/"))
        return httpx.Response(404, json={"message": "Not Found"})

    def _entry(self, path: str, kind: str) -> dict[str, Any]:
        return {
            "name": path.rsplit("/", 1)[-1],
            "path": path,
            "type": kind,
            "size": self.declared.get(path, 0) if kind == "file" else 0,
            "download_url": self.raw_url(path) if kind == "file" else None,
        }

    def _contents(self, rel: str) -> httpx.Response:
        if rel in self.files:
            return httpx.Response(200, json=self._entry(rel, "file"))
        prefix = f"{rel}/" if rel else ""
        children: dict[str, str] = {}
        for path in self.files:
            if not path.startswith(prefix):
                continue
            head, sep, _ = path.removeprefix(prefix).partition("/")
            children[prefix + head] = "dir" if sep else "file"
        if not children:
            return httpx.Response(404, json={"message": "Not Found"})
        return httpx.Response(200, json=[self._entry(p, k) for p, k in sorted(children.items())])


def rate_limited_response(reset_at: float, *, limit: int = 60) -> httpx.Response:
    return httpx.Response(
        403,
        headers={
            "x-ratelimit-limit": str(limit),
            "x-ratelimit-remaining": "0",
            "x-ratelimit-reset": str(int(reset_at)),
        },
        content=json.dumps({"message": "API rate limit exceeded"}).encode(),
    )


class SleepRecorder:
    """Stand-in for `asyncio.sleep` that records the delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def events() -> list[ProgressEvent]:
    return []


@pytest.fixture
def make_settings(events: list[ProgressEvent]) -> Callable[..., Settings]:
    def factory(**overrides: Any) -> Settings:
        overrides.setdefault("auth", AuthConfig())
        overrides.setdefault("progress_sink", events.append)
        return Settings(**overrides)

    return factory
