"""Tree sources: where the walker gets listings and blobs from.

`GitHubTreeSource` talks to the GitHub contents API through a `GitHubClient`.
`LocalTreeSource` serves the same calls from a directory on disk.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from urllib.parse import quote, urlencode

from pydantic import BaseModel, ConfigDict, Field

from repo_combiner.config import DEFAULT_BRANCH, EntryKind, RepoIdentity, TreeEntry
from repo_combiner.exceptions import AuthFailedError, InvalidInputError, MalformedResponseError, NotFoundError
from repo_combiner.logging import logger

if TYPE_CHECKING:
    from repo_combiner.http_client import CachedResponse, GitHubClient


class FetchedBlob(BaseModel):
    """Raw bytes of a file plus its modification time when the source knows it."""

    model_config = ConfigDict(frozen=True)

    data: bytes
    last_modified: datetime | None = Field(default=None)


@runtime_checkable
class TreeSource(Protocol):
    """Capability the walker needs from a repository."""

    identity: RepoIdentity

    @property
    def repo_url(self) -> str: ...

    async def get_default_branch(self) -> str:
        """Read the repository metadata and remember its default branch.

        Raises:
            AuthFailedError: if the repository is private and no credentials are configured.
        """
        response = await self.client.get(self.repo_api_url)
        meta = _decode(response, "repository metadata")
        if not isinstance(meta, dict):
            meta = {}
        if meta.get("private") and not self.client.auth_header:
            raise AuthFailedError(
                url=self.repo_api_url,
                message="This repository is private. You need to provide authentication to access it.",
                status=403,
            )
        branch = meta.get("default_branch") or DEFAULT_BRANCH
        self.identity = self.identity.model_copy(update={"default_branch": branch})
        logger.debug("default_branch", repo=self.identity.full_name, branch=branch)
        return branch

    async def list_dir(self, path: str) -> list[TreeEntry]:
        """List one directory. Symlinks and submodules are left out."""
        url = self.contents_url(path)
        response = await self.client.get(url, path=path)
        payload = _decode(response, path or "root")
        items = payload if isinstance(payload, list) else [payload]
        entries: list[TreeEntry] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind not in (EntryKind.FILE, EntryKind.DIR):
                logger.debug("entry_ignored", path=item.get("path"), type=kind)
                continue
            try:
                entries.append(_entry_from_item(item, EntryKind(kind)))
            except (AttributeError, TypeError, ValueError) as exc:
                raise MalformedResponseError(
                    url=url,
                    message=f"Malformed listing entry in {path or 'root'}: {item.get('path')!r}",
                ) from exc
        return entries

    async def fetch_file(self, entry: TreeEntry) -> FetchedBlob:
        """Download a blob, through its download URL when there is one."""
        if entry.download_url:
            response = await self.client.get(entry.download_url, path=entry.path)
            return FetchedBlob(data=response.content)
        url = self.contents_url(entry.path)
        response = await self.client.get(url, path=entry.path)
        payload = _decode(response, entry.path)
        encoded = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(encoded, str):
            raise MalformedResponseError(url=url, message=f"No content returned for {entry.path}")
        try:
            return FetchedBlob(data=base64.b64decode(encoded))
        except (binascii.Error, ValueError) as exc:
            raise MalformedResponseError(url=url, message=f"Undecodable content returned for {entry.path}") from exc


def _decode(response: CachedResponse, what: str) -> Any:  # noqa: ANN401
    try:
        return response.json()
    except ValueError as exc:
        raise MalformedResponseError(url=response.url, message=f"Malformed JSON returned for {what}") from exc


def _entry_from_item(item: dict[str, Any], kind: EntryKind) -> TreeEntry:
    path = item.get("path") or ""
    return TreeEntry(
        kind=kind,
        name=item.get("name") or path.rsplit("/", 1)[-1],
        path=path,
        size=int(item.get("size") or 0),
        download_url=item.get("download_url") if kind == EntryKind.FILE else None,
    )


def _head_branch(root: Path) -> str:
    head = root / ".git" / "HEAD"
    try:
        ref = head.read_text(encoding="utf-8").strip()
    except OSError:
        return DEFAULT_BRANCH
    prefix = "ref: refs/heads/"
    return ref.removeprefix(prefix) if ref.startswith(prefix) else DEFAULT_BRANCH


class LocalTreeSource:
    """Repository read from a local directory; files carry their modification time."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        if not self.root.is_dir():
            raise InvalidInputError(value=str(root), message=f"Not a directory: {root}")
        self.identity = RepoIdentity(host="localhost", owner=self.root.parent.name or "local", repo=self.root.name)

    @property
    def repo_url(self) -> str:
        return self.root.as_posix()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.strip("/")).resolve()
        if target != self.root and self.root not in target.parents:
            raise NotFoundError(url=target.as_posix(), message=f"Path escapes repository root: {path}", path=path)
        return target

    async def get_default_branch(self) -> str:
        branch = await asyncio.to_thread(_head_branch, self.root)
        self.identity = self.identity.model_copy(update={"default_branch": branch})
        return branch

    def _scan(self, path: str) -> list[TreeEntry]:
        directory = self._resolve(path)
        if not directory.is_dir():
            raise NotFoundError(url=directory.as_posix(), message=f"Directory not found: {path or 'root'}", path=path)
        entries: list[TreeEntry] = []
        for child in sorted(directory.iterdir()):
            if child.is_symlink():
                continue
            rel = child.relative_to(self.root).as_posix()
            if child.is_dir():
                entries.append(TreeEntry(kind=EntryKind.DIR, name=child.name, path=rel))
            elif child.is_file():
                entries.append(TreeEntry(kind=EntryKind.FILE, name=child.name, path=rel, size=child.stat().st_size))
        return entries

    async def list_dir(self, path: str) -> list[TreeEntry]:
        return await asyncio.to_thread(self._scan, path)

    def _read(self, entry: TreeEntry) -> FetchedBlob:
        target = self._resolve(entry.path)
        try:
            data = target.read_bytes()
            mtime = datetime.fromtimestamp(target.stat().st_mtime, tz=UTC)
        except FileNotFoundError as exc:
            raise NotFoundError(url=target.as_posix(), message=f"File not found: {entry.path}", path=entry.path) from exc
        return FetchedBlob(data=data, last_modified=mtime)

    async def fetch_file(self, entry: TreeEntry) -> FetchedBlob:
        return await asyncio.to_thread(self._read, entry)
