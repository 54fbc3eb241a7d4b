"""Repository URL parsing and credential resolution.

Everything here is pure: no network, no logging, no global state.
"""

from __future__ import annotations

import base64
import hashlib
import re
from typing import TYPE_CHECKING

from repo_combiner.config import DEFAULT_BRANCH, GITHUB_API_BASE, RepoIdentity
from repo_combiner.exceptions import InvalidInputError

if TYPE_CHECKING:
    from repo_combiner.settings import AuthConfig

_NAME = r"[A-Za-z0-9._-]+"
_HOST = r"[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*"

_HTTPS_URL = re.compile(
    rf"^https://(?P<host>{_HOST}(?::\d+)?)/(?P<owner>{_NAME})/(?P<repo>{_NAME}?)(?:\.git)?(?:/.*)?$",
)
_SSH_URL = re.compile(
    rf"^git@(?P<host>{_HOST}):(?P<owner>{_NAME})/(?P<repo>{_NAME}?)(?:\.git)?/?$",
)


def parse_repo_url(url: str, default_branch: str = DEFAULT_BRANCH) -> RepoIdentity:
    """Parse a repository URL into its host, owner and repository name.

    Two shapes are accepted: `https://<host>/<owner>/<repo>[.git][/...]` and
    `git@<host>:<owner>/<repo>[.git]`. A trailing `.git` is dropped from the name.

    Args:
        url (str): the repository URL
        default_branch (str): branch recorded until the metadata fetch discovers the real one

    Raises:
        InvalidInputError: if `url` matches neither shape.

    Returns:
        RepoIdentity: the parsed identity
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidInputError(value=str(url), message="Repository URL is required and must be a string")
    candidate = url.strip()
    m = _HTTPS_URL.match(candidate) or _SSH_URL.match(candidate)
    if m is None:
        raise InvalidInputError(value=candidate)
    owner, repo = m.group("owner"), m.group("repo")
    if repo in {"", ".", ".."} or owner in {".", ".."}:
        raise InvalidInputError(value=candidate)
    return RepoIdentity(host=m.group("host").lower(), owner=owner, repo=repo, default_branch=default_branch)


def to_https_url(url: str) -> str:
    """Rewrite an SSH repository URL to its HTTPS equivalent; HTTPS URLs are normalised.

    Raises:
        InvalidInputError: if `url` is not a repository URL.
    """
    return parse_repo_url(url).html_url


def build_auth_header(auth: AuthConfig | None) -> str | None:
    """Convert credentials into an `Authorization` header value.

    A token wins over a username/password pair; incomplete basic credentials count as none.

    Returns:
        str | None: `token <T>`, `Basic <base64(user:pass)>`, or None.
    """
    if auth is None:
        return None
    if auth.token:
        return f"token {auth.token}"
    if auth.username and auth.password:
        raw = f"{auth.username}:{auth.password}".encode()
        return f"Basic {base64.b64encode(raw).decode('ascii')}"
    return None


def auth_fingerprint(header: str | None) -> str:
    """Stable fingerprint of an authorization header, used in cache keys instead of the secret."""
    if not header:
        return "anonymous"
    return hashlib.sha256(header.encode("utf-8")).hexdigest()[:16]


def api_base_for(identity: RepoIdentity, override: str = "") -> str:
    """API root for a repository host.

    github.com uses `https://api.github.com`; any other host is treated as a
    GitHub Enterprise server exposing `/api/v3`.
    """
    if override:
        return override.rstrip("/")
    host = identity.host.lower()
    if host in {"github.com", "www.github.com"}:
        return GITHUB_API_BASE
    return f"https://{host}/api/v3"
