from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from repo_combiner.config import FileRecord, RunStats


@dataclass(frozen=True)
class RepoCombinerError(Exception):
    """Base exception for errors in the repo_combiner package."""

    def __str__(self) -> str:
        return getattr(self, "message", "") or type(self).__name__


@dataclass(frozen=True)
class InvalidInputError(RepoCombinerError):
    """Raised when a repository URL or an option cannot be understood."""

    value: str
    message: str = "Invalid repository URL format. Expected: https://github.com/owner/repo or git@github.com:owner/repo"


@dataclass(frozen=True)
class RemoteError(RepoCombinerError):
    """Raised when a request to the hosting API does not yield a usable response."""

    url: str
    message: str = "Remote request failed."


@dataclass(frozen=True)
class AuthFailedError(RemoteError):
    """Raised on 401, or on 403 responses that are not quota related."""

    message: str = "Authentication failed. Check your credentials or token."
    status: int = 401


@dataclass(frozen=True)
class NotFoundError(RemoteError):
    """Raised on 404; `path` is the repository path that was requested."""

    message: str = "Not found."
    path: str = ""


@dataclass(frozen=True)
class RateLimitedError(RemoteError):
    """Raised when the API quota is exhausted and the reset is too far away to wait for."""

    message: str = "GitHub API rate limit exceeded. To avoid this error, authenticate with a GitHub token."
    reset_at: float | None = None
    limit: int | None = None
    secondary: bool = False


@dataclass(frozen=True)
class ServerError(RemoteError):
    """Raised on 5xx responses. Not retried by the HTTP client."""

    message: str = "GitHub server error. Try again later."
    status: int = 500


@dataclass(frozen=True)
class UnexpectedStatusError(RemoteError):
    """Raised on any other non-success status."""

    message: str = "Unexpected response status."
    status: int = 0


@dataclass(frozen=True)
class MalformedResponseError(RemoteError):
    """Raised when a 200 response carries a body that is not the expected JSON shape."""

    message: str = "Malformed response."


@dataclass(frozen=True)
class NetworkError(RemoteError):
    """Raised when the transport keeps failing after all retries."""

    message: str = "Network error."


@dataclass(frozen=True)
class TimedOutError(NetworkError):
    """Raised when a single fetch exceeds the configured timeout."""

    message: str = "Request timed out."


@dataclass(frozen=True)
class CancelledRunError(RepoCombinerError):
    """Raised when a run is aborted by its caller.

    `stats` and `files` hold whatever had been collected before the abort.
    """

    message: str = "Processing aborted"
    stats: RunStats | None = None
    files: tuple[FileRecord, ...] = field(default=())


@dataclass(frozen=True)
class RunFailedError(RepoCombinerError):
    """Raised when a run fails; wraps the original error with the stats at failure time."""

    repo_url: str
    cause: BaseException
    stats: RunStats | None = None

    @property
    def message(self) -> str:
        return f"Failed to process repository {self.repo_url}: {self.cause}"
