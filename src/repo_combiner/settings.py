from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from repo_combiner.config import (
    DEFAULT_MAX_FILE_BYTES,
    DEFAULT_SKIP_DIRS,
    DEFAULT_SKIP_EXTENSIONS,
    DEFAULT_SKIP_FILES,
    OutputFormat,
)
from repo_combiner.exceptions import InvalidInputError
from repo_combiner.progress import ProgressEvent

ENV_FILE = find_dotenv(usecwd=True)

ProgressSink = Callable[[ProgressEvent], Any]


class AuthConfig(BaseModel):
    """Credentials for the hosting API: a token, a username/password pair, or nothing."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(default="", description="Personal access token.")
    username: str = Field(default="", description="Basic auth user name.")
    password: str = Field(default="", description="Basic auth password.")

    @property
    def has_auth(self) -> bool:
        return bool(self.token or (self.username and self.password))

    def __repr__(self) -> str:
        kind = "token" if self.token else "basic" if self.has_auth else "none"
        return f"AuthConfig(kind={kind!r})"


class Settings(BaseModel):
    """Configuration of one run. Immutable once the run starts."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    format: OutputFormat = Field(default=OutputFormat.TEXT, description="Output format.")
    skip_dirs: frozenset[str] = Field(
        default=DEFAULT_SKIP_DIRS,
        description="Directory names never descended into.",
    )
    skip_files: frozenset[str] = Field(
        default=DEFAULT_SKIP_FILES,
        description="Exact file names excluded.",
    )
    skip_extensions: frozenset[str] = Field(
        default=DEFAULT_SKIP_EXTENSIONS,
        description="Lowercase extensions (with leading dot) excluded.",
    )
    max_file_bytes: int = Field(
        default=DEFAULT_MAX_FILE_BYTES,
        ge=0,
        description="Files above are skipped; 0 disables the check.",
    )
    concurrency: int = Field(default=5, ge=1, description="Maximum in-flight fetches.")
    timeout: float = Field(default=60.0, gt=0, description="Seconds allowed per fetch.")
    auth: AuthConfig = Field(default_factory=AuthConfig, description="API credentials.")
    progress_sink: ProgressSink | None = Field(default=None, description="Progress observer.")

    api_base: str = Field(default="", description="API root; derived from the host when empty.")
    max_retries: int = Field(default=3, ge=0, description="Retries for network errors and short rate-limit waits.")
    backoff_base: float = Field(default=1.0, ge=0, description="First network retry delay in seconds.")
    rate_limit_wait_cap: float = Field(
        default=60.0,
        ge=0,
        description="Longest rate-limit window worth waiting for, in seconds.",
    )
    rate_limit_warn_threshold: int = Field(
        default=10,
        ge=0,
        description="Warn when fewer requests remain (unauthenticated only).",
    )
    log_file: str = Field(default="", description="Log file path.")

    @field_validator("skip_extensions", mode="after")
    @classmethod
    def _normalize_extensions(cls, value: frozenset[str]) -> frozenset[str]:
        out: set[str] = set()
        for ext in value:
            e = ext.strip().lower()
            if not e:
                continue
            out.add(e if e.startswith(".") else f".{e}")
        return frozenset(out)

    @field_validator("skip_dirs", "skip_files", mode="after")
    @classmethod
    def _strip_names(cls, value: frozenset[str]) -> frozenset[str]:
        return frozenset(v.strip().strip("/") for v in value if v.strip().strip("/"))

    @classmethod
    def from_env(cls, env: dict[str, str | None] | None = None, **overrides: Any) -> Settings:  # noqa: ANN401
        """Build settings whose credentials come from the environment or a `.env` file.

        `GITHUB_TOKEN`, `GITHUB_USERNAME` and `GITHUB_PASSWORD` are read from `env`
        when given, otherwise from the process environment layered over `.env`.
        Explicit `auth` in `overrides` wins.

        Args:
            env: Optional mapping used instead of the real environment (handy in tests).
            **overrides: Any other `Settings` field.

        Returns:
            Settings: the merged settings.
        """
        if env is None:
            env = {**(dotenv_values(ENV_FILE) if ENV_FILE else {}), **os.environ}
        if "auth" not in overrides:
            overrides["auth"] = AuthConfig(
                token=env.get("GITHUB_TOKEN") or "",
                username=env.get("GITHUB_USERNAME") or "",
                password=env.get("GITHUB_PASSWORD") or "",
            )
        return cls(**overrides)

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides: Any) -> Settings:  # noqa: ANN401
        """Load settings from a YAML mapping, then apply `overrides` on top.

        List values for the skip sets *replace* the defaults. The `auth` key may hold
        `token` or `username`/`password`.

        Raises:
            InvalidInputError: if the file is not a YAML mapping.
        """
        p = Path(path)
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise InvalidInputError(value=str(p), message=f"Settings file {p} must contain a mapping.")
        data = {str(k).replace("-", "_"): v for k, v in data.items()}
        for key in ("skip_dirs", "skip_files", "skip_extensions"):
            if isinstance(data.get(key), list):
                data[key] = frozenset(str(v) for v in data[key])
        data.update(overrides)
        return cls(**data)
