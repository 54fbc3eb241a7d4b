from __future__ import annotations

import posixpath
from datetime import datetime  # noqa: TC003
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, computed_field


class OutputFormat(StrEnum):
    """Emission shapes understood by the output assembler."""

    TEXT = "text"
    MARKDOWN = "markdown"
    JSON = "json"


class EntryKind(StrEnum):
    """Kind of a directory listing entry, as reported by the contents API."""

    FILE = "file"
    DIR = "dir"


class SkipDecision(StrEnum):
    """Outcome of the skip policy for one candidate path."""

    ACCEPT = "accept"
    SKIP_DIR = "skip-by-dir"
    SKIP_NAME = "skip-by-name"
    SKIP_EXTENSION = "skip-by-extension"
    SKIP_SIZE = "skip-by-size"
    SKIP_BINARY = "skip-binary"


DEFAULT_BRANCH = "main"
GITHUB_API_BASE = "https://api.github.com"
GITHUB_ACCEPT = "application/vnd.github.v3+json"
OUTPUT_VERSION = "1.0.1"

DEFAULT_SKIP_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        "build",
        "coverage",
        ".github",
        ".vscode",
    },
)

DEFAULT_SKIP_FILES = frozenset(
    {
        ".DS_Store",
        ".gitignore",
        "package-lock.json",
        "yarn.lock",
        ".eslintrc",
        ".prettierrc",
        "Thumbs.db",
    },
)

DEFAULT_SKIP_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".ico",
        ".svg",
        ".woff",
        ".woff2",
        ".ttf",
        ".eot",
        ".pdf",
        ".mp3",
        ".mp4",
        ".zip",
        ".gz",
        ".exe",
        ".dll",
    },
)

DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024

# Magic numbers checked against the first bytes of a blob.
BINARY_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff", ".jpg"),
    (b"\x89PNG", ".png"),
    (b"GIF", ".gif"),
    (b"PK\x03\x04", ".zip"),
    (b"\x1f\x8b", ".gz"),
    (b"%PDF", ".pdf"),
    (b"ID3", ".mp3"),
    (b"\x00\x00\x00\x18ftyp", ".mp4"),
)

BINARY_SAMPLE_BYTES = 1024
BINARY_MAX_NULL_BYTES = 1
BINARY_MIN_PRINTABLE_RATIO = 0.8

EXT2LANG: dict[str, str] = {
    # JavaScript and TypeScript
    ".js": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".mjs": "javascript",
    ".cjs": "javascript",
    # Web
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".scss": "scss",
    ".sass": "scss",
    ".less": "less",
    ".svg": "svg",
    # Data formats
    ".json": "json",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".ini": "ini",
    ".csv": "csv",
    # Documentation
    ".md": "markdown",
    ".markdown": "markdown",
    ".rst": "rst",
    ".tex": "tex",
    ".adoc": "asciidoc",
    # Shell and scripts
    ".sh": "bash",
    ".bash": "bash",
    ".zsh": "bash",
    ".fish": "fish",
    ".bat": "batch",
    ".cmd": "batch",
    ".ps1": "powershell",
    # Programming languages
    ".py": "python",
    ".rb": "ruby",
    ".php": "php",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".scala": "scala",
    ".cs": "csharp",
    ".fs": "fsharp",
    ".vb": "vb",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".rs": "rust",
    ".swift": "swift",
    ".dart": "dart",
    ".lua": "lua",
    ".pl": "perl",
    ".elm": "elm",
    ".erl": "erlang",
    ".ex": "elixir",
    ".exs": "elixir",
    ".hs": "haskell",
    ".clj": "clojure",
    ".r": "r",
    ".sql": "sql",
    # Config files
    ".gitignore": "gitignore",
    ".dockerignore": "dockerfile",
    ".dockerfile": "dockerfile",
    ".editorconfig": "ini",
    ".env": "shell",
    # Others
    ".graphql": "graphql",
    ".proto": "protobuf",
}


class TokenBand(BaseModel):
    """One band of the token-size assessment, inclusive lower and exclusive upper bound."""

    model_config = ConfigDict(frozen=True)

    lower: int
    upper: int | None
    label: str
    advice: str


TOKEN_BANDS: tuple[TokenBand, ...] = (
    TokenBand(
        lower=0,
        upper=1_000,
        label="very small",
        advice="Very small document, will fit easily in any chat window.",
    ),
    TokenBand(
        lower=1_000,
        upper=4_000,
        label="small",
        advice="Small document, should fit in most chat windows without issues.",
    ),
    TokenBand(
        lower=4_000,
        upper=8_000,
        label="medium",
        advice="Medium size document, may approach limits of some basic chat interfaces.",
    ),
    TokenBand(
        lower=8_000,
        upper=16_000,
        label="large",
        advice="Large document, likely exceeds capacity of basic chat interfaces.",
    ),
    TokenBand(
        lower=16_000,
        upper=None,
        label="very large",
        advice="Very large document, exceeds capacity of most chat interfaces.",
    ),
)


def file_extension(name: str) -> str:
    """Lowercase extension of a file name: the substring from the last dot onward.

    `.gitignore` yields `.gitignore`; a name without a dot yields an empty string.

    Args:
        name (str): a file name or a POSIX path.

    Returns:
        str: the lowercase extension including its leading dot, or "".
    """
    base = posixpath.basename(name)
    idx = base.rfind(".")
    return "" if idx == -1 else base[idx:].lower()


def guess_language(extension: str) -> str:
    """Get the code fence language for an extension, or "" when unknown."""
    if not extension:
        return ""
    ext = extension.lower() if extension.startswith(".") else f".{extension.lower()}"
    return EXT2LANG.get(ext, "")


class RepoIdentity(BaseModel):
    """Identity of the repository a run targets."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(..., description="Hosting service host name")
    owner: str = Field(..., description="Repository owner (user or organisation)")
    repo: str = Field(..., description="Repository name without a .git suffix")
    default_branch: str = Field(default=DEFAULT_BRANCH, description="Branch read by the run")

    @computed_field
    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @computed_field
    @property
    def html_url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.repo}"


class TreeEntry(BaseModel):
    """One element of a directory listing: a file or a subdirectory."""

    model_config = ConfigDict(frozen=True)

    kind: EntryKind
    name: str
    path: str
    size: int = Field(default=0, ge=0)
    download_url: str | None = None


class FileRecord(BaseModel):
    """A text file collected by a run.

    Attributes:
        path: POSIX path relative to the repository root.
        content: Decoded UTF-8 text. Binary blobs never produce a record.
        byte_size: Size of the fetched blob in bytes.
        line_count: Number of newline-separated segments in `content`.
        estimated_tokens: Heuristic token count of `content`.
        last_modified: Modification time when the source knows it.
    """

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Path relative to the repository root")
    content: str = Field(..., description="UTF-8 text content")
    byte_size: int = Field(..., ge=0, description="Blob size in bytes")
    line_count: int = Field(..., ge=0, description="Newline-separated segment count")
    estimated_tokens: int = Field(..., ge=0, description="Heuristic token count")
    last_modified: datetime | None = Field(default=None, description="Modification time if known")

    @computed_field
    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    @computed_field
    @property
    def directory(self) -> str:
        """Parent directory of the file, "" for the repository root."""
        return posixpath.dirname(self.path)

    @computed_field
    @property
    def extension(self) -> str:
        return file_extension(self.path)

    @computed_field
    @property
    def language(self) -> str:
        return guess_language(self.extension)


class RunStats(BaseModel):
    """Snapshot of run-wide statistics."""

    model_config = ConfigDict(frozen=True)

    total_files: int = Field(default=0, ge=0)
    total_bytes: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    total_lines: int = Field(default=0, ge=0)
    skipped_files: int = Field(default=0, ge=0)
    skipped_bytes: int = Field(default=0, ge=0)
    start: datetime | None = None
    end: datetime | None = None
    elapsed: float = Field(default=0.0, ge=0, description="Elapsed seconds")
