from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from repo_combiner import __version__
from repo_combiner.combiner import CombineResult, RepoCombiner
from repo_combiner.config import OutputFormat
from repo_combiner.exceptions import (
    AuthFailedError,
    CancelledRunError,
    InvalidInputError,
    RateLimitedError,
    RunFailedError,
)
from repo_combiner.file_manipulation import format_count, format_megabytes, write_output
from repo_combiner.logging import logger, setup_logging
from repo_combiner.output_construction import token_assessment
from repo_combiner.progress import ProgressPhase
from repo_combiner.settings import AuthConfig, Settings

if TYPE_CHECKING:
    from collections.abc import Sequence

    from repo_combiner.progress import ProgressEvent

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

_QUIET_PHASES = {ProgressPhase.PROCESSING}

EPILOG = """\
Authentication (for private repositories and higher rate limits):
  1. Set GITHUB_TOKEN in a .env file (recommended)
  2. Set GITHUB_USERNAME and GITHUB_PASSWORD in a .env file
  3. Use the --token or --username/--password flags

Examples:
  repo-combiner https://github.com/user/repo
  repo-combiner --format markdown --output output/repo.md https://github.com/user/repo
  repo-combiner --token ghp_xxxxxxxxxxxx https://github.com/user/private-repo
  repo-combiner --local --format json .
"""


class CliOptions(BaseModel):
    """Options of one command-line invocation."""

    model_config = ConfigDict(frozen=True)

    target: str = Field(..., description="Repository URL, or a directory with --local.")
    local: bool = Field(default=False, description="Read a local directory instead of the API.")
    output: Path | None = Field(default=None, description="Output file; stdout when absent.")
    timestamp: bool = Field(default=True, description="Add a date-time suffix to the output file name.")
    verbose: bool = Field(default=False, description="Print per-file progress.")
    settings: Settings = Field(default_factory=Settings)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="repo-combiner",
        description="Combine a repository's text files into one document for LLM chat windows.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("target", help="Repository URL (https or ssh), or a directory with --local.")
    p.add_argument(
        "-f",
        "--format",
        choices=[f.value for f in OutputFormat],
        default=None,
        help="Output format (default: text).",
    )
    p.add_argument("-o", "--output", type=str, default="", help="Output file; stdout when omitted.")
    p.add_argument(
        "--no-timestamp",
        action="store_true",
        help="Do not add a date-time suffix to the output file name.",
    )
    p.add_argument("-t", "--token", type=str, default=None, help="GitHub personal access token.")
    p.add_argument("-u", "--username", type=str, default=None, help="GitHub username (basic auth).")
    p.add_argument("-p", "--password", type=str, default=None, help="GitHub password (basic auth).")
    p.add_argument("--concurrency", type=int, default=None, help="Maximum parallel fetches.")
    p.add_argument("--max-bytes", type=int, default=None, help="Skip files above this size; 0 disables.")
    p.add_argument("--timeout", type=float, default=None, help="Seconds allowed per fetch.")
    p.add_argument("--skip-dir", action="append", default=[], help="Extra directory name to skip (repeatable).")
    p.add_argument("--skip-file", action="append", default=[], help="Extra file name to skip (repeatable).")
    p.add_argument("--skip-ext", action="append", default=[], help="Extra extension to skip (repeatable).")
    p.add_argument("--local", action="store_true", help="Treat the target as a local directory.")
    p.add_argument("--config", type=str, default="", help="YAML settings file.")
    p.add_argument("--log-file", type=str, default=None, help="Log file path.")
    p.add_argument("-v", "--verbose", action="store_true", help="Print per-file progress.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def _resolve_auth(args: argparse.Namespace, base: AuthConfig) -> AuthConfig:
    if args.token or args.username or args.password:
        return AuthConfig(token=args.token or "", username=args.username or "", password=args.password or "")
    if base.has_auth:
        return base
    return Settings.from_env().auth


def parse_args(argv: Sequence[str] | None = None) -> CliOptions:
    """Parse command-line arguments into `CliOptions`.

    Values come from, lowest priority first: defaults, the `--config` YAML file,
    the environment (credentials only) and the flags. `--skip-*` values are added
    to the configured skip sets.
    """
    args = build_parser().parse_args(argv)
    base = Settings.from_yaml(args.config) if args.config else Settings()
    data: dict[str, Any] = base.model_dump()
    data["auth"] = _resolve_auth(args, base.auth)
    data["progress_sink"] = base.progress_sink
    for flag, key in (
        ("format", "format"),
        ("concurrency", "concurrency"),
        ("max_bytes", "max_file_bytes"),
        ("timeout", "timeout"),
        ("log_file", "log_file"),
    ):
        value = getattr(args, flag)
        if value is not None:
            data[key] = value
    data["skip_dirs"] = frozenset(base.skip_dirs) | set(args.skip_dir)
    data["skip_files"] = frozenset(base.skip_files) | set(args.skip_file)
    data["skip_extensions"] = frozenset(base.skip_extensions) | set(args.skip_ext)
    return CliOptions(
        target=args.target,
        local=args.local,
        output=Path(args.output) if args.output else None,
        timestamp=not args.no_timestamp,
        verbose=args.verbose,
        settings=Settings.model_validate(data),
    )


def _progress_printer(*, verbose: bool) -> Any:  # noqa: ANN401
    def sink(event: ProgressEvent) -> None:
        if event.phase in _QUIET_PHASES and not verbose:
            return
        pct = f" {event.progress:.0%}" if event.progress is not None else ""
        print(f"[{event.phase}{pct}] {event.message}", file=sys.stderr)

    return sink


def print_summary(result: CombineResult, written: Path | None) -> None:
    """Print the run summary and token assessment on stderr."""
    stats = result.stats
    band = token_assessment(stats.total_tokens)
    lines = [
        "",
        "Repository processed successfully!",
        f"- Files processed: {format_count(stats.total_files)}",
        f"- Files skipped: {format_count(stats.skipped_files)}",
        f"- Total size: {format_megabytes(stats.total_bytes)}",
        f"- Total lines: {format_count(stats.total_lines)}",
        f"- Total tokens: {format_count(stats.total_tokens)}",
        f"- Token assessment: {band.advice}",
        f"- Processing time: {stats.elapsed:.2f} seconds",
    ]
    if result.request_count:
        lines.append(f"- API requests: {result.request_count}")
    if written is not None:
        lines.append(f"Output written to: {written}")
    print("\n".join(lines), file=sys.stderr)


def _print_failure(exc: RunFailedError | InvalidInputError) -> None:
    print(f"Error: {exc}", file=sys.stderr)
    cause = exc.cause if isinstance(exc, RunFailedError) else None
    if isinstance(cause, RateLimitedError):
        print(
            "\nTip: GitHub API rate limit exceeded. Try authenticating with a token:\n"
            "  repo-combiner --token YOUR_GITHUB_TOKEN https://github.com/username/repository",
            file=sys.stderr,
        )
    elif isinstance(cause, AuthFailedError):
        print("\nTip: check your GitHub token or username/password.", file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    try:
        options = parse_args(argv)
    except (InvalidInputError, ValidationError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    settings = options.settings
    if settings.log_file:
        setup_logging(settings.log_file, force=True)
    if not options.local and not settings.auth.has_auth:
        print(
            "Note: No GitHub authentication provided. API rate limits will be restricted "
            "and private repositories will not be accessible.",
            file=sys.stderr,
        )

    combiner = RepoCombiner(settings.model_copy(update={"progress_sink": _progress_printer(verbose=options.verbose)}))
    try:
        result = combiner.run_path(options.target) if options.local else combiner.run(options.target)
    except KeyboardInterrupt:
        combiner.abort()
        print("\nProcessing aborted", file=sys.stderr)
        return EXIT_CANCELLED
    except CancelledRunError:
        print("Processing aborted", file=sys.stderr)
        return EXIT_CANCELLED
    except (RunFailedError, InvalidInputError) as exc:
        logger.error("run_failed", target=options.target, error=str(exc))
        _print_failure(exc)
        return EXIT_FAILED

    written: Path | None = None
    if options.output is not None:
        written = write_output(result.output, options.output, settings.format, timestamp=options.timestamp)
    elif isinstance(result.output, dict):
        sys.stdout.write(json.dumps(result.output, indent=2, ensure_ascii=False) + "\n")
    else:
        sys.stdout.write(result.output)
    print_summary(result, written)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
