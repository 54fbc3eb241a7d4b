from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import TYPE_CHECKING

import httpx
import pytest
from conftest import NOW, rate_limited_response

from repo_combiner.combiner import RepoCombiner
from repo_combiner.config import OutputFormat, SkipDecision
from repo_combiner.exceptions import CancelledRunError, InvalidInputError, RateLimitedError, RunFailedError
from repo_combiner.output_construction import parse_output
from repo_combiner.progress import ProgressPhase

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import FakeGitHub, SleepRecorder

    from repo_combiner.progress import ProgressEvent
    from repo_combiner.settings import Settings


def happy_tree(fake_github: FakeGitHub) -> None:
    fake_github.add_file("README.md", "# hello\n", size=42)
    fake_github.add_file("src/index.js", 'console.log("hi");\n', size=28)


@pytest.mark.integration
def test_happy_path_markdown(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
    events: list[ProgressEvent],
) -> None:
    happy_tree(fake_github)
    combiner = RepoCombiner(make_settings(format=OutputFormat.MARKDOWN), transport=fake_github.transport)

    result = combiner.run(fake_github.url)

    assert [f.path for f in result.files] == ["README.md", "src/index.js"]
    assert result.stats.total_files == 2
    assert result.stats.total_bytes == 27
    assert result.request_count == 5
    assert result.identity.default_branch == "main"
    assert '```javascript\nconsole.log("hi");\n' in result.output
    assert events[0].phase is ProgressPhase.INITIALIZING
    assert events[-1].phase is ProgressPhase.COMPLETE
    assert events[-1].stats.total_files == 2
    assert not combiner.running


@pytest.mark.integration
def test_output_is_deterministic(fake_github: FakeGitHub, make_settings: Callable[..., Settings]) -> None:
    happy_tree(fake_github)
    fake_github.add_file("src/a/b.py", "x = 1\n")
    fake_github.add_file("LICENSE", "MIT\n")
    combiner = RepoCombiner(make_settings(format=OutputFormat.JSON, concurrency=3), transport=fake_github.transport)

    first = combiner.run(fake_github.url)
    second = combiner.run(fake_github.url)

    paths = [f["path"] for f in first.output["files"]]
    assert paths == sorted(paths)
    assert paths == [f["path"] for f in second.output["files"]]


@pytest.mark.integration
@pytest.mark.parametrize("fmt", list(OutputFormat))
def test_every_format_reads_back_to_the_collected_files(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
    fmt: OutputFormat,
) -> None:
    happy_tree(fake_github)
    fake_github.add_file("docs/guide.md", "Run:\n```sh\nmake\n```\n")
    combiner = RepoCombiner(make_settings(format=fmt), transport=fake_github.transport)

    result = combiner.run(fake_github.url)

    expected = {f.path: f.content for f in result.files}
    assert dict(parse_output(fmt, result.output)) == expected


@pytest.mark.integration
def test_counts_cover_every_encountered_file(fake_github: FakeGitHub, make_settings: Callable[..., Settings]) -> None:
    fake_github.add_file("main.py", "print('hi')\n")
    fake_github.add_file("lib/util.py", "def f():\n    return 1\n")
    fake_github.add_file("assets/logo.png", b"\x89PNG\r\n\x1a\n", size=1234)
    fake_github.add_file("data/blob.dat", b"\x00\x01\x02\x00\x03" * 10)
    fake_github.add_file("big.log", "z" * 300)
    fake_github.add_file("yarn.lock", "lock\n")
    fake_github.add_file("node_modules/pkg/index.js", "module.exports = 1;\n")
    combiner = RepoCombiner(make_settings(max_file_bytes=200), transport=fake_github.transport)

    result = combiner.run(fake_github.url)

    stats = result.stats
    encountered = len([p for p in fake_github.files if not p.startswith("node_modules/")])
    assert stats.total_files + stats.skipped_files == encountered
    assert stats.total_tokens == sum(f.estimated_tokens for f in result.files)
    assert stats.skipped_bytes == 1234 + 50 + 300 + 5
    assert result.skip_reasons == {
        SkipDecision.SKIP_EXTENSION: 1,
        SkipDecision.SKIP_BINARY: 1,
        SkipDecision.SKIP_SIZE: 1,
        SkipDecision.SKIP_NAME: 1,
    }
    assert fake_github.calls_to("node_modules") == 0
    assert fake_github.calls_to(fake_github.raw_url("big.log")) == 0


@pytest.mark.integration
def test_short_rate_limit_window_is_waited_out(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
    sleeper: SleepRecorder,
    events: list[ProgressEvent],
) -> None:
    happy_tree(fake_github)
    fake_github.queue(fake_github.contents_path(""), rate_limited_response(NOW + 5))
    combiner = RepoCombiner(make_settings(), transport=fake_github.transport, sleep=sleeper, clock=lambda: NOW)

    result = combiner.run(fake_github.url)

    waiting = [e for e in events if e.phase is ProgressPhase.WAITING]
    assert len(waiting) == 1
    assert waiting[0].message.startswith("Rate limit exceeded, waiting 5 seconds until ")
    assert sleeper.delays == [5.0]
    assert fake_github.calls_to(fake_github.contents_path("")) == 2
    assert result.stats.total_files == 2
    assert events[-1].phase is ProgressPhase.COMPLETE


@pytest.mark.integration
def test_long_rate_limit_window_fails_the_run(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
    sleeper: SleepRecorder,
    events: list[ProgressEvent],
) -> None:
    happy_tree(fake_github)
    fake_github.queue(fake_github.contents_path(""), rate_limited_response(NOW + 600))
    combiner = RepoCombiner(make_settings(), transport=fake_github.transport, sleep=sleeper, clock=lambda: NOW)

    with pytest.raises(RunFailedError) as exc_info:
        combiner.run(fake_github.url)

    error = exc_info.value
    assert isinstance(error.cause, RateLimitedError)
    assert datetime.fromtimestamp(NOW + 600).strftime("%H:%M:%S") in str(error)  # noqa: DTZ006
    assert "octo/demo" in str(error)
    assert sleeper.delays == []
    assert fake_github.calls_to(fake_github.contents_path("")) == 1
    assert events[-1].phase is ProgressPhase.ERROR


@pytest.mark.integration
def test_missing_repository_fails_with_not_found(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
) -> None:
    combiner = RepoCombiner(make_settings(), transport=fake_github.transport)

    with pytest.raises(RunFailedError) as exc_info:
        combiner.run("https://github.com/someone/else")

    assert "Failed to process repository https://github.com/someone/else" in str(exc_info.value)


@pytest.mark.integration
def test_invalid_url_is_rejected_before_any_request(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
) -> None:
    combiner = RepoCombiner(make_settings(), transport=fake_github.transport)

    with pytest.raises(InvalidInputError):
        combiner.run("https://github.com/only-owner")

    assert fake_github.requests == []


@pytest.mark.integration
def test_abort_stops_a_large_run(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
    events: list[ProgressEvent],
) -> None:
    for i in range(1000):
        fake_github.add_file(f"file{i:04}.txt", f"line {i}\n")
    fake_github.delay = 0.01
    timers: list[threading.Timer] = []
    combiner: RepoCombiner

    def sink(event: ProgressEvent) -> None:
        events.append(event)
        if event.phase is ProgressPhase.FETCHING and not timers:
            timer = threading.Timer(0.05, combiner.abort)
            timers.append(timer)
            timer.start()

    combiner = RepoCombiner(
        make_settings(concurrency=4, progress_sink=sink),
        transport=fake_github.transport,
    )
    started = time.monotonic()

    with pytest.raises(CancelledRunError) as exc_info:
        combiner.run(fake_github.url)

    elapsed = time.monotonic() - started
    for timer in timers:
        timer.join()
    error = exc_info.value
    assert elapsed < 1.5
    assert error.stats is not None
    assert error.stats.total_files < 1000
    assert error.stats.total_files == len(error.files)
    assert events[-1].phase is ProgressPhase.ABORTED
    assert not combiner.running
    assert combiner.abort() is False


@pytest.mark.integration
def test_malformed_subdirectory_listing_is_skipped(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
) -> None:
    happy_tree(fake_github)
    fake_github.queue(fake_github.contents_path("src"), httpx.Response(200, text="<html>oops</html>"))
    combiner = RepoCombiner(make_settings(), transport=fake_github.transport)

    result = combiner.run(fake_github.url)

    assert [f.path for f in result.files] == ["README.md"]
    assert result.stats.total_files == 1


@pytest.mark.integration
def test_malformed_contents_blob_counts_as_skip(
    fake_github: FakeGitHub,
    make_settings: Callable[..., Settings],
    events: list[ProgressEvent],
) -> None:
    fake_github.add_file("README.md", "# hello\n")
    fake_github.queue(
        fake_github.contents_path(""),
        httpx.Response(
            200,
            json=[
                {
                    "name": "README.md",
                    "path": "README.md",
                    "type": "file",
                    "size": 8,
                    "download_url": fake_github.raw_url("README.md"),
                },
                {"name": "notes.txt", "path": "notes.txt", "type": "file", "size": 4, "download_url": None},
            ],
        ),
    )
    fake_github.queue(fake_github.contents_path("notes.txt"), httpx.Response(200, text="not json"))
    combiner = RepoCombiner(make_settings(), transport=fake_github.transport)

    result = combiner.run(fake_github.url)

    assert [f.path for f in result.files] == ["README.md"]
    assert result.stats.skipped_files == 1
    assert result.stats.skipped_bytes == 4
    assert any("Error processing file notes.txt: Malformed JSON" in e.message for e in events)
    assert events[-1].phase is ProgressPhase.COMPLETE
