from __future__ import annotations

import base64

import pytest

from repo_combiner.exceptions import InvalidInputError
from repo_combiner.resolver import (
    api_base_for,
    auth_fingerprint,
    build_auth_header,
    parse_repo_url,
    to_https_url,
)
from repo_combiner.settings import AuthConfig


@pytest.mark.unit
@pytest.mark.parametrize(
    ("url", "owner", "repo"),
    [
        ("https://github.com/user/repo", "user", "repo"),
        ("https://github.com/user/repo.git", "user", "repo"),
        ("https://github.com/user/repo/", "user", "repo"),
        ("https://github.com/user/repo/tree/main/src", "user", "repo"),
        ("git@github.com:user/repo.git", "user", "repo"),
        ("git@github.com:my-org/my.repo_v2", "my-org", "my.repo_v2"),
        ("  https://github.com/user/repo  ", "user", "repo"),
    ],
)
def test_parse_repo_url_accepts_both_shapes(url: str, owner: str, repo: str) -> None:
    identity = parse_repo_url(url)

    assert identity.host == "github.com"
    assert identity.owner == owner
    assert identity.repo == repo
    assert identity.default_branch == "main"


@pytest.mark.unit
@pytest.mark.parametrize(
    "url",
    [
        "",
        "not a url",
        "https://github.com/user",
        "http://github.com/user/repo",
        "ftp://github.com/user/repo",
        "git@github.com/user/repo",
        "https://github.com/us er/repo",
    ],
)
def test_parse_repo_url_rejects_other_shapes(url: str) -> None:
    with pytest.raises(InvalidInputError):
        parse_repo_url(url)


@pytest.mark.unit
def test_ssh_url_is_rewritten_to_https() -> None:
    assert to_https_url("git@github.example.com:team/tool.git") == "https://github.example.com/team/tool"


@pytest.mark.unit
def test_build_auth_header_prefers_token() -> None:
    auth = AuthConfig(token="abc", username="u", password="p")

    assert build_auth_header(auth) == "token abc"


@pytest.mark.unit
def test_build_auth_header_basic() -> None:
    header = build_auth_header(AuthConfig(username="user", password="pass"))

    assert header == "Basic " + base64.b64encode(b"user:pass").decode()


@pytest.mark.unit
def test_build_auth_header_without_complete_credentials() -> None:
    assert build_auth_header(None) is None
    assert build_auth_header(AuthConfig()) is None
    assert build_auth_header(AuthConfig(username="only-user")) is None


@pytest.mark.unit
def test_auth_fingerprint_is_stable_and_hides_secret() -> None:
    first = auth_fingerprint("token secret")

    assert first == auth_fingerprint("token secret")
    assert first != auth_fingerprint("token other")
    assert "secret" not in first
    assert auth_fingerprint(None) == "anonymous"


@pytest.mark.unit
def test_api_base_for_hosts() -> None:
    assert api_base_for(parse_repo_url("https://github.com/a/b")) == "https://api.github.com"
    assert api_base_for(parse_repo_url("https://git.corp.example/a/b")) == "https://git.corp.example/api/v3"
    assert api_base_for(parse_repo_url("https://github.com/a/b"), "http://localhost:9000/") == "http://localhost:9000"
