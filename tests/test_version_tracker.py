# tests/test_version_tracker.py
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from version_tracker import (GitHubError, RateLimitError, VersionCheckTimeout, VersionTracker,
                             github_headers)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.headers = headers or {}

    def json(self):
        return self._payload


def _commit(sha, message="Update guides"):
    return {
        "sha": sha,
        "html_url": f"https://github.com/TRaSH-Guides/Guides/commit/{sha}",
        "commit": {"message": message, "committer": {"date": "2026-03-01T12:00:00Z"}},
    }


def _tracker(session, sleeps=None, **kwargs):
    kwargs.setdefault("token", "")
    return VersionTracker(session=session, owner="TRaSH-Guides", repo="Guides", branch="master",
                          sleep=(sleeps.append if sleeps is not None else lambda _: None), **kwargs)


def test_latest_commit_is_parsed():
    session = MagicMock()
    session.get.return_value = FakeResponse(payload=_commit("a" * 40))

    info = _tracker(session).get_latest_commit()

    assert info.commit_hash == "a" * 40
    assert info.commit_message == "Update guides"
    assert info.commit_date == "2026-03-01T12:00:00Z"
    url = session.get.call_args[0][0]
    assert url == "https://api.github.com/repos/TRaSH-Guides/Guides/commits/master"


def test_token_is_sent_as_bearer():
    assert github_headers("secret")["Authorization"] == "Bearer secret"
    assert "Authorization" not in github_headers("")


def test_transient_errors_retry_with_backoff():
    session = MagicMock()
    session.get.side_effect = [
        FakeResponse(status_code=502),
        requests.exceptions.ConnectionError("boom"),
        FakeResponse(payload=_commit("b" * 40)),
    ]
    sleeps = []

    info = _tracker(session, sleeps).get_latest_commit()

    assert info.commit_hash == "b" * 40
    assert sleeps == [1.0, 2.0]
    assert session.get.call_count == 3


def test_gives_up_after_max_retries():
    session = MagicMock()
    session.get.return_value = FakeResponse(status_code=500)
    sleeps = []

    with pytest.raises(GitHubError):
        _tracker(session, sleeps).get_latest_commit()
    assert session.get.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_rate_limit_is_not_retried():
    session = MagicMock()
    session.get.return_value = FakeResponse(
        status_code=403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1767225600"})

    with pytest.raises(RateLimitError) as exc:
        _tracker(session).get_latest_commit()

    assert session.get.call_count == 1
    assert exc.value.reset_at.year == 2026


def test_forbidden_without_quota_header_is_a_plain_error():
    session = MagicMock()
    session.get.return_value = FakeResponse(status_code=403)

    with pytest.raises(GitHubError) as exc:
        _tracker(session, max_retries=1).get_latest_commit()
    assert not isinstance(exc.value, RateLimitError)


def test_timeout_raises_dedicated_error():
    session = MagicMock()
    session.get.side_effect = requests.exceptions.Timeout("slow")

    with pytest.raises(VersionCheckTimeout):
        _tracker(session, max_retries=2).get_latest_commit()


def test_compare_same_hash_fetches_once():
    session = MagicMock()
    session.get.return_value = FakeResponse(payload=_commit("c" * 40))

    result = _tracker(session).compare_commits("c" * 40, "c" * 40)

    assert result["is_different"] is False
    assert session.get.call_count == 1


def test_compare_different_hashes():
    session = MagicMock()

    def fake_get(url, **kwargs):
        return FakeResponse(payload=_commit(url.rsplit("/", 1)[1]))

    session.get.side_effect = fake_get

    result = _tracker(session).compare_commits("1" * 40, "2" * 40)

    assert result["is_different"] is True
    assert result["old_info"].commit_hash == "1" * 40
    assert result["new_info"].commit_hash == "2" * 40
