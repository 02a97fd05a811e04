# """
# ==============================================================================
# FILE: version_tracker.py
# ROLE: Guide Revision Watcher
# DESCRIPTION:
# Asks the GitHub commits API which commit the guide branch currently points
# at. Transient failures are retried with exponential backoff; a rate-limit
# answer is never retried and reports when the quota resets instead.
# ==============================================================================
# """

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone

import requests

from config import cfg

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
USER_AGENT = "guide-sync/1.0"


class GitHubError(Exception):
    """Any failure talking to the GitHub API."""


class RateLimitError(GitHubError):
    def __init__(self, reset_at):
        self.reset_at = reset_at
        when = reset_at.isoformat() if reset_at else "an unknown time"
        super().__init__(f"GitHub API rate limit exceeded. Resets at {when}")


class VersionCheckTimeout(GitHubError):
    """The request did not answer within the timeout."""


@dataclass
class VersionInfo:
    commit_hash: str
    commit_date: str
    commit_message: str
    commit_url: str


def github_headers(token=None):
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/vnd.github.v3+json",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def rate_limit_reset(response):
    """Parses X-RateLimit-Reset (epoch seconds) into a datetime."""
    value = response.headers.get("X-RateLimit-Reset")
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def is_rate_limited(response):
    return response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0"


class VersionTracker:
    """Looks up commit metadata for the configured guide repository."""

    def __init__(self, session=None, owner=None, repo=None, branch=None, token=None,
                 timeout=10, max_retries=3, retry_delay=1.0, sleep=time.sleep):
        self.session = session or requests.Session()
        self.owner = owner or cfg.GUIDE_REPO_OWNER
        self.repo = repo or cfg.GUIDE_REPO_NAME
        self.branch = branch or cfg.GUIDE_REPO_BRANCH
        self.token = token if token is not None else cfg.GITHUB_TOKEN
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def _get_json(self, url):
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                res = self.session.get(url, headers=github_headers(self.token), timeout=self.timeout)
                if is_rate_limited(res):
                    raise RateLimitError(rate_limit_reset(res))
                if res.status_code != 200:
                    raise GitHubError(f"GitHub API returned {res.status_code}")
                return res.json()
            except RateLimitError:
                raise
            except requests.exceptions.Timeout as e:
                last_error = VersionCheckTimeout(f"GitHub request timed out after {self.timeout}s")
                last_error.__cause__ = e
            except requests.exceptions.RequestException as e:
                last_error = GitHubError(f"GitHub request failed: {e}")
                last_error.__cause__ = e
            except GitHubError as e:
                last_error = e

            if attempt < self.max_retries:
                wait = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(f"[GitHub] {last_error} (attempt {attempt}/{self.max_retries}), retrying in {wait}s")
                self._sleep(wait)

        raise last_error

    def get_commit_info(self, ref):
        """Metadata for a branch name or commit sha."""
        url = f"{GITHUB_API_BASE}/repos/{self.owner}/{self.repo}/commits/{ref}"
        data = self._get_json(url)
        commit = data.get("commit") or {}
        return VersionInfo(
            commit_hash=data.get("sha", ""),
            commit_date=(commit.get("committer") or commit.get("author") or {}).get("date", ""),
            commit_message=commit.get("message", ""),
            commit_url=data.get("html_url", ""),
        )

    def get_latest_commit(self):
        info = self.get_commit_info(self.branch)
        logger.debug(f"[GitHub] Latest {self.owner}/{self.repo}@{self.branch} is {info.commit_hash[:8]}")
        return info

    def compare_commits(self, old_hash, new_hash):
        """Fetches both commits side by side. Same hash means a single lookup."""
        if old_hash == new_hash:
            info = self.get_commit_info(old_hash)
            return {"is_different": False, "old_info": info, "new_info": info}

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="CommitCompare") as pool:
            old_future = pool.submit(self.get_commit_info, old_hash)
            new_future = pool.submit(self.get_commit_info, new_hash)
            old_info, new_info = old_future.result(), new_future.result()

        return {
            "is_different": old_info.commit_hash != new_info.commit_hash,
            "old_info": old_info,
            "new_info": new_info,
        }
