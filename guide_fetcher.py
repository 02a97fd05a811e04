"""
==============================================================================
FILE: guide_fetcher.py
ROLE: Guide JSON Downloader
DESCRIPTION:
1. Lists the JSON files of one docs/json/{service}/{type} folder through the
   GitHub contents API.
2. Downloads every file from raw.githubusercontent.com at the tracked branch
   and tags each item with the file it came from.
3. SUPPLEMENTARY MODE: when a custom repository is configured, the official
   and custom sets are fetched side by side and merged, custom winning.
==============================================================================
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import requests

from config import cfg
from guide_models import CONFIG_DIRECTORIES
from version_tracker import (GITHUB_API_BASE, GitHubError, RateLimitError, github_headers,
                             is_rate_limited, rate_limit_reset)

logger = logging.getLogger(__name__)

RAW_BASE = "https://raw.githubusercontent.com"


def item_key(item):
    """Identity used when overlaying custom items on official ones."""
    if not isinstance(item, dict):
        return None
    for key in ("trash_id", "cfName", "path"):
        if item.get(key):
            return item[key]
    return None


def merge_by_trash_id(official, custom):
    """Custom items replace official items with the same key. Inputs are not mutated."""
    custom_keys = {item_key(item) for item in custom if item_key(item)}
    base = [item for item in official if not item_key(item) or item_key(item) not in custom_keys]
    merged = [dict(item, _repoSource="official") for item in base]
    merged.extend(dict(item, _repoSource="custom") for item in custom)
    return merged


class GuideFetcher:
    """Downloads guide configs for one repository (plus an optional overlay repo)."""

    def __init__(self, session=None, owner=None, repo=None, branch=None, token=None,
                 custom_repo=None, timeout=15):
        self.session = session or requests.Session()
        self.owner = owner or cfg.GUIDE_REPO_OWNER
        self.repo = repo or cfg.GUIDE_REPO_NAME
        self.branch = branch or cfg.GUIDE_REPO_BRANCH
        self.token = token if token is not None else cfg.GITHUB_TOKEN
        self.custom_repo = custom_repo if custom_repo is not None else cfg.CUSTOM_REPO
        self.timeout = timeout

    def _folder(self, service_type, config_type):
        return f"docs/json/{service_type.lower()}/{CONFIG_DIRECTORIES[config_type]}"

    def discover_files(self, service_type, config_type, ref=None):
        """Names of the .json files in the folder. Listing failures raise."""
        folder = self._folder(service_type, config_type)
        url = f"{GITHUB_API_BASE}/repos/{self.owner}/{self.repo}/contents/{folder}"
        res = self.session.get(url, headers=github_headers(self.token),
                               params={"ref": ref or self.branch}, timeout=self.timeout)
        if is_rate_limited(res):
            raise RateLimitError(rate_limit_reset(res))
        if res.status_code != 200:
            raise GitHubError(f"Failed to list {folder} ({self.owner}/{self.repo}). Code: {res.status_code}")

        return sorted(f["name"] for f in res.json()
                      if f.get("type") == "file" and f.get("name", "").endswith(".json"))

    def fetch_configs_from_repo(self, service_type, config_type, ref=None):
        folder = self._folder(service_type, config_type)
        ref = ref or self.branch
        items = []

        for file_name in self.discover_files(service_type, config_type, ref):
            url = f"{RAW_BASE}/{self.owner}/{self.repo}/{ref}/{folder}/{file_name}"
            try:
                res = self.session.get(url, headers={"User-Agent": "guide-sync/1.0"}, timeout=self.timeout)
                if res.status_code != 200:
                    logger.warning(f"[GitHub] Failed to fetch {file_name}. Code: {res.status_code}")
                    continue
                data = res.json()
            except Exception as e:
                logger.warning(f"[GitHub] Failed to fetch {file_name}: {e}")
                continue

            for item in data if isinstance(data, list) else [data]:
                if isinstance(item, dict):
                    items.append(dict(item, _source_file=file_name))

        logger.info(f"[GitHub] Downloaded {len(items)} {config_type} items for {service_type} "
                    f"from {self.owner}/{self.repo}@{ref}")
        return items

    def fetch_configs(self, service_type, config_type, ref=None):
        """Official configs, overlaid with the custom repository when one is set."""
        if not self.custom_repo:
            return self.fetch_configs_from_repo(service_type, config_type, ref)

        custom = GuideFetcher(
            session=self.session,
            owner=self.custom_repo.get("owner"),
            repo=self.custom_repo.get("name"),
            branch=self.custom_repo.get("branch", "main"),
            token=self.token,
            custom_repo={},
            timeout=self.timeout,
        )
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="GuideFetch") as pool:
            official_future = pool.submit(self.fetch_configs_from_repo, service_type, config_type, ref)
            custom_future = pool.submit(custom.fetch_configs_from_repo, service_type, config_type)
            return merge_by_trash_id(official_future.result(), custom_future.result())
