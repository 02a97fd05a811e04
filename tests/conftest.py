# tests/conftest.py
from __future__ import annotations

import os
import tempfile
from copy import deepcopy

# config.py reads its file at import time, so point it somewhere harmless first
_TMP = tempfile.mkdtemp(prefix="guide-sync-tests-")
CONFIG_PATH = os.path.join(_TMP, "config.yml")
with open(CONFIG_PATH, "w") as fh:
    fh.write("dry_run: false\nlog_level: DEBUG\n")
os.environ["GUIDE_SYNC_CONFIG"] = CONFIG_PATH
os.environ["GUIDE_SYNC_DB"] = os.path.join(_TMP, "default.db")

import pytest  # noqa: E402

from arr_client import ArrApiError  # noqa: E402
from cache_manager import GuideCacheManager  # noqa: E402
from database import GuideStore  # noqa: E402


def spec(name, implementation="ReleaseTitleSpecification", value=None, negate=False, required=False):
    return {
        "name": name,
        "implementation": implementation,
        "negate": negate,
        "required": required,
        "fields": {"value": value if value is not None else name},
    }


def guide_cf(trash_id, name, specs=None, scores=None, **extra):
    cf = {
        "trash_id": trash_id,
        "name": name,
        "includeCustomFormatWhenRenaming": False,
        "specifications": specs if specs is not None else [spec(name)],
    }
    if scores is not None:
        cf["trash_scores"] = scores
    cf.update(extra)
    return cf


def api_spec(name, implementation="ReleaseTitleSpecification", value=None, negate=False, required=False):
    """Same as spec() but with the instance API's array-encoded fields."""
    return {
        "name": name,
        "implementation": implementation,
        "negate": negate,
        "required": required,
        "fields": [{"name": "value", "value": value if value is not None else name}],
    }


class FakeArrClient:
    """In-memory stand-in for ArrClient."""

    def __init__(self, label="Fake", custom_formats=None, profiles=None, definitions=None,
                 next_id=1, schema=None):
        self.label = label
        self.custom_formats = {cf["id"]: deepcopy(cf) for cf in custom_formats or []}
        self.profiles = {p["id"]: deepcopy(p) for p in profiles or []}
        self.definitions = deepcopy(definitions or [])
        self.schema = schema or {"name": "", "upgradeAllowed": False, "cutoff": 0, "items": [], "formatItems": []}
        self.next_id = next_id
        self.fail_names = set()
        self.fail_update_definitions = False
        self.calls = []

    # --- custom formats ---
    def list_custom_formats(self):
        self.calls.append(("list_custom_formats",))
        return [deepcopy(cf) for cf in self.custom_formats.values()]

    def create_custom_format(self, payload):
        self.calls.append(("create_custom_format", payload["name"]))
        if payload["name"] in self.fail_names:
            raise ArrApiError(f"create {payload['name']} failed", status=500)
        created = dict(deepcopy(payload), id=self.next_id)
        self.next_id += 1
        self.custom_formats[created["id"]] = created
        return deepcopy(created)

    def update_custom_format(self, format_id, payload):
        self.calls.append(("update_custom_format", payload["name"]))
        if payload["name"] in self.fail_names:
            raise ArrApiError(f"update {payload['name']} failed", status=500)
        self.custom_formats[format_id] = dict(deepcopy(payload), id=format_id)
        return deepcopy(self.custom_formats[format_id])

    def delete_custom_format(self, format_id):
        self.calls.append(("delete_custom_format", format_id))
        if format_id not in self.custom_formats:
            raise ArrApiError("not found", status=404)
        del self.custom_formats[format_id]

    # --- quality profiles ---
    def list_quality_profiles(self):
        return [deepcopy(p) for p in self.profiles.values()]

    def get_quality_profile(self, profile_id):
        return deepcopy(self.profiles[profile_id])

    def get_quality_profile_schema(self):
        return deepcopy(self.schema)

    def create_quality_profile(self, payload):
        self.calls.append(("create_quality_profile", payload["name"]))
        created = dict(deepcopy(payload), id=max(self.profiles, default=0) + 1)
        self.profiles[created["id"]] = created
        return deepcopy(created)

    def update_quality_profile(self, profile_id, payload):
        self.calls.append(("update_quality_profile", profile_id))
        self.profiles[profile_id] = dict(deepcopy(payload), id=profile_id)
        return deepcopy(self.profiles[profile_id])

    # --- quality definitions ---
    def list_quality_definitions(self):
        self.calls.append(("list_quality_definitions",))
        return deepcopy(self.definitions)

    def update_quality_definitions(self, definitions):
        self.calls.append(("update_quality_definitions",))
        if self.fail_update_definitions:
            raise ArrApiError("update definitions failed", status=500)
        self.definitions = deepcopy(definitions)
        return deepcopy(definitions)

    def reset_quality_definitions(self):
        self.calls.append(("reset_quality_definitions",))


class FakeVersionTracker:
    def __init__(self, commit_hash="c" * 40):
        self.commit_hash = commit_hash
        self.calls = 0

    def _info(self, ref):
        from version_tracker import VersionInfo
        return VersionInfo(commit_hash=ref, commit_date="2026-01-01T00:00:00Z",
                           commit_message="update", commit_url=f"https://example.invalid/{ref}")

    def get_latest_commit(self):
        self.calls += 1
        return self._info(self.commit_hash)

    def get_commit_info(self, ref):
        return self._info(ref)


@pytest.fixture
def store(tmp_path):
    db = GuideStore(str(tmp_path / "guides.db"))
    db.init_db()
    return db


@pytest.fixture
def cache(store):
    return GuideCacheManager(store, stale_after_hours=12, compression=True)


@pytest.fixture
def fake_client():
    return FakeArrClient()
