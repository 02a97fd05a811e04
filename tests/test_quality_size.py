# tests/test_quality_size.py
from __future__ import annotations

import pytest

from conftest import FakeArrClient
from quality_size import (QualitySizeSyncer, apply_quality_size_to_definitions, find_preset,
                          hash_qualities)

DEFINITIONS = [
    {"id": 1, "title": "HDTV-720p", "quality": {"id": 4, "name": "HDTV-720p"},
     "minSize": 0, "preferredSize": 95, "maxSize": 100},
    {"id": 2, "title": "My WEB", "quality": {"id": 3, "name": "WEBDL-1080p"},
     "minSize": 0, "preferredSize": 95, "maxSize": 100},
    {"id": 3, "title": "Bluray-2160p", "quality": {"id": 19, "name": "Bluray-2160p"},
     "minSize": 0, "preferredSize": 95, "maxSize": 100},
]

PRESET = {"trash_id": "qs-movie", "type": "movie", "qualities": [
    {"quality": "HDTV-720p", "min": 10, "preferred": 95, "max": 100},
    {"quality": "WEBDL-1080p", "min": 12.5, "preferred": 399, "max": 400},
    {"quality": "Bluray-2160p", "min": 0.0004, "preferred": 95, "max": 100},
]}


def test_definitions_match_by_title_then_quality_name():
    updated, applied = apply_quality_size_to_definitions(DEFINITIONS, PRESET["qualities"])

    assert applied == 2
    assert (updated[0]["minSize"], updated[0]["maxSize"]) == (10, 100)
    assert (updated[1]["minSize"], updated[1]["preferredSize"], updated[1]["maxSize"]) == (12.5, 399, 400)
    assert DEFINITIONS[0]["minSize"] == 0


def test_find_preset_by_id_or_type():
    assert find_preset([PRESET], "qs-movie") is PRESET
    assert find_preset([PRESET], "movie") is PRESET
    assert find_preset([PRESET], "anime") is None


def test_hash_is_stable_and_content_sensitive():
    assert hash_qualities(PRESET["qualities"]) == hash_qualities([dict(q) for q in PRESET["qualities"]])
    assert hash_qualities(PRESET["qualities"]) != hash_qualities(PRESET["qualities"][:2])


@pytest.fixture
def setup(store, cache):
    cache.set("RADARR", "QUALITY_SIZE", [PRESET])
    client = FakeArrClient(label="Radarr", definitions=DEFINITIONS)
    syncer = QualitySizeSyncer(store, cache, {"radarr": client})
    return syncer, client


def test_apply_resets_before_writing(setup, store):
    syncer, client = setup
    store.upsert_quality_size_mapping("radarr", "RADARR", "qs-movie", "auto")

    assert syncer.apply_preset("radarr", "qs-movie") == 2

    names = [c[0] for c in client.calls]
    assert names == ["reset_quality_definitions", "list_quality_definitions", "update_quality_definitions"]
    assert store.get_quality_size_mapping("radarr")["applied_data_hash"] == hash_qualities(PRESET["qualities"])


def test_failure_after_reset_forgets_hash(setup, store):
    syncer, client = setup
    store.upsert_quality_size_mapping("radarr", "RADARR", "qs-movie", "auto")
    store.set_quality_size_hash("radarr", "old-hash")
    client.fail_update_definitions = True

    with pytest.raises(Exception):
        syncer.apply_preset("radarr", "qs-movie")

    assert client.calls[0] == ("reset_quality_definitions",)
    assert store.get_quality_size_mapping("radarr")["applied_data_hash"] is None


def test_sync_all_skips_unchanged_hash(setup, store):
    syncer, client = setup
    store.upsert_quality_size_mapping("radarr", "RADARR", "qs-movie", "auto")

    first = syncer.sync_all()
    second = syncer.sync_all()

    assert (first["applied"], first["unchanged"]) == (1, 0)
    assert (second["applied"], second["unchanged"]) == (0, 1)
    assert [c[0] for c in client.calls].count("reset_quality_definitions") == 1


def test_notify_and_manual_strategies_do_not_write(setup, store):
    syncer, client = setup
    store.upsert_quality_size_mapping("radarr", "RADARR", "qs-movie", "notify")
    store.upsert_quality_size_mapping("radarr-manual", "RADARR", "qs-movie", "manual")

    stats = syncer.sync_all()

    assert stats == {"checked": 1, "applied": 0, "pending": 1, "unchanged": 0, "errors": []}
    assert client.calls == []


def test_sync_all_reports_per_instance_errors(setup, store):
    syncer, client = setup
    store.upsert_quality_size_mapping("radarr", "RADARR", "missing-preset", "auto")
    store.upsert_quality_size_mapping("unknown", "RADARR", "qs-movie", "auto")

    stats = syncer.sync_all()

    assert stats["checked"] == 2
    assert len(stats["errors"]) == 2
    assert client.calls == []


def test_default_preset_only_resets(setup, store):
    syncer, client = setup
    store.upsert_quality_size_mapping("radarr", "RADARR", "default", "auto")

    assert syncer.apply_preset("radarr", "default") == 0
    assert client.calls == [("reset_quality_definitions",)]
