# tests/test_main.py
from __future__ import annotations

from main import seed_quality_size_mappings

INSTANCES = [
    {"id": "sonarr", "label": "Sonarr", "service": "SONARR", "url": "http://sonarr:8989", "api_key": "k"},
    {"id": "radarr", "label": "Radarr", "service": "RADARR", "url": "http://radarr:7878", "api_key": "k"},
]


def test_quality_size_mappings_are_seeded(store):
    seed_quality_size_mappings(store, INSTANCES, [
        {"instance": "radarr", "preset": "movie", "sync_strategy": "auto"},
        {"instance": "sonarr", "preset": "series"},
        {"instance": "lidarr", "preset": "music"},
    ])

    mappings = {m["instance_id"]: m for m in store.list_quality_size_mappings()}
    assert set(mappings) == {"radarr", "sonarr"}
    assert (mappings["radarr"]["service_type"], mappings["radarr"]["sync_strategy"]) == ("RADARR", "auto")
    assert mappings["sonarr"]["sync_strategy"] == "notify"
