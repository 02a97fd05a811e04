# tests/test_database.py
from __future__ import annotations


def test_cache_upsert_bumps_version(store):
    store.upsert_cache_entry("SONARR", "CUSTOM_FORMATS", "[]", "abc")
    store.upsert_cache_entry("SONARR", "CUSTOM_FORMATS", "[1]", "def")

    entry = store.get_cache_entry("SONARR", "CUSTOM_FORMATS")
    assert entry["version"] == 2
    assert entry["data"] == "[1]"
    assert entry["commit_hash"] == "def"
    assert len(store.list_cache_entries()) == 1


def test_cf_tracking_filters_by_source(store):
    store.upsert_cf_tracking("sonarr", 1, "HDR", "t1", "CF_GROUP", "hdr.json")
    store.upsert_cf_tracking("sonarr", 2, "x265", "t2", "QUALITY_PROFILE", "web-1080p.json")
    store.upsert_cf_tracking("radarr", 1, "HDR", "t1", "CF_GROUP", "hdr.json")

    rows = store.list_cf_tracking("sonarr", "CF_GROUP", "hdr.json")
    assert [r["custom_format_id"] for r in rows] == [1]

    # same key: the record moves to the new source
    store.upsert_cf_tracking("sonarr", 1, "HDR", "t1", "QUALITY_PROFILE", "web-1080p.json")
    assert store.list_cf_tracking("sonarr", "CF_GROUP") == []
    assert store.delete_cf_tracking("sonarr", 1) is True
    assert store.delete_cf_tracking("sonarr", 1) is False


def test_changing_quality_size_preset_forgets_hash(store):
    store.upsert_quality_size_mapping("sonarr", "SONARR", "series", "auto")
    store.set_quality_size_hash("sonarr", "hash-1")

    store.upsert_quality_size_mapping("sonarr", "SONARR", "series", "notify")
    assert store.get_quality_size_mapping("sonarr")["applied_data_hash"] == "hash-1"

    store.upsert_quality_size_mapping("sonarr", "SONARR", "anime", "auto")
    mapping = store.get_quality_size_mapping("sonarr")
    assert mapping["preset_id"] == "anime"
    assert mapping["applied_data_hash"] is None


def test_template_round_trip_and_soft_delete(store):
    template_id = store.create_template("HD", "RADARR", {"custom_formats": []}, "abc")
    store.update_template(template_id, change_log=[{"type": "x"}], has_user_modifications=True)

    template = store.get_template(template_id)
    assert template["config_data"] == {"custom_formats": []}
    assert template["change_log"] == [{"type": "x"}]
    assert template["has_user_modifications"] is True

    store.upsert_template_mapping(template_id, "radarr", "auto", 7)
    store.upsert_template_mapping(template_id, "radarr", "notify")
    mapping = store.list_template_mappings(template_id)[0]
    assert mapping["sync_strategy"] == "notify"
    assert mapping["quality_profile_id"] == 7

    store.delete_template(template_id)
    assert store.get_template(template_id) is None
    assert store.list_templates() == []


def test_backups_expire_and_are_capped_per_instance(store):
    from datetime import timedelta
    from database import utcnow

    ids = [store.create_backup("radarr", {"custom_formats": [{"name": f"cf{i}"}]}, "Pre-sync backup")
           for i in range(3)]
    kept_forever = store.create_backup("sonarr", {"custom_formats": []}, retention_days=0)

    assert store.get_backup(ids[0])["backup_data"] == {"custom_formats": [{"name": "cf0"}]}
    assert store.enforce_backup_limit("radarr", 2) == 1
    assert [b["id"] for b in store.list_backups("radarr")] == [ids[2], ids[1]]

    assert store.delete_expired_backups(utcnow() + timedelta(days=31)) == 2
    assert store.list_backups("radarr") == []
    assert store.get_backup(kept_forever) is not None


def test_restored_backup_is_stamped(store):
    backup_id = store.create_backup("radarr", {"custom_formats": []})
    assert store.get_backup(backup_id)["restored_at"] is None

    store.mark_backup_restored(backup_id)
    assert store.get_backup(backup_id)["restored_at"] is not None
    assert store.get_backup(backup_id + 100) is None
