# """
# ==============================================================================
# FILE: quality_size.py
# ROLE: Quality Size Preset Sync
# DESCRIPTION:
# Keeps the min/preferred/max file sizes of an instance in line with the
# guide preset it is bound to. A preset is only re-applied when its content
# hash changes. Applying always starts from factory defaults (reset) and then
# writes the preset on top. If the write fails after the reset, the stored
# hash is cleared so the next cycle tries again.
# ==============================================================================
# """

import json
import hashlib
import logging
from copy import deepcopy

from config import cfg
from guide_models import QUALITY_SIZE

logger = logging.getLogger(__name__)

DEFAULT_PRESET_ID = "default"
SIZE_TOLERANCE = 0.001


def hash_qualities(qualities):
    """sha256 of the compact JSON encoding of a preset's quality list."""
    encoded = json.dumps(qualities, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _differs(a, b):
    if a is None or b is None:
        return a is not b
    return abs(float(a) - float(b)) > SIZE_TOLERANCE


def apply_quality_size_to_definitions(definitions, qualities):
    """Returns (updated copies, number of definitions whose sizes changed)."""
    wanted = {}
    for quality in qualities:
        wanted[(quality.get("quality") or "").strip().lower()] = quality

    updated, applied = [], 0
    for definition in definitions:
        copy = deepcopy(definition)
        preset = wanted.get((definition.get("title") or "").strip().lower())
        if preset is None:
            quality_name = ((definition.get("quality") or {}).get("name") or "").strip().lower()
            preset = wanted.get(quality_name)

        if preset is not None:
            new_values = {
                "minSize": preset.get("min"),
                "preferredSize": preset.get("preferred"),
                "maxSize": preset.get("max"),
            }
            if any(_differs(copy.get(k), v) for k, v in new_values.items()):
                applied += 1
            copy.update(new_values)
        updated.append(copy)
    return updated, applied


def find_preset(presets, preset_id):
    for preset in presets or []:
        if preset.get("trash_id") == preset_id or preset.get("type") == preset_id:
            return preset
    return None


class QualitySizeSyncer:
    """Runs the per-instance preset bindings stored in quality_size_mappings."""

    def __init__(self, store, cache, clients):
        self.store = store
        self.cache = cache
        self.clients = clients

    def _presets(self, service_type):
        return self.cache.get(service_type, QUALITY_SIZE) or []

    def _reset(self, client):
        if cfg.DRY_RUN:
            logger.info(f"[DRY RUN] Would reset quality definitions on {client.label}")
            return
        client.reset_quality_definitions()

    def _apply(self, client, qualities):
        definitions = client.list_quality_definitions()
        updated, applied = apply_quality_size_to_definitions(definitions, qualities)
        if cfg.DRY_RUN:
            logger.info(f"[DRY RUN] Would update {applied} quality definitions on {client.label}")
            return applied
        client.update_quality_definitions(updated)
        return applied

    def apply_preset(self, instance_id, preset_id):
        """Reset then apply. Returns the number of definitions changed."""
        mapping = self.store.get_quality_size_mapping(instance_id)
        if mapping is None:
            raise KeyError(f"No quality size mapping for instance '{instance_id}'")
        client = self.clients[instance_id]

        if preset_id == DEFAULT_PRESET_ID:
            self._reset(client)
            self.store.set_quality_size_hash(instance_id, None)
            logger.info(f"[{client.label}] Quality sizes restored to factory defaults")
            return 0

        preset = find_preset(self._presets(mapping["service_type"]), preset_id)
        if preset is None:
            raise KeyError(f"Quality size preset '{preset_id}' is not in the {mapping['service_type']} cache")

        self._reset(client)
        try:
            applied = self._apply(client, preset["qualities"])
        except Exception:
            # Instance is at factory defaults now; forget the hash so the next run retries
            self.store.set_quality_size_hash(instance_id, None)
            raise

        if not cfg.DRY_RUN:
            self.store.set_quality_size_hash(instance_id, hash_qualities(preset["qualities"]))
        logger.info(f"[{client.label}] Applied quality size preset '{preset_id}' ({applied} changed)")
        return applied

    def sync_all(self):
        """Scheduler sub-loop. Returns counts plus the per-instance error list."""
        stats = {"checked": 0, "applied": 0, "pending": 0, "unchanged": 0, "errors": []}

        for mapping in self.store.list_quality_size_mappings(strategies=("auto", "notify")):
            instance_id = mapping["instance_id"]
            stats["checked"] += 1
            try:
                if mapping["preset_id"] == DEFAULT_PRESET_ID:
                    stats["unchanged"] += 1
                    continue
                preset = find_preset(self._presets(mapping["service_type"]), mapping["preset_id"])
                if preset is None:
                    raise KeyError(f"preset '{mapping['preset_id']}' not found in cache")

                if hash_qualities(preset["qualities"]) == mapping["applied_data_hash"]:
                    stats["unchanged"] += 1
                    continue

                if mapping["sync_strategy"] == "notify":
                    logger.info(f"[QualitySize] Preset '{mapping['preset_id']}' changed for {instance_id} (notify only)")
                    stats["pending"] += 1
                    continue

                if instance_id not in self.clients:
                    raise KeyError(f"instance '{instance_id}' is not configured")
                self.apply_preset(instance_id, mapping["preset_id"])
                stats["applied"] += 1
            except Exception as e:
                logger.error(f"[QualitySize] {instance_id}: {e}")
                stats["errors"].append(f"{instance_id}: {e}")

        return stats
