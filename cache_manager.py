# """
# ==============================================================================
# FILE: cache_manager.py
# ROLE: Remote Guide Cache
# DESCRIPTION:
# Keeps one compressed snapshot per (service, config type) of the guide JSON
# inside SQLite. Knows how old each snapshot is, and heals itself when a
# stored payload cannot be decoded: the broken row is deleted and a
# CacheCorruptionError tells the caller to fetch again.
# ==============================================================================
# """

import base64
import gzip
import json
import logging
import zlib
from datetime import timedelta

from config import cfg
from database import utcnow, from_iso
from guide_models import validate_items

logger = logging.getLogger(__name__)


class CacheCorruptionError(Exception):
    """Stored payload could not be decoded; the entry has already been removed."""

    def __init__(self, service_type, config_type, cause=None):
        self.service_type = service_type
        self.config_type = config_type
        self.cause = cause
        super().__init__(
            f"Cache for {service_type}/{config_type} was corrupted and has been cleared. "
            f"Please refresh to re-fetch from GitHub."
        )


def encode_payload(data, compress=True):
    raw = json.dumps(data)
    if not compress:
        return raw
    return base64.b64encode(gzip.compress(raw.encode("utf-8"))).decode("ascii")


def decode_payload(payload):
    """Plain JSON starts with '[' or '{'; anything else is gzip + base64."""
    text = payload.strip()
    if text[:1] in ("[", "{"):
        return json.loads(text)
    raw = gzip.decompress(base64.b64decode(text, validate=True))
    return json.loads(raw.decode("utf-8"))


class GuideCacheManager:
    """Read/write access to the cached guide snapshots."""

    def __init__(self, store, stale_after_hours=None, compression=None):
        self.store = store
        self._stale_after_hours = stale_after_hours
        self._compression = compression

    @property
    def stale_after_hours(self):
        return self._stale_after_hours or cfg.CACHE_STALE_HOURS

    @property
    def compression(self):
        return cfg.CACHE_COMPRESSION if self._compression is None else self._compression

    def _decode_entry(self, entry):
        """Decodes and validates a row, deleting it if it is unusable."""
        service_type, config_type = entry["service_type"], entry["config_type"]
        try:
            return validate_items(config_type, decode_payload(entry["data"]))
        except (ValueError, OSError, EOFError, zlib.error) as e:
            logger.error(f"[Cache] Corrupted entry {service_type}/{config_type}: {e}. Deleting it.")
            self.store.delete_cache_entry(service_type, config_type)
            raise CacheCorruptionError(service_type, config_type, e) from e

    def get(self, service_type, config_type):
        """Returns the cached items, or None when nothing was fetched yet."""
        entry = self.store.get_cache_entry(service_type, config_type)
        if entry is None:
            return None
        self.store.touch_cache_entry(service_type, config_type)
        return self._decode_entry(entry)

    def set(self, service_type, config_type, data, commit_hash=None):
        payload = encode_payload(data, self.compression)
        self.store.upsert_cache_entry(service_type, config_type, payload, commit_hash)
        logger.info(f"[Cache] Stored {len(data)} items for {service_type}/{config_type}"
                    + (f" @ {commit_hash[:8]}" if commit_hash else ""))

    def is_fresh(self, service_type, config_type):
        entry = self.store.get_cache_entry(service_type, config_type)
        if entry is None:
            return False
        return from_iso(entry["last_checked_at"]) > utcnow() - timedelta(hours=self.stale_after_hours)

    def touch_cache(self, service_type, config_type):
        return self.store.touch_cache_entry(service_type, config_type)

    def get_commit_hash(self, service_type, config_type):
        entry = self.store.get_cache_entry(service_type, config_type)
        return entry["commit_hash"] if entry else None

    def _status_from_entry(self, entry):
        try:
            data = self._decode_entry(entry)
        except CacheCorruptionError:
            return None

        status = {
            "service_type": entry["service_type"],
            "config_type": entry["config_type"],
            "version": entry["version"],
            "commit_hash": entry["commit_hash"],
            "fetched_at": entry["fetched_at"],
            "last_checked_at": entry["last_checked_at"],
            "item_count": len(data),
            "is_stale": from_iso(entry["last_checked_at"]) <= utcnow() - timedelta(hours=self.stale_after_hours),
        }

        sources = [item.get("_repoSource") for item in data if item.get("_repoSource")]
        if sources:
            breakdown = {
                "official": sources.count("official"),
                "custom": sources.count("custom"),
            }
            if breakdown["official"] + breakdown["custom"] != len(data):
                logger.warning(
                    f"[Cache] Source breakdown for {entry['service_type']}/{entry['config_type']} "
                    f"does not add up: {breakdown} vs {len(data)} items")
            status["source_breakdown"] = breakdown
        return status

    def get_status(self, service_type, config_type):
        entry = self.store.get_cache_entry(service_type, config_type)
        if entry is None:
            return None
        return self._status_from_entry(entry)

    def get_all_statuses(self, service_type=None):
        statuses = []
        for entry in self.store.list_cache_entries(service_type):
            status = self._status_from_entry(entry)
            if status is not None:
                statuses.append(status)
        return statuses

    def delete(self, service_type, config_type):
        return self.store.delete_cache_entry(service_type, config_type)

    def clear_service(self, service_type):
        count = self.store.delete_cache_service(service_type)
        logger.info(f"[Cache] Cleared {count} entries for {service_type}")
        return count

    def clear_all(self):
        count = self.store.delete_all_cache()
        logger.info(f"[Cache] Cleared all {count} entries")
        return count

    def get_stats(self):
        entries = self.store.list_cache_entries()
        cutoff = utcnow() - timedelta(hours=self.stale_after_hours)
        fetched = sorted(from_iso(e["fetched_at"]) for e in entries)
        return {
            "total_entries": len(entries),
            "stale_entries": sum(1 for e in entries if from_iso(e["last_checked_at"]) <= cutoff),
            "total_size_bytes": sum(len(e["data"].encode("utf-8")) for e in entries),
            "oldest_entry": fetched[0] if fetched else None,
            "newest_entry": fetched[-1] if fetched else None,
        }

    def cleanup_stale(self):
        """Deletes entries not checked for twice the staleness window."""
        cutoff = utcnow() - timedelta(hours=self.stale_after_hours * 2)
        count = self.store.delete_cache_checked_before(cutoff)
        if count:
            logger.info(f"[Cache] Removed {count} abandoned entries")
        return count
