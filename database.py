# """
# ==============================================================================
# FILE: database.py
# ROLE: The Memory
# DESCRIPTION:
# Handles all SQLite database operations. Stores the compressed guide cache,
# the provenance records that say WHY a custom format lives on an instance
# (which group or profile brought it in), quality-size bindings and the
# guide templates together with their per-instance sync strategy, and the
# snapshots taken before every sync so a deploy can be rolled back.
# ==============================================================================
# """

import os
import json
import sqlite3
import logging
from datetime import datetime, timedelta, timezone

# Import the dynamic config manager and the static DB_PATH
from config import cfg, DB_PATH

logger = logging.getLogger(__name__)

logging.basicConfig(
    format='%(asctime)s - %(levelname)s - [%(threadName)s] %(message)s',
    level=getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO)
)

SCHEMA = [
    '''CREATE TABLE IF NOT EXISTS guide_cache (
        service_type TEXT NOT NULL,
        config_type TEXT NOT NULL,
        data TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        commit_hash TEXT,
        fetched_at TEXT NOT NULL,
        last_checked_at TEXT NOT NULL,
        PRIMARY KEY (service_type, config_type))''',
    '''CREATE TABLE IF NOT EXISTS cf_tracking (
        instance_id TEXT NOT NULL,
        custom_format_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        trash_id TEXT NOT NULL,
        last_synced_at TEXT NOT NULL,
        git_ref TEXT,
        import_source TEXT NOT NULL,
        source_reference TEXT,
        PRIMARY KEY (instance_id, custom_format_id))''',
    '''CREATE TABLE IF NOT EXISTS cf_group_tracking (
        instance_id TEXT NOT NULL,
        group_file_name TEXT NOT NULL,
        group_name TEXT,
        imported_count INTEGER NOT NULL DEFAULT 0,
        last_synced_at TEXT NOT NULL,
        PRIMARY KEY (instance_id, group_file_name))''',
    '''CREATE TABLE IF NOT EXISTS profile_tracking (
        instance_id TEXT NOT NULL,
        profile_file_name TEXT NOT NULL,
        profile_name TEXT,
        quality_profile_id INTEGER,
        imported_count INTEGER NOT NULL DEFAULT 0,
        last_applied_at TEXT NOT NULL,
        PRIMARY KEY (instance_id, profile_file_name))''',
    '''CREATE TABLE IF NOT EXISTS quality_size_mappings (
        instance_id TEXT PRIMARY KEY,
        service_type TEXT NOT NULL,
        preset_id TEXT NOT NULL,
        sync_strategy TEXT NOT NULL DEFAULT 'notify',
        applied_data_hash TEXT,
        last_applied_at TEXT)''',
    '''CREATE TABLE IF NOT EXISTS templates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        service_type TEXT NOT NULL,
        config_data TEXT NOT NULL,
        commit_hash TEXT,
        has_user_modifications INTEGER NOT NULL DEFAULT 0,
        change_log TEXT NOT NULL DEFAULT '[]',
        last_synced_at TEXT,
        created_at TEXT NOT NULL,
        deleted_at TEXT)''',
    '''CREATE TABLE IF NOT EXISTS template_mappings (
        template_id INTEGER NOT NULL,
        instance_id TEXT NOT NULL,
        quality_profile_id INTEGER,
        sync_strategy TEXT NOT NULL DEFAULT 'notify',
        PRIMARY KEY (template_id, instance_id))''',
    '''CREATE TABLE IF NOT EXISTS backups (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        instance_id TEXT NOT NULL,
        reason TEXT,
        backup_data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT,
        restored_at TEXT)''',
]


def utcnow():
    """Timezone-aware 'now' so timestamps compare the same across restarts."""
    return datetime.now(timezone.utc)


def to_iso(value):
    return value.isoformat() if value else None


def from_iso(value):
    return datetime.fromisoformat(value) if value else None


class GuideStore:
    """Thin wrapper around the SQLite file. One connection per call."""

    def __init__(self, db_path=None):
        self.db_path = db_path or DB_PATH

    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, query, params=()):
        conn = self._connect()
        try:
            cur = conn.execute(query, params)
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def _fetchall(self, query, params=()):
        conn = self._connect()
        try:
            return [dict(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def _fetchone(self, query, params=()):
        rows = self._fetchall(query, params)
        return rows[0] if rows else None

    def init_db(self):
        """Creates every table the sync engine needs."""
        try:
            folder = os.path.dirname(self.db_path)
            if folder:
                os.makedirs(folder, exist_ok=True)
            conn = self._connect()
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
            conn.close()
            logger.info(f"Database initialized at {self.db_path}")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")

    # ==========================================================================
    # GUIDE CACHE
    # ==========================================================================
    def get_cache_entry(self, service_type, config_type):
        return self._fetchone(
            "SELECT * FROM guide_cache WHERE service_type=? AND config_type=?",
            (service_type, config_type))

    def upsert_cache_entry(self, service_type, config_type, data, commit_hash=None):
        """Insert a new snapshot or replace the payload and bump its version."""
        now = to_iso(utcnow())
        self._execute(
            '''INSERT INTO guide_cache
                   (service_type, config_type, data, version, commit_hash, fetched_at, last_checked_at)
               VALUES (?, ?, ?, 1, ?, ?, ?)
               ON CONFLICT(service_type, config_type) DO UPDATE SET
                   data=excluded.data,
                   version=guide_cache.version + 1,
                   commit_hash=excluded.commit_hash,
                   fetched_at=excluded.fetched_at,
                   last_checked_at=excluded.last_checked_at''',
            (service_type, config_type, data, commit_hash, now, now))

    def touch_cache_entry(self, service_type, config_type):
        return self._execute(
            "UPDATE guide_cache SET last_checked_at=? WHERE service_type=? AND config_type=?",
            (to_iso(utcnow()), service_type, config_type)) > 0

    def delete_cache_entry(self, service_type, config_type):
        return self._execute(
            "DELETE FROM guide_cache WHERE service_type=? AND config_type=?",
            (service_type, config_type)) > 0

    def delete_cache_service(self, service_type):
        return self._execute("DELETE FROM guide_cache WHERE service_type=?", (service_type,))

    def delete_all_cache(self):
        return self._execute("DELETE FROM guide_cache")

    def list_cache_entries(self, service_type=None):
        if service_type:
            return self._fetchall(
                "SELECT * FROM guide_cache WHERE service_type=? ORDER BY config_type", (service_type,))
        return self._fetchall("SELECT * FROM guide_cache ORDER BY service_type, config_type")

    def delete_cache_checked_before(self, cutoff):
        return self._execute("DELETE FROM guide_cache WHERE last_checked_at < ?", (to_iso(cutoff),))

    # ==========================================================================
    # CUSTOM FORMAT PROVENANCE
    # ==========================================================================
    def upsert_cf_tracking(self, instance_id, custom_format_id, name, trash_id,
                           import_source, source_reference=None, git_ref=None):
        self._execute(
            '''INSERT INTO cf_tracking
                   (instance_id, custom_format_id, name, trash_id, last_synced_at, git_ref, import_source, source_reference)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(instance_id, custom_format_id) DO UPDATE SET
                   name=excluded.name,
                   trash_id=excluded.trash_id,
                   last_synced_at=excluded.last_synced_at,
                   git_ref=excluded.git_ref,
                   import_source=excluded.import_source,
                   source_reference=excluded.source_reference''',
            (instance_id, custom_format_id, name, trash_id, to_iso(utcnow()), git_ref,
             import_source, source_reference))

    def list_cf_tracking(self, instance_id, import_source=None, source_reference=None):
        query = "SELECT * FROM cf_tracking WHERE instance_id=?"
        params = [instance_id]
        if import_source:
            query += " AND import_source=?"
            params.append(import_source)
        if source_reference is not None:
            query += " AND source_reference=?"
            params.append(source_reference)
        return self._fetchall(query + " ORDER BY name", tuple(params))

    def delete_cf_tracking(self, instance_id, custom_format_id):
        return self._execute(
            "DELETE FROM cf_tracking WHERE instance_id=? AND custom_format_id=?",
            (instance_id, custom_format_id)) > 0

    def upsert_group_tracking(self, instance_id, group_file_name, group_name, imported_count):
        self._execute(
            '''INSERT INTO cf_group_tracking (instance_id, group_file_name, group_name, imported_count, last_synced_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(instance_id, group_file_name) DO UPDATE SET
                   group_name=excluded.group_name,
                   imported_count=excluded.imported_count,
                   last_synced_at=excluded.last_synced_at''',
            (instance_id, group_file_name, group_name, imported_count, to_iso(utcnow())))

    def list_group_tracking(self, instance_id):
        return self._fetchall(
            "SELECT * FROM cf_group_tracking WHERE instance_id=? ORDER BY group_file_name", (instance_id,))

    def upsert_profile_tracking(self, instance_id, profile_file_name, profile_name,
                                quality_profile_id, imported_count):
        self._execute(
            '''INSERT INTO profile_tracking
                   (instance_id, profile_file_name, profile_name, quality_profile_id, imported_count, last_applied_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(instance_id, profile_file_name) DO UPDATE SET
                   profile_name=excluded.profile_name,
                   quality_profile_id=excluded.quality_profile_id,
                   imported_count=excluded.imported_count,
                   last_applied_at=excluded.last_applied_at''',
            (instance_id, profile_file_name, profile_name, quality_profile_id, imported_count,
             to_iso(utcnow())))

    def list_profile_tracking(self, instance_id):
        return self._fetchall(
            "SELECT * FROM profile_tracking WHERE instance_id=? ORDER BY profile_file_name", (instance_id,))

    # ==========================================================================
    # QUALITY SIZE
    # ==========================================================================
    def upsert_quality_size_mapping(self, instance_id, service_type, preset_id, sync_strategy='notify'):
        """Binds an instance to a preset. Changing the preset forgets the applied hash."""
        self._execute(
            '''INSERT INTO quality_size_mappings (instance_id, service_type, preset_id, sync_strategy)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(instance_id) DO UPDATE SET
                   service_type=excluded.service_type,
                   sync_strategy=excluded.sync_strategy,
                   applied_data_hash=CASE WHEN quality_size_mappings.preset_id = excluded.preset_id
                                          THEN quality_size_mappings.applied_data_hash ELSE NULL END,
                   preset_id=excluded.preset_id''',
            (instance_id, service_type, preset_id, sync_strategy))

    def get_quality_size_mapping(self, instance_id):
        return self._fetchone("SELECT * FROM quality_size_mappings WHERE instance_id=?", (instance_id,))

    def list_quality_size_mappings(self, strategies=None):
        rows = self._fetchall("SELECT * FROM quality_size_mappings ORDER BY instance_id")
        if strategies:
            rows = [r for r in rows if r['sync_strategy'] in strategies]
        return rows

    def set_quality_size_hash(self, instance_id, applied_hash):
        """Stores the applied preset hash. None means 'unknown state, retry next cycle'."""
        self._execute(
            "UPDATE quality_size_mappings SET applied_data_hash=?, last_applied_at=? WHERE instance_id=?",
            (applied_hash, to_iso(utcnow()) if applied_hash else None, instance_id))

    # ==========================================================================
    # TEMPLATES
    # ==========================================================================
    @staticmethod
    def _template_from_row(row):
        if row is None:
            return None
        row['config_data'] = json.loads(row['config_data'] or '{}')
        row['change_log'] = json.loads(row['change_log'] or '[]')
        row['has_user_modifications'] = bool(row['has_user_modifications'])
        return row

    def create_template(self, name, service_type, config_data, commit_hash=None):
        conn = self._connect()
        try:
            cur = conn.execute(
                '''INSERT INTO templates (name, service_type, config_data, commit_hash, last_synced_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)''',
                (name, service_type, json.dumps(config_data), commit_hash,
                 to_iso(utcnow()) if commit_hash else None, to_iso(utcnow())))
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_template(self, template_id):
        return self._template_from_row(self._fetchone(
            "SELECT * FROM templates WHERE id=? AND deleted_at IS NULL", (template_id,)))

    def find_template(self, name, service_type):
        return self._template_from_row(self._fetchone(
            "SELECT * FROM templates WHERE name=? AND service_type=? AND deleted_at IS NULL",
            (name, service_type)))

    def list_templates(self, service_type=None):
        query = "SELECT * FROM templates WHERE deleted_at IS NULL"
        params = ()
        if service_type:
            query += " AND service_type=?"
            params = (service_type,)
        return [self._template_from_row(r) for r in self._fetchall(query + " ORDER BY id", params)]

    def update_template(self, template_id, **fields):
        """Updates the given columns. JSON columns accept plain Python objects."""
        allowed = {'name', 'config_data', 'commit_hash', 'has_user_modifications',
                   'change_log', 'last_synced_at', 'deleted_at'}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown template fields: {sorted(unknown)}")

        values = []
        for key, value in fields.items():
            if key in ('config_data', 'change_log'):
                value = json.dumps(value)
            elif key in ('last_synced_at', 'deleted_at') and isinstance(value, datetime):
                value = to_iso(value)
            elif key == 'has_user_modifications':
                value = int(bool(value))
            values.append(value)

        assignments = ", ".join(f"{key}=?" for key in fields)
        return self._execute(f"UPDATE templates SET {assignments} WHERE id=?", (*values, template_id)) > 0

    def delete_template(self, template_id):
        return self.update_template(template_id, deleted_at=utcnow())

    def upsert_template_mapping(self, template_id, instance_id, sync_strategy='notify', quality_profile_id=None):
        self._execute(
            '''INSERT INTO template_mappings (template_id, instance_id, quality_profile_id, sync_strategy)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(template_id, instance_id) DO UPDATE SET
                   quality_profile_id=COALESCE(excluded.quality_profile_id, template_mappings.quality_profile_id),
                   sync_strategy=excluded.sync_strategy''',
            (template_id, instance_id, quality_profile_id, sync_strategy))

    def list_template_mappings(self, template_id):
        return self._fetchall(
            "SELECT * FROM template_mappings WHERE template_id=? ORDER BY instance_id", (template_id,))

    def set_template_mapping_profile(self, template_id, instance_id, quality_profile_id):
        self._execute(
            "UPDATE template_mappings SET quality_profile_id=? WHERE template_id=? AND instance_id=?",
            (quality_profile_id, template_id, instance_id))

    # ==========================================================================
    # PRE-SYNC BACKUPS
    # ==========================================================================
    def create_backup(self, instance_id, data, reason=None, retention_days=30):
        """Stores a snapshot. retention_days <= 0 keeps it until pruned by count."""
        now = utcnow()
        expires_at = to_iso(now + timedelta(days=retention_days)) if retention_days and retention_days > 0 else None
        conn = self._connect()
        try:
            cur = conn.execute(
                '''INSERT INTO backups (instance_id, reason, backup_data, created_at, expires_at)
                   VALUES (?, ?, ?, ?, ?)''',
                (instance_id, reason, json.dumps(data), to_iso(now), expires_at))
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_backup(self, backup_id):
        """Backup row with parsed data, or None when missing or unreadable."""
        row = self._fetchone("SELECT * FROM backups WHERE id=?", (backup_id,))
        if row is None:
            return None
        try:
            row['backup_data'] = json.loads(row['backup_data'])
        except ValueError as e:
            logger.error(f"[Backup] Backup #{backup_id} has invalid data: {e}")
            return None
        return row

    def list_backups(self, instance_id, limit=10):
        return self._fetchall(
            '''SELECT id, instance_id, reason, created_at, expires_at, restored_at, LENGTH(backup_data) AS data_size
               FROM backups WHERE instance_id=? ORDER BY id DESC LIMIT ?''', (instance_id, limit))

    def mark_backup_restored(self, backup_id):
        self._execute("UPDATE backups SET restored_at=? WHERE id=?", (to_iso(utcnow()), backup_id))

    def delete_expired_backups(self, now=None):
        return self._execute("DELETE FROM backups WHERE expires_at IS NOT NULL AND expires_at <= ?",
                             (to_iso(now or utcnow()),))

    def enforce_backup_limit(self, instance_id, max_backups=10):
        """Keeps only the newest max_backups snapshots of an instance."""
        return self._execute(
            '''DELETE FROM backups WHERE instance_id=? AND id NOT IN
               (SELECT id FROM backups WHERE instance_id=? ORDER BY id DESC LIMIT ?)''',
            (instance_id, instance_id, max_backups))
