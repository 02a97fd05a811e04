# """
# ==============================================================================
# FILE: config.py
# ROLE: Live Settings
# DESCRIPTION:
# config.yml is re-read whenever it changes on disk, so instances, guide
# repository, timers and the dry-run switch can be edited while running.
# Switched settings (enable_x + x) come back as False when off, empty or
# non-positive and the property supplies the fallback.
# Secrets (API keys) are never echoed when changes are printed.
# ==============================================================================
# """

import os
import yaml
import shutil
import time

SERVICE_ENV_PREFIXES = {"SONARR": "SONARR", "RADARR": "RADARR"}

TRUE_STRINGS = {"true", "yes", "on", "1"}


def as_bool(value):
    """Switch value from YAML. Quoted strings such as 'false' are parsed, not truth-tested."""
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return bool(value)


class ConfigManager:
    """Every property read goes through reload(), which is a no-op until the file mtime moves."""
    def __init__(self, config_path=None):
        self.config_path = config_path or os.getenv("GUIDE_SYNC_CONFIG", "/config/config.yml")
        self.default_path = "/app/default-config.yml"

        self.raw_cfg = {}
        self.last_mtime = 0

        self.ensure_default_config()
        self.reload()

    def ensure_default_config(self):
        """Creates a default config file if one is missing."""
        if not os.path.exists(self.config_path):
            print(f"WARNING: Config file not found at {self.config_path}. Creating a default one...")
            try:
                os.makedirs(os.path.dirname(self.config_path), exist_ok=True)
                if os.path.exists(self.default_path):
                    shutil.copy(self.default_path, self.config_path)
                    print("SUCCESS: Default config.yml has been generated! Please edit it.")
                else:
                    print("ERROR: Default template not found inside container!")
            except Exception as e:
                print(f"ERROR: Failed to create default config: {e}")

    def reload(self):
        """Re-reads config.yml when its mtime changed and prints what moved."""
        if not os.path.exists(self.config_path):
            return

        current_mtime = os.path.getmtime(self.config_path)
        if current_mtime == self.last_mtime:
            return

        try:
            with open(self.config_path, 'r') as f:
                new_cfg = yaml.safe_load(f) or {}
        except Exception as e:
            print(f"ERROR: Failed to parse {self.config_path}: {e}")
            return

        tz = new_cfg.get('timezone')
        if tz:
            os.environ['TZ'] = tz
            if hasattr(time, 'tzset'):
                time.tzset()

        if self.last_mtime != 0:
            self._print_changes(new_cfg)

        self.raw_cfg = new_cfg
        self.last_mtime = current_mtime

    def _print_changes(self, new_cfg):
        current_time = time.strftime('%Y-%m-%d %H:%M:%S')
        print(f"\n[{current_time}] CONFIG UPDATED: Changes detected in {os.path.basename(self.config_path)}")
        changes_found = False

        for key, new_value in new_cfg.items():
            if key not in self.raw_cfg:
                print(f"  -> ADDED: '{key}' = {self._mask(key, new_value)}")
                changes_found = True
            elif self.raw_cfg.get(key) != new_value:
                old_value = self.raw_cfg.get(key)
                print(f"  -> CHANGED: '{key}' from '{self._mask(key, old_value)}' to '{self._mask(key, new_value)}'")
                changes_found = True

        for key in self.raw_cfg.keys():
            if key not in new_cfg:
                print(f"  -> REMOVED: '{key}'")
                changes_found = True

        if not changes_found:
            print("  -> File saved, but no values changed.")
        print("-" * 60)

    @staticmethod
    def _mask(key, value):
        # Instance blocks carry API keys
        if key == 'instances':
            return f"<{len(value or [])} instances>"
        return value

    def get_setting(self, enable_key, val_key, expected_type=str):
        """
        Value of a switched setting, or False when it should not apply:
        switch off or missing, value empty, int not positive, mapping not a dict.
        """
        self.reload()

        if not as_bool(self.raw_cfg.get(enable_key, False)):
            return False

        val = self.raw_cfg.get(val_key)
        if val is None or val == '':
            return False

        if expected_type == int:
            try:
                val = int(val)
                if val <= 0:
                    return False
            except (TypeError, ValueError):
                return False

        elif expected_type == dict:
            if not isinstance(val, dict) or not val:
                print(f"WARNING: '{val_key}' must be a mapping, ignoring it")
                return False

        return val

    def get_value(self, key, default=None):
        """Plain lookup for settings without a feature switch."""
        self.reload()
        val = self.raw_cfg.get(key)
        return default if val is None or val == '' else val

    # ==========================================================================
    # DYNAMIC PROPERTIES
    # ==========================================================================

    # --- Core Settings ---
    @property
    def DRY_RUN(self): return as_bool(self.get_value('dry_run', True))
    @property
    def LOG_LEVEL(self): return str(self.get_value('log_level', 'INFO'))
    @property
    def TIMEZONE(self): return str(self.get_value('timezone', 'UTC'))
    @property
    def HEALTH_PORT(self): return int(self.get_value('health_port', 8080))

    # --- Managed Instances ---
    @property
    def INSTANCES(self):
        """
        Instances from config.yml. Falls back to SONARR_URL/RADARR_URL env
        variables so a single-instance setup needs no YAML block at all.
        """
        configured = self.get_value('instances')
        if configured:
            instances = []
            for idx, item in enumerate(configured):
                service = str(item.get('service', '')).upper()
                if service not in SERVICE_ENV_PREFIXES or not item.get('url') or not item.get('api_key'):
                    print(f"WARNING: Skipping instance #{idx} in config.yml (needs service, url and api_key)")
                    continue
                instances.append({
                    'id': str(item.get('id') or f"{service.lower()}-{idx}"),
                    'label': item.get('label') or item.get('id') or service.title(),
                    'service': service,
                    'url': str(item['url']).rstrip('/'),
                    'api_key': item['api_key'],
                })
            return instances

        instances = []
        for service, prefix in SERVICE_ENV_PREFIXES.items():
            url = os.getenv(f"{prefix}_URL")
            key = os.getenv(f"{prefix}_API_KEY")
            if url and key:
                instances.append({
                    'id': service.lower(),
                    'label': service.title(),
                    'service': service,
                    'url': url.rstrip('/'),
                    'api_key': key,
                })
        return instances

    # --- Upstream Guide Repository ---
    @property
    def GITHUB_TOKEN(self): return os.getenv("GITHUB_TOKEN")
    @property
    def GUIDE_REPO_OWNER(self): return self.get_value('guide_repo_owner', 'TRaSH-Guides')
    @property
    def GUIDE_REPO_NAME(self): return self.get_value('guide_repo_name', 'Guides')
    @property
    def GUIDE_REPO_BRANCH(self): return self.get_value('guide_repo_branch', 'master')
    @property
    def CUSTOM_REPO(self): return self.get_setting('enable_custom_repo', 'custom_repo', dict) or None

    # --- Cache ---
    @property
    def CACHE_STALE_HOURS(self): return self.get_setting('enable_cache_stale_hours', 'cache_stale_hours', int) or 12
    @property
    def CACHE_COMPRESSION(self): return as_bool(self.get_value('cache_compression', True))

    # --- Timers & Toggles ---
    @property
    def ENABLE_GUIDE_CACHE_SYNC(self): return as_bool(self.get_value('enable_guide_cache_sync', False))
    @property
    def ENABLE_UPDATE_SCHEDULER(self): return as_bool(self.get_value('enable_update_scheduler', False))
    @property
    def UPDATE_CHECK_HOURS(self): return self.get_setting('enable_update_check_timer', 'update_check_hours', int) or 12

    # --- Sync Behaviour ---
    @property
    def ALLOW_DELETES(self): return as_bool(self.get_value('allow_deletes', False))
    @property
    def REVERSE_QUALITY_ITEMS(self): return as_bool(self.get_value('reverse_quality_items', False))

    # --- Pre-Sync Backups ---
    @property
    def BACKUP_RETENTION_DAYS(self): return int(self.get_value('backup_retention_days', 30))
    @property
    def MAX_BACKUPS(self): return self.get_setting('enable_max_backups', 'max_backups', int) or 10

    # --- Seed Data ---
    @property
    def TEMPLATES(self): return self.get_value('templates', []) or []
    @property
    def QUALITY_SIZE(self): return self.get_value('quality_size', []) or []


cfg = ConfigManager()
DB_PATH = os.getenv("GUIDE_SYNC_DB", "/config/guide-sync.db")
