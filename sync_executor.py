"""
==============================================================================
FILE: sync_executor.py
ROLE: Two-Phase Sync Executor
DESCRIPTION:
The only component that writes to Sonarr/Radarr configuration.
PHASE 1 - Custom Formats: remove formats a group/profile no longer brings in,
          then create (POST) or update (PUT) every wanted format and record
          where it came from.
PHASE 2 - Quality Profile: re-read the instance formats (so the ids created
          in phase 1 exist) and push the merged profile in one PUT.
One failing format is logged and skipped; the rest of the phase goes on.
Every write is preceded by a snapshot of the instance that restore_backup
can roll back to.
==============================================================================
"""

import time
import logging
import threading
from copy import deepcopy

from arr_client import ArrApiError
from config import cfg
from diff_engine import compute_sync_plan
from guide_models import (IMPORT_SOURCE_PROFILE, SyncResult, normalize_name, to_instance_payload)
from profile_matcher import selection_score

logger = logging.getLogger(__name__)

PROFILE_SCORE_SETTINGS = ("upgradeAllowed", "minFormatScore", "cutoffFormatScore", "minUpgradeFormatScore")


def normalize_quality_name(name):
    return "".join((name or "").split()).replace("-", "").lower()


def reverse_quality_items_if_needed(items, reverse=None):
    """Guide quality lists may one day be ordered lowest-first; the API wants highest-first."""
    reverse = cfg.REVERSE_QUALITY_ITEMS if reverse is None else reverse
    if reverse and items:
        logger.info("[Sync] Reversing guide quality items for API ordering")
        return list(reversed(items))
    return list(items or [])


def build_quality_items(guide_items, schema_items, reverse=None):
    """
    Turns guide quality items ({name, allowed, items?}) into the instance's
    item structure, using the schema's quality ids. Unmentioned qualities are
    kept at the end, disallowed.
    """
    by_name = {}
    for entry in schema_items or []:
        for quality_entry in entry.get("items") or [entry]:
            quality = quality_entry.get("quality")
            if quality:
                by_name[normalize_quality_name(quality.get("name"))] = quality_entry

    result, used, group_id = [], set(), 1000
    for item in reverse_quality_items_if_needed(guide_items, reverse):
        allowed = bool(item.get("allowed", True))
        children = item.get("items") or []
        if children:
            members = []
            for child in children:
                key = normalize_quality_name(child)
                if key in by_name and key not in used:
                    used.add(key)
                    members.append(dict(by_name[key], allowed=True, items=[]))
            if members:
                group_id += 1
                result.append({"id": group_id, "name": item.get("name"), "allowed": allowed, "items": members})
            continue

        key = normalize_quality_name(item.get("name"))
        if key in by_name and key not in used:
            used.add(key)
            result.append(dict(by_name[key], allowed=allowed, items=[]))

    for key, quality_entry in by_name.items():
        if key not in used:
            result.append(dict(quality_entry, allowed=False, items=[]))
    return result


def find_cutoff_id(items, cutoff_name):
    wanted = normalize_quality_name(cutoff_name)
    for item in items:
        if item.get("quality") and normalize_quality_name(item["quality"].get("name")) == wanted:
            return item["quality"].get("id")
        if normalize_quality_name(item.get("name")) == wanted and item.get("id") is not None:
            return item["id"]
    return None


class SyncExecutor:
    """Applies guide formats and profiles to an instance, one instance at a time."""

    def __init__(self, store, metrics=None):
        self.store = store
        self.metrics = metrics
        self._locks = {}
        self._locks_guard = threading.Lock()

    def instance_lock(self, instance_id):
        """Per-instance mutex shared by manual and scheduled syncs."""
        with self._locks_guard:
            return self._locks.setdefault(instance_id, threading.RLock())

    def _record(self, operation, started, result):
        if self.metrics is None:
            return
        self.metrics.record(operation, result.success, (time.time() - started) * 1000,
                            "; ".join(result.errors) if result.errors else None)

    # ==========================================================================
    # PROFILE DEPLOYMENT (PHASE 1 + PHASE 2)
    # ==========================================================================
    def sync_profile(self, client, instance_id, profile, selections, commit_hash=None,
                     excluded=None, score_overrides=None, score_set=None,
                     quality_profile_id=None, conditions=None):
        """
        Deploys the formats in `selections` (see profile_matcher.resolve_profile_formats)
        and then the quality profile that scores them.
        """
        started = time.time()
        result = SyncResult(instance_id=instance_id)
        score_set = score_set or profile.get("trash_score_set")

        with self.instance_lock(instance_id):
            processed = self._sync_custom_formats(client, instance_id, selections, result,
                                                  commit_hash, excluded or set(), conditions or {})
            if processed is not None:
                self._sync_quality_profile(client, instance_id, profile, processed, result,
                                           score_overrides or {}, score_set, quality_profile_id)

        result.success = not result.errors
        self._record("deployment", started, result)
        level = logging.INFO if result.success else logging.WARNING
        logger.log(level, f"[{client.label}] Deploy '{profile.get('name')}' finished: "
                          f"{len(result.created)} created, {len(result.updated)} updated, "
                          f"{len(result.deleted)} removed, {len(result.failed)} failed")
        return result

    def _sync_custom_formats(self, client, instance_id, selections, result, commit_hash,
                             excluded, conditions):
        excluded_keys = {normalize_name(x) for x in excluded}
        wanted = []
        for selection in selections:
            if selection["trash_id"].lower() in excluded_keys or normalize_name(selection["name"]) in excluded_keys:
                result.skipped.append(selection["name"])
                continue
            wanted.append(selection)

        try:
            remote_cfs = client.list_custom_formats()
            if not cfg.DRY_RUN:
                result.backup_id = self.create_backup(client, instance_id, "Pre-deploy backup", remote_cfs)
        except ArrApiError as e:
            logger.error(f"[{client.label}] Cannot read custom formats, aborting deploy: {e}")
            result.errors.append(str(e))
            return None
        existing = {normalize_name(cf.get("name")): cf for cf in remote_cfs}

        # Excluded formats still count as part of their group/profile here
        self._remove_orphans(client, instance_id, selections, result)

        imported_per_ref, group_names = {}, {}
        for selection in wanted:
            name = selection["name"]
            current = existing.get(normalize_name(name))
            payload = to_instance_payload(selection["cf"], conditions.get(selection["trash_id"]))

            if cfg.DRY_RUN:
                action = "UPDATE (PUT)" if current else "CREATE (POST)"
                logger.info(f"[DRY RUN] Would {action} Format '{name}' in {client.label}")
                continue

            try:
                if current:
                    saved = client.update_custom_format(current["id"], payload)
                else:
                    saved = client.create_custom_format(payload)
                format_id = self._saved_format_id(client, name, saved, current)
            except ArrApiError as e:
                logger.error(f"[{client.label}] Failed to sync format '{name}': {e}")
                result.failed.append(name)
                result.errors.append(f"{name}: {e}")
                continue

            if format_id is None:
                logger.error(f"[{client.label}] Format '{name}' was sent but the instance reported no id for it")
                result.failed.append(name)
                result.errors.append(f"{name}: no id returned by the instance")
                continue

            if current:
                result.updated.append(name)
            else:
                result.created.append(name)
                existing[normalize_name(name)] = dict(payload, id=format_id)

            self.store.upsert_cf_tracking(
                instance_id, format_id, name, selection["trash_id"],
                selection["source"], selection["reference"], commit_hash)
            ref = (selection["source"], selection["reference"])
            imported_per_ref[ref] = imported_per_ref.get(ref, 0) + 1
            group_names[ref] = selection.get("group_name") or selection["reference"]

        for (source, reference), count in imported_per_ref.items():
            if source != IMPORT_SOURCE_PROFILE:
                self.store.upsert_group_tracking(instance_id, reference, group_names[(source, reference)], count)
        return wanted

    @staticmethod
    def _saved_format_id(client, name, saved, current=None):
        """Id of a format just written. Looked up by name when the response carried none."""
        if isinstance(saved, dict) and saved.get("id") is not None:
            return saved["id"]
        if current is not None:
            return current["id"]
        for cf in client.list_custom_formats():
            if normalize_name(cf.get("name")) == normalize_name(name):
                return cf["id"]
        return None

    def _remove_orphans(self, client, instance_id, selections, result):
        """Deletes tracked formats that their group/profile no longer includes."""
        wanted_ids = {s["trash_id"] for s in selections}
        refs = {(s["source"], s["reference"]) for s in selections}

        for source, reference in refs:
            for record in self.store.list_cf_tracking(instance_id, source, reference):
                if record["trash_id"] in wanted_ids:
                    continue
                name = record["name"]
                if cfg.DRY_RUN:
                    logger.info(f"[DRY RUN] Would DELETE orphaned format '{name}' from {client.label}")
                    continue
                try:
                    client.delete_custom_format(record["custom_format_id"])
                    logger.info(f"[{client.label}] Removed '{name}' (no longer in {reference})")
                except ArrApiError as e:
                    if e.status != 404:
                        logger.error(f"[{client.label}] Failed to remove orphaned format '{name}': {e}")
                        result.errors.append(f"{name}: {e}")
                        continue
                self.store.delete_cf_tracking(instance_id, record["custom_format_id"])
                result.deleted.append(name)

    def _find_or_build_profile(self, client, profile, quality_profile_id):
        if quality_profile_id:
            return client.get_quality_profile(quality_profile_id)

        for candidate in client.list_quality_profiles():
            if normalize_name(candidate.get("name")) == normalize_name(profile.get("name")):
                return candidate

        schema = client.get_quality_profile_schema() or {}
        new_profile = deepcopy(schema)
        new_profile.pop("id", None)
        new_profile["name"] = profile.get("name")
        if profile.get("items"):
            new_profile["items"] = build_quality_items(profile["items"], schema.get("items"))
            cutoff = find_cutoff_id(new_profile["items"], profile.get("cutoff"))
            if cutoff is not None:
                new_profile["cutoff"] = cutoff
        return new_profile

    def _sync_quality_profile(self, client, instance_id, profile, processed, result,
                              score_overrides, score_set, quality_profile_id):
        if cfg.DRY_RUN:
            logger.info(f"[DRY RUN] Would UPDATE Quality Profile '{profile.get('name')}' in {client.label}")
            return

        try:
            # Must be re-read: phase 1 may have created formats
            id_by_name = {normalize_name(cf.get("name")): cf["id"] for cf in client.list_custom_formats()}
            target = self._find_or_build_profile(client, profile, quality_profile_id)
        except ArrApiError as e:
            logger.error(f"[{client.label}] Cannot prepare quality profile '{profile.get('name')}': {e}")
            result.errors.append(str(e))
            return

        items = {item.get("format"): item for item in target.get("formatItems") or []}
        for selection in processed:
            format_id = id_by_name.get(normalize_name(selection["name"]))
            if format_id is None:
                continue
            override = score_overrides.get(selection["trash_id"], score_overrides.get(selection["name"]))
            score = override if override is not None else selection_score(selection, score_set)
            if format_id in items:
                items[format_id]["score"] = score
            else:
                items[format_id] = {"format": format_id, "name": selection["name"], "score": score}

        for name, format_id in id_by_name.items():
            items.setdefault(format_id, {"format": format_id, "name": name, "score": 0})

        target["formatItems"] = list(items.values())
        for key in PROFILE_SCORE_SETTINGS:
            if key in profile:
                target[key] = profile[key]

        try:
            if target.get("id"):
                client.update_quality_profile(target["id"], target)
                profile_id = target["id"]
            else:
                profile_id = client.create_quality_profile(target)["id"]
        except ArrApiError as e:
            logger.error(f"[{client.label}] Failed to push quality profile '{profile.get('name')}': {e}")
            result.errors.append(f"{profile.get('name')}: {e}")
            return

        result.quality_profile_id = profile_id
        self.store.upsert_profile_tracking(
            instance_id, profile.get("_source_file") or profile.get("trash_id") or profile.get("name"),
            profile.get("name"), profile_id, len(processed))

    # ==========================================================================
    # TEMPLATE DEPLOYMENT
    # ==========================================================================
    def deploy_template(self, client, instance_id, template, quality_profile_id=None):
        """Deploys a stored template (see template_updater) to one instance."""
        config_data = template["config_data"]
        selections, overrides, conditions = [], {}, {}
        for entry in config_data.get("custom_formats", []):
            selections.append({
                "trash_id": entry["trash_id"],
                "name": entry["name"],
                "cf": entry["original_config"],
                "required": entry.get("required", False),
                "source": entry.get("source", IMPORT_SOURCE_PROFILE),
                "reference": entry.get("source_reference"),
                "group_name": entry.get("group_name"),
                "group_score": entry.get("group_score"),
            })
            if entry.get("score_override") is not None:
                overrides[entry["trash_id"]] = entry["score_override"]
            if entry.get("conditions_enabled"):
                conditions[entry["trash_id"]] = entry["conditions_enabled"]

        return self.sync_profile(
            client, instance_id, config_data.get("profile") or {"name": template["name"]}, selections,
            commit_hash=template.get("commit_hash"),
            excluded=set(config_data.get("excluded") or []),
            score_overrides=overrides,
            score_set=config_data.get("score_set"),
            quality_profile_id=quality_profile_id,
            conditions=conditions,
        )

    # ==========================================================================
    # PLAN EXECUTION
    # ==========================================================================
    def sync_instance(self, client, instance_id, desired_custom_formats, overrides=None,
                      allow_deletes=None, score_set=None):
        """Reads the instance, plans against the desired formats and applies the plan."""
        allow_deletes = cfg.ALLOW_DELETES if allow_deletes is None else allow_deletes
        with self.instance_lock(instance_id):
            try:
                remote = {"customFormats": client.list_custom_formats(),
                          "qualityProfiles": client.list_quality_profiles()}
            except ArrApiError as e:
                logger.error(f"[{client.label}] Cannot read instance state: {e}")
                result = SyncResult(instance_id=instance_id, success=False, errors=[str(e)])
                return None, result

            plan = compute_sync_plan(instance_id, remote, desired_custom_formats, overrides,
                                     allow_deletes=allow_deletes, instance_label=client.label,
                                     score_set=score_set)
            return plan, self.execute_plan(client, plan)

    def execute_plan(self, client, plan):
        """Applies a diff_engine.SyncPlan: formats first, then profile scores."""
        started = time.time()
        result = SyncResult(instance_id=plan.instance_id)
        if plan.errors:
            logger.error(f"[{client.label}] Plan has errors, nothing applied: {'; '.join(plan.errors)}")
            result.success = False
            result.errors.extend(plan.errors)
            self._record("sync", started, result)
            return result

        with self.instance_lock(plan.instance_id):
            if not cfg.DRY_RUN and not plan.is_empty():
                try:
                    result.backup_id = self.create_backup(client, plan.instance_id, "Pre-sync backup")
                except ArrApiError as e:
                    logger.error(f"[{client.label}] Cannot take pre-sync backup, nothing applied: {e}")
                    result.success = False
                    result.errors.append(str(e))
                    self._record("sync", started, result)
                    return result

            for item in plan.cf_creates + plan.cf_updates + plan.cf_deletes:
                if cfg.DRY_RUN:
                    logger.info(f"[DRY RUN] Would {item.action.upper()} Format '{item.name}' in {client.label}")
                    continue
                try:
                    if item.action == "create":
                        client.create_custom_format(item.desired)
                        result.created.append(item.name)
                    elif item.action == "update":
                        client.update_custom_format(item.existing["id"], item.desired)
                        result.updated.append(item.name)
                    else:
                        client.delete_custom_format(item.existing["id"])
                        result.deleted.append(item.name)
                except ArrApiError as e:
                    logger.error(f"[{client.label}] Failed to {item.action} format '{item.name}': {e}")
                    result.failed.append(item.name)
                    result.errors.append(f"{item.name}: {e}")

            if plan.profile_updates and not cfg.DRY_RUN:
                self._apply_profile_updates(client, plan, result)
            elif plan.profile_updates:
                for item in plan.profile_updates:
                    logger.info(f"[DRY RUN] Would UPDATE Quality Profile '{item.name}' in {client.label}")

        result.success = not result.errors
        self._record("sync", started, result)
        return result

    def _apply_profile_updates(self, client, plan, result):
        try:
            id_by_name = {normalize_name(cf.get("name")): cf["id"] for cf in client.list_custom_formats()}
        except ArrApiError as e:
            logger.error(f"[{client.label}] Cannot re-read custom formats before profile update: {e}")
            result.errors.append(str(e))
            return

        for item in plan.profile_updates:
            desired = deepcopy(item.desired)
            for format_item in desired.get("formatItems") or []:
                format_id = id_by_name.get(normalize_name(format_item.get("name")))
                if format_id is not None:
                    format_item["format"] = format_id
            try:
                client.update_quality_profile(desired["id"], desired)
                result.updated.append(item.name)
            except ArrApiError as e:
                logger.error(f"[{client.label}] Failed to update profile '{item.name}': {e}")
                result.failed.append(item.name)
                result.errors.append(f"{item.name}: {e}")

    # ==========================================================================
    # BACKUP & ROLLBACK
    # ==========================================================================
    def create_backup(self, client, instance_id, reason="Pre-sync backup", custom_formats=None):
        """Snapshots the instance's formats and profiles. Returns the backup id."""
        data = {
            "instance_label": client.label,
            "custom_formats": custom_formats if custom_formats is not None else client.list_custom_formats(),
            "quality_profiles": client.list_quality_profiles(),
        }
        self.store.delete_expired_backups()
        backup_id = self.store.create_backup(instance_id, data, reason, cfg.BACKUP_RETENTION_DAYS)
        self.store.enforce_backup_limit(instance_id, cfg.MAX_BACKUPS)
        logger.info(f"[{client.label}] Backup #{backup_id} taken: {len(data['custom_formats'])} formats, "
                    f"{len(data['quality_profiles'])} profiles")
        return backup_id

    def restore_backup(self, client, instance_id, backup_id):
        """
        Puts the instance's custom formats and quality profiles back the way a
        backup saw them. Formats this tool added since then are removed; formats
        nobody tracks (made by hand) are left alone.
        """
        started = time.time()
        result = SyncResult(instance_id=instance_id, backup_id=backup_id)
        backup = self.store.get_backup(backup_id)
        if backup is None or backup["instance_id"] != instance_id:
            logger.error(f"[{client.label}] Backup #{backup_id} not found for {instance_id}")
            result.success = False
            result.errors.append(f"Backup #{backup_id} not found")
            self._record("rollback", started, result)
            return result

        data = backup["backup_data"]
        saved_formats = data.get("custom_formats") or []
        saved_names = {normalize_name(cf.get("name")) for cf in saved_formats}

        with self.instance_lock(instance_id):
            try:
                current = {normalize_name(cf.get("name")): cf for cf in client.list_custom_formats()}
            except ArrApiError as e:
                logger.error(f"[{client.label}] Cannot read custom formats, rollback aborted: {e}")
                result.success = False
                result.errors.append(str(e))
                self._record("rollback", started, result)
                return result

            tracked = {r["custom_format_id"] for r in self.store.list_cf_tracking(instance_id)}
            for key, cf in current.items():
                if key in saved_names or cf.get("id") not in tracked:
                    continue
                if cfg.DRY_RUN:
                    logger.info(f"[DRY RUN] Would DELETE Format '{cf.get('name')}' from {client.label}")
                    continue
                try:
                    client.delete_custom_format(cf["id"])
                    self.store.delete_cf_tracking(instance_id, cf["id"])
                    result.deleted.append(cf.get("name"))
                except ArrApiError as e:
                    logger.error(f"[{client.label}] Failed to remove '{cf.get('name')}' during rollback: {e}")
                    result.failed.append(cf.get("name"))
                    result.errors.append(f"{cf.get('name')}: {e}")

            for saved in saved_formats:
                name = saved.get("name")
                existing = current.get(normalize_name(name))
                payload = {k: v for k, v in saved.items() if k != "id"}
                if cfg.DRY_RUN:
                    action = "UPDATE (PUT)" if existing else "CREATE (POST)"
                    logger.info(f"[DRY RUN] Would {action} Format '{name}' in {client.label}")
                    continue
                try:
                    if existing:
                        client.update_custom_format(existing["id"], dict(payload, id=existing["id"]))
                        result.updated.append(name)
                    else:
                        client.create_custom_format(payload)
                        result.created.append(name)
                except ArrApiError as e:
                    logger.error(f"[{client.label}] Failed to restore format '{name}': {e}")
                    result.failed.append(name)
                    result.errors.append(f"{name}: {e}")

            if cfg.DRY_RUN:
                for saved in data.get("quality_profiles") or []:
                    logger.info(f"[DRY RUN] Would RESTORE Quality Profile '{saved.get('name')}' in {client.label}")
            else:
                self._restore_profiles(client, data.get("quality_profiles") or [], result)

        result.success = not result.errors
        if result.success and not cfg.DRY_RUN:
            self.store.mark_backup_restored(backup_id)
        self._record("rollback", started, result)
        logger.info(f"[{client.label}] Rollback to backup #{backup_id} finished: "
                    f"{len(result.created) + len(result.updated)} restored, {len(result.deleted)} removed, "
                    f"{len(result.failed)} failed")
        return result

    def _restore_profiles(self, client, saved_profiles, result):
        try:
            # Format ids change when a deleted format is re-created
            id_by_name = {normalize_name(cf.get("name")): cf["id"] for cf in client.list_custom_formats()}
            current_ids = {p.get("id") for p in client.list_quality_profiles()}
        except ArrApiError as e:
            logger.error(f"[{client.label}] Cannot re-read instance before restoring profiles: {e}")
            result.errors.append(str(e))
            return

        for saved in saved_profiles:
            profile = deepcopy(saved)
            name = profile.get("name")
            items = {}
            for item in profile.get("formatItems") or []:
                format_id = id_by_name.get(normalize_name(item.get("name")))
                if format_id is not None:
                    items[format_id] = dict(item, format=format_id)
            for format_name, format_id in id_by_name.items():
                items.setdefault(format_id, {"format": format_id, "name": format_name, "score": 0})
            profile["formatItems"] = list(items.values())

            try:
                if profile.get("id") in current_ids:
                    client.update_quality_profile(profile["id"], profile)
                else:
                    profile.pop("id", None)
                    client.create_quality_profile(profile)
                result.updated.append(name)
            except ArrApiError as e:
                logger.error(f"[{client.label}] Failed to restore profile '{name}': {e}")
                result.failed.append(name)
                result.errors.append(f"{name}: {e}")
