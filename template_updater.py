"""
==============================================================================
FILE: template_updater.py
ROLE: Guide Template Keeper
DESCRIPTION:
A template is a saved copy of one guide quality profile together with the
custom formats it pulls in, the user's tweaks (score overrides, switched off
conditions, enabled groups) and the guide commit it was built from.
This module:
1. Refreshes the guide cache when GitHub has a newer commit.
2. Finds templates built from an older commit.
3. Re-merges them with the new guide data while keeping the user's tweaks.
4. Deploys auto-sync templates and leaves notifications for the rest.
==============================================================================
"""

import time
import logging

from config import cfg
from database import to_iso, utcnow
from guide_models import (CF_GROUPS, CONFIG_TYPES, CUSTOM_FORMATS, QUALITY_PROFILES,
                          compare_spec_arrays, is_true)
from profile_matcher import match_profile_to_trash, resolve_profile_formats, selection_score

logger = logging.getLogger(__name__)

STRATEGIES = ("auto", "notify", "manual")


class TemplateNotFoundError(Exception):
    pass


def template_strategy(mappings):
    """auto wins over notify; a template nobody is mapped to counts as notify."""
    strategies = {m["sync_strategy"] for m in mappings}
    if "auto" in strategies:
        return "auto"
    if "notify" in strategies or not strategies:
        return "notify"
    return "manual"


def _template_cf_entry(selection, score_set, previous=None):
    cf = selection["cf"]
    old_conditions = (previous or {}).get("conditions_enabled") or {}
    return {
        "trash_id": selection["trash_id"],
        "name": selection["name"],
        "score": selection_score(selection, score_set),
        "score_override": (previous or {}).get("score_override"),
        "conditions_enabled": {
            spec.get("name"): old_conditions.get(spec.get("name"), True)
            for spec in cf.get("specifications", [])
        },
        "original_config": cf,
        "required": selection.get("required", False),
        "source": selection["source"],
        "source_reference": selection["reference"],
        "group_name": selection.get("group_name"),
        "group_score": selection.get("group_score"),
    }


class TemplateUpdater:
    """Keeps templates and the guide cache in step with the upstream repository."""

    def __init__(self, store, cache, fetcher, version_tracker, executor=None, clients=None, metrics=None):
        self.store = store
        self.cache = cache
        self.fetcher = fetcher
        self.version_tracker = version_tracker
        self.executor = executor
        self.clients = clients or {}
        self.metrics = metrics

    # ==========================================================================
    # CACHE
    # ==========================================================================
    def check_cache_needs_update(self, service_type, config_type, latest_hash=None):
        latest_hash = latest_hash or self.version_tracker.get_latest_commit().commit_hash
        return self.cache.get_commit_hash(service_type, config_type) != latest_hash

    def refresh_all_caches(self, service_type, latest=None):
        """Re-fetches every config type whose cached commit is not the latest one."""
        latest = latest or self.version_tracker.get_latest_commit()
        result = {"refreshed": 0, "failed": 0, "errors": []}

        for config_type in CONFIG_TYPES:
            try:
                if self.cache.get_commit_hash(service_type, config_type) == latest.commit_hash:
                    self.cache.touch_cache(service_type, config_type)
                else:
                    data = self.fetcher.fetch_configs(service_type, config_type, ref=latest.commit_hash)
                    self.cache.set(service_type, config_type, data, latest.commit_hash)
                result["refreshed"] += 1
            except Exception as e:
                logger.error(f"[Cache] Refresh of {service_type}/{config_type} failed: {e}")
                result["failed"] += 1
                result["errors"].append(f"{service_type}/{config_type}: {e}")
        return result

    def _guide_data(self, service_type):
        return (
            self.cache.get(service_type, CUSTOM_FORMATS) or [],
            self.cache.get(service_type, CF_GROUPS) or [],
            self.cache.get(service_type, QUALITY_PROFILES) or [],
        )

    # ==========================================================================
    # TEMPLATES
    # ==========================================================================
    def create_template(self, name, service_type, profile_name, score_set=None):
        """Builds a template from the cached guide profile best matching profile_name."""
        existing = self.store.find_template(name, service_type)
        if existing:
            return existing["id"]

        guide_cfs, guide_groups, guide_profiles = self._guide_data(service_type)
        match = match_profile_to_trash(profile_name, guide_profiles)
        if not match.matched:
            raise ValueError(f"{match.reason}. Available: {', '.join(match.available_profiles) or 'none cached'}")

        profile = match.profile
        score_set = score_set or profile.get("trash_score_set")
        selections = resolve_profile_formats(profile, guide_cfs, guide_groups)
        config_data = {
            "profile": profile,
            "score_set": score_set,
            "custom_formats": [_template_cf_entry(s, score_set) for s in selections],
            "cf_groups": [
                {"trash_id": g["trash_id"], "name": g["name"], "enabled": is_true(g.get("default")),
                 "original_config": g}
                for g in guide_groups
            ],
            "excluded": [],
        }
        template_id = self.store.create_template(
            name, service_type, config_data, self.cache.get_commit_hash(service_type, CUSTOM_FORMATS))
        logger.info(f"[Templates] Created '{name}' from guide profile '{profile['name']}' "
                    f"({match.match_type} match, {len(selections)} formats)")
        return template_id

    def check_for_updates(self, latest=None, include_manual=False):
        latest = latest or self.version_tracker.get_latest_commit()
        updates, checked = [], 0

        for template in self.store.list_templates():
            mappings = self.store.list_template_mappings(template["id"])
            strategy = template_strategy(mappings)
            if strategy == "manual" and not include_manual:
                continue
            checked += 1
            if not template["commit_hash"] or template["commit_hash"] == latest.commit_hash:
                continue

            auto_count = sum(1 for m in mappings if m["sync_strategy"] == "auto")
            updates.append({
                "template_id": template["id"],
                "template_name": template["name"],
                "service_type": template["service_type"],
                "current_commit": template["commit_hash"],
                "latest_commit": latest.commit_hash,
                "has_user_modifications": template["has_user_modifications"],
                "auto_sync_instance_count": auto_count,
                "strategy": strategy,
                "can_auto_sync": auto_count > 0 and not template["has_user_modifications"],
            })

        return {
            "latest_commit": latest,
            "templates_with_updates": updates,
            "total_templates": checked,
            "outdated_templates": len(updates),
        }

    def _merge_config(self, config_data, guide_cfs, guide_groups, guide_profiles):
        stats = {"added": 0, "removed": 0, "updated": 0, "preserved": 0,
                 "groups_added": 0, "groups_removed": 0}
        warnings, conflicts = [], []

        profile = config_data.get("profile") or {}
        latest_profile = next((p for p in guide_profiles if p.get("trash_id") == profile.get("trash_id")), None)
        if latest_profile is not None:
            profile = latest_profile
        score_set = config_data.get("score_set") or profile.get("trash_score_set")

        current_groups = {g["trash_id"]: g for g in config_data.get("cf_groups", [])}
        latest_group_ids = {g["trash_id"] for g in guide_groups}
        merged_groups = []
        for group in guide_groups:
            current = current_groups.get(group["trash_id"])
            if current is None:
                stats["groups_added"] += 1
            merged_groups.append({
                "trash_id": group["trash_id"],
                "name": group["name"],
                "enabled": current["enabled"] if current else is_true(group.get("default")),
                "original_config": group,
            })
        for trash_id, group in current_groups.items():
            if trash_id not in latest_group_ids:
                stats["groups_removed"] += 1
                warnings.append(f'Custom format group "{group["name"]}" ({trash_id}) removed: no longer in TRaSH Guides')

        enabled = {g["trash_id"] for g in merged_groups if g["enabled"]}
        selections = resolve_profile_formats(profile, guide_cfs, guide_groups, enabled_groups=enabled)
        current_cfs = {cf["trash_id"]: cf for cf in config_data.get("custom_formats", [])}

        merged_cfs = []
        for selection in selections:
            previous = current_cfs.get(selection["trash_id"])
            entry = _template_cf_entry(selection, score_set, previous)
            if previous is None:
                stats["added"] += 1
            else:
                old_specs = (previous.get("original_config") or {}).get("specifications")
                if compare_spec_arrays(old_specs, selection["cf"].get("specifications")):
                    stats["updated"] += 1
                else:
                    stats["preserved"] += 1
                override = previous.get("score_override")
                if override is not None and entry["score"] != previous.get("score") and override != entry["score"]:
                    conflicts.append({
                        "trash_id": entry["trash_id"],
                        "name": entry["name"],
                        "user_score": override,
                        "previous_recommended": previous.get("score"),
                        "recommended_score": entry["score"],
                    })
            merged_cfs.append(entry)

        wanted_ids = {s["trash_id"] for s in selections}
        for trash_id, cf in current_cfs.items():
            if trash_id not in wanted_ids:
                stats["removed"] += 1
                warnings.append(f'Custom format "{cf["name"]}" ({trash_id}) removed: no longer in TRaSH Guides')

        merged = dict(config_data, profile=profile, custom_formats=merged_cfs, cf_groups=merged_groups)
        return merged, stats, warnings, conflicts

    def sync_template(self, template_id, target_commit=None):
        """Re-merges a template with the cached guide data and stamps the new commit."""
        template = self.store.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")

        started = time.time()
        result = {"success": False, "template_id": template_id, "previous_commit": template["commit_hash"],
                  "new_commit": target_commit, "errors": [], "warnings": [], "conflicts": [], "stats": {}}
        try:
            commit = self.version_tracker.get_commit_info(target_commit) if target_commit \
                else self.version_tracker.get_latest_commit()
            result["new_commit"] = commit.commit_hash

            guide_cfs, guide_groups, guide_profiles = self._guide_data(template["service_type"])
            if not guide_cfs:
                raise ValueError(f"No cached custom formats for {template['service_type']}")

            merged, stats, warnings, conflicts = self._merge_config(
                template["config_data"], guide_cfs, guide_groups, guide_profiles)

            change_log = list(template["change_log"])
            now = to_iso(utcnow())
            change_log.append({"type": "template_synced", "timestamp": now,
                               "previous_commit": template["commit_hash"], "new_commit": commit.commit_hash,
                               "stats": stats})
            for conflict in conflicts:
                change_log.append(dict(conflict, type="score_conflict", timestamp=now, dismissed=False))
                logger.warning(f"[Templates] '{template['name']}': guide now recommends {conflict['recommended_score']} "
                               f"for '{conflict['name']}', keeping user score {conflict['user_score']}")

            self.store.update_template(template_id, config_data=merged, commit_hash=commit.commit_hash,
                                       last_synced_at=utcnow(), change_log=change_log)
            result.update(success=True, stats=stats, warnings=warnings, conflicts=conflicts)
            logger.info(f"[Templates] Synced '{template['name']}' to {commit.commit_hash[:8]}: {stats}")
        except Exception as e:
            logger.error(f"[Templates] Sync of '{template['name']}' failed: {e}")
            result["errors"].append(str(e))

        if self.metrics is not None:
            self.metrics.record("template_update", result["success"], (time.time() - started) * 1000,
                                "; ".join(result["errors"]) or None)
        return result

    def deploy_to_mapped_instances(self, template_id, strategies=("auto",)):
        """Deploys a template to every mapped instance with one of the given strategies."""
        if self.executor is None:
            return []
        template = self.store.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")

        results = []
        for mapping in self.store.list_template_mappings(template_id):
            if mapping["sync_strategy"] not in strategies:
                continue
            client = self.clients.get(mapping["instance_id"])
            if client is None:
                logger.warning(f"[Templates] Instance '{mapping['instance_id']}' is not configured, skipping deploy")
                continue
            outcome = self.executor.deploy_template(client, mapping["instance_id"], template,
                                                    mapping["quality_profile_id"])
            if outcome.quality_profile_id and outcome.quality_profile_id != mapping["quality_profile_id"]:
                self.store.set_template_mapping_profile(template_id, mapping["instance_id"],
                                                        outcome.quality_profile_id)
            results.append(outcome)
        return results

    def process_auto_updates(self, check=None):
        check = check or self.check_for_updates()
        summary = {"processed": 0, "successful": 0, "failed": 0, "results": []}

        for info in check["templates_with_updates"]:
            if not info["can_auto_sync"]:
                continue
            summary["processed"] += 1
            result = self.sync_template(info["template_id"], info["latest_commit"])
            summary["results"].append(result)
            if not result["success"]:
                summary["failed"] += 1
                continue
            summary["successful"] += 1
            try:
                for outcome in self.deploy_to_mapped_instances(info["template_id"]):
                    result["errors"].extend(f"{outcome.instance_id}: {e}" for e in outcome.errors)
            except Exception as e:
                logger.error(f"[Templates] Auto-deploy of template {info['template_id']} failed: {e}")
                result["errors"].append(f"Auto-deploy failed: {e}")
        return summary

    def get_templates_needing_attention(self, check=None):
        """Outdated templates that will not sync themselves."""
        check = check or self.check_for_updates()
        return [info for info in check["templates_with_updates"] if not info["can_auto_sync"]]

    def create_update_notifications(self, infos):
        """Adds one 'update_available' entry per template and latest commit."""
        created = 0
        for info in infos:
            template = self.store.get_template(info["template_id"])
            if template is None:
                continue
            change_log = list(template["change_log"])
            if any(e.get("type") == "update_available" and e.get("latest_commit") == info["latest_commit"]
                   for e in change_log):
                continue
            change_log.append({
                "type": "update_available",
                "timestamp": to_iso(utcnow()),
                "current_commit": info["current_commit"],
                "latest_commit": info["latest_commit"],
                "reason": "has_user_modifications" if info["has_user_modifications"] else "notify_strategy",
                "dismissed": False,
            })
            self.store.update_template(info["template_id"], change_log=change_log)
            created += 1
        return created

    def get_template_diff(self, template_id):
        """What a sync would change, without changing anything."""
        template = self.store.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")

        guide_cfs, guide_groups, guide_profiles = self._guide_data(template["service_type"])
        merged, stats, warnings, conflicts = self._merge_config(
            template["config_data"], guide_cfs, guide_groups, guide_profiles)

        before = {cf["trash_id"]: cf for cf in template["config_data"].get("custom_formats", [])}
        after = {cf["trash_id"]: cf for cf in merged["custom_formats"]}
        modified = [
            {"trash_id": tid, "name": cf["name"],
             "changes": compare_spec_arrays(before[tid]["original_config"].get("specifications"),
                                            cf["original_config"].get("specifications"))}
            for tid, cf in after.items()
            if tid in before and compare_spec_arrays(before[tid]["original_config"].get("specifications"),
                                                     cf["original_config"].get("specifications"))
        ]
        return {
            "template_id": template_id,
            "current_commit": template["commit_hash"],
            "latest_commit": self.cache.get_commit_hash(template["service_type"], CUSTOM_FORMATS),
            "added": [after[t]["name"] for t in after if t not in before],
            "removed": [before[t]["name"] for t in before if t not in after],
            "modified": modified,
            "conflicts": conflicts,
            "warnings": warnings,
        }

    # ==========================================================================
    # SEEDING FROM CONFIG
    # ==========================================================================
    def seed_from_config(self, templates=None):
        """Creates templates and instance mappings listed under 'templates:' in config.yml."""
        for item in templates if templates is not None else cfg.TEMPLATES:
            try:
                service = str(item.get("service", "")).upper()
                template_id = self.create_template(item["name"], service, item.get("profile", item["name"]),
                                                   item.get("score_set"))
                for mapping in item.get("instances") or []:
                    strategy = mapping.get("sync_strategy", "notify")
                    if strategy not in STRATEGIES:
                        raise ValueError(f"unknown sync strategy '{strategy}'")
                    self.store.upsert_template_mapping(template_id, mapping["id"], strategy,
                                                       mapping.get("quality_profile_id"))
            except Exception as e:
                logger.error(f"[Templates] Could not seed template '{item.get('name')}': {e}")
