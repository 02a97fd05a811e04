# """
# ==============================================================================
# FILE: diff_engine.py
# ROLE: Sync Plan Calculator
# DESCRIPTION:
# Compares what an instance has with what the guide wants and writes down
# the create / update / delete steps needed to get there. No network, no
# database: the same inputs always give the same plan, and a plan computed
# against already-synced state is empty.
# Deletes only appear when the caller explicitly allows them.
# ==============================================================================
# """

import json
import logging
from copy import deepcopy

from guide_models import (DiffItem, SyncPlan, compare_spec_arrays, normalize_name, resolve_score,
                          to_instance_payload)

logger = logging.getLogger(__name__)

TERM_IMPLEMENTATION = "ReleaseTitleSpecification"


def parse_overrides(raw):
    """Accepts a dict or its JSON text. Anything else raises ValueError."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError(f"overrides must be an object, got {type(raw).__name__}")
    for key in ("customFormats", "custom_formats", "scores"):
        if key in raw and not isinstance(raw[key], dict):
            raise ValueError(f"overrides.{key} must be an object")
    return raw


def apply_term_overrides(guide_cf, override):
    """Adds/removes ReleaseTitleSpecification terms on a copy of the format."""
    cf = deepcopy(guide_cf)
    if not override:
        return cf

    remove = set(override.get("removeTerms") or override.get("remove_terms") or [])
    specs = [s for s in cf.get("specifications", []) if s.get("name") not in remove]

    present = {s.get("name") for s in specs}
    for term in override.get("addTerms") or override.get("add_terms") or []:
        if term in present:
            continue
        specs.append({
            "name": term,
            "implementation": TERM_IMPLEMENTATION,
            "negate": False,
            "required": False,
            "fields": {"value": term},
        })
        present.add(term)

    cf["specifications"] = specs
    return cf


def desired_score(cf, overrides, score_set=None):
    """User score override, then score set, then default, then 0."""
    scores = overrides.get("scores") or {}
    for key in (cf.get("trash_id"), cf.get("name"), normalize_name(cf.get("name"))):
        if key in scores:
            return scores[key]
    score = resolve_score(cf, score_set)
    return score if score is not None else 0


def _cf_override(overrides, name):
    by_name = overrides.get("customFormats") or overrides.get("custom_formats") or {}
    if name in by_name:
        return by_name[name]
    wanted = normalize_name(name)
    for key, value in by_name.items():
        if normalize_name(key) == wanted:
            return value
    return None


def _index_by_name(items, plan, kind):
    index = {}
    for item in items:
        key = normalize_name(item.get("name"))
        if key in index:
            plan.warnings.append(f"Ambiguous {kind} name '{item.get('name')}': several entries normalize to '{key}'")
            continue
        index[key] = item
    return index


def diff_custom_formats(plan, remote_cfs, desired_cfs, overrides, allow_deletes):
    remote_by_name = _index_by_name(remote_cfs, plan, "custom format")
    desired_names = set()

    for guide_cf in desired_cfs:
        name = guide_cf.get("name", "")
        key = normalize_name(name)
        override = _cf_override(overrides, name)
        desired_names.add(key)

        if override and override.get("enabled") is False:
            continue

        wanted = apply_term_overrides(guide_cf, override)
        existing = remote_by_name.get(key)

        if existing is None:
            plan.cf_creates.append(DiffItem(
                action="create", name=name, desired=to_instance_payload(wanted), note="New custom format"))
            continue

        changes = []
        if bool(existing.get("includeCustomFormatWhenRenaming", False)) != \
                bool(wanted.get("includeCustomFormatWhenRenaming", False)):
            changes.append("Include in rename flag changed")

        spec_diff = compare_spec_arrays(existing.get("specifications"), wanted.get("specifications"))
        if spec_diff:
            old_count = len(existing.get("specifications") or [])
            new_count = len(wanted.get("specifications") or [])
            if old_count != new_count:
                changes.append(f"Specification count: {old_count} → {new_count}")
            changes.append("Specifications modified")

        if changes:
            plan.cf_updates.append(DiffItem(
                action="update", name=name, existing=existing,
                desired=to_instance_payload(wanted, existing_id=existing.get("id")), changes=changes))

    if allow_deletes is True:
        for key, existing in remote_by_name.items():
            if key in desired_names:
                continue
            plan.cf_deletes.append(DiffItem(
                action="delete", name=existing.get("name", ""), existing=existing,
                note="No longer in TRaSH guides"))


def diff_quality_profiles(plan, remote_profiles, desired_cfs, overrides, score_set):
    """Score-only pass over existing profiles; never creates profiles."""
    disabled = {normalize_name(cf.get("name")) for cf in desired_cfs
                if (_cf_override(overrides, cf.get("name", "")) or {}).get("enabled") is False}

    for profile in remote_profiles:
        updated = deepcopy(profile)
        items_by_name = {}
        for item in updated.get("formatItems") or []:
            items_by_name.setdefault(normalize_name(item.get("name")), item)

        changes = []
        for cf in desired_cfs:
            key = normalize_name(cf.get("name"))
            if key in disabled:
                continue
            item = items_by_name.get(key)
            if item is None:
                continue
            new_score = desired_score(cf, overrides, score_set)
            old_score = item.get("score", 0)
            if old_score != new_score:
                item["score"] = new_score
                changes.append(f"{cf.get('name')}: score {old_score} → {new_score}")

        if changes:
            plan.profile_updates.append(DiffItem(
                action="update", name=profile.get("name", ""), existing=profile, desired=updated,
                changes=changes, note=f"{len(changes)} score change(s)"))


def compute_sync_plan(instance_id, remote_state, desired_custom_formats, overrides=None,
                      allow_deletes=False, instance_label=None, score_set=None):
    """
    remote_state: {"customFormats": [...], "qualityProfiles": [...]} as read from the instance.
    desired_custom_formats: guide formats (trash_id, name, specifications, trash_scores).
    overrides: {"customFormats": {name: {enabled, addTerms, removeTerms}}, "scores": {name|trash_id: int}}
    """
    plan = SyncPlan(instance_id=instance_id, instance_label=instance_label)
    label = instance_label or instance_id
    try:
        overrides = parse_overrides(overrides)
    except ValueError as e:
        # Never plan against half-read overrides
        logger.error(f"[Diff] {label}: invalid overrides, aborting: {e}")
        plan.errors.append(f"Invalid overrides: {e}")
        return plan

    remote_cfs = remote_state.get("customFormats") or remote_state.get("custom_formats") or []
    remote_profiles = remote_state.get("qualityProfiles") or remote_state.get("quality_profiles") or []

    diff_custom_formats(plan, remote_cfs, desired_custom_formats, overrides, allow_deletes)
    diff_quality_profiles(plan, remote_profiles, desired_custom_formats, overrides, score_set)

    logger.debug(f"[Diff] {label}: {len(plan.cf_creates)} create, {len(plan.cf_updates)} update, "
                 f"{len(plan.cf_deletes)} delete, {len(plan.profile_updates)} profile update(s)")
    return plan


def verify_idempotency(plan):
    """True when the plan has nothing left to do."""
    return plan.is_empty()
