# """
# ==============================================================================
# FILE: guide_models.py
# ROLE: Shared Guide Shapes & Specification Helpers
# DESCRIPTION:
# Constants for services and config types, validation of guide JSON at the
# cache-read boundary, the specification-list normalizers used by both the matcher and the
# diff engine, and the small result objects passed between components.
# ==============================================================================
# """

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SONARR = "SONARR"
RADARR = "RADARR"
SERVICES = (SONARR, RADARR)

CUSTOM_FORMATS = "CUSTOM_FORMATS"
QUALITY_PROFILES = "QUALITY_PROFILES"
CF_GROUPS = "CF_GROUPS"
QUALITY_SIZE = "QUALITY_SIZE"
CONFIG_TYPES = (CUSTOM_FORMATS, QUALITY_PROFILES, CF_GROUPS, QUALITY_SIZE)

# Where each config type lives inside docs/json/{service}/
CONFIG_DIRECTORIES = {
    CUSTOM_FORMATS: "cf",
    CF_GROUPS: "cf-groups",
    QUALITY_PROFILES: "quality-profiles",
    QUALITY_SIZE: "quality-size",
}

IMPORT_SOURCE_GROUP = "CF_GROUP"
IMPORT_SOURCE_PROFILE = "QUALITY_PROFILE"

# Keys we add to guide items ourselves; never sent to an instance
INTERNAL_KEYS = ("trash_id", "trash_scores", "trash_description", "trash_regex",
                 "_repoSource", "_source_file")

REQUIRED_KEYS = {
    CUSTOM_FORMATS: ("trash_id", "name", "specifications"),
    CF_GROUPS: ("trash_id", "name", "custom_formats"),
    QUALITY_PROFILES: ("trash_id", "name"),
    QUALITY_SIZE: ("type", "qualities"),
}

LIST_KEYS = {
    CUSTOM_FORMATS: "specifications",
    CF_GROUPS: "custom_formats",
    QUALITY_SIZE: "qualities",
}


def validate_items(config_type, data):
    """
    Checks guide items read back from the cache. Returns the usable items;
    malformed ones are dropped with a warning. Raises ValueError when the
    payload is not a list at all.
    """
    if not isinstance(data, list):
        raise ValueError(f"{config_type} payload must be a list, got {type(data).__name__}")

    required = REQUIRED_KEYS.get(config_type, ())
    list_key = LIST_KEYS.get(config_type)
    valid = []
    for idx, item in enumerate(data):
        if not isinstance(item, dict):
            logger.warning(f"[Guide] Dropping {config_type} item #{idx}: not an object")
            continue
        missing = [k for k in required if item.get(k) in (None, "")]
        if missing:
            logger.warning(f"[Guide] Dropping {config_type} item #{idx}: missing {', '.join(missing)}")
            continue
        if list_key and not isinstance(item.get(list_key), list):
            logger.warning(f"[Guide] Dropping {config_type} item '{item.get('name', idx)}': {list_key} is not a list")
            continue
        valid.append(item)
    return valid


def is_true(value):
    """Guide JSON uses both booleans and the strings 'true'/'false'."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def normalize_name(name):
    return (name or "").strip().lower()


# ==============================================================================
# SPECIFICATION HELPERS
# ==============================================================================
def normalize_fields(fields):
    """Turns the instance API's [{name, value}] list into the guide's {name: value} map."""
    if fields is None:
        return {}
    if isinstance(fields, list):
        result = {}
        for item in fields:
            if isinstance(item, dict) and "name" in item:
                result[item["name"]] = item.get("value")
        return result
    if isinstance(fields, dict):
        return dict(fields)
    return {}


def fields_to_api(fields):
    """The reverse of normalize_fields, for payloads sent to an instance."""
    if isinstance(fields, list):
        return [{"name": f.get("name"), "value": f.get("value")} for f in fields if isinstance(f, dict)]
    return [{"name": name, "value": value} for name, value in normalize_fields(fields).items()]


def normalize_spec(spec):
    return {
        "name": spec.get("name", ""),
        "implementation": spec.get("implementation", ""),
        "negate": bool(spec.get("negate", False)),
        "required": bool(spec.get("required", False)),
        "fields": normalize_fields(spec.get("fields")),
    }


def _spec_key(spec):
    return f"{spec['name']}:{spec['implementation']}"


def _canonical(value):
    return json.dumps(value, sort_keys=True, default=str)


def compare_spec_arrays(instance_specs, guide_specs):
    """
    Order-independent comparison of two specification lists.
    Returns human readable difference strings; an empty list means equal.
    """
    left = sorted((normalize_spec(s) for s in instance_specs or []), key=_spec_key)
    right = sorted((normalize_spec(s) for s in guide_specs or []), key=_spec_key)
    differences = []

    if len(left) != len(right):
        differences.append(f"Spec count differs: instance has {len(left)}, TRaSH has {len(right)}")

    right_by_key = {}
    for spec in right:
        right_by_key.setdefault(_spec_key(spec), []).append(spec)
    left_keys = {_spec_key(s) for s in left}

    for spec in left:
        candidates = right_by_key.get(_spec_key(spec))
        if not candidates:
            differences.append(f'Spec "{spec["name"]}" ({spec["implementation"]}) not in TRaSH')
            continue
        other = candidates.pop(0)
        if (spec["negate"] != other["negate"] or spec["required"] != other["required"]
                or _canonical(spec["fields"]) != _canonical(other["fields"])):
            differences.append(f'Spec "{spec["name"]}" fields differ')

    for spec in right:
        if _spec_key(spec) not in left_keys:
            differences.append(f'TRaSH spec "{spec["name"]}" ({spec["implementation"]}) not in instance')

    return differences


def specs_equal(instance_specs, guide_specs):
    return not compare_spec_arrays(instance_specs, guide_specs)


def to_instance_payload(guide_cf, conditions_enabled=None, existing_id=None):
    """
    Builds the body for POST/PUT /customformat from a guide custom format.
    Specs switched off in conditions_enabled are left out.
    """
    conditions_enabled = conditions_enabled or {}
    specs = []
    for spec in guide_cf.get("specifications", []):
        if conditions_enabled.get(spec.get("name"), True) is False:
            continue
        specs.append({
            "name": spec.get("name", ""),
            "implementation": spec.get("implementation", ""),
            "negate": bool(spec.get("negate", False)),
            "required": bool(spec.get("required", False)),
            "fields": fields_to_api(spec.get("fields")),
        })

    payload = {
        "name": guide_cf["name"],
        "includeCustomFormatWhenRenaming": bool(guide_cf.get("includeCustomFormatWhenRenaming", False)),
        "specifications": specs,
    }
    if existing_id is not None:
        payload["id"] = existing_id
    return payload


def resolve_score(cf, score_set=None):
    """Score-set value, then the 'default' score set, then the plain score field."""
    scores = cf.get("trash_scores") or {}
    if score_set and score_set in scores:
        return scores[score_set]
    if "default" in scores:
        return scores["default"]
    return cf.get("score")


# ==============================================================================
# RESULT OBJECTS
# ==============================================================================
@dataclass
class MatchResult:
    instance_cf: Dict[str, Any]
    trash_cf: Optional[Dict[str, Any]] = None
    confidence: str = "no_match"
    name_match: bool = False
    specs_match: bool = False
    specs_differ: List[str] = field(default_factory=list)
    recommended_score: Optional[int] = None
    score_set: Optional[str] = None


@dataclass
class ProfileMatchResult:
    matched: bool
    profile: Optional[Dict[str, Any]] = None
    match_type: Optional[str] = None
    score: float = 0.0
    reason: Optional[str] = None
    available_profiles: List[str] = field(default_factory=list)


@dataclass
class DiffItem:
    action: str
    name: str
    existing: Optional[Dict[str, Any]] = None
    desired: Optional[Dict[str, Any]] = None
    changes: List[str] = field(default_factory=list)
    note: Optional[str] = None


@dataclass
class SyncPlan:
    instance_id: str
    instance_label: Optional[str] = None
    cf_creates: List[DiffItem] = field(default_factory=list)
    cf_updates: List[DiffItem] = field(default_factory=list)
    cf_deletes: List[DiffItem] = field(default_factory=list)
    profile_creates: List[DiffItem] = field(default_factory=list)
    profile_updates: List[DiffItem] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def is_empty(self):
        return not (self.cf_creates or self.cf_updates or self.cf_deletes
                    or self.profile_creates or self.profile_updates)


@dataclass
class SyncResult:
    instance_id: str
    success: bool = True
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    quality_profile_id: Optional[int] = None
    backup_id: Optional[int] = None
