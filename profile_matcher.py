# """
# ==============================================================================
# FILE: profile_matcher.py
# ROLE: Quality Profile Matcher & Format Recommender
# DESCRIPTION:
# Pairs an instance quality profile name ("TRaSH - HD Bluray + WEB v2") with
# a guide quality profile, then lists the custom formats that profile wants:
# everything in its formatItems plus the formats of every CF group that is
# switched on by default (or required) and does not exclude the profile.
# ==============================================================================
# """

import re
import logging

from guide_models import (IMPORT_SOURCE_GROUP, IMPORT_SOURCE_PROFILE, ProfileMatchResult,
                          is_true, resolve_score)

logger = logging.getLogger(__name__)

GUIDE_PREFIX = re.compile(r"^trash(?:[\s-]*guides?)?\s*[-:]\s*", re.IGNORECASE)
VERSION_SUFFIX = re.compile(r"\s+v\d+(?:\.\d+)?$", re.IGNORECASE)
PARENTHETICAL_SUFFIX = re.compile(r"\s*\([^)]*\)$")
SEPARATORS = re.compile(r"[-_]+")
WHITESPACE = re.compile(r"\s+")

STOPWORDS = {"the", "and", "or", "for", "with", "hd", "uhd", "web", "dl"}
PARTIAL_THRESHOLD = 0.5


def normalize_profile_name(name):
    """'TRaSH - 4K Remux v3 (WEB-1080p)' -> '4k remux'."""
    text = GUIDE_PREFIX.sub("", (name or "").strip())
    previous = None
    while previous != text:
        previous = text
        text = PARENTHETICAL_SUFFIX.sub("", text).strip()
        text = VERSION_SUFFIX.sub("", text).strip()
    text = SEPARATORS.sub(" ", text)
    return WHITESPACE.sub(" ", text).strip().lower()


def significant_words(name):
    return {w for w in normalize_profile_name(name).split(" ")
            if len(w) >= 2 and w not in STOPWORDS}


def match_profile_to_trash(instance_profile_name, guide_profiles):
    """Exact (normalized), then substring, then word overlap of at least 50%."""
    wanted = normalize_profile_name(instance_profile_name)
    available = [p.get("name", "") for p in guide_profiles]

    if wanted:
        for profile in guide_profiles:
            if normalize_profile_name(profile.get("name")) == wanted:
                return ProfileMatchResult(matched=True, profile=profile, match_type="exact", score=1.0)

        for profile in guide_profiles:
            candidate = normalize_profile_name(profile.get("name"))
            if candidate and (candidate in wanted or wanted in candidate):
                return ProfileMatchResult(matched=True, profile=profile, match_type="fuzzy", score=0.9)

    input_words = significant_words(instance_profile_name)
    if len(input_words) >= 2:
        best, best_score = None, 0.0
        for profile in guide_profiles:
            words = significant_words(profile.get("name"))
            if not words:
                continue
            score = len(input_words & words) / max(len(input_words), len(words))
            if score >= PARTIAL_THRESHOLD and score > best_score:
                best, best_score = profile, score
        if best is not None:
            return ProfileMatchResult(matched=True, profile=best, match_type="partial", score=best_score)

    return ProfileMatchResult(
        matched=False,
        reason=f"No TRaSH profile matches '{instance_profile_name}'",
        available_profiles=available,
    )


def group_excludes_profile(group, profile):
    excluded = ((group.get("quality_profiles") or {}).get("exclude") or {}).values()
    return profile.get("trash_id") in excluded


def _group_entries(group):
    """CF group entries come either as bare trash_id strings or as objects."""
    for entry in group.get("custom_formats") or []:
        if isinstance(entry, str):
            yield {"trash_id": entry}
        elif isinstance(entry, dict) and entry.get("trash_id"):
            yield entry


def resolve_profile_formats(profile, guide_cfs, guide_groups, enabled_groups=None):
    """
    Ordered, de-duplicated list of the formats a profile pulls in, each tagged
    with where it came from (profile formatItems or a CF group file).
    enabled_groups (a set of group trash_ids) overrides the groups' own default flag.
    A group marked required is always applied.
    """
    cfs_by_id = {cf["trash_id"]: cf for cf in guide_cfs}
    profile_ref = profile.get("_source_file") or profile.get("trash_id")
    selections, seen = [], set()

    for name, trash_id in (profile.get("formatItems") or {}).items():
        cf = cfs_by_id.get(trash_id)
        if cf is None:
            logger.warning(f"[Profile] '{profile.get('name')}' references unknown format '{name}' ({trash_id})")
            continue
        if trash_id in seen:
            continue
        seen.add(trash_id)
        selections.append({
            "trash_id": trash_id, "name": cf["name"], "cf": cf, "required": True,
            "source": IMPORT_SOURCE_PROFILE, "reference": profile_ref, "group_score": None,
        })

    for group in guide_groups:
        if group_excludes_profile(group, profile):
            continue
        group_required = is_true(group.get("required"))
        group_on = group_required or ((group.get("trash_id") in enabled_groups) if enabled_groups is not None
                                      else is_true(group.get("default")))
        group_score = (group.get("quality_profiles") or {}).get("score")

        for entry in _group_entries(group):
            trash_id = entry["trash_id"]
            if trash_id in seen:
                continue
            if not (group_on or is_true(entry.get("required")) or is_true(entry.get("default"))):
                continue
            cf = cfs_by_id.get(trash_id)
            if cf is None:
                continue
            seen.add(trash_id)
            selections.append({
                "trash_id": trash_id, "name": cf["name"], "cf": cf,
                "required": is_true(entry.get("required")) or group_required,
                "source": IMPORT_SOURCE_GROUP,
                "reference": group.get("_source_file") or group.get("trash_id"),
                "group_name": group.get("name"),
                "group_score": entry.get("score", group_score),
            })

    return selections


def selection_score(selection, score_set=None):
    """Score-set value, then the group override, then the format's own score, then 0."""
    cf = selection["cf"]
    scores = cf.get("trash_scores") or {}
    if score_set and score_set in scores:
        return scores[score_set]
    if selection.get("group_score") is not None:
        return selection["group_score"]
    score = resolve_score(cf, score_set)
    return score if score is not None else 0


def build_cf_recommendations(profile, guide_cfs, guide_groups, score_set=None):
    """Recommended formats (with scores) for a matched guide profile."""
    score_set = score_set or profile.get("trash_score_set")
    recommended = []
    for selection in resolve_profile_formats(profile, guide_cfs, guide_groups):
        recommended.append({
            "trash_id": selection["trash_id"],
            "name": selection["name"],
            "score": selection_score(selection, score_set),
            "required": selection["required"],
            "source": "profile" if selection["source"] == IMPORT_SOURCE_PROFILE else "group",
            "source_reference": selection["reference"],
        })
    return {
        "recommended_cfs": recommended,
        "recommended_trash_ids": {item["trash_id"] for item in recommended},
    }
