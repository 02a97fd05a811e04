# """
# ==============================================================================
# FILE: cf_matcher.py
# ROLE: Custom Format Matcher
# DESCRIPTION:
# Works out which guide custom format an instance's existing format came from.
# Strategies, first hit wins:
# 1. trash_id carried by the instance format (field, spec field or [uuid] tag)
# 2. Same name, ignoring case
# 3. Identical specifications (single lookups only, too slow for batches)
# ==============================================================================
# """

import re
import logging

from guide_models import (CUSTOM_FORMATS, MatchResult, compare_spec_arrays, normalize_fields,
                          normalize_name, resolve_score)

logger = logging.getLogger(__name__)

TRASH_ID_IN_NAME = re.compile(r"\[([a-f0-9-]{36})\]$", re.IGNORECASE)


def extract_trash_id(instance_cf):
    """Finds a guide id on an instance custom format, or None."""
    direct = instance_cf.get("trash_id") or instance_cf.get("trashId")
    if direct:
        return direct

    for spec in instance_cf.get("specifications") or []:
        fields = normalize_fields(spec.get("fields"))
        for key in ("trash_id", "trashId"):
            if fields.get(key):
                return fields[key]

    match = TRASH_ID_IN_NAME.search((instance_cf.get("name") or "").strip())
    return match.group(1).lower() if match else None


def match_against(instance_cf, guide_cfs, score_set=None, structural=True):
    """Runs the matching strategies of one instance format against a guide list."""
    instance_specs = instance_cf.get("specifications") or []

    def build(guide_cf, confidence, name_match):
        differences = compare_spec_arrays(instance_specs, guide_cf.get("specifications"))
        return MatchResult(
            instance_cf=instance_cf,
            trash_cf=guide_cf,
            confidence=confidence,
            name_match=name_match,
            specs_match=not differences,
            specs_differ=differences,
            recommended_score=resolve_score(guide_cf, score_set),
            score_set=score_set,
        )

    trash_id = extract_trash_id(instance_cf)
    if trash_id:
        for guide_cf in guide_cfs:
            if guide_cf.get("trash_id", "").lower() == trash_id.lower():
                name_match = normalize_name(guide_cf.get("name")) == normalize_name(instance_cf.get("name"))
                return build(guide_cf, "exact", name_match)

    wanted = normalize_name(instance_cf.get("name"))
    for guide_cf in guide_cfs:
        if normalize_name(guide_cf.get("name")) == wanted:
            result = build(guide_cf, "name_only", True)
            if not result.specs_match:
                result.confidence = "specs_similar"
            return result

    if structural and instance_specs:
        for guide_cf in guide_cfs:
            if not compare_spec_arrays(instance_specs, guide_cf.get("specifications")):
                return build(guide_cf, "specs_similar", False)

    return MatchResult(instance_cf=instance_cf, score_set=score_set)


def summarize(results):
    counts = {"exact": 0, "name_only": 0, "specs_similar": 0, "no_match": 0}
    for result in results:
        counts[result.confidence] += 1
    return {
        "total": len(results),
        "exact_matches": counts["exact"],
        "name_matches": counts["name_only"],
        "specs_similar": counts["specs_similar"],
        "no_match": counts["no_match"],
        "results": results,
    }


class CustomFormatMatcher:
    """Matches instance formats against the cached guide formats of a service."""

    def __init__(self, cache):
        self.cache = cache

    def _guide_formats(self, service_type):
        guide_cfs = self.cache.get(service_type, CUSTOM_FORMATS)
        if guide_cfs is None:
            logger.warning(f"[Matcher] No cached custom formats for {service_type}. Nothing to match against.")
            return []
        return guide_cfs

    def match_single_cf(self, instance_cf, service_type, score_set=None):
        return match_against(instance_cf, self._guide_formats(service_type), score_set, structural=True)

    def match_multiple_cfs(self, instance_cfs, service_type, score_set=None):
        """Batch version; skips the structural pass."""
        guide_cfs = self._guide_formats(service_type)
        results = [match_against(cf, guide_cfs, score_set, structural=False) for cf in instance_cfs]
        summary = summarize(results)
        logger.info(f"[Matcher] {service_type}: {summary['exact_matches']} exact, {summary['name_matches']} by name, "
                    f"{summary['specs_similar']} similar, {summary['no_match']} unmatched")
        return summary
