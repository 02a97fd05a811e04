# tests/test_diff_engine.py
from __future__ import annotations

from copy import deepcopy

from conftest import api_spec, guide_cf, spec
from diff_engine import apply_term_overrides, compute_sync_plan, desired_score, verify_idempotency

DESIRED = [
    guide_cf("t1", "x265 (HD)", [spec("x265", value=r"[xh]\.?265")], scores={"default": -10000}),
    guide_cf("t2", "Bad Dual Groups", [spec("Group A"), spec("Group B")], scores={"default": -10000, "anime": 0}),
    guide_cf("t3", "Repack", [spec("Repack", value="repack")], score=5),
]


def _remote_cf(cf_id, name, specs, rename=False):
    return {"id": cf_id, "name": name, "includeCustomFormatWhenRenaming": rename, "specifications": specs}


def _apply(remote_state, plan):
    """Applies a plan the way an instance would, for idempotence checks."""
    state = deepcopy(remote_state)
    cfs = {cf["name"]: cf for cf in state["customFormats"]}
    next_id = max([cf["id"] for cf in cfs.values()], default=0) + 1
    for item in plan.cf_creates:
        cfs[item.name] = dict(item.desired, id=next_id)
        next_id += 1
    for item in plan.cf_updates:
        cfs[item.existing["name"]] = dict(item.desired)
    for item in plan.cf_deletes:
        cfs.pop(item.existing["name"], None)
    profiles = {p["id"]: p for p in state["qualityProfiles"]}
    for item in plan.profile_updates:
        profiles[item.existing["id"]] = item.desired
    return {"customFormats": list(cfs.values()), "qualityProfiles": list(profiles.values())}


def test_creates_missing_formats():
    plan = compute_sync_plan("radarr", {"customFormats": [], "qualityProfiles": []}, DESIRED)

    assert [i.name for i in plan.cf_creates] == ["x265 (HD)", "Bad Dual Groups", "Repack"]
    payload = plan.cf_creates[0].desired
    assert "trash_id" not in payload
    assert payload["specifications"][0]["fields"] == [{"name": "value", "value": r"[xh]\.?265"}]
    assert not plan.cf_updates and not plan.cf_deletes


def test_unchanged_formats_produce_no_steps():
    remote = {"customFormats": [
        _remote_cf(1, "x265 (HD)", [api_spec("x265", value=r"[xh]\.?265")]),
        _remote_cf(2, "bad dual groups", [api_spec("Group B"), api_spec("Group A")]),
        _remote_cf(3, "Repack", [api_spec("Repack", value="repack")]),
    ], "qualityProfiles": []}

    plan = compute_sync_plan("radarr", remote, DESIRED)

    assert verify_idempotency(plan) is True


def test_update_lists_changes():
    remote = {"customFormats": [
        _remote_cf(1, "x265 (HD)", [api_spec("x265", value="x265"), api_spec("extra")], rename=True),
    ], "qualityProfiles": []}

    plan = compute_sync_plan("radarr", remote, DESIRED[:1])

    assert len(plan.cf_updates) == 1
    update = plan.cf_updates[0]
    assert update.changes == ["Include in rename flag changed", "Specification count: 2 → 1",
                              "Specifications modified"]
    assert update.desired["id"] == 1


def test_deletes_only_when_explicitly_allowed():
    remote = {"customFormats": [_remote_cf(7, "Old Format", [api_spec("old")])], "qualityProfiles": []}

    assert compute_sync_plan("radarr", remote, DESIRED).cf_deletes == []
    assert compute_sync_plan("radarr", remote, DESIRED, allow_deletes="yes").cf_deletes == []

    plan = compute_sync_plan("radarr", remote, DESIRED, allow_deletes=True)
    assert [d.name for d in plan.cf_deletes] == ["Old Format"]
    assert plan.cf_deletes[0].note == "No longer in TRaSH guides"


def test_disabled_format_is_neither_created_nor_deleted():
    remote = {"customFormats": [_remote_cf(1, "Repack", [api_spec("changed")])], "qualityProfiles": []}
    overrides = {"customFormats": {"repack": {"enabled": False}, "x265 (HD)": {"enabled": False}}}

    plan = compute_sync_plan("radarr", remote, DESIRED, overrides, allow_deletes=True)

    assert [i.name for i in plan.cf_creates] == ["Bad Dual Groups"]
    assert plan.cf_updates == []
    assert plan.cf_deletes == []


def test_term_overrides():
    cf = DESIRED[1]
    changed = apply_term_overrides(cf, {"addTerms": ["Group C", "Group A"], "removeTerms": ["Group B"]})

    assert [s["name"] for s in changed["specifications"]] == ["Group A", "Group C"]
    assert changed["specifications"][1]["implementation"] == "ReleaseTitleSpecification"
    assert [s["name"] for s in cf["specifications"]] == ["Group A", "Group B"]


def test_term_overrides_flow_into_the_plan():
    remote = {"customFormats": [
        _remote_cf(2, "Bad Dual Groups", [api_spec("Group A"), api_spec("Group B")]),
    ], "qualityProfiles": []}
    overrides = {"customFormats": {"Bad Dual Groups": {"addTerms": ["Group C"]}}}

    plan = compute_sync_plan("radarr", remote, DESIRED[1:2], overrides)

    assert plan.cf_updates[0].changes == ["Specification count: 2 → 3", "Specifications modified"]


def test_score_precedence():
    assert desired_score(DESIRED[1], {"scores": {"t2": 10}}) == 10
    assert desired_score(DESIRED[1], {"scores": {"bad dual groups": 11}}) == 11
    assert desired_score(DESIRED[1], {}, "anime") == 0
    assert desired_score(DESIRED[1], {}) == -10000
    assert desired_score(guide_cf("t9", "No score"), {}) == 0


def test_profile_scores_are_updated_in_place():
    profile = {"id": 4, "name": "HD", "formatItems": [
        {"format": 1, "name": "x265 (HD)", "score": 0},
        {"format": 3, "name": "Repack", "score": 5},
        {"format": 9, "name": "Unmanaged", "score": 100},
    ]}
    remote = {"customFormats": [], "qualityProfiles": [profile]}

    plan = compute_sync_plan("radarr", remote, DESIRED, {"scores": {"Repack": 6}})

    assert len(plan.profile_updates) == 1
    update = plan.profile_updates[0]
    assert update.changes == ["x265 (HD): score 0 → -10000", "Repack: score 5 → 6"]
    scores = {i["name"]: i["score"] for i in update.desired["formatItems"]}
    assert scores == {"x265 (HD)": -10000, "Repack": 6, "Unmanaged": 100}
    assert profile["formatItems"][0]["score"] == 0


def test_applying_a_plan_makes_the_next_plan_empty():
    remote = {"customFormats": [
        _remote_cf(1, "x265 (HD)", [api_spec("x265", value="x265")]),
        _remote_cf(5, "Stale", [api_spec("stale")]),
    ], "qualityProfiles": [
        {"id": 4, "name": "HD", "formatItems": [{"format": 1, "name": "x265 (HD)", "score": 0}]},
    ]}
    overrides = {"customFormats": {"Bad Dual Groups": {"removeTerms": ["Group B"]}}}

    first = compute_sync_plan("radarr", remote, DESIRED, overrides, allow_deletes=True)
    assert not verify_idempotency(first)

    second = compute_sync_plan("radarr", _apply(remote, first), DESIRED, overrides, allow_deletes=True)
    assert verify_idempotency(second)


def test_ambiguous_remote_names_warn():
    remote = {"customFormats": [
        _remote_cf(1, "Repack", [api_spec("Repack", value="repack")]),
        _remote_cf(2, "REPACK", [api_spec("other")]),
    ], "qualityProfiles": []}

    plan = compute_sync_plan("radarr", remote, DESIRED[2:])

    assert any("Ambiguous" in w for w in plan.warnings)
    assert plan.cf_updates == []


def test_malformed_overrides_abort_the_whole_plan():
    remote = {"customFormats": [_remote_cf(7, "Old Format", [api_spec("old")])], "qualityProfiles": []}

    for bad in ('{"customFormats": ', '["not", "an", "object"]', {"scores": [1, 2]}):
        plan = compute_sync_plan("radarr", remote, DESIRED, bad, allow_deletes=True)
        assert plan.is_empty()
        assert plan.errors and plan.errors[0].startswith("Invalid overrides")


def test_overrides_may_arrive_as_json_text():
    plan = compute_sync_plan("radarr", {"customFormats": [], "qualityProfiles": []}, DESIRED,
                             '{"customFormats": {"Repack": {"enabled": false}}}')
    assert [i.name for i in plan.cf_creates] == ["x265 (HD)", "Bad Dual Groups"]
