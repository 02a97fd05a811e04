# tests/test_update_scheduler.py
from __future__ import annotations

import threading
import time

from conftest import FakeVersionTracker
from sync_metrics import SyncMetrics
from update_scheduler import UpdateScheduler


class FakeUpdater:
    def __init__(self, updates=None, gate=None):
        self.updates = updates or []
        self.gate = gate
        self.entered = threading.Event()
        self.refreshed = []
        self.notified = []
        self.checks = 0

    def refresh_all_caches(self, service_type, latest=None):
        self.refreshed.append((service_type, latest.commit_hash))
        return {"refreshed": 4, "failed": 0, "errors": []}

    def check_for_updates(self, latest=None):
        self.checks += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        return {"latest_commit": latest, "templates_with_updates": self.updates,
                "total_templates": 3, "outdated_templates": len(self.updates)}

    def process_auto_updates(self, check):
        auto = [u for u in check["templates_with_updates"] if u["can_auto_sync"]]
        return {"processed": len(auto), "successful": len(auto), "failed": 0,
                "results": [{"template_id": u["template_id"], "errors": []} for u in auto]}

    def get_templates_needing_attention(self, check):
        return [u for u in check["templates_with_updates"] if not u["can_auto_sync"]]

    def create_update_notifications(self, infos):
        self.notified.extend(infos)
        return len(infos)


class FakeQualitySizes:
    def sync_all(self):
        return {"checked": 3, "applied": 1, "pending": 2, "unchanged": 0, "errors": []}


class BrokenTracker(FakeVersionTracker):
    def get_latest_commit(self):
        self.calls += 1
        raise RuntimeError("GitHub unreachable")


UPDATES = [
    {"template_id": 1, "strategy": "auto", "can_auto_sync": True},
    {"template_id": 2, "strategy": "notify", "can_auto_sync": False},
]


def test_cycle_runs_every_step():
    updater = FakeUpdater(UPDATES)
    metrics = SyncMetrics()
    scheduler = UpdateScheduler(updater, FakeVersionTracker(), FakeQualitySizes(), metrics, interval_hours=6)

    result = scheduler.trigger_check()

    assert sorted(s for s, _ in updater.refreshed) == ["RADARR", "SONARR"]
    assert result["caches_refreshed"] == 8
    assert result["quality_sizes_applied"] == 1
    assert result["quality_sizes_pending"] == 2
    assert result["templates_checked"] == 3
    assert result["templates_outdated"] == 2
    assert result["templates_auto_synced"] == 1
    assert result["templates_with_auto_strategy"] == 1
    assert result["templates_with_notify_strategy"] == 1
    assert result["templates_needing_attention"] == 1
    assert [i["template_id"] for i in updater.notified] == [2]
    assert result["errors"] == []

    stats = scheduler.get_stats()
    assert stats["last_check_at"] is not None
    assert stats["consecutive_failures"] == 0
    assert stats["is_running"] is False
    assert metrics.snapshot()["operations"]["sync"]["success_count"] == 1


def test_only_one_cycle_at_a_time():
    gate = threading.Event()
    updater = FakeUpdater(gate=gate)
    scheduler = UpdateScheduler(updater, FakeVersionTracker(), interval_hours=1)
    results = []

    worker = threading.Thread(target=lambda: results.append(scheduler.trigger_check()))
    worker.start()
    assert updater.entered.wait(5)

    assert scheduler.is_check_in_progress is True
    assert scheduler.trigger_check() is None

    gate.set()
    worker.join(5)

    assert updater.checks == 1
    assert results and results[0] is not None
    assert scheduler.is_check_in_progress is False


def test_failures_are_counted_until_a_cycle_succeeds():
    metrics = SyncMetrics()
    scheduler = UpdateScheduler(FakeUpdater(), BrokenTracker(), metrics=metrics, interval_hours=1)

    scheduler.trigger_check()
    scheduler.trigger_check()

    assert scheduler.consecutive_failures == 2
    assert scheduler.last_error == "GitHub unreachable"
    assert metrics.snapshot()["operations"]["sync"]["failure_count"] == 2

    scheduler.version_tracker = FakeVersionTracker()
    scheduler.trigger_check()
    assert scheduler.consecutive_failures == 0


def test_start_and_stop():
    tracker = FakeVersionTracker()
    scheduler = UpdateScheduler(FakeUpdater(), tracker, interval_hours=2)

    scheduler.start(run_immediately=True)
    deadline = time.time() + 5
    while tracker.calls == 0 and time.time() < deadline:
        time.sleep(0.05)

    assert scheduler.is_running is True
    assert tracker.calls == 1
    assert scheduler.get_stats()["next_check_at"] is not None

    scheduler.stop()
    assert scheduler.is_running is False
    assert scheduler.scheduler.jobs == []
    assert scheduler.get_stats()["next_check_at"] is None
