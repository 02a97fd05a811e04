"""
==============================================================================
FILE: update_scheduler.py
ROLE: Guide Update Control Loop
DESCRIPTION:
Every N hours (and on demand) one cycle runs, strictly in this order:
1. Refresh the guide cache of both services (side by side).
2. Sync quality-size presets whose content changed.
3. Find outdated templates, auto-sync the ones allowed to, and leave an
   'update available' note on the rest.
Only one cycle runs at a time. A tick that arrives while a cycle is still
busy is logged and dropped.
==============================================================================
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import schedule

from config import cfg
from guide_models import SERVICES

logger = logging.getLogger(__name__)


def _empty_result():
    return {
        "templates_checked": 0,
        "templates_outdated": 0,
        "templates_auto_synced": 0,
        "templates_with_auto_strategy": 0,
        "templates_with_notify_strategy": 0,
        "templates_needing_attention": 0,
        "caches_refreshed": 0,
        "caches_failed": 0,
        "quality_sizes_applied": 0,
        "quality_sizes_pending": 0,
        "errors": [],
    }


class UpdateScheduler:
    """Explicitly constructed; main.py owns the single instance."""

    def __init__(self, updater, version_tracker, quality_size_syncer=None, metrics=None,
                 interval_hours=None, scheduler=None):
        self.updater = updater
        self.version_tracker = version_tracker
        self.quality_size_syncer = quality_size_syncer
        self.metrics = metrics
        self.interval_hours = interval_hours or cfg.UPDATE_CHECK_HOURS
        self.scheduler = scheduler or schedule.Scheduler()

        self._check_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = None
        self._job = None

        self.last_check_at = None
        self.last_check_result = None
        self.consecutive_failures = 0
        self.last_error = None

    # ==========================================================================
    # LIFECYCLE
    # ==========================================================================
    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self, run_immediately=True):
        if self.is_running:
            logger.warning("[Scheduler] Already running")
            return
        logger.info(f"[Scheduler] Starting guide update scheduler (interval: {self.interval_hours}h)")
        self._stop_event.clear()
        self._job = self.scheduler.every(self.interval_hours).hours.do(self.trigger_check)
        self._thread = threading.Thread(target=self._run_loop, args=(run_immediately,),
                                        name="UpdateScheduler", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._job is not None:
            self.scheduler.cancel_job(self._job)
            self._job = None
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("[Scheduler] Stopped")

    def _run_loop(self, run_immediately):
        if run_immediately:
            self.trigger_check()
        while not self._stop_event.is_set():
            try:
                self.scheduler.run_pending()
            except Exception as e:
                logger.error(f"[CRASH] Update scheduler tick failed: {e}")
            self._stop_event.wait(1)

    # ==========================================================================
    # ONE CYCLE
    # ==========================================================================
    def trigger_check(self):
        """Runs a full cycle now. Returns its result, or None if one is already running."""
        if not self._check_lock.acquire(blocking=False):
            logger.info("[Scheduler] Update check already in progress, skipping this tick")
            return None
        try:
            return self._run_cycle()
        finally:
            self._check_lock.release()

    @property
    def is_check_in_progress(self):
        return self._check_lock.locked()

    def _refresh_caches(self, result, latest):
        with ThreadPoolExecutor(max_workers=len(SERVICES), thread_name_prefix="CacheRefresh") as pool:
            futures = {svc: pool.submit(self.updater.refresh_all_caches, svc, latest) for svc in SERVICES}
            for service_type, future in futures.items():
                try:
                    refresh = future.result()
                    result["caches_refreshed"] += refresh["refreshed"]
                    result["caches_failed"] += refresh["failed"]
                    result["errors"].extend(refresh["errors"])
                except Exception as e:
                    logger.error(f"[Scheduler] Cache refresh for {service_type} failed: {e}")
                    result["caches_failed"] += 1
                    result["errors"].append(f"{service_type} cache refresh: {e}")

    def _sync_quality_sizes(self, result):
        if self.quality_size_syncer is None:
            return
        try:
            stats = self.quality_size_syncer.sync_all()
            result["quality_sizes_applied"] = stats["applied"]
            result["quality_sizes_pending"] = stats["pending"]
            result["errors"].extend(stats["errors"])
        except Exception as e:
            logger.error(f"[Scheduler] Quality size sync failed: {e}")
            result["errors"].append(f"quality size sync: {e}")

    def _process_templates(self, result, latest):
        check = self.updater.check_for_updates(latest=latest)
        updates = check["templates_with_updates"]
        result["templates_checked"] = check["total_templates"]
        result["templates_outdated"] = len(updates)
        result["templates_with_auto_strategy"] = sum(1 for u in updates if u["strategy"] == "auto")
        result["templates_with_notify_strategy"] = sum(1 for u in updates if u["strategy"] == "notify")

        if updates:
            auto = self.updater.process_auto_updates(check)
            result["templates_auto_synced"] = auto["successful"]
            for item in auto["results"]:
                result["errors"].extend(f"template {item['template_id']}: {e}" for e in item["errors"])

            attention = self.updater.get_templates_needing_attention(check)
            result["templates_needing_attention"] = len(attention)
            if attention:
                self.updater.create_update_notifications(attention)

    def _run_cycle(self):
        started = time.time()
        result = _empty_result()
        logger.info("--- Guide Update Check Started ---")

        try:
            latest = self.version_tracker.get_latest_commit()
            self._refresh_caches(result, latest)
            self._sync_quality_sizes(result)
            self._process_templates(result, latest)
        except Exception as e:
            logger.error(f"[Scheduler] Update check failed: {e}")
            result["errors"].append(str(e))

        self.last_check_at = datetime.now(timezone.utc)
        self.last_check_result = result
        if result["errors"]:
            self.consecutive_failures += 1
            self.last_error = result["errors"][-1]
        else:
            self.consecutive_failures = 0

        if self.metrics is not None:
            self.metrics.record("sync", not result["errors"], (time.time() - started) * 1000,
                                result["errors"][-1] if result["errors"] else None)

        logger.info(f"[Scheduler] Check finished: {result['templates_outdated']} outdated, "
                    f"{result['templates_auto_synced']} auto-synced, "
                    f"{result['templates_needing_attention']} need attention, "
                    f"{len(result['errors'])} error(s)")
        return result

    def get_stats(self):
        next_run = self._job.next_run if self._job is not None else None
        if next_run is None and self.last_check_at is not None and self.is_running:
            next_run = self.last_check_at + timedelta(hours=self.interval_hours)
        return {
            "is_running": self.is_running,
            "check_in_progress": self.is_check_in_progress,
            "interval_hours": self.interval_hours,
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "next_check_at": next_run.isoformat() if next_run else None,
            "last_check_result": self.last_check_result,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }
