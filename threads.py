# """
# ==============================================================================
# FILE: threads.py
# ROLE: Background Timers & Workers
# DESCRIPTION:
# Background loops that check the config every second (Micro-nap).
# If a loop crashes, the exact error is logged and the loop backs off for a
# minute instead of dying.
# ==============================================================================
# """

import time
import logging

from config import cfg
from guide_models import SERVICES

logger = logging.getLogger(__name__)

NORMAL_INTERVAL = 86400
RETRY_INTERVAL = 300


def refresh_guide_cache(updater, cache):
    """One refresh pass over both services. True when nothing failed."""
    all_success = True
    for service_type in SERVICES:
        try:
            result = updater.refresh_all_caches(service_type)
            if result["failed"]:
                all_success = False
                logger.warning(f"[Cache] {service_type}: {result['failed']} config type(s) failed to refresh")
        except Exception as e:
            logger.error(f"[Cache] Error refreshing {service_type}: {e}")
            all_success = False

    cache.cleanup_stale()
    if all_success:
        logger.info("[Cache] Guide cache update completed successfully.")
    else:
        logger.warning("[Cache] Guide cache update had some errors. Will retry soon.")
    return all_success


def run_cache_cycle(updater, cache):
    """One due cycle of the cache thread. True when nothing failed."""
    if cfg.ENABLE_UPDATE_SCHEDULER:
        # The update scheduler refreshes the cache at the start of every check
        logger.info("[Cache] Update scheduler is on, skipping GitHub refresh and pruning stale entries only")
        cache.cleanup_stale()
        return True
    return refresh_guide_cache(updater, cache)


def guide_cache_thread(updater, cache):
    """
    Keeps the guide cache warm while the update scheduler is off. With the
    scheduler on, the scheduler does the refresh and this loop only prunes.
    Logic: refresh every 24 hours. If it fails (no internet, rate limit), retry
    every 5 minutes. Once successful, the next refresh is 24 hours later.
    """
    logger.info("Guide Cache Thread Started.")
    last_attempt = 0
    retry_mode = False

    while True:
        try:
            if cfg.ENABLE_GUIDE_CACHE_SYNC:
                interval = RETRY_INTERVAL if retry_mode else NORMAL_INTERVAL
                if time.time() - last_attempt >= interval or last_attempt == 0:
                    logger.info("--- Guide Cache Update Cycle Started ---")
                    retry_mode = not run_cache_cycle(updater, cache)
                    last_attempt = time.time()
            else:
                last_attempt = 0
            time.sleep(1)
        except Exception as e:
            logger.error(f"[CRASH] Guide Cache Thread failed: {e}")
            time.sleep(60)
