# """
# ==============================================================================
# FILE: main.py
# ROLE: Composition Root
# DESCRIPTION:
# Builds every component once, wires them together explicitly and starts
# the background threads:
# - UpdateScheduler   (guide update checks, template + quality-size sync)
# - Guide Cache       (24h cache refresh with 5 min retry mode)
# - Healthcheck       (/health and /stats for Docker)
# ==============================================================================
# """

import time
import logging
import threading

from config import cfg
from database import GuideStore
from arr_client import build_clients
from cache_manager import GuideCacheManager
from guide_fetcher import GuideFetcher
from version_tracker import VersionTracker
from sync_executor import SyncExecutor
from sync_metrics import SyncMetrics
from quality_size import QualitySizeSyncer
from template_updater import TemplateUpdater
from update_scheduler import UpdateScheduler
from threads import guide_cache_thread
from webui import healthcheck_thread

logger = logging.getLogger(__name__)


def seed_quality_size_mappings(store, instances, mappings=None):
    """Creates the instance -> preset bindings listed under 'quality_size:' in config.yml."""
    by_id = {inst['id']: inst for inst in instances}
    for item in mappings if mappings is not None else cfg.QUALITY_SIZE:
        instance = by_id.get(item.get('instance'))
        if instance is None:
            logger.error(f"[QualitySize] Unknown instance '{item.get('instance')}' in config.yml, skipping")
            continue
        store.upsert_quality_size_mapping(instance['id'], instance['service'], str(item.get('preset')),
                                          item.get('sync_strategy', 'notify'))


def build_app():
    """Creates all components. Returned as a dict so tests and tools can reuse the wiring."""
    store = GuideStore()
    store.init_db()

    instances = cfg.INSTANCES
    clients = build_clients(instances)
    metrics = SyncMetrics()
    cache = GuideCacheManager(store)
    tracker = VersionTracker()
    fetcher = GuideFetcher()
    executor = SyncExecutor(store, metrics)
    updater = TemplateUpdater(store, cache, fetcher, tracker, executor, clients, metrics)
    quality_sizes = QualitySizeSyncer(store, cache, clients)
    scheduler = UpdateScheduler(updater, tracker, quality_sizes, metrics)

    return {
        'store': store, 'instances': instances, 'clients': clients, 'metrics': metrics,
        'cache': cache, 'tracker': tracker, 'fetcher': fetcher, 'executor': executor,
        'updater': updater, 'quality_sizes': quality_sizes, 'scheduler': scheduler,
    }


def main():
    logger.info("Starting Guide Sync Manager...")
    app = build_app()
    logger.info(f"Managing {len(app['instances'])} instance(s): "
                f"{', '.join(i['label'] for i in app['instances']) or 'none configured'}")
    if cfg.DRY_RUN:
        logger.warning("DRY RUN is ON. Nothing will be written to Sonarr/Radarr.")
    logger.info(f"Timezone: {cfg.TIMEZONE}")

    seed_quality_size_mappings(app['store'], app['instances'])
    app['updater'].seed_from_config()

    def stats():
        return {'scheduler': app['scheduler'].get_stats(), 'metrics': app['metrics'].snapshot()}

    threading.Thread(target=healthcheck_thread, args=(stats, cfg.HEALTH_PORT),
                     name="Healthcheck", daemon=True).start()
    threading.Thread(target=guide_cache_thread, args=(app['updater'], app['cache']),
                     name="GuideCache", daemon=True).start()

    scheduler = app['scheduler']
    try:
        # Scheduler follows the config switch live
        while True:
            if cfg.ENABLE_UPDATE_SCHEDULER and not scheduler.is_running:
                scheduler.start()
            elif not cfg.ENABLE_UPDATE_SCHEDULER and scheduler.is_running:
                scheduler.stop()
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        scheduler.stop()


if __name__ == "__main__":
    main()
