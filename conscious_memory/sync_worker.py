"""
Background knowledge graph sync worker.

Usage:
    conscious-memory-sync                  # one sync run, then exit
    conscious-memory-sync --watch          # keep syncing every SYNC_INTERVAL_SECONDS
    conscious-memory-sync --full-resync    # re-project every memory, not only unsynced ones
"""

import argparse
import signal
import sys
import threading
from typing import List, Optional

from .models.errors import StoreConnectivityError
from .services.conscious_memory import ConsciousMemoryService
from .utils.config import AppConfig, config
from .utils.logging_config import get_logger

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Project saved memories into the knowledge graph')
    parser.add_argument('--watch', action='store_true', help='Run continuously instead of once')
    parser.add_argument('--full-resync', action='store_true', help='Re-sync all memories, not only unsynced ones')
    parser.add_argument('--interval', type=float, default=None, help='Seconds between runs in watch mode')
    return parser.parse_args(argv)


def run_once(service: ConsciousMemoryService, full_resync: bool) -> int:
    try:
        result = service.trigger_sync(full_resync=full_resync)
    except StoreConnectivityError as e:
        logger.error(f'Sync failed: {e}')
        return 1

    logger.info(f'Sync {result.status}: {result.processed} memories processed, {result.errors} errors, '
                f'{result.skipped} skipped, {result.removed} graph nodes removed')
    return 0


def watch(service: ConsciousMemoryService, full_resync: bool, stop_event: threading.Event) -> int:
    scheduler = service.scheduler
    if full_resync:
        scheduler.trigger(full_resync=True)
    scheduler.start()
    logger.info('Watching for new memories...')

    while not stop_event.wait(1.0):
        pass

    logger.info('Shutting down gracefully...')
    scheduler.stop()
    return 0


def main(argv: Optional[List[str]] = None, app_config: AppConfig = config) -> int:
    args = parse_args(argv)
    if args.interval is not None:
        if args.interval <= 0:
            logger.error('--interval must be positive')
            return 2
        app_config.sync.interval_seconds = args.interval

    logger.info(f'Starting knowledge graph sync (mode={"watch" if args.watch else "one-time"}, full_resync={args.full_resync})')

    service = ConsciousMemoryService.from_config(app_config)
    try:
        service.initialize(start_scheduler=False)

        if not args.watch:
            return run_once(service, args.full_resync)

        stop_event = threading.Event()
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, lambda *_: stop_event.set())
        return watch(service, args.full_resync, stop_event)
    finally:
        service.close()


if __name__ == '__main__':
    sys.exit(main())
