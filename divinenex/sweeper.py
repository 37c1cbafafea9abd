"""
Stand-alone sweep loop for running post expiry outside the web process.

Useful when the API runs with ENABLE_BACKGROUND_SWEEP=false behind several
workers and a single supervisor-managed process owns garbage collection.
"""

from __future__ import annotations

import argparse
import logging
import random
import time
from typing import Optional

from divinenex.config import get_settings
from divinenex.dependencies import get_lifecycle_manager, get_sweep_lock
from divinenex.lifecycle import PostLifecycleManager, SweepReport
from divinenex.locks import SweepLock

logger = logging.getLogger(__name__)


def sweep_once(
    manager: Optional[PostLifecycleManager] = None,
    lock: Optional[SweepLock] = None,
    *,
    lock_ttl_seconds: float = 3600,
) -> Optional[SweepReport]:
    """
    Run one sweep under the shared lock. Returns None if another process holds it.
    """
    manager = manager or get_lifecycle_manager()
    lock = lock or get_sweep_lock()
    if not lock.acquire("sweep", lock_ttl_seconds):
        logger.info("Sweep already running elsewhere; skipping")
        return None
    try:
        return manager.sweep()
    finally:
        lock.release("sweep")


def reconcile_once(
    manager: Optional[PostLifecycleManager] = None,
    lock: Optional[SweepLock] = None,
    *,
    lock_ttl_seconds: float = 3600,
) -> Optional[int]:
    manager = manager or get_lifecycle_manager()
    lock = lock or get_sweep_lock()
    if not lock.acquire("reconcile", lock_ttl_seconds):
        logger.info("Reconcile already running elsewhere; skipping")
        return None
    try:
        return manager.reconcile_orphans()
    finally:
        lock.release("reconcile")


def run_loop(interval_seconds: float, initial_delay_seconds: float, jitter_seconds: float = 0.0) -> None:
    """
    Blocking sweep loop. Intended to be run under systemd/supervisor.
    """
    manager = get_lifecycle_manager()
    lock = get_sweep_lock()
    time.sleep(initial_delay_seconds)
    while True:
        try:
            sweep_once(manager, lock, lock_ttl_seconds=interval_seconds)
        except Exception:
            logger.exception("Sweep failed")
        sleep_for = interval_seconds + random.uniform(0, jitter_seconds)
        logger.info("Sleeping for %.1fs", sleep_for)
        time.sleep(sleep_for)


def main(argv: Optional[list[str]] = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="DivineNex post expiry sweeper")
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=settings.sweep_interval_ms / 1000,
        help="Seconds between sweeps",
    )
    parser.add_argument(
        "--initial-delay-seconds",
        type=float,
        default=settings.initial_sweep_delay_ms / 1000,
        help="Seconds to wait before the first sweep",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=float,
        default=0.0,
        help="Max random jitter added to sleep",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Delete orphaned blobs and exit",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    if args.reconcile:
        removed = reconcile_once()
        logger.info("Reconcile removed %s orphaned blobs", removed)
        return 0
    if args.once:
        report = sweep_once()
        logger.info("Sweep report: %s", report.as_dict() if report else "skipped")
        return 0

    run_loop(args.interval_seconds, args.initial_delay_seconds, args.jitter_seconds)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
