#!/usr/bin/env python
"""
Worker process for the arena engine.

Runs the minute-cadence monitor and settlement sweeps plus queued payout
deliveries. Several workers may run side by side; the cron jobs are
unique per tick and agent work is serialized by Redis locks.

    python run_worker.py
    arq arena.workers.tasks.WorkerSettings

Reads the same environment as the API (DATABASE_URL, REDIS_URL,
HYPERLIQUID_PRIVATE_KEY, ...) plus LOG_LEVEL.
"""

import logging
import os
import sys

from arq import run_worker

from arena.core.config import get_settings
from arena.monitoring.logs import configure_logging
from arena.workers.tasks import WorkerSettings


def setup_logging() -> None:
    """Configure logging for the worker."""
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    configure_logging(getattr(logging, log_level, logging.INFO))
    logging.getLogger("arq").setLevel(logging.INFO)


def main() -> int:
    setup_logging()
    logger = logging.getLogger(__name__)

    settings = get_settings()
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Queue: {WorkerSettings.queue_name}")

    try:
        run_worker(
            WorkerSettings,
            max_jobs=settings.worker_max_concurrent_jobs,
            job_timeout=settings.worker_job_timeout,
        )
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception(f"Worker failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
