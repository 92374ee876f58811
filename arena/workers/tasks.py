"""
ARQ task definitions.

- monitor_sweep: every minute; admission control throttles each agent to
  its tier's check frequency, so most agents are skipped on a given run
- settle_sweep: every minute, independent of the monitor
- process_payout: drives one payout request; re-enqueued while funds are
  still moving
"""

import logging
from typing import Any

from arq import Retry, cron

from ..core.config import get_settings
from ..db.database import AsyncSessionLocal
from ..services.engine import ArenaEngine, build_engine
from ..services.redis_service import close_redis, get_redis_service
from .queue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

PAYOUT_RETRY_DELAY = 60  # seconds


def _engine(ctx: dict) -> ArenaEngine:
    return ctx["engine"]


async def monitor_sweep(ctx: dict) -> dict[str, Any]:
    summary = await _engine(ctx).monitor.check_all_active_agents()
    if summary["errors"]:
        logger.warning(f"[MONITOR] Sweep finished with {len(summary['errors'])} errors")
    return summary


async def settle_sweep(ctx: dict) -> dict[str, Any]:
    return await _engine(ctx).settlement.settle_closed_positions()


async def process_payout(ctx: dict, request_id: str) -> dict[str, Any]:
    engine = _engine(ctx)
    if engine.payouts is None:
        logger.error(f"Payout {request_id} cannot be processed: payouts disabled on this worker")
        return {"request_id": request_id, "status": "unprocessed"}

    request = await engine.payouts.process(request_id)
    if request.status not in ("sent", "failed"):
        # Still bridging or awaiting confirmations
        raise Retry(defer=PAYOUT_RETRY_DELAY)
    return {"request_id": request_id, "status": request.status, "tx_hash": request.tx_hash}


# ==================== Worker Startup/Shutdown ====================

async def startup(ctx: dict) -> None:
    logger.info("ARQ Worker starting up...")
    redis = None
    try:
        redis = await get_redis_service()
    except Exception as e:
        logger.warning(f"Redis unavailable for shared cache/locks, running process-local: {e}")

    engine = build_engine(AsyncSessionLocal, redis=redis, settings=get_settings())
    await engine.start()
    ctx["engine"] = engine
    logger.info("ARQ Worker startup complete")


async def shutdown(ctx: dict) -> None:
    logger.info("ARQ Worker shutting down...")
    engine = ctx.get("engine")
    if engine is not None:
        await engine.close()
    await close_redis()


# ==================== Worker Settings ====================

class WorkerSettings:
    """ARQ Worker Settings class for CLI (arq arena.workers.tasks.WorkerSettings)."""

    functions = [monitor_sweep, settle_sweep, process_payout]
    cron_jobs = [
        cron(monitor_sweep, minute=None, second=0, unique=True),
        cron(settle_sweep, minute=None, second=30, unique=True),
    ]

    on_startup = startup
    on_shutdown = shutdown

    max_jobs = 10
    job_timeout = 300
    max_tries = 30
    health_check_interval = 30
    queue_name = QUEUE_NAME
    redis_settings = get_redis_settings()
