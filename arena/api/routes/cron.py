"""
Periodic sweep entrypoints, authenticated by the shared cron secret.

Both sweeps are safe to call repeatedly: admission control throttles the
monitor per tier and settlement is idempotent per trade.
"""

from fastapi import APIRouter

from ...core.dependencies import CronAuthDep, EngineDep

router = APIRouter(prefix="/cron", tags=["Cron"])


@router.get("/monitor")
async def cron_monitor(_auth: CronAuthDep, engine: EngineDep):
    return await engine.monitor.check_all_active_agents()


@router.get("/settle")
async def cron_settle(_auth: CronAuthDep, engine: EngineDep):
    return await engine.settlement.settle_closed_positions()
