"""
Tests for the ARQ task functions.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from arq import Retry

from arena.workers.tasks import WorkerSettings, monitor_sweep, process_payout, settle_sweep


@pytest.fixture
def ctx():
    engine = MagicMock()
    engine.monitor.check_all_active_agents = AsyncMock(
        return_value={"agents_checked": 3, "errors": ["agent x: timeout"]}
    )
    engine.settlement.settle_closed_positions = AsyncMock(
        return_value={"settled": 0, "checked": 0, "errors": []}
    )
    engine.payouts.process = AsyncMock()
    return {"engine": engine}


def _request(status: str, tx_hash=None):
    request = MagicMock()
    request.status = status
    request.tx_hash = tx_hash
    return request


@pytest.mark.unit
class TestWorkerTasks:
    async def test_sweeps_return_summaries(self, ctx):
        assert (await monitor_sweep(ctx))["agents_checked"] == 3
        assert (await settle_sweep(ctx))["settled"] == 0

    async def test_sent_payout_completes(self, ctx):
        ctx["engine"].payouts.process.return_value = _request("sent", "0xhash")

        result = await process_payout(ctx, "req-1")

        assert result == {"request_id": "req-1", "status": "sent", "tx_hash": "0xhash"}

    async def test_payout_in_flight_is_retried(self, ctx):
        ctx["engine"].payouts.process.return_value = _request("bridging")

        with pytest.raises(Retry):
            await process_payout(ctx, "req-2")

    async def test_payouts_disabled(self, ctx):
        ctx["engine"].payouts = None

        assert (await process_payout(ctx, "req-3"))["status"] == "unprocessed"

    def test_cron_jobs_registered(self):
        names = {job.name for job in WorkerSettings.cron_jobs}

        assert names == {"cron:monitor_sweep", "cron:settle_sweep"}
