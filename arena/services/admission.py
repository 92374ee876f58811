"""
Tier-frequency admission control for monitor checks.

Best-effort: a timestamp in the shared TTL store, not a lease. An
on-demand check racing the sweep for the same agent can both be admitted;
the worst outcome is one extra heartbeat and analysis row.
"""

import math
import time
import uuid
from typing import Callable

from ..models.strategy import TierConfig
from .cache_store import TTLCacheStore


class AdmissionController:
    """
    Usage:
        admission = AdmissionController(cache)
        admitted, wait = await admission.try_admit(agent.id, get_tier(agent.tier))
    """

    def __init__(
        self,
        store: TTLCacheStore,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._clock = clock

    @staticmethod
    def _key(agent_id: uuid.UUID) -> str:
        return f"monitor:last_check:{agent_id}"

    async def try_admit(self, agent_id: uuid.UUID, tier: TierConfig) -> tuple[bool, int]:
        """
        Admit a check unless the previous one is younger than the tier interval.

        Returns (admitted, seconds until the next check is allowed).
        """
        interval = tier.min_check_interval
        now = self._clock()
        last = await self.store.get(self._key(agent_id))
        if last is not None:
            elapsed = now - float(last)
            if elapsed < interval:
                return False, max(1, math.ceil(interval - elapsed))

        await self.store.set(self._key(agent_id), now, ttl=interval)
        return True, math.ceil(interval)

    async def reset(self, agent_id: uuid.UUID) -> None:
        await self.store.delete(self._key(agent_id))
