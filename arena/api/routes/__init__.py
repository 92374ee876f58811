"""API route modules"""

from . import agents, cron, investments, payouts

__all__ = ["agents", "cron", "investments", "payouts"]
