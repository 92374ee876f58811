"""
Task queue client the API uses to hand jobs to the ARQ workers.
"""

import logging
from typing import Optional

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from ..core.config import get_settings

logger = logging.getLogger(__name__)

QUEUE_NAME = "arena:tasks"


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(str(get_settings().redis_url))


class TaskQueueService:
    def __init__(self, redis_pool: ArqRedis):
        self.redis = redis_pool

    async def enqueue_payout(self, request_id: str) -> bool:
        """
        Queue delivery of a payout request.

        The job id is derived from the request id, so a request already
        queued is not queued twice.
        """
        try:
            job = await self.redis.enqueue_job(
                "process_payout",
                request_id,
                _job_id=f"payout:{request_id}",
                _queue_name=QUEUE_NAME,
            )
        except Exception as e:
            logger.error(f"Failed to queue payout {request_id}: {e}")
            return False
        if job is None:
            logger.info(f"Payout {request_id} already queued")
        return True

    async def close(self) -> None:
        await self.redis.close()


_task_queue: Optional[TaskQueueService] = None


async def get_task_queue() -> TaskQueueService:
    global _task_queue
    if _task_queue is None:
        pool = await create_pool(get_redis_settings(), default_queue_name=QUEUE_NAME)
        _task_queue = TaskQueueService(pool)
    return _task_queue


async def close_task_queue() -> None:
    global _task_queue
    if _task_queue is not None:
        await _task_queue.close()
        _task_queue = None
