import json
import logging
from typing import Any, Dict, List, Optional

from redis.exceptions import RedisError

from ..errors import FetchError, InvalidArgumentError
from ..models import ACTIVE, CATEGORIES, DELAYED, FAILED, SUCCEEDED, WAITING, JobRecord
from ..utils import now_ms

logger = logging.getLogger(__name__)

_LISTS = (WAITING, ACTIVE)


class RedisQueueStore:
    """
    Reads and writes bee-queue's redis layout:

    - ``<prefix>:<queue>:jobs``      hash of job id -> JSON {data, options, status}
    - ``<prefix>:<queue>:waiting``   list (LPUSH on create)
    - ``<prefix>:<queue>:active``    list
    - ``<prefix>:<queue>:succeeded`` set
    - ``<prefix>:<queue>:failed``    set
    - ``<prefix>:<queue>:delayed``   zset scored by run-at timestamp
    - ``<prefix>:<queue>:id``        last assigned job id
    """

    def __init__(self, url: Optional[str] = None, prefix: str = "bq", client=None):
        if client is None:
            if not url:
                raise FetchError("no redis URL configured")
            import redis.asyncio as redis

            client = redis.Redis.from_url(url, decode_responses=True)
        self._client = client
        self.prefix = prefix.strip(":") or "bq"

    def key(self, queue: str, suffix: str) -> str:
        return f"{self.prefix}:{queue}:{suffix}"

    async def health(self, queue: str) -> Dict[str, int]:
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.llen(self.key(queue, WAITING))
                pipe.llen(self.key(queue, ACTIVE))
                pipe.scard(self.key(queue, SUCCEEDED))
                pipe.scard(self.key(queue, FAILED))
                pipe.zcard(self.key(queue, DELAYED))
                pipe.get(self.key(queue, "id"))
                waiting, active, succeeded, failed, delayed, newest = await pipe.execute()
        except RedisError as e:
            raise FetchError(f"health check failed for queue {queue}: {e}") from e
        return {
            WAITING: int(waiting),
            ACTIVE: int(active),
            SUCCEEDED: int(succeeded),
            FAILED: int(failed),
            DELAYED: int(delayed),
            "newestJob": int(newest or 0),
        }

    async def _page_ids(self, queue: str, category: str, start: int, size: int) -> List[str]:
        key = self.key(queue, category)
        end = start + size - 1
        if category in _LISTS:
            return await self._client.lrange(key, start, end)
        if category == DELAYED:
            return await self._client.zrange(key, start, end)
        # Sets carry no order; SORT ... LIMIT orders the numeric ids server-side
        # so offsets address the same jobs across pages.
        return await self._client.sort(key, start=start, num=size)

    async def get_page(self, queue: str, category: str, start: int, size: int) -> List[JobRecord]:
        if category not in CATEGORIES:
            raise InvalidArgumentError(f"unknown category {category!r}; expected one of {', '.join(CATEGORIES)}")
        try:
            ids = await self._page_ids(queue, category, start, size)
            if not ids:
                return []
            bodies = await self._client.hmget(self.key(queue, "jobs"), ids)
        except RedisError as e:
            raise FetchError(f"page fetch failed for {queue}:{category} at {start}: {e}") from e
        jobs = []
        for job_id, body in zip(ids, bodies):
            if body is None:
                # Removed between the id read and the body read.
                logger.debug("job %s:%s vanished during fetch", queue, job_id)
                continue
            jobs.append(JobRecord.from_mapping(job_id, json.loads(body), queue=queue))
        return jobs

    async def create_item(self, queue: str, data: Any, delay_ms: Optional[int] = None) -> JobRecord:
        options: Dict[str, Any] = {"timestamp": now_ms(), "stacktraces": []}
        if delay_ms is not None:
            options["delay"] = delay_ms
        body = {"data": data, "options": options, "status": "created"}
        try:
            job_id = str(await self._client.incr(self.key(queue, "id")))
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(self.key(queue, "jobs"), job_id, json.dumps(body))
                if delay_ms is not None:
                    pipe.zadd(self.key(queue, DELAYED), {job_id: delay_ms})
                else:
                    pipe.lpush(self.key(queue, WAITING), job_id)
                await pipe.execute()
        except RedisError as e:
            raise FetchError(f"failed to create job on queue {queue}: {e}") from e
        return JobRecord(id=job_id, data=data, options=options, status="created", queue=queue)

    async def remove_item(self, job: JobRecord) -> bool:
        queue = job.queue
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.key(queue, WAITING), 0, job.id)
            pipe.lrem(self.key(queue, ACTIVE), 0, job.id)
            pipe.srem(self.key(queue, SUCCEEDED), job.id)
            pipe.srem(self.key(queue, FAILED), job.id)
            pipe.zrem(self.key(queue, DELAYED), job.id)
            pipe.hdel(self.key(queue, "jobs"), job.id)
            results = await pipe.execute()
        return bool(results[-1])

    async def discover_queues(self) -> List[str]:
        names = set()
        try:
            async for key in self._client.scan_iter(match=f"{self.prefix}:*:id"):
                names.add(key[len(self.prefix) + 1:-len(":id")])
        except RedisError as e:
            raise FetchError(f"queue discovery failed: {e}") from e
        return sorted(names)

    async def close(self) -> None:
        close = getattr(self._client, "aclose", None) or getattr(self._client, "close", None)
        if close is not None:
            await close()
