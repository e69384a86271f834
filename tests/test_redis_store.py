import fnmatch
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from combee.engine import QueryEngine
from combee.errors import FetchError
from combee.models import JobRecord
from combee.store.redis_store import RedisQueueStore


class FakePipeline:
    def __init__(self, client):
        self._client = client
        self._calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __getattr__(self, name):
        method = getattr(self._client, name)

        def queue(*args, **kwargs):
            self._calls.append((method, args, kwargs))
            return self

        return queue

    async def execute(self):
        return [await method(*args, **kwargs) for method, args, kwargs in self._calls]


class FakeRedis:
    """Just the commands the bee-queue store issues, with redis semantics."""

    def __init__(self):
        self.data = {}
        self.down = False
        self.closed = False
        # Number of ids returned by each set read.
        self.set_reads = []

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def llen(self, key):
        self._check()
        return len(self.data.get(key, []))

    async def scard(self, key):
        return len(self.data.get(key, set()))

    async def zcard(self, key):
        return len(self.data.get(key, {}))

    async def get(self, key):
        return self.data.get(key)

    async def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def lrange(self, key, start, end):
        self._check()
        return list(self.data.get(key, [])[start:end + 1])

    async def zrange(self, key, start, end):
        members = sorted(self.data.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))
        return [m for m, _ in members[start:end + 1]]

    async def sort(self, key, start=None, num=None):
        self._check()
        ordered = sorted(self.data.get(key, set()), key=float)
        if start is not None:
            ordered = ordered[start:start + num]
        self.set_reads.append(len(ordered))
        return ordered

    async def hmget(self, key, ids):
        h = self.data.get(key, {})
        return [h.get(i) for i in ids]

    async def hset(self, key, field, value):
        self.data.setdefault(key, {})[field] = value
        return 1

    async def zadd(self, key, mapping):
        self.data.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def lpush(self, key, value):
        self.data.setdefault(key, []).insert(0, value)
        return len(self.data[key])

    async def sadd(self, key, value):
        self.data.setdefault(key, set()).add(value)

    async def lrem(self, key, count, value):
        before = self.data.get(key, [])
        self.data[key] = [v for v in before if v != value]
        return len(before) - len(self.data[key])

    async def srem(self, key, value):
        s = self.data.get(key, set())
        if value in s:
            s.discard(value)
            return 1
        return 0

    async def zrem(self, key, value):
        return 1 if self.data.get(key, {}).pop(value, None) is not None else 0

    async def hdel(self, key, field):
        return 1 if self.data.get(key, {}).pop(field, None) is not None else 0

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        self.closed = True


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def redis_store(fake_redis):
    return RedisQueueStore(prefix="bq", client=fake_redis)


async def test_create_uses_bee_queue_layout(redis_store, fake_redis):
    job = await redis_store.create_item("mail", {"to": "a"})
    assert job.id == "1"
    assert fake_redis.data["bq:mail:id"] == "1"
    assert fake_redis.data["bq:mail:waiting"] == ["1"]
    body = json.loads(fake_redis.data["bq:mail:jobs"]["1"])
    assert body["data"] == {"to": "a"}
    assert body["status"] == "created"


async def test_delayed_create_goes_to_zset(redis_store, fake_redis):
    await redis_store.create_item("mail", {}, delay_ms=12345)
    assert fake_redis.data["bq:mail:delayed"] == {"1": 12345}
    assert "bq:mail:waiting" not in fake_redis.data


async def test_health(redis_store, fake_redis):
    for i in range(3):
        await redis_store.create_item("mail", {"n": i})
    await fake_redis.sadd("bq:mail:failed", "9")
    health = await redis_store.health("mail")
    assert health == {"waiting": 3, "active": 0, "succeeded": 0, "failed": 1, "delayed": 0, "newestJob": 3}


async def test_waiting_pages_follow_list_order(redis_store):
    for i in range(5):
        await redis_store.create_item("mail", {"n": i})
    page = await redis_store.get_page("mail", "waiting", 1, 2)
    # LPUSH puts the newest job first.
    assert [j.data["n"] for j in page] == [3, 2]
    assert all(isinstance(j, JobRecord) and j.queue == "mail" for j in page)


async def test_set_pages_are_stable(redis_store, fake_redis):
    for job_id in ["10", "2", "1"]:
        await fake_redis.sadd("bq:mail:failed", job_id)
        await fake_redis.hset("bq:mail:jobs", job_id, json.dumps({"data": {"id": job_id}, "status": "failed"}))
    first = await redis_store.get_page("mail", "failed", 0, 2)
    second = await redis_store.get_page("mail", "failed", 2, 2)
    assert [j.id for j in first + second] == ["1", "2", "10"]


async def test_set_scan_reads_one_window_per_page(redis_store, fake_redis):
    for i in range(1, 1001):
        await fake_redis.sadd("bq:mail:failed", str(i))
        await fake_redis.hset("bq:mail:jobs", str(i), json.dumps({"data": {"n": i}, "status": "failed"}))
    engine = QueryEngine(redis_store, "mail", batch_size=50)
    assert await engine.count("failed") == 1000
    assert fake_redis.set_reads == [50] * 20

    page = await redis_store.get_page("mail", "failed", 990, 50)
    assert [j.id for j in page] == [str(i) for i in range(991, 1001)]


async def test_vanished_job_is_skipped(redis_store, fake_redis):
    await redis_store.create_item("mail", {"n": 0})
    await fake_redis.lpush("bq:mail:waiting", "99")
    page = await redis_store.get_page("mail", "waiting", 0, 10)
    assert [j.id for j in page] == ["1"]


async def test_remove_clears_every_structure(redis_store, fake_redis):
    job = await redis_store.create_item("mail", {})
    assert await redis_store.remove_item(job)
    assert fake_redis.data["bq:mail:waiting"] == []
    assert fake_redis.data["bq:mail:jobs"] == {}
    assert not await redis_store.remove_item(job)


async def test_connection_errors_become_fetch_errors(redis_store, fake_redis):
    fake_redis.down = True
    with pytest.raises(FetchError):
        await redis_store.health("mail")
    with pytest.raises(FetchError):
        await redis_store.get_page("mail", "waiting", 0, 10)


async def test_discover_queues(redis_store):
    await redis_store.create_item("mail", {})
    await redis_store.create_item("sms", {})
    assert await redis_store.discover_queues() == ["mail", "sms"]


async def test_engine_over_redis(redis_store):
    for i in range(120):
        await redis_store.create_item("mail", {"n": i, "stuck": i in (10, 80, 119)})
    engine = QueryEngine(redis_store, "mail", batch_size=50)
    assert await engine.count("waiting", {"data.stuck": True}) == 3
    assert await engine.remove_matching("waiting", {"data.stuck": True}) == 3
    assert (await engine.stats())["waiting"] == 117


async def test_close(redis_store, fake_redis):
    await redis_store.close()
    assert fake_redis.closed
