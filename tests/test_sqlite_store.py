from pathlib import Path

import pytest

from combee.engine import QueryEngine
from combee.errors import FetchError
from combee.store.sqlite_store import SqliteQueueStore


@pytest.fixture()
def sqlite_store(tmp_path: Path):
    return SqliteQueueStore(str(tmp_path / "jobs.db"))


async def test_create_and_health(sqlite_store):
    first = await sqlite_store.create_item("mail", {"to": "a"})
    second = await sqlite_store.create_item("mail", {"to": "b"}, delay_ms=10_000)
    await sqlite_store.create_item("sms", {"to": "c"})

    assert (first.id, second.id) == ("1", "2")
    assert second.options["delay"] == 10_000
    health = await sqlite_store.health("mail")
    assert health["waiting"] == 1
    assert health["delayed"] == 1
    assert health["failed"] == 0
    assert health["newestJob"] == 2


async def test_pages_are_offset_addressed(sqlite_store):
    for i in range(7):
        await sqlite_store.create_item("mail", {"n": i})
    page = await sqlite_store.get_page("mail", "waiting", 3, 3)
    assert [j.data["n"] for j in page] == [3, 4, 5]
    assert all(j.queue == "mail" for j in page)
    assert await sqlite_store.get_page("mail", "waiting", 10, 3) == []


async def test_move_and_remove(sqlite_store):
    job = await sqlite_store.create_item("mail", {"n": 1})
    assert await sqlite_store.move_item(job, "failed", status="failed")
    [moved] = await sqlite_store.get_page("mail", "failed", 0, 10)
    assert moved.status == "failed"
    assert await sqlite_store.remove_item(moved)
    assert not await sqlite_store.remove_item(moved)
    assert (await sqlite_store.health("mail"))["failed"] == 0


async def test_discover_queues(sqlite_store):
    await sqlite_store.create_item("sms", {})
    await sqlite_store.create_item("mail", {})
    assert await sqlite_store.discover_queues() == ["mail", "sms"]


async def test_engine_over_sqlite(sqlite_store):
    for i in range(30):
        job = await sqlite_store.create_item("mail", {"n": i, "kind": "bounce" if i % 3 == 0 else "ok"})
        if i >= 20:
            await sqlite_store.move_item(job, "failed")

    engine = QueryEngine(sqlite_store, "mail", batch_size=4)
    assert await engine.count("waiting", {"data.kind": "bounce"}) == 7
    distinct = await engine.distinct("failed", "data.kind")
    assert dict(distinct.items()) == {"bounce": 3, "ok": 7}
    assert await engine.remove_matching("waiting", {"data.kind": "bounce"}) == 7
    assert await engine.count("waiting") == 13


async def test_unreadable_database_is_a_fetch_error(tmp_path):
    store = SqliteQueueStore(str(tmp_path / "missing-dir" / "jobs.db"))
    with pytest.raises(FetchError):
        await store.health("mail")
