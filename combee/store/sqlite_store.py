import asyncio
import json
import sqlite3
from typing import Any, Dict, List, Optional

from ..errors import FetchError, InvalidArgumentError
from ..models import CATEGORIES, DELAYED, WAITING, JobRecord
from ..utils import now_ms

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    queue TEXT NOT NULL,
    id INTEGER NOT NULL,
    state TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT,
    options TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (queue, id)
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue_state ON jobs(queue, state, id);
"""


def connect_db(path: str):
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        id=str(row["id"]),
        data=json.loads(row["data"]) if row["data"] is not None else None,
        options=json.loads(row["options"]),
        status=row["status"],
        queue=row["queue"],
    )


# ---------- Queries ----------
def counts(conn, queue: str) -> Dict[str, int]:
    out = {s: 0 for s in CATEGORIES}
    cur = conn.execute(
        "SELECT state, COUNT(1) AS c FROM jobs WHERE queue=? GROUP BY state", (queue,)
    )
    for r in cur.fetchall():
        out[r["state"]] = r["c"]
    newest = conn.execute("SELECT MAX(id) AS m FROM jobs WHERE queue=?", (queue,)).fetchone()["m"]
    out["newestJob"] = newest or 0
    return out


def list_jobs(conn, queue: str, state: str, start: int, size: int) -> List[JobRecord]:
    rows = conn.execute(
        "SELECT * FROM jobs WHERE queue=? AND state=? ORDER BY id ASC LIMIT ? OFFSET ?",
        (queue, state, size, start),
    ).fetchall()
    return [_row_to_job(r) for r in rows]


def queue_names(conn) -> List[str]:
    return [r["queue"] for r in conn.execute("SELECT DISTINCT queue FROM jobs ORDER BY queue").fetchall()]


# ---------- Jobs: create / move / remove ----------
def insert_job(conn, queue: str, data: Any, delay_ms: Optional[int] = None) -> JobRecord:
    ts = now_ms()
    options: Dict[str, Any] = {"timestamp": ts, "stacktraces": []}
    state = WAITING
    if delay_ms is not None:
        options["delay"] = delay_ms
        state = DELAYED
    with conn:
        row = conn.execute("SELECT COALESCE(MAX(id), 0) + 1 AS next_id FROM jobs WHERE queue=?", (queue,)).fetchone()
        job_id = row["next_id"]
        conn.execute(
            """INSERT INTO jobs (queue, id, state, status, data, options, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (queue, job_id, state, "created", json.dumps(data), json.dumps(options), ts),
        )
    return JobRecord(id=str(job_id), data=data, options=options, status="created", queue=queue)


def move_job(conn, queue: str, job_id: str, state: str, status: Optional[str] = None) -> bool:
    if state not in CATEGORIES:
        raise InvalidArgumentError(f"unknown category {state!r}; expected one of {', '.join(CATEGORIES)}")
    with conn:
        res = conn.execute(
            "UPDATE jobs SET state=?, status=COALESCE(?, status) WHERE queue=? AND id=?",
            (state, status, queue, int(job_id)),
        )
    return res.rowcount == 1


def delete_job(conn, queue: str, job_id: str) -> bool:
    with conn:
        res = conn.execute("DELETE FROM jobs WHERE queue=? AND id=?", (queue, int(job_id)))
    return res.rowcount == 1


class SqliteQueueStore:
    """
    Local job store kept in one sqlite file, one row per job.

    Each call opens its own connection and runs in a worker thread, so
    concurrent removals never share a connection.
    """

    def __init__(self, path: str = "combee.db"):
        self.path = path

    def _run(self, fn, *args, **kwargs):
        conn = connect_db(self.path)
        try:
            return fn(conn, *args, **kwargs)
        finally:
            conn.close()

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(self._run, fn, *args, **kwargs)
        except sqlite3.Error as e:
            raise FetchError(f"sqlite error on {self.path}: {e}") from e

    async def health(self, queue: str) -> Dict[str, int]:
        return await self._call(counts, queue)

    async def get_page(self, queue: str, category: str, start: int, size: int) -> List[JobRecord]:
        return await self._call(list_jobs, queue, category, start, size)

    async def create_item(self, queue: str, data: Any, delay_ms: Optional[int] = None) -> JobRecord:
        return await self._call(insert_job, queue, data, delay_ms)

    async def move_item(self, job: JobRecord, state: str, status: Optional[str] = None) -> bool:
        return await self._call(move_job, job.queue, job.id, state, status)

    async def remove_item(self, job: JobRecord) -> bool:
        # Driver errors propagate untouched; the engine records them per job.
        return await asyncio.to_thread(self._run, delete_job, job.queue, job.id)

    async def discover_queues(self) -> List[str]:
        return await self._call(queue_names)

    async def close(self) -> None:
        return None
