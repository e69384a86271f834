"""Shared test fixtures."""

from typing import Dict, List

import pytest

from combee.engine import QueryEngine
from combee.models import CATEGORIES, JobRecord


class MemoryStore:
    """
    In-memory store double. Each category is an ordered list; removing a job
    shifts later offsets down, like a redis list. Every call is recorded.
    """

    def __init__(self):
        self.jobs: Dict[str, Dict[str, List[JobRecord]]] = {}
        self.health_calls = 0
        self.page_calls: List[tuple] = []
        self.remove_calls: List[str] = []
        self.fail_remove_ids = set()
        self.fail_page_at = None
        # 1-based index of the get_page call that fails.
        self.fail_page_call = None
        self.fail_health = False
        self._next_id = 0

    def add(self, queue: str, category: str, data, status=None) -> JobRecord:
        self._next_id += 1
        job = JobRecord(id=str(self._next_id), data=data, status=status or category, queue=queue)
        self.jobs.setdefault(queue, {c: [] for c in CATEGORIES})[category].append(job)
        return job

    def fill(self, queue: str, category: str, payloads) -> List[JobRecord]:
        return [self.add(queue, category, p) for p in payloads]

    async def health(self, queue):
        self.health_calls += 1
        if self.fail_health:
            raise ConnectionError("store unreachable")
        cats = self.jobs.get(queue, {})
        return {c: len(cats.get(c, [])) for c in CATEGORIES}

    async def get_page(self, queue, category, start, size):
        self.page_calls.append((category, start, size))
        if self.fail_page_call is not None and len(self.page_calls) >= self.fail_page_call:
            raise ConnectionError(f"connection reset on page call {len(self.page_calls)}")
        if self.fail_page_at is not None and start >= self.fail_page_at:
            raise ConnectionError(f"connection reset at offset {start}")
        return list(self.jobs.get(queue, {}).get(category, [])[start:start + size])

    async def create_item(self, queue, data, delay_ms=None):
        job = self.add(queue, "delayed" if delay_ms else "waiting", data, status="created")
        if delay_ms:
            job.options["delay"] = delay_ms
        return job

    async def remove_item(self, job):
        self.remove_calls.append(job.id)
        if job.id in self.fail_remove_ids:
            raise ConnectionError(f"cannot remove {job.id}")
        for jobs in self.jobs.get(job.queue, {}).values():
            for i, other in enumerate(jobs):
                if other.id == job.id:
                    del jobs[i]
                    return True
        return False

    async def discover_queues(self):
        return sorted(self.jobs)

    async def close(self):
        pass


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def engine(store):
    return QueryEngine(store, "mail", batch_size=50)


@pytest.fixture()
def stuck_queue(store):
    """120 waiting jobs; indices 10, 80 and 119 are stuck."""
    stuck = {10, 80, 119}
    return [
        store.add("mail", "waiting", {"n": i}, status="stuck" if i in stuck else "waiting")
        for i in range(120)
    ]
