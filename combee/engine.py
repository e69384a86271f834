"""
Query operations over one queue.

Every operation runs its own scan session (fresh offset, fresh accumulator),
so an engine can be shared freely between calls. Filters are resolved once
per call, before any store access.
"""
import asyncio
import json
import logging
import os
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import InvalidArgumentError, RemovalError, RemovalReport
from .lazy import LazySequence, maybe_await
from .models import CATEGORIES, MISSING, JobRecord
from .paging import PagedSource
from .predicates import resolve, summarize
from .utils import JsonArrayWriter, get_path, ms_from_now, parse_delay_to_seconds, sanitized_date_string

logger = logging.getLogger(__name__)


def _check_category(category: str) -> str:
    if category not in CATEGORIES:
        raise InvalidArgumentError(f"unknown category {category!r}; expected one of {', '.join(CATEGORIES)}")
    return category


def _bucket_key(value):
    if value is MISSING:
        return MISSING
    try:
        hash(value)
    except TypeError:
        # Unhashable, including tuples holding lists.
        return ("json", json.dumps(value, sort_keys=True, default=str))
    # 1, 1.0 and True hash alike; keep them in separate buckets.
    return (type(value).__name__, value)


class DistinctResult:
    """Distinct values in first-seen order, each with its occurrence count."""

    def __init__(self, field: str):
        self.field = field
        self._index: Dict[Any, int] = {}
        self.values: List[Any] = []
        self.counts: List[int] = []

    def add(self, value) -> None:
        key = _bucket_key(value)
        pos = self._index.get(key)
        if pos is None:
            self._index[key] = len(self.values)
            self.values.append(value)
            self.counts.append(1)
        else:
            self.counts[pos] += 1

    @property
    def total(self) -> int:
        return sum(self.counts)

    def items(self) -> Iterator[Tuple[Any, int]]:
        return zip(self.values, self.counts)

    def count_of(self, value) -> int:
        pos = self._index.get(_bucket_key(value))
        return 0 if pos is None else self.counts[pos]

    def __len__(self):
        return len(self.values)

    def __repr__(self):
        body = ", ".join(f"{v!r}: {c}" for v, c in self.items())
        return f"DistinctResult({self.field}, {{{body}}})"


class QueryEngine:
    def __init__(
        self,
        store,
        queue: str,
        batch_size: int = 50,
        list_page_size: int = 100,
        removal_concurrency: int = 50,
    ):
        self.store = store
        self.queue = queue
        self.batch_size = batch_size
        self.list_page_size = list_page_size
        self.removal_concurrency = removal_concurrency

    def __repr__(self):
        return f"QueryEngine({self.queue!r})"

    def source(self, category: str) -> PagedSource:
        return PagedSource(self.store, self.queue, _check_category(category), self.batch_size)

    # ---------- Streams ----------
    def iterate(self, category: str = "waiting") -> LazySequence[JobRecord]:
        return LazySequence(self.source(category))

    def matching(self, category: str, filter_arg=None) -> LazySequence[JobRecord]:
        predicate = resolve(filter_arg)
        return self.iterate(category).filter(predicate)

    # ---------- Folds ----------
    async def find(self, category: str = "waiting", filter_arg=None) -> List[JobRecord]:
        found: List[JobRecord] = []
        await self.matching(category, filter_arg).for_each(found.append)
        logger.debug("find %s:%s %s -> %d", self.queue, category, summarize(filter_arg), len(found))
        return found

    async def count(self, category: str = "waiting", filter_arg=None) -> int:
        n = await self.matching(category, filter_arg).reduce(lambda acc, _: acc + 1, 0)
        logger.debug("count %s:%s %s -> %d", self.queue, category, summarize(filter_arg), n)
        return n

    async def distinct(self, category: str, field: str, filter_arg=None) -> DistinctResult:
        if not isinstance(field, str) or not field:
            raise InvalidArgumentError('"field" must be a non-empty dotted path')
        result = DistinctResult(field)
        await self.matching(category, filter_arg).for_each(
            lambda job: result.add(get_path(job.as_dict(), field))
        )
        return result

    # ---------- Mutation ----------
    async def remove_matching(self, category: str = "waiting", filter_arg=None) -> int:
        report = await self.remove_matching_report(category, filter_arg)
        return report.removed

    async def remove_matching_report(self, category: str = "waiting", filter_arg=None) -> RemovalReport:
        """
        Remove every job in ``category`` that matches ``filter_arg``.

        Pages are scanned one at a time; the matches of a page are removed
        concurrently before the next page is fetched. A failed removal is
        recorded in the report and does not stop the scan. A failed fetch
        aborts the call.
        """
        predicate = resolve(filter_arg)
        pages = self.source(category).pages()
        semaphore = asyncio.Semaphore(self.removal_concurrency)
        report = RemovalReport()

        async for page in pages:
            matched = [job for job in page.items if await maybe_await(predicate(job))]
            if not matched:
                continue
            outcomes = await asyncio.gather(*(self._remove_one(job, semaphore) for job in matched))
            removed = 0
            for outcome in outcomes:
                if isinstance(outcome, RemovalError):
                    report.failures.append(outcome)
                else:
                    removed += 1
            report.removed += removed
            pages.discount(removed)

        logger.info(
            "removed %d jobs from %s:%s (%d failed)", report.removed, self.queue, category, report.failed
        )
        return report

    async def _remove_one(self, job: JobRecord, semaphore: asyncio.Semaphore) -> Optional[RemovalError]:
        if job.queue is None:
            job.queue = self.queue
        async with semaphore:
            try:
                ok = await self.store.remove_item(job)
            except Exception as e:
                logger.warning("failed to remove job %s from %s: %s", job.id, self.queue, e)
                return RemovalError(job.id, e)
        if not ok:
            logger.warning("job %s was already gone from %s", job.id, self.queue)
            return RemovalError(job.id, LookupError("job not found"))
        return None

    async def create_job(self, data: Any, delay: Union[None, int, str] = None) -> JobRecord:
        """Create a job; ``delay`` is seconds or a string like '20s', '5m', '1h30m'."""
        delay_ms = None
        if delay is not None:
            try:
                seconds = parse_delay_to_seconds(delay) if isinstance(delay, str) else int(delay)
            except (TypeError, ValueError) as e:
                raise InvalidArgumentError(str(e)) from e
            if seconds <= 0:
                raise InvalidArgumentError("delay must be > 0 seconds")
            delay_ms = ms_from_now(seconds)
        job = await self.store.create_item(self.queue, data, delay_ms)
        logger.debug("created job %s on %s", job.id, self.queue)
        return job

    # ---------- Browsing ----------
    async def stats(self) -> Dict[str, int]:
        return await self.store.health(self.queue)

    async def list_page(
        self, category: str = "active", page: Optional[Mapping[str, int]] = None
    ) -> List[JobRecord]:
        """
        One bounded fetch, no filtering. ``page`` takes ``start`` plus either
        ``size`` or an inclusive ``end``; the default window is the first
        ``list_page_size`` jobs.
        """
        page = dict(page or {})
        start = page.get("start", 0)
        if "size" in page:
            size = page["size"]
        elif "end" in page:
            size = page["end"] - start + 1
        else:
            size = self.list_page_size
        for name, value, low in (("start", start, 0), ("size", size, 1)):
            if isinstance(value, bool) or not isinstance(value, int) or value < low:
                raise InvalidArgumentError(f'page "{name}" must be an integer >= {low}')
        result = await self.source(category).fetch_page(start, size)
        return list(result.items)

    async def export(self, category: str = "waiting", filter_arg=None, path: Optional[str] = None) -> Tuple[str, int]:
        """Stream matching jobs into a JSON array file; returns the path and job count."""
        seq = self.matching(category, filter_arg)
        if path is None:
            path = f"{self.queue}-{category}-{sanitized_date_string()}.json"
        tmp = f"{path}.partial"
        try:
            with JsonArrayWriter(tmp) as writer:
                await seq.for_each(lambda job: writer.write(job.as_dict()))
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        os.replace(tmp, path)
        return path, writer.count
