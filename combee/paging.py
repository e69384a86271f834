import logging
from typing import Optional

from .errors import CombeeError, FetchError
from .models import JobRecord, Page

logger = logging.getLogger(__name__)


class PagedSource:
    """Count and page access for one category of one queue; holds no scan state."""

    def __init__(self, store, queue: str, category: str, batch_size: int = 50):
        self.store = store
        self.queue = queue
        self.category = category
        self.batch_size = batch_size

    async def count(self) -> int:
        counts = await self.store.health(self.queue)
        n = counts.get(self.category)
        if n is None:
            raise FetchError(f"store reported no count for category {self.category!r}")
        return max(0, int(n))

    async def fetch_page(self, start: int, size: Optional[int] = None) -> Page:
        size = size or self.batch_size
        items = await self.store.get_page(self.queue, self.category, start, size)
        # A page never exceeds its window, even if the store over-delivers.
        items = tuple(items[:size])
        logger.debug("fetched %s:%s [%d, %d) -> %d items", self.queue, self.category, start, start + size, len(items))
        return Page(self.category, start, size, items)

    def pages(self) -> "PageStream":
        """A fresh scan session yielding whole pages."""
        return PageStream(self)

    def __aiter__(self) -> "ItemIterator":
        # Every iteration is a fresh session starting at offset 0.
        return ItemIterator(self.pages())


class PageStream:
    """
    One scan session: Init -> Fetching(offset) -> Done, or Failed on a store error.

    The total is read once at session start; pages are requested in strictly
    increasing, non-overlapping windows until the offset reaches it.
    """

    def __init__(self, source: PagedSource):
        self.source = source
        self.total: Optional[int] = None
        self.offset = 0
        self.fetches = 0
        self.done = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Page:
        if self.done:
            raise StopAsyncIteration
        try:
            if self.total is None:
                self.total = await self.source.count()
            if self.offset >= self.total:
                self.done = True
                raise StopAsyncIteration
            # The last window stops at the session-start total.
            size = min(self.source.batch_size, self.total - self.offset)
            page = await self.source.fetch_page(self.offset, size)
        except StopAsyncIteration:
            raise
        except CombeeError:
            self.done = True
            raise
        except Exception as e:
            self.done = True
            raise FetchError(f"fetch failed for {self.source.queue}:{self.source.category}: {e}") from e
        self.fetches += 1
        self.offset += page.size
        if not page.items:
            # The category shrank under us; nothing more to read.
            self.done = True
        return page

    def discount(self, removed: int) -> None:
        """
        Account for ``removed`` jobs deleted from windows already read, so the
        next window starts at the first unread job instead of skipping past it.
        """
        if removed > 0:
            self.offset = max(0, self.offset - removed)
            if self.total is not None:
                self.total = max(0, self.total - removed)

    async def aclose(self):
        self.done = True


class ItemIterator:
    """Flattens a PageStream; the next page is fetched only once the current one is used up."""

    def __init__(self, pages: PageStream):
        self.pages = pages
        self._buffer = ()
        self._pos = 0

    def __aiter__(self):
        return self

    async def __anext__(self) -> JobRecord:
        while self._pos >= len(self._buffer):
            # Drop the spent page before fetching the next so only one is held.
            self._buffer = ()
            page = await self.pages.__anext__()
            self._buffer = page.items
            self._pos = 0
        item = self._buffer[self._pos]
        self._pos += 1
        return item

    async def aclose(self):
        self._buffer = ()
        await self.pages.aclose()
