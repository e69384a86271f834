"""
Pull-based asynchronous sequences.

A LazySequence wraps any async iterable (a paged store scan, an async
generator, another sequence) and exposes composable operators. Operators
are explicit iterator adapters: each ``__anext__`` call pulls at most one
item from the layer below, so production only happens on demand.
"""
import inspect
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Generic, List, TypeVar, Union

from .errors import InvalidArgumentError
from .predicates import resolve

T = TypeVar("T")
A = TypeVar("A")

Predicate = Callable[[Any], Union[bool, Awaitable[bool]]]


async def maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


async def _close(iterator) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


class _FilterIterator:
    def __init__(self, source: AsyncIterator, predicate: Predicate):
        self._source = source
        self._predicate = predicate

    def __aiter__(self):
        return self

    async def __anext__(self):
        while True:
            item = await self._source.__anext__()
            if await maybe_await(self._predicate(item)):
                return item

    async def aclose(self):
        await _close(self._source)


class _LimitIterator:
    def __init__(self, source: AsyncIterator, limit: int):
        self._source = source
        self._limit = limit
        self._count = 0
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._count >= self._limit:
            # Never pull past the limit: that would trigger another page fetch.
            await self.aclose()
            raise StopAsyncIteration
        item = await self._source.__anext__()
        self._count += 1
        return item

    async def aclose(self):
        if not self._closed:
            self._closed = True
            await _close(self._source)


class LazySequence(Generic[T]):
    """Single-pass async sequence; wrapping returns a new sequence over the same production."""

    def __init__(self, source: Union[AsyncIterable[T], AsyncIterator[T]]):
        self._source = source
        self._iterator = None

    def _pull(self) -> AsyncIterator[T]:
        if self._iterator is None:
            self._iterator = self._source.__aiter__()
        return self._iterator

    def __aiter__(self) -> AsyncIterator[T]:
        return self._pull()

    async def next(self):
        """Explicit pull: returns ``(item, False)`` or ``(None, True)`` once exhausted."""
        try:
            return await self._pull().__anext__(), False
        except StopAsyncIteration:
            return None, True

    def filter(self, predicate: Predicate) -> "LazySequence[T]":
        if not callable(predicate):
            predicate = resolve(predicate)
        return LazySequence(_FilterIterator(self._pull(), predicate))

    def limit(self, n: int) -> "LazySequence[T]":
        if isinstance(n, bool) or not isinstance(n, int) or n <= 0:
            raise InvalidArgumentError('"limit" must be a positive integer')
        return LazySequence(_LimitIterator(self._pull(), n))

    async def for_each(self, fn: Callable[[T], Any]) -> None:
        iterator = self._pull()
        while True:
            try:
                item = await iterator.__anext__()
            except StopAsyncIteration:
                return
            await maybe_await(fn(item))

    async def reduce(self, fn: Callable[[A, T], A], initial: A) -> A:
        acc = initial
        async for item in self:
            acc = fn(acc, item)
        return acc

    async def to_list(self) -> List[T]:
        result = []
        async for item in self:
            result.append(item)
        return result

    async def aclose(self) -> None:
        if self._iterator is not None:
            await _close(self._iterator)


def decorate(source: Union[AsyncIterable[T], AsyncIterator[T]]) -> LazySequence[T]:
    return LazySequence(source)
