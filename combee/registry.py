import logging
from typing import Dict, List, Optional

from .config import Settings
from .engine import QueryEngine
from .errors import ConfigurationError
from .store import open_store

logger = logging.getLogger(__name__)


class QueueRegistry:
    """Maps queue names to engines that share one store handle."""

    def __init__(self, store, settings: Settings):
        self.store = store
        self.settings = settings
        self._engines: Dict[str, QueryEngine] = {}

    def add(self, name: str) -> QueryEngine:
        if name not in self._engines:
            self._engines[name] = QueryEngine(
                self.store,
                name,
                batch_size=self.settings.batch_size,
                list_page_size=self.settings.list_page_size,
                removal_concurrency=self.settings.removal_concurrency,
            )
        return self._engines[name]

    def get(self, name: str) -> QueryEngine:
        try:
            return self._engines[name]
        except KeyError:
            raise KeyError(f"unknown queue {name!r}; known: {', '.join(self.names()) or 'none'}") from None

    def names(self) -> List[str]:
        return list(self._engines)

    async def discover(self) -> List[str]:
        found = await self.store.discover_queues()
        for name in found:
            self.add(name)
        logger.debug("discovered queues: %s", found)
        return list(found)


class Combee:
    """
    Entry point for introspection: ``combee.<queue>`` is that queue's
    QueryEngine (when the name is a valid identifier), ``combee[name]``
    always works.
    """

    def __init__(self, settings: Settings, store=None):
        self.settings = settings.validate()
        self.store = store if store is not None else open_store(settings)
        self.registry = QueueRegistry(self.store, settings)
        for name in settings.queues:
            self.registry.add(name)

    @classmethod
    async def open(cls, settings: Settings, store=None) -> "Combee":
        combee = cls(settings, store=store)
        if settings.discover:
            await combee.registry.discover()
        if not combee.registry.names():
            raise ConfigurationError("no queues configured or discovered")
        return combee

    def __getattr__(self, name: str) -> QueryEngine:
        if name.startswith("_") or name in ("settings", "store", "registry"):
            raise AttributeError(name)
        try:
            return self.registry.get(name)
        except KeyError as e:
            raise AttributeError(str(e)) from None

    def __getitem__(self, name: str) -> QueryEngine:
        return self.registry.get(name)

    def list_queues(self) -> List[Dict[str, str]]:
        return [{"name": name} for name in self.registry.names()]

    async def close(self) -> None:
        await self.store.close()
