from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..models import JobRecord


class QueueStore(Protocol):
    """What the engine consumes from a job-queue backend. All calls are async."""

    async def health(self, queue: str) -> Dict[str, int]:
        """Per-category counts for ``queue`` at call time."""

    async def get_page(self, queue: str, category: str, start: int, size: int) -> List[JobRecord]:
        """Up to ``size`` jobs of ``category`` starting at offset ``start``."""

    async def create_item(self, queue: str, data: Any, delay_ms: Optional[int] = None) -> JobRecord:
        ...

    async def remove_item(self, job: JobRecord) -> bool:
        ...

    async def discover_queues(self) -> Sequence[str]:
        ...

    async def close(self) -> None:
        ...
