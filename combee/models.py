from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

# Job categories (bee-queue states)
WAITING = "waiting"
ACTIVE = "active"
SUCCEEDED = "succeeded"
FAILED = "failed"
DELAYED = "delayed"

CATEGORIES: Tuple[str, ...] = (WAITING, ACTIVE, SUCCEEDED, FAILED, DELAYED)


class _Missing:
    __slots__ = ()

    def __repr__(self):
        return "undefined"

    def __bool__(self):
        return False


# Marks an absent field; distinct from a field whose value is None.
MISSING = _Missing()


@dataclass
class JobRecord:
    id: str
    data: Any = None
    options: Dict[str, Any] = field(default_factory=dict)
    status: str = "created"
    # Store-specific handle, e.g. the queue name the job was read from.
    queue: Optional[str] = field(default=None, compare=False, repr=False)

    def as_dict(self) -> Dict[str, Any]:
        """Stripped-down mapping view used for matching, field lookup and printing."""
        return {
            "id": self.id,
            "data": self.data,
            "options": self.options,
            "status": self.status,
        }

    @classmethod
    def from_mapping(cls, job_id: str, raw: Mapping[str, Any], queue: Optional[str] = None) -> "JobRecord":
        return cls(
            id=str(job_id),
            data=raw.get("data"),
            options=dict(raw.get("options") or {}),
            status=raw.get("status") or "created",
            queue=queue,
        )


@dataclass(frozen=True)
class Page:
    category: str
    start: int
    size: int
    items: Sequence[JobRecord] = ()

    def __len__(self):
        return len(self.items)

    @property
    def end(self) -> int:
        """Inclusive end offset of the requested window."""
        return self.start + self.size - 1
