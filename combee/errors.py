from dataclasses import dataclass, field
from typing import List, Optional


class CombeeError(Exception):
    """Base class for every error the engine raises on purpose."""


class ConfigurationError(CombeeError, ValueError):
    pass


class InvalidFilterError(CombeeError, ValueError):
    pass


class InvalidArgumentError(CombeeError, ValueError):
    pass


class FetchError(CombeeError):
    """A health or page call against the store failed; the scan is aborted."""


class RemovalError(CombeeError):
    def __init__(self, job_id: Optional[str], cause: BaseException):
        super().__init__(f"failed to remove job {job_id}: {cause}")
        self.job_id = job_id
        self.cause = cause


@dataclass
class RemovalReport:
    removed: int = 0
    failures: List[RemovalError] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)
