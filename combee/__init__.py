from .config import Settings
from .engine import DistinctResult, QueryEngine
from .errors import (
    CombeeError,
    ConfigurationError,
    FetchError,
    InvalidArgumentError,
    InvalidFilterError,
    RemovalError,
    RemovalReport,
)
from .lazy import LazySequence, decorate
from .models import CATEGORIES, MISSING, JobRecord, Page
from .predicates import resolve
from .registry import Combee, QueueRegistry

__version__ = "0.1.0"
