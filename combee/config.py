import os
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

from .errors import ConfigurationError

DEFAULT_CONFIG = {
    "batch_size": "50",
    "list_page_size": "100",
    "prefix": "bq",
    "removal_concurrency": "50",
}

ENV_PREFIX = "COMBEE_"


def parse_queue_names(queues: Union[None, str, Iterable[str]]) -> Tuple[str, ...]:
    """Accepts `a,b,c` or an iterable of names; blanks are dropped."""
    if queues is None:
        return ()
    if isinstance(queues, str):
        queues = queues.split(",")
    return tuple(q.strip() for q in queues if q and q.strip())


def _positive_int(key: str, value) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    if n <= 0:
        raise ConfigurationError(f"{key} must be > 0")
    return n


@dataclass(frozen=True)
class Settings:
    redis_url: Optional[str] = None
    db_path: Optional[str] = None
    queues: Tuple[str, ...] = ()
    prefix: str = DEFAULT_CONFIG["prefix"]
    batch_size: int = int(DEFAULT_CONFIG["batch_size"])
    list_page_size: int = int(DEFAULT_CONFIG["list_page_size"])
    removal_concurrency: int = int(DEFAULT_CONFIG["removal_concurrency"])
    discover: bool = False

    def validate(self) -> "Settings":
        if not self.redis_url and not self.db_path:
            raise ConfigurationError("must provide a redis URL or a sqlite database path")
        if not self.queues and not self.discover:
            raise ConfigurationError("must provide queues")
        for key in ("batch_size", "list_page_size", "removal_concurrency"):
            _positive_int(key, getattr(self, key))
        return self

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "Settings":
        """Build settings from COMBEE_* variables; non-None overrides win."""
        env = os.environ if environ is None else environ

        def pick(key, default=None):
            if overrides.get(key) is not None:
                return overrides[key]
            return env.get(ENV_PREFIX + key.upper(), default)

        return cls(
            redis_url=pick("redis_url"),
            db_path=pick("db_path", env.get(ENV_PREFIX + "DB")),
            queues=parse_queue_names(pick("queues")),
            prefix=str(pick("prefix", DEFAULT_CONFIG["prefix"])).strip(":") or DEFAULT_CONFIG["prefix"],
            batch_size=_positive_int("batch_size", pick("batch_size", DEFAULT_CONFIG["batch_size"])),
            list_page_size=_positive_int(
                "list_page_size", pick("list_page_size", DEFAULT_CONFIG["list_page_size"])
            ),
            removal_concurrency=_positive_int(
                "removal_concurrency", pick("removal_concurrency", DEFAULT_CONFIG["removal_concurrency"])
            ),
            discover=bool(overrides.get("discover", False)),
        ).validate()
