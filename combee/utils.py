import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from .models import MISSING

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def ms_from_now(seconds: int) -> int:
    return int((datetime.now(timezone.utc) + timedelta(seconds=seconds)).timestamp() * 1000)


def sanitized_date_string() -> str:
    """'2020-02-01T00:33:39.895Z' -> '20200201T003339895Z', safe for file names."""
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return re.sub(r"[-:.]", "", stamp)


def get_path(record: Any, path: str) -> Any:
    """
    Look up a dotted path ('data.user.id') stepwise through mappings and
    sequences. Returns MISSING when any step is absent, so a stored None
    stays distinguishable from a missing field.
    """
    current = record
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return MISSING
            current = current[idx]
        else:
            return MISSING
    return current


class JsonArrayWriter:
    """Writes a JSON array one element at a time, so exports never hold every job in memory."""

    def __init__(self, path, indent: int = 2):
        self.path = path
        self.indent = indent
        self.count = 0
        self._fh = None

    def __enter__(self):
        self._fh = open(self.path, "w", encoding="utf-8")
        self._fh.write("[")
        return self

    def write(self, value: Any):
        body = json.dumps(value, indent=self.indent, default=str)
        pad = " " * self.indent
        body = "\n".join(pad + line for line in body.splitlines())
        self._fh.write(("," if self.count else "") + "\n" + body)
        self.count += 1

    def __exit__(self, exc_type, exc, tb):
        self._fh.write("\n]\n" if self.count else "]\n")
        self._fh.close()
        return False
