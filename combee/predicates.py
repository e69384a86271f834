"""
Filter resolution.

A filter argument is either a callable (used as-is) or a declarative,
sift/Mongo-style query mapping. Either way it is resolved once per engine
call into a single predicate over JobRecord.
"""
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .errors import InvalidFilterError
from .models import MISSING, JobRecord
from .utils import get_path

FieldTest = Callable[[Any], bool]


class QueryCompiler(Protocol):
    def compile(self, query: Mapping[str, Any]) -> Callable[[Mapping[str, Any]], bool]:
        ...


def _eq(value, arg) -> bool:
    if value is MISSING:
        return arg is None
    if isinstance(value, (list, tuple)) and not isinstance(arg, (list, tuple)):
        return any(v == arg for v in value)
    return value == arg


def _compare(op) -> Callable[[Any, Any], bool]:
    def test(value, arg):
        if value is MISSING or value is None:
            return False
        candidates = value if isinstance(value, (list, tuple)) else (value,)
        for v in candidates:
            try:
                if op(v, arg):
                    return True
            except TypeError:
                continue
        return False
    return test


_ORDERING = {
    "$gt": _compare(lambda a, b: a > b),
    "$gte": _compare(lambda a, b: a >= b),
    "$lt": _compare(lambda a, b: a < b),
    "$lte": _compare(lambda a, b: a <= b),
}


def _as_list(op: str, arg) -> list:
    if not isinstance(arg, (list, tuple, set, frozenset)):
        raise InvalidFilterError(f"{op} expects an array, got {arg!r}")
    return list(arg)


def _regex_test(pattern) -> FieldTest:
    def test(value):
        if isinstance(value, str):
            return pattern.search(value) is not None
        if isinstance(value, (list, tuple)):
            return any(isinstance(v, str) and pattern.search(v) for v in value)
        return False
    return test


_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


class MongoQueryCompiler:
    """Compiles a query mapping into nested closures; no type dispatch happens per job."""

    def compile(self, query: Mapping[str, Any]) -> Callable[[Mapping[str, Any]], bool]:
        if not isinstance(query, Mapping):
            raise InvalidFilterError(f"query must be a mapping, got {type(query).__name__}")
        clauses = [self._clause(key, cond) for key, cond in query.items()]
        return lambda doc: all(c(doc) for c in clauses)

    def _subqueries(self, op: str, cond) -> List[Callable]:
        subs = _as_list(op, cond)
        if not subs:
            raise InvalidFilterError(f"{op} expects a non-empty array")
        return [self.compile(q) for q in subs]

    def _clause(self, key: str, cond) -> Callable[[Mapping[str, Any]], bool]:
        if key == "$and":
            subs = self._subqueries(key, cond)
            return lambda doc: all(s(doc) for s in subs)
        if key == "$or":
            subs = self._subqueries(key, cond)
            return lambda doc: any(s(doc) for s in subs)
        if key == "$nor":
            subs = self._subqueries(key, cond)
            return lambda doc: not any(s(doc) for s in subs)
        if key.startswith("$"):
            raise InvalidFilterError(f"unsupported top-level operator {key}")
        test = self._condition(cond)
        return lambda doc: test(get_path(doc, key))

    def _condition(self, cond) -> FieldTest:
        if isinstance(cond, re.Pattern):
            return _regex_test(cond)
        if isinstance(cond, Mapping) and cond:
            ops = [k.startswith("$") for k in cond]
            if all(ops):
                return self._operators(cond)
            if any(ops):
                raise InvalidFilterError(f"cannot mix operators and fields in {dict(cond)!r}")
        return lambda value: _eq(value, cond)

    def _operators(self, cond: Mapping[str, Any]) -> FieldTest:
        tests: List[FieldTest] = []
        for op, arg in cond.items():
            if op == "$options":
                continue
            tests.append(self._operator(op, arg, cond))
        return lambda value: all(t(value) for t in tests)

    def _operator(self, op: str, arg, cond: Mapping[str, Any]) -> FieldTest:
        if op == "$eq":
            return lambda v: _eq(v, arg)
        if op == "$ne":
            return lambda v: not _eq(v, arg)
        if op in _ORDERING:
            compare = _ORDERING[op]
            return lambda v: compare(v, arg)
        if op == "$in":
            choices = _as_list(op, arg)
            return lambda v: any(_eq(v, c) for c in choices)
        if op == "$nin":
            choices = _as_list(op, arg)
            return lambda v: not any(_eq(v, c) for c in choices)
        if op == "$exists":
            want = bool(arg)
            return lambda v: (v is not MISSING) == want
        if op == "$regex":
            flags = 0
            for ch in str(cond.get("$options", "")):
                if ch not in _REGEX_FLAGS:
                    raise InvalidFilterError(f"unsupported $options flag {ch!r}")
                flags |= _REGEX_FLAGS[ch]
            try:
                pattern = arg if isinstance(arg, re.Pattern) else re.compile(arg, flags)
            except (re.error, TypeError) as e:
                raise InvalidFilterError(f"invalid $regex {arg!r}: {e}") from e
            return _regex_test(pattern)
        if op == "$size":
            if isinstance(arg, bool) or not isinstance(arg, int):
                raise InvalidFilterError("$size expects an integer")
            return lambda v: isinstance(v, (list, tuple)) and len(v) == arg
        if op == "$all":
            wanted = _as_list(op, arg)
            return lambda v: isinstance(v, (list, tuple)) and all(_eq(v, w) for w in wanted)
        if op == "$elemMatch":
            if not isinstance(arg, Mapping):
                raise InvalidFilterError("$elemMatch expects an object")
            if arg and all(k.startswith("$") for k in arg):
                inner = self._operators(arg)
            else:
                doc_test = self.compile(arg)
                inner = lambda el: isinstance(el, Mapping) and doc_test(el)
            return lambda v: isinstance(v, (list, tuple)) and any(inner(el) for el in v)
        if op == "$not":
            inner = self._condition(arg)
            return lambda v: not inner(v)
        raise InvalidFilterError(f"unsupported operator {op}")


default_compiler = MongoQueryCompiler()


def match_all(job) -> bool:
    return True


def resolve(filter_arg, compiler: Optional[QueryCompiler] = None) -> Callable[[JobRecord], Any]:
    """
    Normalize a filter argument into one predicate over JobRecord.

    ``None`` matches every job; a callable is returned unchanged (it may be
    sync or async); a mapping is compiled once against the job's mapping view.
    Anything else raises InvalidFilterError.
    """
    if filter_arg is None:
        return match_all
    if callable(filter_arg):
        return filter_arg
    if isinstance(filter_arg, Mapping):
        compiled = (compiler or default_compiler).compile(filter_arg)
        if not filter_arg:
            return match_all

        def predicate(job) -> bool:
            return compiled(job.as_dict() if isinstance(job, JobRecord) else job)

        return predicate
    raise InvalidFilterError(
        f"filter must be a callable or a query object, got {type(filter_arg).__name__}"
    )


def summarize(filter_arg) -> Dict[str, Any]:
    """Short description of a filter for log lines."""
    if filter_arg is None:
        return {"filter": "all"}
    if callable(filter_arg):
        return {"filter": getattr(filter_arg, "__name__", "callable")}
    return {"filter": dict(filter_arg)}
