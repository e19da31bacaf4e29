"""Deterministic dispatch order for scrape targets.

Targets whose code carries a number (TRT1, TRT15, TJMG2) come first, by that
number and then by degree. Targets without a number follow, by code and then
degree. The ordering only decides dispatch sequence; completion order is not
guaranteed.
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

T = TypeVar("T")

_ORDINAL_RE = re.compile(r"\d+")
_DEGREE_ORDER = {"1g": 0, "2g": 1, "unico": 2}


def _field(target: Any, name: str) -> Any:
    if isinstance(target, Mapping):
        return target.get(name)
    return getattr(target, name, None)


def _degree_value(target: Any) -> str:
    degree = _field(target, "degree")
    return getattr(degree, "value", degree) or ""


def extract_ordinal(code: str | None) -> int | None:
    """First number in a target code, None when the code has no digits."""
    if not code:
        return None
    match = _ORDINAL_RE.search(code)
    return int(match.group()) if match else None


def sort_key(target: Any) -> tuple:
    code = _field(target, "code") or ""
    degree = _degree_value(target)
    degree_key = (_DEGREE_ORDER.get(degree, len(_DEGREE_ORDER)), degree)
    ordinal = extract_ordinal(code)
    if ordinal is not None:
        return (0, ordinal, degree_key)
    return (1, 0, code, degree_key)


def order(targets: Iterable[T]) -> list[T]:
    """Return targets in dispatch order. Stable and idempotent; input is not modified."""
    return sorted(targets, key=sort_key)


def describe_order(targets: Iterable[Any]) -> str:
    """Human-readable order, e.g. "TRT3 1g → TRT3 2g → TRT15 1g"."""
    return " → ".join(
        f"{_field(t, 'code')} {_degree_value(t)}".strip() for t in order(targets)
    )


def group_by_code(targets: Iterable[T]) -> dict[str, list[T]]:
    """Group ordered targets by court code, preserving dispatch order."""
    groups: dict[str, list[T]] = {}
    for target in order(targets):
        groups.setdefault(_field(target, "code") or "", []).append(target)
    return groups
