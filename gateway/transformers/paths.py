"""
Dot-path access for nested payloads.

Paths are dot separated (``patient.phone``). A segment ending in ``[]``
(``items[].code``) fans out over every element of the array at that
position; reads return one value per element and writes expect one value
per element.
"""

from typing import Any, List, Tuple


class _Missing:
    """Sentinel for an absent value (distinct from an explicit None)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

ARRAY_MARKER = "[]"


def is_array_path(path: str) -> bool:
    return ARRAY_MARKER in path


def _split_array(path: str) -> Tuple[str, str]:
    """Split ``a.b[].c.d`` into (``a.b``, ``c.d``)."""
    prefix, rest = path.split(ARRAY_MARKER, 1)
    return prefix, rest.lstrip(".")


def get_path(obj: Any, path: str) -> Any:
    """
    Read a value by path.

    Returns MISSING when any segment is absent. For array paths the result
    is a list aligned with the source array, holding MISSING for elements
    that lack the remainder of the path.
    """
    if not path:
        return MISSING

    if is_array_path(path):
        prefix, rest = _split_array(path)
        items = get_path(obj, prefix) if prefix else obj
        if not isinstance(items, list):
            return MISSING
        if not rest:
            return list(items)
        return [get_path(item, rest) for item in items]

    current = obj
    for key in path.split("."):
        if isinstance(current, dict):
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, list) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def set_path(obj: dict, path: str, value: Any) -> None:
    """
    Write a value by path, creating intermediate dicts as needed.

    For array paths ``value`` must be a list; element ``i`` is written into
    the ``i``-th array element and MISSING entries are skipped. The target
    array is created (as a list of dicts) when absent.
    """
    if is_array_path(path):
        prefix, rest = _split_array(path)
        if not isinstance(value, list):
            value = [value]
        items = get_path(obj, prefix)
        if not isinstance(items, list):
            items = [{} for _ in value]
            set_path(obj, prefix, items)
        while len(items) < len(value):
            items.append({})
        for index, item_value in enumerate(value):
            if item_value is MISSING:
                continue
            if not rest:
                items[index] = item_value
                continue
            if not isinstance(items[index], dict):
                items[index] = {}
            set_path(items[index], rest, item_value)
        return

    keys = path.split(".")
    current = obj
    for key in keys[:-1]:
        nxt = current.get(key)
        if not isinstance(nxt, dict):
            nxt = {}
            current[key] = nxt
        current = nxt
    current[keys[-1]] = value


def present_values(values: List[Any]) -> List[Any]:
    return [v for v in values if v is not MISSING]
