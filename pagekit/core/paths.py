"""
Dot-path access over plain data (dicts and lists) and the UNSET sentinel.

UNSET means "nothing at this path". It is distinct from None and from the
empty string, is falsy, and compares equal only to itself.
"""
import re
from typing import Any, List, Union

_SEGMENT = re.compile(r"\[(-?\d+)\]|\[['\"]([^'\"]*)['\"]\]|([^.\[\]]+)")


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (_Unset, ())


UNSET = _Unset()


def is_unset(value: Any) -> bool:
    return value is UNSET


def split_path(path: Union[str, List[Any], None]) -> List[Any]:
    """
    Split "a.b[0].c" into ["a", "b", 0, "c"].
    """
    if path is None or path == "":
        return []
    if isinstance(path, list):
        return path
    parts: List[Any] = []
    for match in _SEGMENT.finditer(str(path)):
        index, quoted, name = match.groups()
        if index is not None:
            parts.append(int(index))
        elif quoted is not None:
            parts.append(quoted)
        else:
            parts.append(name)
    return parts


def get_path(data: Any, path: Union[str, List[Any], None]) -> Any:
    """
    Read a value at a dot path. Missing segments yield UNSET.
    """
    current = data
    for part in split_path(path):
        if current is UNSET or current is None:
            return UNSET
        if isinstance(current, dict):
            if part not in current:
                return UNSET
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except (TypeError, ValueError):
                return UNSET
            if index < -len(current) or index >= len(current):
                return UNSET
            current = current[index]
        else:
            return UNSET
    return current


def set_path(data: dict, path: Union[str, List[Any]], value: Any, merge: bool = False) -> None:
    """
    Write a value at a dot path, creating intermediate dicts.

    With merge=True a dict value is shallow-merged into an existing dict.
    """
    parts = split_path(path)
    if not parts:
        raise ValueError("Empty state path")

    current = data
    for part in parts[:-1]:
        nxt = current.get(part) if isinstance(current, dict) else None
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt

    last = parts[-1]
    existing = current.get(last, UNSET)
    if merge and isinstance(value, dict) and isinstance(existing, dict):
        current[last] = {**existing, **value}
    else:
        current[last] = value


def delete_path(data: dict, path: Union[str, List[Any]]) -> bool:
    parts = split_path(path)
    if not parts:
        return False
    parent = get_path(data, parts[:-1]) if len(parts) > 1 else data
    if isinstance(parent, dict) and parts[-1] in parent:
        del parent[parts[-1]]
        return True
    return False
