"""
Field transforms applied by the document store at write time.

A merge-write payload may carry ``Increment`` / ``ArrayUnion`` /
``DELETE_FIELD`` values instead of plain data. The store resolves them
against the current stored document, so concurrent writers never overwrite
each other's accumulators.
"""
from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, Optional


class Increment:
    __slots__ = ("amount",)

    def __init__(self, amount: float):
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount!r})"


class ArrayUnion:
    __slots__ = ("values",)

    def __init__(self, *values: Any):
        self.values = values

    def __repr__(self) -> str:
        return f"ArrayUnion{self.values!r}"


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


def _resolve(current: Any, value: Any, merge: bool) -> Any:
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        result = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in result:
                result.append(copy.deepcopy(item))
        return result
    if isinstance(value, Mapping):
        if merge and isinstance(current, dict):
            return _apply(current, value, merge=True)
        return _apply({}, value, merge=False)
    return copy.deepcopy(value)


def _apply(existing: dict, patch: Mapping, merge: bool) -> dict:
    result = copy.deepcopy(existing) if merge else {}
    for field, value in patch.items():
        if value is DELETE_FIELD:
            result.pop(field, None)
            continue
        result[field] = _resolve(result.get(field), value, merge)
    return result


def apply_patch(existing: Optional[dict], patch: Mapping, merge: bool) -> dict:
    """Return the document that results from writing ``patch`` over ``existing``.

    With ``merge=False`` the stored document is replaced; transforms still
    resolve (against nothing). With ``merge=True`` nested mappings merge
    recursively and untouched fields survive.
    """
    return _apply(existing or {}, patch, merge)
