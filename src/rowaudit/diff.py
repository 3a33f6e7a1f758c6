"""
Row snapshots and field-level deltas.

A RowMap is an ordered mapping from column name to a nullable scalar.
It is what the audit log stores for row_data and changed_fields, and the
only thing the diff functions operate on.

NULL is kept as None and is never coerced to an empty string. Two NULLs
compare equal, NULL and any value compare different, and a bool never
equals the integer with the same truth value.
"""

import datetime as dt
from collections.abc import Iterable, Mapping
from typing import Any

Scalar = str | int | float | bool | None
RowMap = dict[str, Scalar]


def to_scalar(value: Any) -> Scalar:
    """Normalize a host column value into a RowMap scalar."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    return str(value)


def snapshot(row: Mapping[str, Any], excluded: Iterable[str] = ()) -> RowMap:
    """
    Materialize a row into a RowMap, dropping excluded columns.

    Column order follows the row. Excluded names that are not columns of
    the row are ignored, so one standard exclusion set can be shared by
    several relations.

    Args:
        row: Column name to value mapping, as read from the host
        excluded: Column names to leave out

    Returns:
        A new RowMap
    """
    skip = frozenset(excluded)
    return {name: to_scalar(value) for name, value in row.items() if name not in skip}


def same_value(a: Scalar, b: Scalar) -> bool:
    """Compare two scalars with NULL-aware semantics."""
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def diff(old: Mapping[str, Scalar], new: Mapping[str, Scalar]) -> RowMap:
    """
    Return the entries of new that are absent from old or hold a different value.

    Keys present only in old are never emitted.
    """
    return {
        name: value
        for name, value in new.items()
        if name not in old or not same_value(old[name], value)
    }


def is_empty(row_map: Mapping[str, Scalar] | None) -> bool:
    """True when the map has no entries."""
    return not row_map
