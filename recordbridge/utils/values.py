import numbers
from typing import Any, Iterable

import pandas as pd

def is_missing(value: Any) -> bool:
    """True for None and scalar NaN/NaT values"""
    if value is None:
        return True
    if pd.api.types.is_scalar(value) and not isinstance(value, str):
        return bool(pd.isna(value))
    return False

def is_empty(value: Any) -> bool:
    """Missing, empty string, or empty collection"""
    if is_missing(value):
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False

def is_blank(value: Any) -> bool:
    """Missing, or textual and empty after trimming"""
    if is_missing(value):
        return True
    return isinstance(value, str) and value.strip() == ""

def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion ("500" != 500, True != 1)"""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, numbers.Number) and isinstance(right, numbers.Number):
        return left == right
    if isinstance(left, str) or isinstance(right, str):
        return isinstance(left, str) and isinstance(right, str) and left == right
    return left == right

def contains_strict(values: Iterable[Any], value: Any) -> bool:
    return any(strict_equals(candidate, value) for candidate in values)
