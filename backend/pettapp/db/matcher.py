"""In-process evaluation of Mongo-style predicate documents.

Used by the embedded store so that the filters the query builder emits mean
the same thing with or without a MongoDB server behind them.
"""
import math
import re
from typing import Any, Dict, Iterable, List, Tuple

from pettapp.locations import MISSING

# Mean earth radius MongoDB uses for spherical $geoNear distances.
EARTH_RADIUS_KM = 6378.1

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def get_path(document: Dict[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def unset_path(document: Dict[str, Any], path: str) -> bool:
    parts = path.split(".")
    current: Any = document
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    if not isinstance(current, dict) or parts[-1] not in current:
        return False
    del current[parts[-1]]
    return True


def _equals(value: Any, expected: Any) -> bool:
    if value is MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(value: Any, expected: Any, op: str) -> bool:
    if value is MISSING or value is None:
        return False
    if isinstance(value, list):
        return any(_compare(item, expected, op) for item in value)
    try:
        if op == "$gt":
            return value > expected
        if op == "$gte":
            return value >= expected
        if op == "$lt":
            return value < expected
        return value <= expected
    except TypeError:
        return False


def _regex(value: Any, pattern: str, options: str) -> bool:
    flags = 0
    for option in options:
        flags |= _REGEX_FLAGS.get(option, 0)
    if isinstance(value, list):
        return any(_regex(item, pattern, options) for item in value)
    if not isinstance(value, str):
        return False
    return re.search(pattern, value, flags) is not None


def _match_operators(value: Any, condition: Dict[str, Any]) -> bool:
    for op, expected in condition.items():
        if op == "$options":
            continue
        if op == "$eq":
            ok = _equals(value, expected)
        elif op == "$ne":
            ok = not _equals(value, expected)
        elif op == "$in":
            ok = any(_equals(value, item) for item in expected)
        elif op == "$nin":
            ok = not any(_equals(value, item) for item in expected)
        elif op in {"$gt", "$gte", "$lt", "$lte"}:
            ok = _compare(value, expected, op)
        elif op == "$exists":
            ok = (value is not MISSING) == bool(expected)
        elif op == "$regex":
            ok = _regex(value, expected, str(condition.get("$options", "")))
        else:
            raise ValueError(f"Unsupported query operator: {op}")
        if not ok:
            return False
    return True


def _is_operator_doc(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and all(str(key).startswith("$") for key in condition)


def matches(document: Dict[str, Any], predicate: Dict[str, Any]) -> bool:
    for key, condition in (predicate or {}).items():
        if key == "$and":
            if not all(matches(document, part) for part in condition):
                return False
            continue
        if key == "$or":
            if not any(matches(document, part) for part in condition):
                return False
            continue
        if key.startswith("$"):
            raise ValueError(f"Unsupported top-level operator: {key}")
        value = get_path(document, key)
        if _is_operator_doc(condition):
            if not _match_operators(value, condition):
                return False
        elif not _equals(value, condition):
            return False
    return True


def sort_documents(documents: Iterable[Dict[str, Any]], sort: List[Tuple[str, int]]) -> List[Dict[str, Any]]:
    result = list(documents)
    # Stable sort applied from the least significant key.
    for field, direction in reversed(sort):
        present = [doc for doc in result if get_path(doc, field) not in (MISSING, None)]
        absent = [doc for doc in result if get_path(doc, field) in (MISSING, None)]
        present.sort(key=lambda doc: get_path(doc, field), reverse=direction < 0)
        # Missing values sort lowest, as in MongoDB.
        result = present + absent if direction < 0 else absent + present
    return result
