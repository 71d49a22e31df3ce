# Mango_Query.py
# Description: Selector matching, collation and index planning for the local document store.
#
"""
Mango_Query.py
--------------

Evaluates CouchDB-style "Mango" selectors against plain Python documents.

- `matches_selector()` decides whether a document satisfies a selector.
- `collate_key()` / `sort_documents()` order documents the way a CouchDB view does
  (null < false < true < numbers < strings < arrays < objects).
- `plan_query()` picks the declared index that best serves a selector and returns the
  equality constraints that can be pushed down into SQL.

The store never relies on the index for correctness: every candidate row is re-checked
with `matches_selector()`.
"""
# Imports
import logging
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple
#
# Third-Party Libraries
#
# Local Imports
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

_MISSING = object()
_SQLITE_INT_MIN, _SQLITE_INT_MAX = -2 ** 63, 2 ** 63 - 1

_CONDITION_OPERATORS = {
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists", "$type",
    "$size", "$mod", "$regex", "$elemMatch", "$allMatch", "$all", "$not",
}


class SelectorError(ValueError):
    """Raised for malformed selectors or unknown operators."""
    pass


# --- Field access ---

def get_field(doc: Dict[str, Any], path: str) -> Any:
    """Resolves a dotted path in a document. Returns the `_MISSING` sentinel when absent."""
    current: Any = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


# --- Collation ---

def collate_key(value: Any) -> Tuple:
    """Returns a sortable key implementing CouchDB view collation."""
    if value is None or value is _MISSING:
        return (0,)
    if value is False:
        return (1,)
    if value is True:
        return (2,)
    if isinstance(value, (int, float)):
        return (3, value)
    if isinstance(value, str):
        return (4, value)
    if isinstance(value, list):
        return (5, tuple(collate_key(v) for v in value))
    if isinstance(value, dict):
        return (6, tuple((k, collate_key(v)) for k, v in value.items()))
    return (7, str(value))


def normalize_sort(sort: Optional[List[Any]]) -> List[Tuple[str, str]]:
    """Turns `["a", {"b": "desc"}]` into `[("a", "asc"), ("b", "desc")]`."""
    normalized: List[Tuple[str, str]] = []
    for item in sort or []:
        if isinstance(item, str):
            normalized.append((item, "asc"))
        elif isinstance(item, dict) and len(item) == 1:
            field, direction = next(iter(item.items()))
            direction = str(direction).lower()
            if direction not in ("asc", "desc"):
                raise SelectorError(f"Invalid sort direction '{direction}' for field '{field}'.")
            normalized.append((field, direction))
        else:
            raise SelectorError(f"Invalid sort specification: {item!r}")
    return normalized


def sort_documents(docs: List[Dict[str, Any]], sort: Optional[List[Any]]) -> List[Dict[str, Any]]:
    """Stable multi-key sort using collation order. Docs are tie-broken by `_id`."""
    ordered = sorted(docs, key=lambda d: collate_key(d.get("_id")))
    for field, direction in reversed(normalize_sort(sort)):
        ordered.sort(key=lambda d: collate_key(get_field(d, field)), reverse=(direction == "desc"))
    return ordered


# --- Selector matching ---

@lru_cache(maxsize=256)
def _cached_regex(pattern: str) -> "re.Pattern[str]":
    try:
        return re.compile(pattern)
    except re.error as e:
        raise SelectorError(f"Invalid $regex pattern '{pattern}': {e}") from e


def _compile_regex(pattern: Any) -> "re.Pattern[str]":
    if not isinstance(pattern, str):
        raise SelectorError(f"$regex requires a string pattern, got {pattern!r}")
    return _cached_regex(pattern)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _values_equal(a: Any, b: Any) -> bool:
    # Keep True/1 distinct the way JSON does
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    return a == b


def _compare(value: Any, operand: Any) -> int:
    left, right = collate_key(value), collate_key(operand)
    return (left > right) - (left < right)


def _match_condition(value: Any, operator: str, operand: Any) -> bool:
    if operator == "$exists":
        return (value is not _MISSING) == bool(operand)
    if operator == "$ne":
        return value is _MISSING or not _values_equal(value, operand)
    if operator == "$nin":
        if not isinstance(operand, list):
            raise SelectorError("$nin requires an array operand.")
        return value is _MISSING or not any(_values_equal(value, o) for o in operand)
    if operator == "$not":
        return not _match_field(value, operand)
    if value is _MISSING:
        return False

    if operator == "$eq":
        return _values_equal(value, operand)
    if operator == "$gt":
        return _compare(value, operand) > 0
    if operator == "$gte":
        return _compare(value, operand) >= 0
    if operator == "$lt":
        return _compare(value, operand) < 0
    if operator == "$lte":
        return _compare(value, operand) <= 0
    if operator == "$in":
        if not isinstance(operand, list):
            raise SelectorError("$in requires an array operand.")
        return any(_values_equal(value, o) for o in operand)
    if operator == "$type":
        return _type_name(value) == operand
    if operator == "$size":
        return isinstance(value, list) and len(value) == operand
    if operator == "$mod":
        if not (isinstance(operand, list) and len(operand) == 2):
            raise SelectorError("$mod requires [divisor, remainder].")
        return isinstance(value, int) and not isinstance(value, bool) and value % operand[0] == operand[1]
    if operator == "$regex":
        return isinstance(value, str) and _compile_regex(operand).search(value) is not None
    if operator == "$elemMatch":
        return isinstance(value, list) and any(_match_field(v, operand) for v in value)
    if operator == "$allMatch":
        return isinstance(value, list) and bool(value) and all(_match_field(v, operand) for v in value)
    if operator == "$all":
        if not isinstance(operand, list):
            raise SelectorError("$all requires an array operand.")
        return isinstance(value, list) and all(any(_values_equal(v, o) for v in value) for o in operand)
    raise SelectorError(f"Unknown operator '{operator}'.")


def _match_field(value: Any, condition: Any) -> bool:
    """Matches a single (already resolved) value against a field condition."""
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        return all(_match_condition(value, op, operand) for op, operand in condition.items())
    if isinstance(condition, dict) and condition:
        # Nested object selector: {"address": {"city": "Paris"}}
        if not isinstance(value, dict):
            return False
        return matches_selector(value, condition)
    return value is not _MISSING and _values_equal(value, condition)


def matches_selector(doc: Dict[str, Any], selector: Dict[str, Any]) -> bool:
    """Returns True when `doc` satisfies every clause of `selector`."""
    if not isinstance(selector, dict):
        raise SelectorError(f"Selector must be an object, got {type(selector).__name__}.")
    for key, condition in selector.items():
        if key == "$and":
            if not all(matches_selector(doc, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches_selector(doc, sub) for sub in condition):
                return False
        elif key == "$nor":
            if any(matches_selector(doc, sub) for sub in condition):
                return False
        elif key == "$not":
            if matches_selector(doc, condition):
                return False
        elif key.startswith("$"):
            raise SelectorError(f"Unknown top-level operator '{key}'.")
        else:
            if not _match_field(get_field(doc, key), condition):
                return False
    return True


def validate_selector(selector: Dict[str, Any]) -> None:
    """Walks a selector and raises SelectorError for unknown operators."""
    if not isinstance(selector, dict):
        raise SelectorError("Selector must be an object.")
    for key, condition in selector.items():
        if key in ("$and", "$or", "$nor"):
            if not isinstance(condition, list):
                raise SelectorError(f"{key} requires an array of selectors.")
            for sub in condition:
                validate_selector(sub)
        elif key == "$not":
            validate_selector(condition)
        elif key.startswith("$"):
            raise SelectorError(f"Unknown top-level operator '{key}'.")
        elif isinstance(condition, dict):
            for op, operand in condition.items():
                if op.startswith("$"):
                    if op not in _CONDITION_OPERATORS:
                        raise SelectorError(f"Unknown operator '{op}'.")
                    if op in ("$elemMatch", "$allMatch", "$not") and isinstance(operand, dict):
                        _validate_field_condition(operand)
                    if op == "$regex":
                        _compile_regex(operand)


def _validate_field_condition(condition: Dict[str, Any]) -> None:
    if all(k.startswith("$") for k in condition):
        for op in condition:
            if op not in _CONDITION_OPERATORS:
                raise SelectorError(f"Unknown operator '{op}'.")
    else:
        validate_selector(condition)


# --- Index planning ---

def equality_constraints(selector: Dict[str, Any]) -> Dict[str, Any]:
    """
    Collects top-level `field == scalar` constraints that SQL can pre-filter on.

    Only strings and non-boolean numbers qualify, and integers only within SQLite's
    64-bit range. Underscore fields such as `_id` live outside the stored body and
    are never pushed down. Anything else is left to the Python matcher.
    """
    constraints: Dict[str, Any] = {}

    def _collect(sel: Dict[str, Any]) -> None:
        for key, condition in sel.items():
            if key == "$and" and isinstance(condition, list):
                for sub in condition:
                    if isinstance(sub, dict):
                        _collect(sub)
                continue
            if key.startswith("$") or key.startswith("_"):
                continue
            value = _MISSING
            if isinstance(condition, dict) and "$eq" in condition:
                value = condition["$eq"]
            elif not isinstance(condition, (dict, list)):
                value = condition
            if isinstance(value, int) and not isinstance(value, bool) and not _SQLITE_INT_MIN <= value <= _SQLITE_INT_MAX:
                continue
            if isinstance(value, str) or (isinstance(value, (int, float)) and not isinstance(value, bool)):
                constraints.setdefault(key, value)

    _collect(selector)
    return constraints


def plan_query(selector: Dict[str, Any], indexes: List[Dict[str, Any]],
               use_index: Optional[str] = None) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
    """
    Chooses an index for a selector.

    Args:
        selector: The Mango selector.
        indexes: Declared indexes as `{"name": str, "fields": [str, ...]}`.
        use_index: Optional index name to force.

    Returns:
        `(index, pushdown)` where `index` is the chosen definition (or None for a full
        scan) and `pushdown` maps the indexed fields to the equality values to filter on.
    """
    constraints = equality_constraints(selector)
    best: Optional[Dict[str, Any]] = None
    best_pushdown: Dict[str, Any] = {}

    for index in indexes:
        if use_index and index["name"] != use_index:
            continue
        pushdown: Dict[str, Any] = {}
        for field in index["fields"]:
            if field not in constraints:
                break
            pushdown[field] = constraints[field]
        if not pushdown:
            continue
        if best is None or len(pushdown) > len(best_pushdown):
            best, best_pushdown = index, pushdown

    if use_index and best is None:
        logger.warning(f"Requested index '{use_index}' cannot serve this selector; falling back to a full scan.")
    return best, best_pushdown

#
# End of Mango_Query.py
########################################################################################################################
