"""Property value validation and strict comparison.

Property bags hold JSON-compatible values only. Comparisons never coerce
across kinds: a number never equals a string, and a boolean is not a number.
"""

import copy
import math
from typing import Any, Dict, Mapping, Optional

from ..errors import ValidationError
from ..types import Properties, PropertyValue


# Kind tags for the property value union
NULL = "null"
BOOLEAN = "boolean"
NUMBER = "number"
STRING = "string"
LIST = "list"
MAP = "map"


def kind_of(value: Any) -> str:
    """Return the kind tag of a property value."""
    if value is None:
        return NULL
    # bool is a subclass of int, check it first
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, (int, float)):
        return NUMBER
    if isinstance(value, str):
        return STRING
    if isinstance(value, (list, tuple)):
        return LIST
    if isinstance(value, Mapping):
        return MAP
    raise ValidationError(
        f"Unsupported property value type: {type(value).__name__}",
        details={"type": type(value).__name__},
    )


def validate_value(value: Any, path: str = "") -> PropertyValue:
    """Validate a property value and return a detached normalized copy."""
    kind = kind_of(value)
    if kind == NUMBER and isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"Property '{path}' must be a finite number", details={"property": path})
    if kind == LIST:
        return [validate_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if kind == MAP:
        return validate_properties(value, prefix=path)
    return value


def validate_properties(properties: Optional[Mapping[str, Any]], prefix: str = "") -> Properties:
    """Validate a property bag and return a detached copy of it."""
    if properties is None:
        return {}
    if not isinstance(properties, Mapping):
        raise ValidationError("Properties must be a JSON object", details={"property": prefix or None})

    validated: Dict[str, PropertyValue] = {}
    for key, value in properties.items():
        if not isinstance(key, str):
            raise ValidationError(f"Property keys must be strings, got {key!r}")
        path = f"{prefix}.{key}" if prefix else key
        validated[key] = validate_value(value, path)
    return validated


def values_equal(left: Any, right: Any) -> bool:
    """Compare two property values without cross-kind coercion."""
    left_kind, right_kind = kind_of(left), kind_of(right)
    if left_kind != right_kind:
        return False
    if left_kind == LIST:
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if left_kind == MAP:
        return left.keys() == right.keys() and all(values_equal(left[k], right[k]) for k in left)
    return left == right


def values_ordered(left: Any, right: Any) -> Optional[int]:
    """Order two values of the same scalar kind.

    Returns -1, 0 or 1, or None when the values are not comparable
    (different kinds, or kinds without a natural order).
    """
    left_kind, right_kind = kind_of(left), kind_of(right)
    if left_kind != right_kind or left_kind not in (NUMBER, STRING):
        return None
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def merge_properties(current: Properties, patch: Mapping[str, Any], unset=()) -> Properties:
    """Apply a merge patch: supplied keys overwrite, listed keys are removed."""
    merged = copy.deepcopy(current)
    merged.update(validate_properties(patch))
    for key in unset:
        merged.pop(key, None)
    return merged
