"""Expression helpers shared by the node handlers.

Three pure helpers:
- get_nested_value: dotted-path lookup ("a.b.c") into the context or any value
- evaluate_condition: one operator applied to two operands, never raises
- interpolate: "{field}" placeholder substitution in strings

NO arbitrary code execution - conditions use the fixed operator catalog below.
"""

import json
import math
import re
from typing import Any, Literal

ConditionOperator = Literal[
    "equals",
    "notEquals",
    "greaterThan",
    "lessThan",
    "greaterOrEqual",
    "lessOrEqual",
    "contains",
    "notContains",
    "startsWith",
    "endsWith",
]

# Dotted names inside braces: {id}, {user.profile.name}, {items.0}
PLACEHOLDER_PATTERN = re.compile(r"\{([\w.]+)\}")


def get_nested_value(obj: Any, path: str | None) -> Any:
    """Resolve a dotted path against a mapping.

    An empty path returns the object itself. Missing keys, out-of-range list
    indexes and lookups through scalars all resolve to None.
    """
    if not path:
        return obj

    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def to_text(value: Any) -> str:
    """Render a JSON value as text the way the graph authoring tool displays it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def to_number(value: Any) -> float | int | None:
    """Coerce a scalar to a number. Returns None when it is not numeric."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            number = float(text)
        except ValueError:
            return None
        if math.isnan(number):
            return None
        return int(number) if number.is_integer() and "." not in text else number
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """Coercing equality used by the equals/notEquals operators.

    - null only equals null
    - booleans compare as 0/1 against numbers and numeric strings
    - a number and a string compare numerically when the string is numeric
    - everything else uses plain equality
    """
    if left is None or right is None:
        return left is None and right is None

    if isinstance(left, bool) and isinstance(right, bool):
        return left == right

    left_is_scalar = isinstance(left, (bool, int, float))
    right_is_scalar = isinstance(right, (bool, int, float))

    if left_is_scalar and (right_is_scalar or isinstance(right, str)):
        right_number = to_number(right)
        return right_number is not None and to_number(left) == right_number
    if right_is_scalar and isinstance(left, str):
        left_number = to_number(left)
        return left_number is not None and left_number == to_number(right)

    return left == right


def _ordering_operands(left: Any, right: Any) -> tuple[Any, Any]:
    """Align operand types for <, >, <=, >=.

    A number compared with a numeric string compares numerically.
    """
    if isinstance(left, (int, float)) and isinstance(right, str):
        number = to_number(right)
        if number is not None:
            return left, number
    if isinstance(right, (int, float)) and isinstance(left, str):
        number = to_number(left)
        if number is not None:
            return number, right
    return left, right


def _contains(value: Any, expected: Any) -> bool:
    if isinstance(value, list):
        return any(loose_equals(item, expected) for item in value)
    if isinstance(value, dict):
        return to_text(expected) in value
    return to_text(expected) in to_text(value)


def evaluate_condition(value: Any, operator: str | None, expected: Any) -> bool:
    """
    Evaluate `value <operator> expected`.

    Type mismatches, missing values and unknown operators return False
    instead of raising.
    """
    try:
        if operator == "equals":
            return loose_equals(value, expected)
        elif operator == "notEquals":
            return not loose_equals(value, expected)
        elif operator in ("greaterThan", "lessThan", "greaterOrEqual", "lessOrEqual"):
            if value is None or expected is None:
                return False
            left, right = _ordering_operands(value, expected)
            if operator == "greaterThan":
                return left > right
            elif operator == "lessThan":
                return left < right
            elif operator == "greaterOrEqual":
                return left >= right
            return left <= right
        elif operator == "contains":
            return _contains(value, expected)
        elif operator == "notContains":
            return not _contains(value, expected)
        elif operator == "startsWith":
            return to_text(value).startswith(to_text(expected))
        elif operator == "endsWith":
            return to_text(value).endswith(to_text(expected))
        else:
            return False
    except (TypeError, AttributeError):
        return False


def interpolate(template: str, context: dict[str, Any]) -> str:
    """Replace {name} placeholders with context values.

    Placeholders that resolve to nothing are left verbatim, so "{x}/{y}" with
    only x set becomes "a/{y}".
    """

    def _replace(match: re.Match) -> str:
        value = get_nested_value(context, match.group(1))
        if value is None:
            return match.group(0)
        return to_text(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)
