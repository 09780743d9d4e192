"""Transformation catalog for data_transform nodes.

Each transform maps (value, params, context) to a new value. Transforms are
applied as a pipeline: every step consumes the previous step's result. Only
`calculate` reads the context; the rest are context-free.

Unknown transform types return their input unchanged.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from nodeflow.core.calculator import evaluate_arithmetic
from nodeflow.core.errors import TransformError
from nodeflow.core.expressions import get_nested_value, to_number, to_text

logger = logging.getLogger(__name__)

TransformFunc = Callable[[Any, dict[str, Any], dict[str, Any]], Any]


def format_timestamp(moment: datetime) -> str:
    """Canonical timestamp string: UTC, millisecond precision, Z suffix."""
    moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Numbers are epoch milliseconds
        parsed = datetime.fromtimestamp(value / 1000, tz=UTC)
    elif isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip())
    else:
        raise ValueError(f"cannot interpret {value!r} as a date")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_date(value: Any, params: dict[str, Any], context: dict[str, Any]) -> str:
    try:
        return format_timestamp(_parse_date(value))
    except (ValueError, OverflowError, OSError) as e:
        raise TransformError("format_date", str(e)) from e


def _calculate(value: Any, params: dict[str, Any], context: dict[str, Any]) -> int | float:
    expression = params.get("expression") or ""
    return evaluate_arithmetic(expression, lambda name: get_nested_value(context, name))


def _concatenate(value: Any, params: dict[str, Any], context: dict[str, Any]) -> str:
    parts = params.get("parts") or []
    separator = params.get("separator") or ""
    return to_text(separator).join(to_text(part) for part in parts)


def _extract(value: Any, params: dict[str, Any], context: dict[str, Any]) -> str | None:
    pattern = params.get("pattern") or ""
    try:
        match = re.search(pattern, to_text(value))
    except re.error as e:
        raise TransformError("extract", f"invalid pattern {pattern!r}: {e}") from e
    return match.group(0) if match else None


def _round(value: Any, params: dict[str, Any], context: dict[str, Any]) -> int | float:
    number = to_number(value)
    if number is None:
        raise TransformError("round", f"value {value!r} is not numeric")

    raw_places = params.get("decimalPlaces") or 0
    try:
        places = int(raw_places)
    except (TypeError, ValueError) as e:
        raise TransformError("round", f"decimalPlaces {raw_places!r} is not an integer") from e
    try:
        # Halves round away from zero: 2.5 -> 3, 1.005 (2 places) -> 1.01
        quantized = Decimal(str(number)).quantize(
            Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP
        )
    except InvalidOperation as e:
        raise TransformError("round", str(e)) from e

    if quantized == quantized.to_integral_value():
        return int(quantized)
    return float(quantized)


TRANSFORMS: dict[str, TransformFunc] = {
    "format_date": _format_date,
    "calculate": _calculate,
    "concatenate": _concatenate,
    "extract": _extract,
    "uppercase": lambda value, params, context: to_text(value).upper(),
    "lowercase": lambda value, params, context: to_text(value).lower(),
    "trim": lambda value, params, context: to_text(value).strip(),
    "round": _round,
}


def apply_transformation(
    value: Any,
    transform_type: str,
    params: dict[str, Any] | None,
    context: dict[str, Any],
) -> Any:
    """Apply one named transform. Unknown types pass the value through."""
    transform = TRANSFORMS.get(transform_type)
    if transform is None:
        logger.debug(f"Unknown transform type '{transform_type}', passing value through")
        return value
    return transform(value, params or {}, context)


def apply_pipeline(
    value: Any,
    transformations: list[tuple[str, dict[str, Any]]],
    context: dict[str, Any],
) -> Any:
    """Fold a value through (type, params) steps in declared order."""
    for transform_type, params in transformations:
        value = apply_transformation(value, transform_type, params, context)
    return value
