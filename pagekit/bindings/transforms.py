"""
Declarative transform pipeline.

Transforms are data, never code: `format`, `map` and `filter` are the only
operations, and filter predicates run through the expression interpreter.
UNSET flows through every transform unchanged.
"""
from datetime import date, datetime, timezone
from typing import Any, Callable, List, Mapping, Optional

from ..core.errors import DataError
from ..core.paths import UNSET, get_path
from ..expressions import evaluate_condition, render_template, stringify
from ..model.page import Transform

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥"}


def _as_number(value: Any, transform: Transform) -> float:
    if isinstance(value, bool):
        raise DataError(f"Cannot format boolean as {transform.style}", kind="transform")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value) if any(c in value for c in ".eE") else int(value)
        except ValueError:
            pass
    raise DataError(f"Cannot format {value!r} as {transform.style}", kind="transform")


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, ValueError, OSError) as e:
            raise DataError(f"Timestamp {value!r} is out of range", kind="transform") from e
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
    raise DataError(f"Cannot format {value!r} as date", kind="transform")


def format_value(value: Any, transform: Transform, scope: Optional[Mapping[str, Any]] = None, functions=None) -> Any:
    if value is UNSET or value is None:
        return value
    style = transform.style

    if style == "number":
        number = _as_number(value, transform)
        decimals = transform.decimals if transform.decimals is not None else (0 if isinstance(number, int) else 2)
        return f"{number:,.{decimals}f}"

    if style == "currency":
        number = _as_number(value, transform)
        decimals = 2 if transform.decimals is None else transform.decimals
        symbol = CURRENCY_SYMBOLS.get(transform.currency.upper(), f"{transform.currency.upper()} ")
        sign = "-" if number < 0 else ""
        return f"{sign}{symbol}{abs(number):,.{decimals}f}"

    if style == "percent":
        number = _as_number(value, transform)
        decimals = transform.decimals or 0
        return f"{number * 100:.{decimals}f}%"

    if style == "date":
        return _as_datetime(value).strftime(transform.date_format)

    # template
    local = dict(scope or {})
    local["value"] = value
    return stringify(render_template(transform.template, local, functions))


def map_value(value: Any, transform: Transform) -> Any:
    if value is UNSET or value is None:
        return value

    def project(item):
        if transform.path:
            result = get_path(item, transform.path)
            return None if result is UNSET else result
        projected = {}
        for target, source in transform.fields.items():
            result = get_path(item, source)
            projected[target] = None if result is UNSET else result
        return projected

    if isinstance(value, list):
        return [project(item) for item in value]
    return project(value)


def filter_value(value: Any, transform: Transform, scope: Optional[Mapping[str, Any]] = None, functions=None) -> Any:
    if value is UNSET or value is None:
        return value
    if not isinstance(value, list):
        raise DataError(f"filter expects a list, got {type(value).__name__}", kind="transform")
    base = dict(scope or {})
    kept = []
    for index, item in enumerate(value):
        base["item"] = item
        base["index"] = index
        if evaluate_condition(transform.where, base, functions):
            kept.append(item)
    return kept


def apply_transforms(
    value: Any,
    transforms: List[Transform],
    scope: Optional[Mapping[str, Any]] = None,
    functions: Optional[Mapping[str, Callable]] = None,
) -> Any:
    """
    Run `value` through the ordered pipeline.

    Raises:
        DataError: kind 'transform' when a value does not fit an operation
    """
    for transform in transforms:
        if transform.op == "format":
            value = format_value(value, transform, scope, functions)
        elif transform.op == "map":
            value = map_value(value, transform)
        else:
            value = filter_value(value, transform, scope, functions)
    return value
