"""
Field validation rules.

Values are read from local state at each widget's `state_path`. Empty values
only fail the `required` rule; every other rule treats them as valid.
"""
import re
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..core.errors import ConfigError
from ..core.paths import UNSET
from ..model.page import ValidationRule, WidgetDescriptor

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_MESSAGES = {
    "required": "This field is required",
    "pattern": "Invalid format",
    "min": "Must be at least {value}",
    "max": "Must be at most {value}",
    "minLength": "Must be at least {value} characters",
    "maxLength": "Must be at most {value} characters",
    "email": "Invalid email address",
    "compare": "Does not match {other}",
}

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
}


def is_empty(value: Any) -> bool:
    if value is UNSET or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _message(rule: ValidationRule) -> str:
    if rule.message:
        return rule.message
    return DEFAULT_MESSAGES[rule.rule].format(value=rule.value, other=rule.other)


def check_rule(rule: ValidationRule, value: Any, lookup: Callable[[str], Any]) -> Optional[str]:
    """
    Check one rule. Returns the error message, or None when the value passes.

    Args:
        lookup: Returns the current value of another widget by id (compare rule)
    """
    if rule.rule == "required":
        return _message(rule) if is_empty(value) else None
    if is_empty(value):
        return None

    if rule.rule == "pattern":
        try:
            matched = re.fullmatch(str(rule.value), str(value)) is not None
        except re.error as e:
            raise ConfigError(f"Invalid validation pattern {rule.value!r}: {e}") from e
        return None if matched else _message(rule)

    if rule.rule == "email":
        return None if EMAIL_PATTERN.match(str(value)) else _message(rule)

    if rule.rule in ("min", "max"):
        number, bound = _number(value), _number(rule.value)
        if number is None:
            return rule.message or "Must be a number"
        if bound is None:
            raise ConfigError(f"{rule.rule} rule needs a numeric value, got {rule.value!r}")
        ok = number >= bound if rule.rule == "min" else number <= bound
        return None if ok else _message(rule)

    if rule.rule in ("minLength", "maxLength"):
        length = len(value) if isinstance(value, (str, list, tuple, dict)) else len(str(value))
        bound = int(rule.value)
        ok = length >= bound if rule.rule == "minLength" else length <= bound
        return None if ok else _message(rule)

    # compare
    other = lookup(rule.other)
    left, right = value, other
    if rule.operator not in ("eq", "ne"):
        left, right = _number(value), _number(other)
        if left is None or right is None:
            return _message(rule)
    try:
        ok = _OPERATORS[rule.operator](left, right)
    except TypeError:
        ok = False
    return None if ok else _message(rule)


def validate_widgets(widgets: Iterable[WidgetDescriptor], value_of: Callable[[WidgetDescriptor], Any], widget_by_id: Callable[[str], Optional[WidgetDescriptor]]) -> Dict[str, List[str]]:
    """
    Run every rule of every widget.

    Returns:
        Widget id -> messages, only for widgets with failures
    """
    def lookup(widget_id: str) -> Any:
        other = widget_by_id(widget_id)
        return value_of(other) if other is not None else UNSET

    errors: Dict[str, List[str]] = {}
    for widget in widgets:
        value = value_of(widget)
        messages = [m for m in (check_rule(rule, value, lookup) for rule in widget.validation) if m]
        if messages:
            errors[widget.id] = messages
    return errors
