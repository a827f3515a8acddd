"""
Template interpolation with `{{ expression }}` placeholders.

    "{{ state.user.id }}"            -> raw value (any type)
    "/api/users/{{ params.id }}"     -> string with the value substituted
    "{{ state.age }} >= 18"          -> normalized to "(state.age) >= 18" for conditions
"""
import re
from typing import Any, Callable, Mapping, Optional

from ..core.paths import UNSET
from .interpreter import evaluate, evaluate_bool, stringify

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def has_template(value: Any) -> bool:
    return isinstance(value, str) and TEMPLATE_PATTERN.search(value) is not None


def render_template(template: str, scope: Mapping[str, Any], functions: Optional[Mapping[str, Callable]] = None) -> Any:
    """
    Resolve placeholders in `template`.

    A template made of a single placeholder returns the raw value, so
    "{{ state.items }}" yields the list itself rather than its string form.
    """
    if not isinstance(template, str):
        return template
    single = TEMPLATE_PATTERN.fullmatch(template.strip())
    if single:
        return evaluate(single.group(1), scope, functions)
    return TEMPLATE_PATTERN.sub(lambda m: stringify(evaluate(m.group(1), scope, functions)), template)


def resolve_templates(value: Any, scope: Mapping[str, Any], functions: Optional[Mapping[str, Callable]] = None, unset_as: Any = None) -> Any:
    """
    Recursively resolve templates inside dicts, lists and strings.

    Args:
        unset_as: Replacement for placeholders that resolve to UNSET
    """
    if isinstance(value, str):
        result = render_template(value, scope, functions)
        return unset_as if result is UNSET else result
    if isinstance(value, list):
        return [resolve_templates(item, scope, functions, unset_as) for item in value]
    if isinstance(value, dict):
        return {key: resolve_templates(item, scope, functions, unset_as) for key, item in value.items()}
    return value


def condition_source(expression: str) -> str:
    """
    Normalize a condition that may use placeholder syntax into a plain expression.
    """
    stripped = expression.strip()
    single = TEMPLATE_PATTERN.fullmatch(stripped)
    if single:
        return single.group(1)
    return TEMPLATE_PATTERN.sub(lambda m: f"({m.group(1)})", stripped)


def evaluate_condition(condition: Any, scope: Mapping[str, Any], functions: Optional[Mapping[str, Callable]] = None) -> bool:
    """
    Evaluate a guard or policy. Accepts bools, None (always true) and
    expressions with or without placeholder syntax.
    """
    if isinstance(condition, str):
        condition = condition_source(condition)
    return evaluate_bool(condition, scope, functions)
