"""
Closed-grammar expression language used by bindings, policies and step guards.
"""
from .interpreter import (
    BUILTIN_FUNCTIONS,
    Expression,
    compile_expression,
    evaluate,
    evaluate_bool,
    stringify,
    truthy,
)
from .templates import condition_source, evaluate_condition, has_template, render_template, resolve_templates

__all__ = [
    "BUILTIN_FUNCTIONS",
    "Expression",
    "compile_expression",
    "evaluate",
    "evaluate_bool",
    "stringify",
    "truthy",
    "condition_source",
    "evaluate_condition",
    "has_template",
    "render_template",
    "resolve_templates",
]
