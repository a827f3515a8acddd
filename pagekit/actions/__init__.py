"""
Action Engine - ordered, guarded step graphs triggered by UI events.
"""
from .engine import ActionEngine, ActionInvocation, ActionMessage, InvocationState
from .steps import StepContext, StepHandler, StepRegistry, StepResult, default_step_registry
from .validation import check_rule, validate_widgets

__all__ = [
    "ActionEngine",
    "ActionInvocation",
    "ActionMessage",
    "InvocationState",
    "StepContext",
    "StepHandler",
    "StepRegistry",
    "StepResult",
    "default_step_registry",
    "check_rule",
    "validate_widgets",
]
