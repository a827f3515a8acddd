"""
Widget Registry & Renderer.
"""
from .policy import PolicyDecision, PolicyEvaluator
from .registry import FallbackRenderer, FunctionRenderer, Placeholder, Registration, WidgetRegistry, WidgetRenderer
from .renderer import NodeContext, RenderedNode, RenderedPage, Renderer

__all__ = [
    "PolicyDecision",
    "PolicyEvaluator",
    "FallbackRenderer",
    "FunctionRenderer",
    "Placeholder",
    "Registration",
    "WidgetRegistry",
    "WidgetRenderer",
    "NodeContext",
    "RenderedNode",
    "RenderedPage",
    "Renderer",
]
