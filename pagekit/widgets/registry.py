"""
Widget Registry.

Maps widget type identifiers to renderer capabilities. Registries are built
explicitly and injected into the Renderer; there is no global registry.

Usage:
    registry = WidgetRegistry()
    registry.register("KPI", KpiRenderer(), display_name="KPI tile", category="charts")
    renderer = registry.lookup("KPI")
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from loguru import logger

if TYPE_CHECKING:
    from .renderer import NodeContext


@dataclass(frozen=True)
class Placeholder:
    """
    Inert UI node produced in place of a real widget.

    kind: 'unknown-type' | 'error' | 'config-error' | 'page-error'
    """
    kind: str
    widget_id: Optional[str] = None
    widget_type: Optional[str] = None
    message: str = ""


class WidgetRenderer(ABC):
    """
    Renderer capability for one widget type.
    """
    @abstractmethod
    def render(self, props: Dict[str, Any], node: 'NodeContext') -> Any:
        """Produce the UI node for a widget from its resolved props."""
        pass

    def render_error(self, message: str, node: 'NodeContext') -> Any:
        """UI node shown when the widget's datasource failed."""
        return Placeholder("error", node.widget.id, node.widget.type, message)


class FunctionRenderer(WidgetRenderer):
    """Adapts a plain `fn(props, node)` callable."""

    def __init__(self, func: Callable[[Dict[str, Any], 'NodeContext'], Any]):
        self.func = func

    def render(self, props, node):
        return self.func(props, node)

    def __eq__(self, other):
        return isinstance(other, FunctionRenderer) and other.func == self.func

    def __hash__(self):
        return hash(self.func)


class FallbackRenderer(WidgetRenderer):
    """Deterministic placeholder for types missing from the registry."""

    def render(self, props, node):
        return Placeholder(
            "unknown-type",
            node.widget.id,
            node.widget.type,
            f"Unknown widget type '{node.widget.type}'",
        )


@dataclass
class Registration:
    widget_type: str
    renderer: WidgetRenderer
    display_name: str = ""
    category: str = "general"
    metadata: Dict[str, Any] = field(default_factory=dict)


RendererLike = Union[WidgetRenderer, Callable[[Dict[str, Any], 'NodeContext'], Any]]


class WidgetRegistry:
    def __init__(self):
        self._registrations: Dict[str, Registration] = {}
        self.fallback = FallbackRenderer()

    def register(self, widget_type: str, renderer: RendererLike, display_name: str = "", category: str = "general", **metadata) -> bool:
        """
        Register a renderer for `widget_type`.

        Registering the same renderer again is a no-op. A different renderer
        replaces the previous one with a warning.

        Returns:
            True when the registry changed
        """
        if not isinstance(renderer, WidgetRenderer):
            if not callable(renderer):
                raise TypeError(f"Renderer for '{widget_type}' must be a WidgetRenderer or callable")
            renderer = FunctionRenderer(renderer)

        existing = self._registrations.get(widget_type)
        if existing is not None:
            if existing.renderer is renderer or existing.renderer == renderer:
                return False
            logger.warning(f"Widget type '{widget_type}' re-registered, replacing {type(existing.renderer).__name__}")

        self._registrations[widget_type] = Registration(
            widget_type,
            renderer,
            display_name or widget_type,
            category,
            dict(metadata),
        )
        logger.debug(f"Registered widget type '{widget_type}'")
        return True

    def unregister(self, widget_type: str) -> bool:
        return self._registrations.pop(widget_type, None) is not None

    def has(self, widget_type: str) -> bool:
        return widget_type in self._registrations

    def lookup(self, widget_type: str) -> WidgetRenderer:
        """Renderer for `widget_type`, or the fallback renderer."""
        registration = self._registrations.get(widget_type)
        return registration.renderer if registration else self.fallback

    def registration(self, widget_type: str) -> Optional[Registration]:
        return self._registrations.get(widget_type)

    def types(self, category: Optional[str] = None) -> List[str]:
        return [t for t, r in self._registrations.items() if category is None or r.category == category]

    def __len__(self) -> int:
        return len(self._registrations)

    def __contains__(self, widget_type: str) -> bool:
        return self.has(widget_type)
