"""
pagekit - runtime for backend-configured user interfaces.

Pages arrive as declarative documents (widgets, datasources, actions) and are
interpreted at runtime: the Renderer walks the widget tree, the Binding
Resolver feeds props from datasources and local state, and the Action Engine
executes the step graphs that widget events trigger.
"""
from .core.config import ConfigManager, RuntimeConfig
from .core.errors import (
    ActionError,
    ConfigError,
    DataError,
    EngineFault,
    ExpressionError,
    OperationCancelled,
    PagekitError,
    ValidationError,
)
from .core.paths import UNSET
from .model.loader import load_page
from .model.page import PageConfig
from .providers import AuthContext, Providers
from .runtime import PageRuntime
from .widgets.registry import Placeholder, WidgetRegistry, WidgetRenderer

__version__ = "0.1.0"

__all__ = [
    "ConfigManager",
    "RuntimeConfig",
    "ActionError",
    "ConfigError",
    "DataError",
    "EngineFault",
    "ExpressionError",
    "OperationCancelled",
    "PagekitError",
    "ValidationError",
    "UNSET",
    "load_page",
    "PageConfig",
    "AuthContext",
    "Providers",
    "PageRuntime",
    "Placeholder",
    "WidgetRegistry",
    "WidgetRenderer",
]
