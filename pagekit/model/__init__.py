"""
Config Model - typed descriptors for the page document.
"""
from .loader import INVALID_WIDGET_TYPE, PageLoader, PageLoadResult, load_page
from .page import (
    STEP_KINDS,
    ActionDescriptor,
    Binding,
    CachePolicy,
    DatasourceDescriptor,
    EventBinding,
    HttpConfig,
    PageConfig,
    Policy,
    RetryPolicy,
    Step,
    Transform,
    ValidationRule,
    WebSocketConfig,
    WidgetDescriptor,
)

__all__ = [
    "INVALID_WIDGET_TYPE",
    "PageLoader",
    "PageLoadResult",
    "load_page",
    "STEP_KINDS",
    "ActionDescriptor",
    "Binding",
    "CachePolicy",
    "DatasourceDescriptor",
    "EventBinding",
    "HttpConfig",
    "PageConfig",
    "Policy",
    "RetryPolicy",
    "Step",
    "Transform",
    "ValidationRule",
    "WebSocketConfig",
    "WidgetDescriptor",
]
