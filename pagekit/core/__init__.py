"""
Core building blocks shared by every runtime system.
"""
from .base_system import BaseSystem
from .cancellation import CancellationScope, CancellationToken
from .config import ConfigManager, RuntimeConfig
from .errors import (
    ActionError,
    ConfigError,
    DataError,
    EngineFault,
    ExpressionError,
    OperationCancelled,
    PagekitError,
    ValidationError,
)
from .events import Signal
from .locator import ServiceLocator
from .logging import setup_logging
from .paths import UNSET, get_path, is_unset, set_path
from .state import FieldErrors, LocalStateStore

__all__ = [
    "BaseSystem",
    "CancellationScope",
    "CancellationToken",
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
    "Signal",
    "ServiceLocator",
    "setup_logging",
    "UNSET",
    "get_path",
    "is_unset",
    "set_path",
    "FieldErrors",
    "LocalStateStore",
]
