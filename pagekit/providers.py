"""
Protocol definitions for the runtime's external collaborators.

The host application supplies authentication, navigation, notification and
dialog capabilities. Any object with the right methods qualifies; the
in-memory implementations below serve headless hosts and tests.

Usage:
    providers = Providers(auth=StaticAuthProvider(AuthContext(roles=["admin"])))
    runtime = PageRuntime(registry, providers=providers)
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Protocol, Tuple, runtime_checkable

from loguru import logger

from .core.events import Signal


@dataclass(frozen=True)
class AuthContext:
    user: Optional[Dict[str, Any]] = None
    roles: FrozenSet[str] = frozenset()
    permissions: FrozenSet[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "roles", frozenset(self.roles))
        object.__setattr__(self, "permissions", frozenset(self.permissions))

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def as_scope(self) -> Dict[str, Any]:
        """Representation exposed to expressions as `user`."""
        scope = dict(self.user or {})
        scope["roles"] = sorted(self.roles)
        scope["permissions"] = sorted(self.permissions)
        scope["authenticated"] = self.user is not None
        return scope


def auth_functions(context: AuthContext) -> Dict[str, Callable]:
    """Expression functions bound to the current user."""
    return {
        "hasRole": context.has_role,
        "hasPermission": context.has_permission,
    }


@runtime_checkable
class AuthProvider(Protocol):
    def context(self) -> AuthContext:
        ...


@runtime_checkable
class NavigationProvider(Protocol):
    def navigate(self, target: str, params: Dict[str, Any]) -> None:
        """Fire-and-forget route change."""
        ...


@runtime_checkable
class NotificationProvider(Protocol):
    def notify(self, kind: str, message: str) -> None:
        """kind: 'info' | 'success' | 'warning' | 'error'"""
        ...


@runtime_checkable
class DialogProvider(Protocol):
    def open_dialog(self, dialog: str, params: Dict[str, Any]) -> Any:
        """May return an awaitable; its result becomes the step output."""
        ...


# =============================================================================
# In-memory implementations
# =============================================================================

class StaticAuthProvider:
    def __init__(self, context: Optional[AuthContext] = None):
        self._context = context or AuthContext()

    def context(self) -> AuthContext:
        return self._context

    def set_context(self, context: AuthContext):
        self._context = context


class RecordingNavigator:
    """Keeps navigation history and emits `on_navigate(target, params)`."""

    def __init__(self):
        self.history: List[Tuple[str, Dict[str, Any]]] = []
        self.on_navigate = Signal("Navigate")

    @property
    def current(self) -> Optional[str]:
        return self.history[-1][0] if self.history else None

    def navigate(self, target: str, params: Dict[str, Any]) -> None:
        logger.info(f"Navigate -> {target}")
        self.history.append((target, dict(params)))
        self.on_navigate.emit(target, params)


class NotificationLog:
    def __init__(self):
        self.messages: List[Tuple[str, str]] = []
        self.on_notify = Signal("Notify")

    def notify(self, kind: str, message: str) -> None:
        log = logger.warning if kind == "error" else logger.info
        log(f"[{kind}] {message}")
        self.messages.append((kind, message))
        self.on_notify.emit(kind, message)


class ScriptedDialogs:
    """Answers dialogs from a preset table (dialog id -> result)."""

    def __init__(self, results: Optional[Dict[str, Any]] = None):
        self.results = dict(results or {})
        self.opened: List[Tuple[str, Dict[str, Any]]] = []

    def open_dialog(self, dialog: str, params: Dict[str, Any]) -> Any:
        self.opened.append((dialog, dict(params)))
        return self.results.get(dialog)


@dataclass
class Providers:
    auth: AuthProvider = field(default_factory=StaticAuthProvider)
    navigation: NavigationProvider = field(default_factory=RecordingNavigator)
    notifications: NotificationProvider = field(default_factory=NotificationLog)
    dialogs: DialogProvider = field(default_factory=ScriptedDialogs)
