"""
Page-level local state and inline field errors.

The state store is shared by every running action on a page. Writes are
last-write-wins per path: concurrent writes to the same path are not merged.
"""
import copy
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from .events import Signal
from .paths import UNSET, delete_path, get_path, set_path, split_path


class LocalStateStore:
    """
    Nested dict addressed by dot paths.

    Signals:
        on_changed(path, value): emitted after every committed write
    """
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._initial = copy.deepcopy(initial or {})
        self._data: Dict[str, Any] = copy.deepcopy(self._initial)
        self._writers: Dict[str, str] = {}
        self.on_changed = Signal("StateChanged")

    def load(self, initial: Optional[Dict[str, Any]] = None):
        """Replace the whole store (page change); `initial` becomes the reset target."""
        self._initial = copy.deepcopy(initial or {})
        self._data = copy.deepcopy(self._initial)
        self._writers.clear()
        self.on_changed.emit("", self._data)

    def get(self, path: Optional[str] = None, default: Any = UNSET) -> Any:
        if not path:
            return self._data
        value = get_path(self._data, path)
        return default if value is UNSET else value

    def has(self, path: str) -> bool:
        return get_path(self._data, path) is not UNSET

    def set(self, path: str, value: Any, merge: bool = False, writer: Optional[str] = None):
        """
        Write `value` at `path`. The last writer wins.

        Args:
            path: Dot path ("form.email")
            value: New value
            merge: Shallow-merge dict values into an existing dict
            writer: Identifier of the writing action invocation (diagnostics only)
        """
        key = ".".join(str(p) for p in split_path(path))
        previous = self._writers.get(key)
        if writer and previous and previous != writer:
            logger.debug(f"State path '{key}' overwritten by {writer} (previous writer {previous})")
        set_path(self._data, path, value, merge=merge)
        if writer:
            self._writers[key] = writer
        self.on_changed.emit(key, self.get(key))

    def merge(self, updates: Dict[str, Any], writer: Optional[str] = None):
        for path, value in updates.items():
            self.set(path, value, writer=writer)

    def reset(self, paths: Optional[Iterable[str]] = None):
        """Restore initial values for `paths`, or the whole store."""
        if paths is None:
            self._data = copy.deepcopy(self._initial)
            self._writers.clear()
            self.on_changed.emit("", self._data)
            return
        for path in paths:
            initial = get_path(self._initial, path)
            if initial is UNSET:
                delete_path(self._data, path)
            else:
                set_path(self._data, path, copy.deepcopy(initial))
            self.on_changed.emit(path, self.get(path))

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


class FieldErrors:
    """
    Inline validation messages keyed by widget id.
    """
    def __init__(self):
        self._errors: Dict[str, List[str]] = {}
        self.on_changed = Signal("FieldErrorsChanged")

    def get(self, widget_id: str) -> List[str]:
        return list(self._errors.get(widget_id, []))

    def all(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self._errors.items()}

    def publish(self, checked: Iterable[str], errors: Dict[str, List[str]]):
        """Replace messages for every checked widget with the new result."""
        for widget_id in checked:
            if errors.get(widget_id):
                self._errors[widget_id] = list(errors[widget_id])
            else:
                self._errors.pop(widget_id, None)
        self.on_changed.emit(self.all())

    def clear(self, widget_ids: Optional[Iterable[str]] = None):
        if widget_ids is None:
            self._errors.clear()
        else:
            for widget_id in widget_ids:
                self._errors.pop(widget_id, None)
        self.on_changed.emit(self.all())
