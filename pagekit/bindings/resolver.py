"""
Binding Resolver.

Evaluates widget bindings against local state and datasource states:
    1. local state at `binding.state`, when present
    2. datasource value at `binding.path`
    3. the binding's literal
    4. UNSET
The transform pipeline then runs on the chosen value.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from ..core.paths import UNSET, get_path
from ..core.state import LocalStateStore
from ..datasources.cache import DatasourceState
from ..model.page import Binding, WidgetDescriptor
from .transforms import apply_transforms

DatasourceLookup = Callable[[str], DatasourceState]


@dataclass(frozen=True)
class BoundValue:
    """A resolved binding and where its value came from."""
    value: Any
    source: str  # "state" | "datasource" | "literal" | "unset"
    status: Optional[DatasourceState] = None


class BindingResolver:
    def __init__(self, state: LocalStateStore, functions: Optional[Mapping[str, Callable]] = None):
        self.state = state
        self.functions = dict(functions or {})

    def scope(self) -> Dict[str, Any]:
        return {"state": self.state.get()}

    def resolve(self, binding: Binding, datasources: Optional[DatasourceLookup] = None) -> BoundValue:
        """
        Resolve one binding.

        Raises:
            DataError: kind 'transform' when the pipeline rejects the value
        """
        bound = self._select(binding, datasources)
        if binding.transforms and bound.value is not UNSET:
            value = apply_transforms(bound.value, binding.transforms, self.scope(), self.functions)
            bound = BoundValue(value, bound.source, bound.status)
        return bound

    def value(self, binding: Binding, datasources: Optional[DatasourceLookup] = None) -> Any:
        return self.resolve(binding, datasources).value

    def _select(self, binding: Binding, datasources: Optional[DatasourceLookup]) -> BoundValue:
        if binding.state:
            local = self.state.get(binding.state)
            if local is not UNSET:
                return BoundValue(local, "state")

        status = None
        if binding.datasource and datasources is not None:
            status = datasources(binding.datasource)
            if status.value is not UNSET:
                value = get_path(status.value, binding.path) if binding.path else status.value
                if value is not UNSET:
                    return BoundValue(value, "datasource", status)

        if binding.has_literal:
            return BoundValue(binding.literal, "literal", status)
        return BoundValue(UNSET, "unset", status)

    def resolve_props(self, widget: WidgetDescriptor, datasources: Optional[DatasourceLookup] = None) -> Dict[str, Any]:
        """
        Static props overlaid with bound props. Bound props that resolve to
        UNSET are present with the UNSET value.
        """
        props = dict(widget.props)
        for binding in widget.bindings:
            props[binding.prop] = self.resolve(binding, datasources).value
        return props
