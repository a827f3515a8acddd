"""
Binding Resolver - widget props from local state, datasource data and literals.
"""
from .resolver import BindingResolver, BoundValue
from .transforms import apply_transforms, filter_value, format_value, map_value

__all__ = [
    "BindingResolver",
    "BoundValue",
    "apply_transforms",
    "filter_value",
    "format_value",
    "map_value",
]
