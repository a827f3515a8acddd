"""
Page Configuration Model.

Typed descriptors for the backend-delivered page document. Field names are
snake_case in Python and camelCase on the wire (`pageId`, `datasourceId`,
`onError`).
"""
from __future__ import annotations

import hashlib
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

SUPPORTED_SCHEMA_VERSIONS = ("1",)

StepKind = Literal[
    "httpCall",
    "navigate",
    "setState",
    "resetState",
    "validate",
    "showNotification",
    "openDialog",
    "refreshDatasource",
    "custom",
]
STEP_KINDS: Tuple[str, ...] = StepKind.__args__  # type: ignore[attr-defined]


class Descriptor(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


# -----------------------------------------------------------------------------
# Bindings
# -----------------------------------------------------------------------------

class Transform(Descriptor):
    """
    One declarative pipeline operation.

    format: style in number | currency | percent | date | template
    map:    project each item by `path` or by a `fields` {target: path} table
    filter: keep items for which `where` (evaluated with `item` in scope) is true
    """
    op: Literal["format", "map", "filter"]
    style: Literal["number", "currency", "percent", "date", "template"] = "number"
    decimals: Optional[int] = None
    currency: str = "USD"
    date_format: str = "%Y-%m-%d"
    template: Optional[str] = None
    path: Optional[str] = None
    fields: Dict[str, str] = Field(default_factory=dict)
    where: Optional[str] = None

    @model_validator(mode="after")
    def _check_op_arguments(self):
        if self.op == "filter" and not self.where:
            raise ValueError("filter transform requires 'where'")
        if self.op == "map" and not (self.path or self.fields):
            raise ValueError("map transform requires 'path' or 'fields'")
        if self.op == "format" and self.style == "template" and not self.template:
            raise ValueError("template format requires 'template'")
        return self


class Binding(Descriptor):
    """
    Maps a widget prop to local state, datasource data or a literal.

    Local state at `state` wins over the datasource value; a literal is the
    last fallback. Shorthand strings:
        "state.form.email"   -> Binding(state="form.email")
        "revenue.total"      -> Binding(datasource="revenue", path="total")
    """
    prop: Optional[str] = None
    datasource: Optional[str] = None
    path: Optional[str] = None
    state: Optional[str] = None
    literal: Any = None
    transforms: List[Transform] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_source(self):
        if not (self.datasource or self.state or self.has_literal):
            raise ValueError("binding needs a datasource, a state path or a literal")
        return self

    @property
    def has_literal(self) -> bool:
        return "literal" in self.model_fields_set

    @classmethod
    def parse(cls, value: Union[str, Dict[str, Any], 'Binding'], prop: Optional[str] = None) -> 'Binding':
        if isinstance(value, Binding):
            return value if prop is None or value.prop == prop else value.model_copy(update={"prop": prop})
        if isinstance(value, str):
            source = value.strip()
            if source.startswith("state."):
                return cls(prop=prop, state=source[len("state."):])
            datasource, _, path = source.partition(".")
            return cls(prop=prop, datasource=datasource, path=path or None)
        if isinstance(value, dict):
            data = dict(value)
            if prop is not None:
                data.setdefault("prop", prop)
            return cls.model_validate(data)
        return cls(prop=prop, literal=value)


# -----------------------------------------------------------------------------
# Widgets
# -----------------------------------------------------------------------------

class EventBinding(Descriptor):
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class Policy(Descriptor):
    """
    Visibility/permission gate. roles and permissions are any-of lists.
    """
    visible: Union[bool, str, None] = None
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    enabled: Union[bool, str, None] = None


class ValidationRule(Descriptor):
    rule: Literal["required", "pattern", "min", "max", "minLength", "maxLength", "email", "compare"]
    value: Any = None
    other: Optional[str] = None
    operator: Literal["eq", "ne", "gt", "gte", "lt", "lte"] = "eq"
    message: Optional[str] = None

    @model_validator(mode="after")
    def _check_arguments(self):
        if self.rule == "compare" and not self.other:
            raise ValueError("compare rule requires 'other'")
        if self.rule in ("pattern", "min", "max", "minLength", "maxLength") and self.value is None:
            raise ValueError(f"{self.rule} rule requires 'value'")
        return self


class WidgetDescriptor(Descriptor):
    id: str
    type: str
    props: Dict[str, Any] = Field(default_factory=dict)
    bindings: List[Binding] = Field(default_factory=list)
    events: Dict[str, EventBinding] = Field(default_factory=dict)
    policy: Optional[Policy] = None
    children: List[WidgetDescriptor] = Field(default_factory=list)
    datasource_id: Optional[str] = None
    datasource_params: Dict[str, Any] = Field(default_factory=dict)
    field: Optional[str] = None
    validation: List[ValidationRule] = Field(default_factory=list)

    @field_validator("bindings", mode="before")
    @classmethod
    def _normalize_bindings(cls, value):
        if value is None:
            return []
        items = value.items() if isinstance(value, dict) else [(None, spec) for spec in value]
        normalized = []
        for prop, spec in items:
            if isinstance(spec, (str, Binding)):
                normalized.append(Binding.parse(spec, prop=prop))
            elif isinstance(spec, dict):
                normalized.append({"prop": prop, **spec} if prop is not None else spec)
            else:
                # bare scalar in the mapping form is a literal
                normalized.append({"prop": prop, "literal": spec})
        return normalized

    @field_validator("events", mode="before")
    @classmethod
    def _normalize_events(cls, value):
        if value is None:
            return {}
        return {name: {"action": spec} if isinstance(spec, str) else spec for name, spec in value.items()}

    @field_validator("policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value):
        if isinstance(value, (str, bool)):
            return {"visible": value}
        return value

    @model_validator(mode="after")
    def _check_bindings_have_targets(self):
        for binding in self.bindings:
            if not binding.prop:
                raise ValueError(f"binding without target prop on widget '{self.id}'")
        return self

    @property
    def state_path(self) -> str:
        """Local-state path this widget edits and validates."""
        return self.field or f"form.{self.id}"

    def duplicate_binding_props(self) -> List[str]:
        seen, dupes = set(), []
        for binding in self.bindings:
            if binding.prop in seen and binding.prop not in dupes:
                dupes.append(binding.prop)
            seen.add(binding.prop)
        return dupes

    def walk(self) -> Iterator[WidgetDescriptor]:
        yield self
        for child in self.children:
            yield from child.walk()


# -----------------------------------------------------------------------------
# Datasources
# -----------------------------------------------------------------------------

class HttpConfig(Descriptor):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None

    @field_validator("method", mode="before")
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value


class WebSocketConfig(Descriptor):
    channel: str
    url: Optional[str] = None


class CachePolicy(Descriptor):
    """ttl in seconds (None = runtime default); manual = only explicit refresh invalidates."""
    ttl: Optional[float] = None
    manual: bool = False


class DatasourceDescriptor(Descriptor):
    id: str
    kind: Literal["static", "http", "websocket"]
    version: Optional[str] = None
    http: Optional[HttpConfig] = None
    websocket: Optional[WebSocketConfig] = None
    value: Any = None
    cache: CachePolicy = Field(default_factory=CachePolicy)
    select: Optional[str] = None

    @model_validator(mode="after")
    def _check_kind_config(self):
        if self.kind == "http" and self.http is None:
            raise ValueError(f"http datasource '{self.id}' requires 'http' config")
        if self.kind == "websocket" and self.websocket is None:
            raise ValueError(f"websocket datasource '{self.id}' requires 'websocket' config")
        return self

    @property
    def channel(self) -> Optional[str]:
        return self.websocket.channel if self.websocket else None

    def fingerprint(self) -> str:
        """Identity used to detect a changed descriptor on page reload."""
        if self.version:
            return f"{self.id}@{self.version}"
        digest = hashlib.sha1(self.model_dump_json().encode("utf-8")).hexdigest()[:12]
        return f"{self.id}#{digest}"


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------

class RetryPolicy(Descriptor):
    attempts: int = Field(default=1, ge=1)
    delay: float = Field(default=0.0, ge=0)
    backoff: Literal["linear", "exponential"] = "linear"

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        if self.backoff == "exponential":
            return self.delay * (2 ** attempt)
        return self.delay


class Step(Descriptor):
    id: Optional[str] = None
    kind: str
    params: Dict[str, Any] = Field(default_factory=dict)
    guard: Union[bool, str, None] = None
    on_error: Union[str, Step, None] = None
    timeout: Optional[float] = None
    retry: Optional[RetryPolicy] = None

    @property
    def label(self) -> str:
        return self.id or self.kind


class ActionDescriptor(Descriptor):
    """
    Ordered step graph. `handlers` hold steps reachable only through onError.

    Steps are not transactional: when a step fails, side effects committed by
    earlier steps stay in place.
    """
    id: str
    steps: List[Step] = Field(default_factory=list)
    handlers: List[Step] = Field(default_factory=list)

    def find_step(self, ref: str) -> Optional[Step]:
        for step in (*self.handlers, *self.steps):
            if step.id == ref:
                return step
        return None


# -----------------------------------------------------------------------------
# Page
# -----------------------------------------------------------------------------

class PageConfig(Descriptor):
    page_id: str
    title: str = ""
    schema_version: str = "1"
    widgets: List[WidgetDescriptor] = Field(default_factory=list)
    datasources: List[DatasourceDescriptor] = Field(default_factory=list)
    actions: List[ActionDescriptor] = Field(default_factory=list)
    initial_state: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("schema_version", mode="before")
    @classmethod
    def _version_as_text(cls, value):
        return str(value) if value is not None else "1"

    def datasource(self, datasource_id: str) -> Optional[DatasourceDescriptor]:
        for descriptor in self.datasources:
            if descriptor.id == datasource_id:
                return descriptor
        return None

    def action(self, action_id: str) -> Optional[ActionDescriptor]:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None

    def iter_widgets(self) -> Iterator[WidgetDescriptor]:
        for widget in self.widgets:
            yield from widget.walk()

    def widget(self, widget_id: str) -> Optional[WidgetDescriptor]:
        return next((w for w in self.iter_widgets() if w.id == widget_id), None)


WidgetDescriptor.model_rebuild()
Step.model_rebuild()
