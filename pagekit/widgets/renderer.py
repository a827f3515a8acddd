"""
Renderer System.

Walks a page's widget tree and turns every visible descriptor into a
RenderedNode:
    policy -> (hidden: skip) -> datasource + bindings -> registry -> render

Failures are contained at the node: unknown types get the registry fallback,
renderer exceptions and failed datasources become error placeholders,
malformed descriptors become config-error placeholders. Only an EngineFault
replaces the whole page with a fallback.

The rendered tree stays live: datasource updates re-render the nodes bound to
the datasource, local-state and field-error changes re-render the page.

Signals:
    on_rendered(page: RenderedPage)
    on_node_updated(node: RenderedNode)
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from loguru import logger

from ..actions.engine import ActionEngine, ActionMessage
from ..bindings.resolver import BindingResolver
from ..core.base_system import BaseSystem
from ..core.errors import ConfigError, EngineFault, PagekitError
from ..core.events import Signal
from ..datasources.cache import DatasourceState
from ..datasources.resolver import DatasourceResolver
from ..expressions import resolve_templates
from ..model.loader import INVALID_WIDGET_TYPE
from ..model.page import EventBinding, PageConfig, WidgetDescriptor
from ..providers import auth_functions
from .policy import PolicyEvaluator
from .registry import Placeholder, WidgetRegistry


@dataclass
class NodeContext:
    """What a widget renderer may know about its node besides props."""
    widget: WidgetDescriptor
    status: Optional[DatasourceState] = None
    enabled: bool = True
    errors: List[str] = field(default_factory=list)
    value: Any = None
    children: List['RenderedNode'] = field(default_factory=list)
    emit: Callable[..., Optional[asyncio.Future]] = lambda event, payload=None: None
    set_value: Callable[[Any], None] = lambda value: None

    @property
    def loading(self) -> bool:
        return self.status is not None and self.status.is_loading


@dataclass
class RenderedNode:
    key: str
    widget: WidgetDescriptor
    output: Any
    props: Dict[str, Any] = field(default_factory=dict)
    status: Optional[DatasourceState] = None
    children: List['RenderedNode'] = field(default_factory=list)
    handlers: Dict[str, Callable[..., Optional[asyncio.Future]]] = field(default_factory=dict)
    enabled: bool = True
    errors: List[str] = field(default_factory=list)
    context: Optional[NodeContext] = None

    @property
    def widget_id(self) -> str:
        return self.widget.id

    @property
    def placeholder(self) -> Optional[str]:
        """Placeholder kind when the node did not render normally."""
        return self.output.kind if isinstance(self.output, Placeholder) else None

    def walk(self) -> Iterator['RenderedNode']:
        yield self
        for child in self.children:
            yield from child.walk()

    def trigger(self, event: str, payload: Optional[Dict[str, Any]] = None) -> Optional[asyncio.Future]:
        handler = self.handlers.get(event)
        return handler(payload) if handler else None


@dataclass
class RenderedPage:
    page_id: str
    nodes: List[RenderedNode] = field(default_factory=list)
    fallback: Optional[Placeholder] = None

    def walk(self) -> Iterator[RenderedNode]:
        for node in self.nodes:
            yield from node.walk()

    def find(self, key: str) -> Optional[RenderedNode]:
        return next((n for n in self.walk() if n.key == key), None)

    def __len__(self) -> int:
        return sum(1 for _ in self.walk())


class Renderer(BaseSystem):
    depends_on = [DatasourceResolver, ActionEngine]

    def __init__(self, locator, config, registry: WidgetRegistry):
        super().__init__(locator, config)
        self.registry = registry
        self.page: Optional[PageConfig] = None
        self.tree: Optional[RenderedPage] = None
        self._parents: Dict[str, Optional[RenderedNode]] = {}
        self._rendering = False
        self._full_pending = False
        self.on_rendered = Signal("PageRendered")
        self.on_node_updated = Signal("NodeUpdated")

    async def initialize(self):
        logger.info("Renderer initializing...")
        self.resolver.on_changed.connect(self._on_datasource_changed)
        self.engine.state.on_changed.connect(self._on_local_change)
        self.engine.field_errors.on_changed.connect(self._on_local_change)
        await super().initialize()

    async def shutdown(self):
        logger.info("Renderer shutting down...")
        self.resolver.on_changed.disconnect(self._on_datasource_changed)
        self.engine.state.on_changed.disconnect(self._on_local_change)
        self.engine.field_errors.on_changed.disconnect(self._on_local_change)
        self.clear()
        await super().shutdown()

    @property
    def resolver(self) -> DatasourceResolver:
        return self.locator.get_system(DatasourceResolver)

    @property
    def engine(self) -> ActionEngine:
        return self.locator.get_system(ActionEngine)

    @property
    def policies(self) -> PolicyEvaluator:
        return PolicyEvaluator(self.locator.providers.auth)

    # -- rendering -------------------------------------------------------------

    def render_page(self, page: PageConfig) -> RenderedPage:
        """Render every visible widget of `page` and make it the live tree."""
        self.page = page
        self._rendering = True
        try:
            tree = RenderedPage(page.page_id)
            self._parents = {}
            seen: Set[str] = set()
            for widget in page.widgets:
                node = self.render(widget, seen)
                if node is not None:
                    tree.nodes.append(node)
                    self._index(node, None)
            self._verify(tree)
        except EngineFault as e:
            logger.critical(f"Render of page '{page.page_id}' failed: {e}")
            tree = RenderedPage(page.page_id, fallback=Placeholder("page-error", message=str(e)))
            self._parents = {}
        finally:
            self._rendering = False
        self.tree = tree
        self.on_rendered.emit(tree)
        return tree

    def clear(self):
        """Forget the live tree (page unloaded)."""
        self.page = None
        self.tree = None
        self._parents = {}

    def rerender(self) -> Optional[RenderedPage]:
        self._full_pending = False
        if self.page is None:
            return None
        return self.render_page(self.page)

    def render(self, widget: WidgetDescriptor, seen: Set[str]) -> Optional[RenderedNode]:
        """
        Render one descriptor and its children. Returns None for hidden nodes.

        Raises:
            EngineFault: Internal invariant violated
        """
        if widget.id in seen:
            key = self._disambiguate(widget.id, seen)
            seen.add(key)
            logger.warning(f"Duplicate widget id '{widget.id}' rendered as '{key}'")
            return self._placeholder(key, widget, "config-error", f"Duplicate widget id '{widget.id}'")
        seen.add(widget.id)

        scope = self._scope()
        try:
            decision = self.policies.evaluate(widget.policy, scope)
        except EngineFault:
            raise
        except PagekitError as e:
            return self._placeholder(widget.id, widget, "config-error", f"Invalid policy: {e}")
        except Exception as e:
            return self._failed(widget, "policy", e)
        if not decision.visible:
            return None

        if widget.type == INVALID_WIDGET_TYPE:
            return self._placeholder(widget.id, widget, "config-error", str(widget.props.get("error", "Invalid widget")))
        ambiguous = widget.duplicate_binding_props()
        if ambiguous:
            return self._placeholder(widget.id, widget, "config-error", f"Ambiguous bindings for {', '.join(ambiguous)}")

        try:
            params = resolve_templates(widget.datasource_params, scope) if widget.datasource_params else {}
        except EngineFault:
            raise
        except PagekitError as e:
            return self._placeholder(widget.id, widget, "config-error", f"Invalid datasource params: {e}")
        except Exception as e:
            return self._failed(widget, "datasource params", e)

        status = self.resolver.resolve(widget.datasource_id, params) if widget.datasource_id else None

        def lookup(datasource_id: str) -> DatasourceState:
            return self.resolver.resolve(datasource_id, params if datasource_id == widget.datasource_id else None)

        bindings = BindingResolver(self.engine.state, self._functions())
        try:
            props = bindings.resolve_props(widget, lookup)
        except EngineFault:
            raise
        except ConfigError as e:
            return self._placeholder(widget.id, widget, "config-error", str(e))
        except PagekitError as e:
            return self._placeholder(widget.id, widget, "error", str(e))
        except Exception as e:
            return self._failed(widget, "bindings", e)
        if status is not None:
            props.setdefault("data", status.value)

        children = [n for n in (self.render(child, seen) for child in widget.children) if n is not None]

        context = NodeContext(
            widget=widget,
            status=status,
            enabled=decision.enabled,
            errors=self.engine.field_errors.get(widget.id),
            value=self.engine.state.get(widget.state_path, None),
            children=children,
            emit=lambda event, payload=None: self._emit(widget, event, payload),
            set_value=lambda value: self.engine.state.set(widget.state_path, value, writer=f"widget:{widget.id}"),
        )
        output = self._invoke(widget, props, context)
        return RenderedNode(
            key=widget.id,
            widget=widget,
            output=output,
            props=props,
            status=status,
            children=children,
            handlers={event: self._handler(widget, event) for event in widget.events},
            enabled=decision.enabled,
            errors=context.errors,
            context=context,
        )

    def _invoke(self, widget: WidgetDescriptor, props: Dict[str, Any], context: NodeContext) -> Any:
        renderer = self.registry.lookup(widget.type)
        try:
            if context.status is not None and context.status.is_error:
                return renderer.render_error(str(context.status.error), context)
            return renderer.render(props, context)
        except EngineFault:
            raise
        except Exception as e:
            logger.error(f"Renderer for '{widget.type}' failed on '{widget.id}': {e}")
            return Placeholder("error", widget.id, widget.type, str(e))

    def _failed(self, widget: WidgetDescriptor, stage: str, exc: Exception) -> RenderedNode:
        logger.error(f"Resolving {stage} of '{widget.id}' failed: {exc!r}")
        return self._placeholder(widget.id, widget, "error", str(exc) or type(exc).__name__)

    def _placeholder(self, key: str, widget: WidgetDescriptor, kind: str, message: str) -> RenderedNode:
        if kind == "config-error":
            logger.warning(f"Config error at '{key}': {message}")
        return RenderedNode(key=key, widget=widget, output=Placeholder(kind, widget.id, widget.type, message))

    @staticmethod
    def _disambiguate(widget_id: str, seen: Set[str]) -> str:
        n = 2
        while f"{widget_id}~{n}" in seen:
            n += 1
        return f"{widget_id}~{n}"

    def _scope(self) -> Dict[str, Any]:
        page = self.page
        return {
            "state": self.engine.state.get(),
            "user": self.locator.providers.auth.context().as_scope(),
            "page": {"id": page.page_id, "title": page.title} if page else {},
        }

    def _functions(self) -> Dict[str, Callable]:
        return auth_functions(self.locator.providers.auth.context())

    def _verify(self, tree: RenderedPage):
        keys = [node.key for node in tree.walk()]
        if len(keys) != len(set(keys)):
            raise EngineFault(f"Rendered tree of '{tree.page_id}' contains duplicate keys")

    # -- events ----------------------------------------------------------------

    def _handler(self, widget: WidgetDescriptor, event: str):
        def handle(payload: Optional[Dict[str, Any]] = None):
            return self._emit(widget, event, payload)
        return handle

    def _emit(self, widget: WidgetDescriptor, event: str, payload: Optional[Dict[str, Any]] = None) -> Optional[asyncio.Future]:
        binding: Optional[EventBinding] = widget.events.get(event)
        if binding is None:
            logger.debug(f"Widget '{widget.id}' emitted unbound event '{event}'")
            return None
        node = self._find(widget.id)
        if node is not None and not node.enabled:
            logger.debug(f"Ignoring '{event}' from disabled widget '{widget.id}'")
            return None
        scope = {**self._scope(), "event": payload or {}}
        try:
            data = {**(payload or {}), **resolve_templates(binding.payload, scope)}
        except PagekitError as e:
            logger.warning(f"Payload of '{event}' on '{widget.id}' failed to resolve: {e}")
            self.engine.notify_failure(binding.action, e)
            return None
        return self.engine.post(ActionMessage(binding.action, data, widget.id, event))

    # -- live updates ----------------------------------------------------------

    def _index(self, node: RenderedNode, parent: Optional[RenderedNode]):
        self._parents[node.key] = parent
        for child in node.children:
            self._index(child, node)

    def _find(self, key: str) -> Optional[RenderedNode]:
        return self.tree.find(key) if self.tree else None

    def _binds(self, widget: WidgetDescriptor, datasource_id: str) -> bool:
        return widget.datasource_id == datasource_id or any(b.datasource == datasource_id for b in widget.bindings)

    def _on_datasource_changed(self, datasource_id: str, key, state):
        if self.page is None or self.tree is None or self._rendering:
            return
        if self.tree.fallback is not None:
            return
        for widget in self.page.iter_widgets():
            if self._binds(widget, datasource_id) and widget.id in self._parents:
                self.update_node(widget.id)

    def update_node(self, key: str) -> Optional[RenderedNode]:
        """Re-render one node subtree in place and recompose its ancestors."""
        old = self._find(key)
        if old is None:
            return None
        parent = self._parents.get(key)
        siblings = parent.children if parent is not None else self.tree.nodes
        index = next(i for i, n in enumerate(siblings) if n is old)

        subtree = {n.key for n in old.walk()}
        seen = {k for k in self._parents if k not in subtree}
        for k in subtree:
            self._parents.pop(k, None)

        self._rendering = True
        try:
            new = self.render(old.widget, seen)
        finally:
            self._rendering = False

        if new is None:
            del siblings[index]
        else:
            siblings[index] = new
            self._index(new, parent)

        ancestor = parent
        while ancestor is not None:
            if ancestor.context is not None:
                ancestor.context.children = ancestor.children
                ancestor.output = self._invoke(ancestor.widget, ancestor.props, ancestor.context)
            ancestor = self._parents.get(ancestor.key)

        if new is not None:
            self.on_node_updated.emit(new)
        return new

    def _on_local_change(self, *args):
        if self.page is None or self._rendering:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.rerender()
            return
        if not self._full_pending:
            self._full_pending = True
            loop.call_soon(self.rerender)
