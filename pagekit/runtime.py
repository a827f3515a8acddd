"""
Page Runtime - composition root.

Builds one ServiceLocator with the DatasourceResolver, ActionEngine and
Renderer, and owns the page lifecycle: every loaded page gets its own
CancellationScope, disposed when the next page loads or on unload().

Usage:
    registry = WidgetRegistry()
    registry.register("KPI", KpiRenderer())

    async with PageRuntime(registry, config=ConfigManager("pagekit.json")) as runtime:
        tree = runtime.load(document)
        await runtime.dispatch("save", {"id": 1})
"""
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from loguru import logger

from .actions.engine import ActionEngine, ActionInvocation
from .core.cancellation import CancellationScope
from .core.config import ConfigManager
from .core.errors import ConfigError, DataError
from .core.events import Signal
from .core.locator import ServiceLocator
from .core.logging import setup_logging
from .core.state import FieldErrors, LocalStateStore
from .datasources.handlers import HttpClient
from .datasources.resolver import DatasourceResolver
from .datasources.websocket import WebSocketHub
from .model.loader import load_page
from .model.page import PageConfig
from .providers import Providers
from .widgets.registry import WidgetRegistry
from .widgets.renderer import RenderedPage, Renderer

PageDocument = Union[str, bytes, Mapping[str, Any], PageConfig]


class PageRuntime:
    """
    Signals:
        on_page_loaded(page: PageConfig, diagnostics: List[ConfigError])
    """
    def __init__(
        self,
        registry: WidgetRegistry,
        config: Optional[ConfigManager] = None,
        providers: Optional[Providers] = None,
        http_client: Optional[HttpClient] = None,
        hub_factory: Optional[Callable[[str], WebSocketHub]] = None,
        configure_logging: bool = False,
    ):
        self.config = config or ConfigManager()
        if configure_logging:
            general = self.config.data.general
            setup_logging(general.debug_mode, general.log_dir)

        self.locator = ServiceLocator(self.config, providers or Providers())
        self.state = LocalStateStore()
        self.field_errors = FieldErrors()
        self.resolver = self.locator.register_system(DatasourceResolver, http_client=http_client, hub_factory=hub_factory)
        self.engine = self.locator.register_system(ActionEngine, state=self.state, field_errors=self.field_errors)
        self.renderer = self.locator.register_system(Renderer, registry)

        self.page: Optional[PageConfig] = None
        self.diagnostics: List[ConfigError] = []
        self.scope: Optional[CancellationScope] = None
        self._source_id: Optional[str] = None
        self.on_page_loaded = Signal("PageLoaded")

    @property
    def providers(self) -> Providers:
        return self.locator.providers

    @property
    def tree(self) -> Optional[RenderedPage]:
        return self.renderer.tree

    async def start(self):
        await self.locator.start_all()

    async def stop(self):
        self.unload("runtime stopped")
        await self.locator.stop_all()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # -- pages -----------------------------------------------------------------

    def load(self, document: PageDocument) -> RenderedPage:
        """
        Replace the current page and render it.

        Raises:
            ConfigError: The document has no usable pageId
        """
        if isinstance(document, PageConfig):
            page, diagnostics = document, []
        else:
            result = load_page(document)
            page, diagnostics = result.page, result.diagnostics

        self.unload(f"navigating to {page.page_id}")
        self.page = page
        self.diagnostics = diagnostics
        self.scope = CancellationScope(f"page:{page.page_id}")

        self.engine.set_scope(self.scope)
        self.engine.load_actions(page)
        self.field_errors.clear()
        self.state.load(page.initial_state)
        self.resolver.load_page(page.datasources)

        logger.info(f"Loading page '{page.page_id}' ({len(diagnostics)} diagnostics)")
        tree = self.renderer.render_page(page)
        self.on_page_loaded.emit(page, diagnostics)
        return tree

    async def open(self, page_id: str) -> RenderedPage:
        """
        Fetch a page document from the backend and load it.

        Raises:
            DataError: The document could not be fetched
            ConfigError: The document is malformed
        """
        path = f"{self.config.data.http.pages_path.rstrip('/')}/{page_id}"
        document = await self.resolver.http_client.request("GET", path)
        if not isinstance(document, (dict, str)):
            raise DataError(f"Page '{page_id}' response is not a document", kind="config")
        tree = self.load(document)
        self._source_id = page_id
        return tree

    async def reload(self) -> Optional[RenderedPage]:
        """Re-fetch the current page (or re-render it when it was loaded locally)."""
        if self._source_id is not None:
            return await self.open(self._source_id)
        if self.page is not None:
            return self.load(self.page)
        return None

    def unload(self, reason: str = "page unloaded"):
        """Cancel everything the current page started."""
        if self.scope is not None:
            self.scope.dispose(reason)
            self.scope = None
        self.resolver.release_page()
        self.renderer.clear()
        self._source_id = None

    # -- actions ---------------------------------------------------------------

    async def dispatch(self, action_id: str, payload: Optional[Dict[str, Any]] = None) -> ActionInvocation:
        return await self.engine.dispatch(action_id, payload)

    def register_custom_step(self, name: str, func: Callable):
        self.engine.register_custom(name, func)
