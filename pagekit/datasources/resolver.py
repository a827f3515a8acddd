"""
Datasource Resolver System.

Resolves datasource descriptors to cached states. `resolve()` is synchronous
and never raises: it returns the current DatasourceState and, when needed,
starts the one underlying fetch or subscription for the cache key. Every later
resolve of the same key shares that operation.

Signals:
    on_changed(datasource_id, key, state): an entry changed status or value;
        key and state are None when entries of the datasource were invalidated
"""
import asyncio
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from loguru import logger

from ..core.base_system import BaseSystem
from ..core.errors import DataError
from ..core.events import Signal
from ..core.paths import get_path
from ..model.page import DatasourceDescriptor
from .cache import CacheEntry, DatasourceCache, DatasourceState, DatasourceStatus, cache_key
from .handlers import DatasourceHandler, HttpClient, HttpHandler, StaticHandler
from .websocket import AiohttpWebSocketTransport, WebSocketHub

DescriptorRef = Union[str, DatasourceDescriptor]


class DatasourceResolver(BaseSystem):
    def __init__(
        self,
        locator,
        config,
        http_client: Optional[HttpClient] = None,
        hub_factory: Optional[Callable[[str], WebSocketHub]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(locator, config)
        settings = config.data
        self.clock = clock
        self.cache = DatasourceCache(settings.cache.max_entries, clock)
        self.http_client = http_client or HttpClient(
            settings.http.base_url, settings.http.timeout, settings.http.headers
        )
        self.hub_factory = hub_factory or self._default_hub
        self._hubs: Dict[str, WebSocketHub] = {}
        self._handlers: Dict[str, DatasourceHandler] = {
            "static": StaticHandler(),
            "http": HttpHandler(self.http_client),
        }
        self._descriptors: Dict[str, DatasourceDescriptor] = {}
        self._fingerprints: Dict[str, str] = {}
        self._unsubscribers: Dict[str, Callable[[], None]] = {}
        self.on_changed = Signal("DatasourceChanged")
        self.config.on_changed.connect(self._on_config_changed)

    async def initialize(self):
        logger.info("DatasourceResolver initializing...")
        await super().initialize()

    async def shutdown(self):
        logger.info("DatasourceResolver shutting down...")
        self.invalidate()
        for hub in self._hubs.values():
            await hub.close()
        self._hubs.clear()
        await self.http_client.close()
        await super().shutdown()

    # -- registration ----------------------------------------------------------

    def register_handler(self, kind: str, handler: DatasourceHandler):
        if kind in self._handlers:
            logger.debug(f"Replacing datasource handler for kind '{kind}'")
        self._handlers[kind] = handler

    def get_handler(self, kind: str) -> Optional[DatasourceHandler]:
        return self._handlers.get(kind)

    def load_page(self, datasources: Iterable[DatasourceDescriptor]):
        """
        Adopt the datasources of a newly loaded page.

        Cached entries of a datasource whose descriptor changed (version or
        content) are invalidated; unchanged ones are reused.
        """
        for descriptor in datasources:
            fingerprint = descriptor.fingerprint()
            previous = self._fingerprints.get(descriptor.id)
            if previous is not None and previous != fingerprint:
                logger.info(f"Datasource '{descriptor.id}' changed ({previous} -> {fingerprint}), invalidating")
                self.invalidate(descriptor.id)
            self._descriptors[descriptor.id] = descriptor
            self._fingerprints[descriptor.id] = fingerprint

    def release_page(self):
        """Stop streams and drop in-flight fetches of the page being left."""
        for entry in self.cache.entries():
            if entry.subscribed or (entry.pending is not None and not entry.has_value):
                self._drop(entry)

    def descriptor(self, datasource_id: str) -> Optional[DatasourceDescriptor]:
        return self._descriptors.get(datasource_id)

    @property
    def stats(self) -> Dict[str, int]:
        return self.cache.stats

    # -- resolution ------------------------------------------------------------

    def resolve(self, ref: DescriptorRef, params: Optional[Dict[str, Any]] = None) -> DatasourceState:
        """
        Current state for the datasource and params. Never raises.
        """
        params = dict(params or {})
        datasource_id = ref if isinstance(ref, str) else ref.id
        key = cache_key(datasource_id, params)
        try:
            descriptor = self._descriptor_for(ref)
            if descriptor is None:
                error = DataError(f"Unknown datasource '{datasource_id}'", datasource_id, kind="config")
                return DatasourceState(DatasourceStatus.ERROR, error=error, key=key)

            fingerprint = self._fingerprints[descriptor.id]
            entry = self.cache.get(key)
            if entry is not None and entry.fingerprint != fingerprint:
                self._drop(entry)
                entry = None
            if entry is None:
                entry = self.cache.add(CacheEntry(key, descriptor.id, params, fingerprint))
                self._start(entry, descriptor)
            elif entry.pending is None and not entry.subscribed and entry.is_expired(self.clock(), self._ttl(descriptor)):
                logger.debug(f"Datasource entry '{key}' expired, refetching")
                self._start(entry, descriptor)
            return entry.snapshot()
        except Exception as e:
            logger.error(f"Resolving datasource '{datasource_id}' failed: {e}")
            error = e if isinstance(e, DataError) else DataError(str(e), datasource_id, kind="config")
            return DatasourceState(DatasourceStatus.ERROR, error=error, key=key)

    async def fetch(self, ref: DescriptorRef, params: Optional[Dict[str, Any]] = None) -> DatasourceState:
        """Resolve and wait for the shared pending operation, if any."""
        state = self.resolve(ref, params)
        entry = self.cache.peek(state.key)
        if entry is not None and entry.pending is not None:
            pending = entry.pending
            try:
                await asyncio.shield(pending)
            except asyncio.CancelledError:
                # entry dropped while loading; the caller itself was not cancelled
                if not pending.cancelled():
                    raise
            return entry.snapshot()
        return state

    async def refresh(self, ref: DescriptorRef, params: Optional[Dict[str, Any]] = None) -> DatasourceState:
        """
        Refetch regardless of TTL. A fetch already in flight for the key is
        awaited instead of starting a second one.
        """
        params = dict(params or {})
        descriptor = self._descriptor_for(ref)
        if descriptor is None:
            return self.resolve(ref, params)
        entry = self.cache.peek(cache_key(descriptor.id, params))
        if entry is None or entry.subscribed:
            return await self.fetch(descriptor, params)
        if entry.pending is None:
            self._start(entry, descriptor)
            self.on_changed.emit(entry.datasource_id, entry.key, entry.snapshot())
        return await self.fetch(descriptor, params)

    async def refresh_all(self, datasource_id: str) -> List[DatasourceState]:
        """Refresh every cached params variant of a datasource (or its default entry)."""
        entries = self.cache.entries_for(datasource_id)
        if not entries:
            return [await self.refresh(datasource_id)]
        return list(await asyncio.gather(*(self.refresh(datasource_id, e.params) for e in entries)))

    def invalidate(self, datasource_id: Optional[str] = None):
        """Drop cached entries for one datasource, or all of them."""
        entries = self.cache.entries_for(datasource_id) if datasource_id else self.cache.entries()
        for entry in entries:
            self._drop(entry)
        ids = {datasource_id} if datasource_id else {e.datasource_id for e in entries}
        for ds_id in ids:
            self.on_changed.emit(ds_id, None, None)

    # -- internals -------------------------------------------------------------

    def _descriptor_for(self, ref: DescriptorRef) -> Optional[DatasourceDescriptor]:
        if isinstance(ref, DatasourceDescriptor):
            if self._fingerprints.get(ref.id) != ref.fingerprint():
                self.load_page([ref])
            return ref
        return self._descriptors.get(ref)

    def _ttl(self, descriptor: DatasourceDescriptor) -> Optional[float]:
        if descriptor.cache.manual:
            return None
        if descriptor.cache.ttl is not None:
            return descriptor.cache.ttl
        return self.config.data.cache.default_ttl

    def _start(self, entry: CacheEntry, descriptor: DatasourceDescriptor):
        if descriptor.kind == "websocket":
            self._subscribe(entry, descriptor)
            return
        handler = self._handlers.get(descriptor.kind)
        if handler is None:
            error = DataError(f"No handler for datasource kind '{descriptor.kind}'", descriptor.id, kind="config")
            entry.mark_error(error, self.clock())
            return
        if handler.immediate:
            try:
                self._commit(entry, descriptor, handler.resolve_now(descriptor, entry.params), emit=False)
            except Exception as e:
                self._fail(entry, descriptor, e, emit=False)
            return
        entry.mark_loading()
        entry.pending = asyncio.ensure_future(self._run_fetch(entry, descriptor, handler))

    async def _run_fetch(self, entry: CacheEntry, descriptor: DatasourceDescriptor, handler: DatasourceHandler) -> DatasourceState:
        logger.debug(f"Fetching datasource '{entry.key}'")
        try:
            value = await handler.fetch(descriptor, entry.params)
        except asyncio.CancelledError:
            entry.pending = None
            raise
        except Exception as e:
            entry.pending = None
            self._fail(entry, descriptor, e)
            return entry.snapshot()
        entry.pending = None
        self._commit(entry, descriptor, value)
        return entry.snapshot()

    def _select(self, descriptor: DatasourceDescriptor, value: Any) -> Any:
        return get_path(value, descriptor.select) if descriptor.select else value

    def _commit(self, entry: CacheEntry, descriptor: DatasourceDescriptor, value: Any, emit: bool = True):
        entry.mark_success(self._select(descriptor, value), self.clock())
        if emit:
            self.on_changed.emit(entry.datasource_id, entry.key, entry.snapshot())

    def _fail(self, entry: CacheEntry, descriptor: DatasourceDescriptor, exc: Exception, emit: bool = True):
        if isinstance(exc, DataError):
            error = exc
            if error.datasource_id is None:
                error.datasource_id = descriptor.id
        else:
            error = DataError(str(exc), descriptor.id, kind="network")
        logger.warning(f"Datasource '{entry.key}' failed: {error}")
        entry.mark_error(error, self.clock())
        if emit:
            self.on_changed.emit(entry.datasource_id, entry.key, entry.snapshot())

    def _subscribe(self, entry: CacheEntry, descriptor: DatasourceDescriptor):
        url = descriptor.websocket.url or self.config.data.websocket.url
        if not url:
            entry.mark_error(DataError(f"No WebSocket url for '{descriptor.id}'", descriptor.id, kind="config"), self.clock())
            return
        hub = self._hubs.get(url)
        if hub is None:
            hub = self._hubs[url] = self.hub_factory(url)

        entry.mark_loading()
        entry.subscribed = True

        def on_data(data):
            self._commit(entry, descriptor, data)

        def on_error(error):
            self._fail(entry, descriptor, error)

        self._unsubscribers[entry.key] = hub.subscribe(descriptor.channel, descriptor.id, on_data, on_error)

    def _drop(self, entry: CacheEntry):
        if entry.pending is not None:
            entry.pending.cancel()
            entry.pending = None
        unsubscribe = self._unsubscribers.pop(entry.key, None)
        if unsubscribe is not None:
            unsubscribe()
        entry.subscribed = False
        self.cache.remove(entry.key)

    def _default_hub(self, url: str) -> WebSocketHub:
        settings = self.config.data.websocket
        return WebSocketHub(
            lambda: AiohttpWebSocketTransport(url),
            reconnect=settings.reconnect,
            reconnect_delay=settings.reconnect_delay,
            max_reconnect_delay=settings.max_reconnect_delay,
            max_reconnect_attempts=settings.max_reconnect_attempts,
        )

    def _on_config_changed(self, section: str, key: str, value: Any):
        if section == "http":
            self.http_client.base_url = self.config.data.http.base_url
            self.http_client.timeout = self.config.data.http.timeout
            self.http_client.headers = dict(self.config.data.http.headers)
        elif section == "cache" and key == "max_entries":
            self.cache.max_entries = value
