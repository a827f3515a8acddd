"""
Datasource Resolver/Cache - fetching, caching and streaming of declared data.
"""
from .cache import CacheEntry, DatasourceCache, DatasourceState, DatasourceStatus, cache_key
from .handlers import DatasourceHandler, HttpClient, HttpHandler, StaticHandler
from .resolver import DatasourceResolver
from .websocket import AiohttpWebSocketTransport, WebSocketHub, WebSocketTransport

__all__ = [
    "CacheEntry",
    "DatasourceCache",
    "DatasourceState",
    "DatasourceStatus",
    "cache_key",
    "DatasourceHandler",
    "HttpClient",
    "HttpHandler",
    "StaticHandler",
    "DatasourceResolver",
    "AiohttpWebSocketTransport",
    "WebSocketHub",
    "WebSocketTransport",
]
