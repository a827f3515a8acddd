"""
Fetch handlers per datasource kind, and the aiohttp client they share with
the Action Engine's httpCall step.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp
from loguru import logger

from ..core.errors import DataError
from ..expressions import resolve_templates
from ..model.page import DatasourceDescriptor


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return value
    return str(value)


class HttpClient:
    """
    Thin wrapper over an aiohttp ClientSession.

    The session is created lazily and closed by `close()`; an injected
    session is never closed by the client.
    """
    def __init__(
        self,
        base_url: str = "",
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None

    def url_for(self, url: str) -> str:
        if not self.base_url or url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url.rstrip('/')}/{url.lstrip('/')}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        datasource_id: Optional[str] = None,
    ) -> Any:
        """
        Perform a request and decode the response (JSON when possible, text otherwise).

        Raises:
            DataError: kind 'http' for non-2xx statuses, 'timeout' or 'network' otherwise
        """
        session = await self._get_session()
        full_url = self.url_for(url)
        query = {k: _query_value(v) for k, v in (params or {}).items() if v is not None}
        merged_headers = {**self.headers, **(headers or {})}
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)

        logger.debug(f"HTTP {method} {full_url}")
        try:
            async with session.request(
                method,
                full_url,
                params=query or None,
                json=body,
                headers=merged_headers or None,
                timeout=client_timeout,
            ) as response:
                if response.status >= 400:
                    reason = response.reason or "error"
                    raise DataError(
                        f"HTTP {response.status} {reason} for {method} {url}",
                        datasource_id,
                        kind="http",
                        status=response.status,
                    )
                if response.status == 204:
                    return None
                if "json" in (response.content_type or ""):
                    return await response.json(content_type=None)
                return await response.text()
        except asyncio.TimeoutError as e:
            raise DataError(f"Timeout for {method} {url}", datasource_id, kind="timeout") from e
        except aiohttp.ClientError as e:
            raise DataError(f"Request failed for {method} {url}: {e}", datasource_id, kind="network") from e

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


class DatasourceHandler(ABC):
    """
    Performs the underlying operation for one datasource kind.

    Handlers with `immediate = True` resolve synchronously through
    `resolve_now()` and never leave an entry in the loading state.
    """
    immediate = False

    def resolve_now(self, descriptor: DatasourceDescriptor, params: Dict[str, Any]) -> Any:
        raise NotImplementedError

    @abstractmethod
    async def fetch(self, descriptor: DatasourceDescriptor, params: Dict[str, Any]) -> Any:
        pass


class StaticHandler(DatasourceHandler):
    immediate = True

    def resolve_now(self, descriptor: DatasourceDescriptor, params: Dict[str, Any]) -> Any:
        return resolve_templates(descriptor.value, {"params": params})

    async def fetch(self, descriptor: DatasourceDescriptor, params: Dict[str, Any]) -> Any:
        return self.resolve_now(descriptor, params)


class HttpHandler(DatasourceHandler):
    """
    Resolves `{{ params.x }}` placeholders in url, headers, params and body,
    then calls the HttpClient.
    """
    def __init__(self, client: HttpClient):
        self.client = client

    async def fetch(self, descriptor: DatasourceDescriptor, params: Dict[str, Any]) -> Any:
        http = descriptor.http
        scope = {"params": params}
        url = resolve_templates(http.url, scope, unset_as="")
        if url is None or url == "":
            raise DataError(f"Datasource '{descriptor.id}' resolved to an empty url", descriptor.id, kind="config")
        url = str(url)
        return await self.client.request(
            http.method,
            url,
            params=resolve_templates(http.params, scope),
            body=resolve_templates(http.body, scope),
            headers={k: str(v) for k, v in resolve_templates(http.headers, scope, unset_as="").items()},
            datasource_id=descriptor.id,
        )
