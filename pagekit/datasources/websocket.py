"""
WebSocket streaming for datasources.

A WebSocketHub owns one connection and sends one subscribe message per
channel no matter how many cache entries listen to it. Incoming envelopes are
fanned out to every listener of the channel, and the latest payload is replayed
to late subscribers.

Wire format:
    client -> {"type": "subscribe", "channel": "...", "datasourceId": "..."}
    client -> {"type": "unsubscribe", "channel": "..."}
    server -> {"datasourceId": "...", "data": ..., "channel": "..." (optional)}
"""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import aiohttp
from loguru import logger

from ..core.errors import DataError
from ..core.events import Signal

DataListener = Callable[[Any], None]
ErrorListener = Callable[[DataError], None]


class WebSocketTransport(ABC):
    """One physical connection. `receive()` returns None once the socket is closed."""

    @abstractmethod
    async def connect(self):
        pass

    @abstractmethod
    async def send(self, message: Dict[str, Any]):
        pass

    @abstractmethod
    async def receive(self) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def close(self):
        pass


class AiohttpWebSocketTransport(WebSocketTransport):
    def __init__(self, url: str, session: Optional[aiohttp.ClientSession] = None, heartbeat: float = 30.0):
        self.url = url
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def connect(self):
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(self.url, heartbeat=self.heartbeat)
        logger.debug(f"WebSocket connected: {self.url}")

    async def send(self, message: Dict[str, Any]):
        await self._ws.send_json(message)

    async def receive(self) -> Optional[Dict[str, Any]]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring malformed WebSocket frame from {self.url}")
                    continue
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                return None

    async def close(self):
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None


class WebSocketHub:
    """
    Multiplexes channel subscriptions over one reconnecting connection.

    Signals:
        on_connection(connected: bool)
    """
    def __init__(
        self,
        transport_factory: Callable[[], WebSocketTransport],
        reconnect: bool = True,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        max_reconnect_attempts: int = 10,
    ):
        self.transport_factory = transport_factory
        self.reconnect = reconnect
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts

        self._listeners: Dict[str, List[Tuple[DataListener, Optional[ErrorListener]]]] = {}
        self._latest: Dict[str, Any] = {}
        self._datasources: Dict[str, str] = {}  # datasourceId -> channel
        self._channel_owner: Dict[str, str] = {}  # channel -> first datasourceId
        self._transport: Optional[WebSocketTransport] = None
        self._connected = False
        self._closing = False
        self._runner: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self.subscriptions_sent = 0
        self.on_connection = Signal("WebSocketConnection")

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def channels(self) -> List[str]:
        return list(self._listeners)

    def listener_count(self, channel: str) -> int:
        return len(self._listeners.get(channel, []))

    def latest(self, channel: str, default: Any = None) -> Any:
        return self._latest.get(channel, default)

    def subscribe(
        self,
        channel: str,
        datasource_id: str,
        on_data: DataListener,
        on_error: Optional[ErrorListener] = None,
    ) -> Callable[[], None]:
        """
        Listen to `channel`. The latest payload, if any, is delivered immediately.

        Returns:
            Function that removes this listener
        """
        self._closing = False
        self._datasources[datasource_id] = channel
        self._channel_owner.setdefault(channel, datasource_id)
        pair = (on_data, on_error)
        is_new = channel not in self._listeners
        self._listeners.setdefault(channel, []).append(pair)

        if channel in self._latest:
            on_data(self._latest[channel])

        if is_new:
            if self._connected:
                self._spawn(self._send_subscribe(channel))
            else:
                self._ensure_running()

        def unsubscribe():
            self._remove_listener(channel, pair)
        return unsubscribe

    def _remove_listener(self, channel: str, pair):
        listeners = self._listeners.get(channel)
        if not listeners or pair not in listeners:
            return
        listeners.remove(pair)
        if listeners:
            return
        del self._listeners[channel]
        self._latest.pop(channel, None)
        self._channel_owner.pop(channel, None)
        self._datasources = {ds: ch for ds, ch in self._datasources.items() if ch != channel}
        if self._connected:
            self._spawn(self._send({"type": "unsubscribe", "channel": channel}))
        if not self._listeners and self._runner is not None:
            self._spawn(self._go_idle())

    async def _go_idle(self):
        # Let a pending unsubscribe reach the server before the socket closes.
        await asyncio.sleep(0)
        if self._listeners:
            return
        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        logger.debug("WebSocket has no listeners left, connection closed")

    def _ensure_running(self):
        if self._runner is None or self._runner.done():
            self._runner = asyncio.ensure_future(self._run())

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, message: Dict[str, Any]):
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send(message)
        except Exception as e:
            logger.warning(f"WebSocket send failed: {e}")

    async def _send_subscribe(self, channel: str):
        self.subscriptions_sent += 1
        await self._send({
            "type": "subscribe",
            "channel": channel,
            "datasourceId": self._channel_owner.get(channel),
        })

    async def _run(self):
        attempt = 0
        while not self._closing and self._listeners:
            transport = self.transport_factory()
            try:
                await transport.connect()
            except Exception as e:
                logger.warning(f"WebSocket connect failed: {e}")
                await self._close_transport(transport)
            else:
                attempt = 0
                await self._serve(transport)

            if self._closing or not self.reconnect or not self._listeners:
                break
            attempt += 1
            if attempt > self.max_reconnect_attempts:
                logger.error(f"WebSocket giving up after {self.max_reconnect_attempts} reconnect attempts")
                self._fail_all(DataError("WebSocket connection lost", kind="stream"))
                break
            delay = min(self.reconnect_delay * (2 ** (attempt - 1)), self.max_reconnect_delay)
            logger.info(f"WebSocket reconnecting in {delay:.1f}s (attempt {attempt})")
            await asyncio.sleep(delay)

    async def _serve(self, transport: WebSocketTransport):
        self._transport = transport
        self._connected = True
        self.on_connection.emit(True)
        try:
            for channel in list(self._listeners):
                await self._send_subscribe(channel)
            while True:
                message = await transport.receive()
                if message is None:
                    break
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"WebSocket receive failed: {e}")
        finally:
            self._connected = False
            self._transport = None
            self.on_connection.emit(False)
            await self._close_transport(transport)

    @staticmethod
    async def _close_transport(transport: WebSocketTransport):
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"WebSocket close failed: {e}")

    def _dispatch(self, message: Any):
        if not isinstance(message, dict):
            logger.debug(f"Ignoring non-object WebSocket message: {message!r}")
            return
        channel = message.get("channel") or self._datasources.get(message.get("datasourceId"))
        listeners = self._listeners.get(channel)
        if not listeners:
            logger.debug(f"No listeners for WebSocket message on channel {channel!r}")
            return
        data = message.get("data")
        self._latest[channel] = data
        for on_data, _ in list(listeners):
            try:
                on_data(data)
            except Exception as e:
                logger.error(f"WebSocket listener failed on channel '{channel}': {e}")

    def _fail_all(self, error: DataError):
        for channel, listeners in list(self._listeners.items()):
            for _, on_error in list(listeners):
                if on_error is not None:
                    on_error(error)

    async def close(self):
        self._closing = True
        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        for task in list(self._tasks):
            task.cancel()
        self._listeners.clear()
        self._latest.clear()
        self._datasources.clear()
        self._channel_owner.clear()
