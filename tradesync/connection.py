import asyncio
import contextlib
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

import aiohttp

from .errors import ChannelError
from .models import MarketSnapshot, Order, OrderBookSnapshot, Trade
from .state import TradingState


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionController:
    """
    Owns the push channel to the trading server.

    Each connection attempt runs in its own task tagged with a generation
    number. When a channel drops (and we were not told to stop) exactly one
    reconnect task is scheduled, which sleeps for the fixed delay and then
    connects again. disconnect() cancels both tasks and bumps the generation,
    so anything a dying channel still delivers is discarded.
    """
    PUSH_SOURCE_LABEL = "Push Channel"

    def __init__(self, url: str, state: TradingState, logger: logging.Logger,
                 session: Optional[aiohttp.ClientSession] = None,
                 reconnect_delay: float = 5.0, heartbeat: Optional[float] = 30.0):
        self.url = url
        self.state = state
        self.logger = logger
        self.reconnect_delay = reconnect_delay
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None

        self.status = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self._generation = 0
        self._stopped = False
        self._channel_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._handlers: Dict[str, Callable[[Any], None]] = {
            'trade': self._on_trade,
            'orderbook': self._on_orderbook,
            'market_data': self._on_market_data,
            'order_update': self._on_order_update,
            'error': self._on_error,
        }

    # --- Lifecycle ---

    def connect(self):
        """Disconnected/Reconnecting -> Connecting. Ignored while a channel is up or opening."""
        if self.status in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            self.logger.debug(f"connect() ignored in state {self.status.value}")
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        if self.reconnect_pending:
            self._reconnect_task.cancel()
        self._reconnect_task = None

        self._stopped = False
        self._generation += 1
        self._set_status(ConnectionState.CONNECTING)
        self.logger.info(f"⚡ CONNECTING push channel {self.url} (attempt #{self._generation})")
        self._channel_task = asyncio.create_task(self._run_channel(self._generation))

    async def disconnect(self):
        """Final stop: no channel, no pending reconnect."""
        self._stopped = True
        self._generation += 1

        tasks = [t for t in (self._reconnect_task, self._channel_task) if t and not t.done()]
        self._reconnect_task = None
        self._channel_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._set_status(ConnectionState.DISCONNECTED)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self.logger.info("🔌 Push channel closed")

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _set_status(self, status: ConnectionState):
        self.status = status
        self.state.set_connected(status is ConnectionState.CONNECTED)

    # --- Channel ---

    async def _run_channel(self, generation: int):
        try:
            async with self._session.ws_connect(self.url, heartbeat=self.heartbeat) as ws:
                if generation != self._generation:
                    return
                self._on_open()
                async for msg in ws:
                    if generation != self._generation:
                        return
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self.handle_raw(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        raise ChannelError(f"channel error: {ws.exception()}")
                    elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                        break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"WS Error: {e!r}")
        self._on_closed(generation)

    def _on_open(self):
        self.reconnect_attempts = 0
        self._set_status(ConnectionState.CONNECTED)
        self.logger.info("✅ Push channel connected")

    def _on_closed(self, generation: int):
        if self._stopped or generation != self._generation:
            return
        self._set_status(ConnectionState.RECONNECTING)
        if self.reconnect_pending:
            return
        self.reconnect_attempts += 1
        self.logger.warning(f"❌ Push channel dropped, retrying in {self.reconnect_delay}s")
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self):
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        if not self._stopped:
            self.connect()

    # --- Dispatch ---

    def handle_raw(self, raw: Any):
        """Decodes one inbound frame and applies it. Bad frames are logged and dropped."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Dropping undecodable frame: {e}")
            return
        if not isinstance(message, dict):
            self.logger.error(f"Dropping non-object frame: {type(message).__name__}")
            return
        self.dispatch(message)

    def dispatch(self, message: Dict[str, Any]):
        kind = message.get('type')
        handler = self._handlers.get(kind)
        if handler is None:
            self.logger.warning(f"Ignoring message of unknown type {kind!r}")
            return
        payload = message.get(kind, message)
        try:
            handler(payload)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self.logger.error(f"Dropping malformed {kind} message: {e!r}")

    def _on_trade(self, payload):
        self.state.push_trade(Trade.from_payload(payload))

    def _on_orderbook(self, payload):
        self.state.replace_order_book(OrderBookSnapshot.from_payload(payload))

    def _on_market_data(self, payload):
        self.state.set_market_snapshot(MarketSnapshot.from_payload(payload), self.PUSH_SOURCE_LABEL)

    def _on_order_update(self, payload):
        order = Order.from_payload(payload)
        if not self.state.replace_order(order):
            self.logger.debug(f"order_update for untracked order {order.id}")

    def _on_error(self, payload):
        text = payload.get('message') if isinstance(payload, dict) else payload
        self.logger.error(f"Server error message: {text}")
