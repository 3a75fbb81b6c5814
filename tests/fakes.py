"""Hand-written stand-ins for providers, the REST client and aiohttp sessions."""

import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace

import aiohttp

from tradesync.errors import ProviderFetchError, RestFetchError
from tradesync.models import MarketSnapshot
from tradesync.providers import DataSourceProvider


class FakeProvider(DataSourceProvider):
    def __init__(self, name, price=None, error=None, terminal=False):
        self._name = name
        self.price = price
        self.error = error
        self.terminal = terminal
        self.calls = 0

    def name(self):
        return self._name

    async def fetch_data(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.price is None:
            raise ProviderFetchError(self._name, "timed out after 3s")
        return MarketSnapshot(price=Decimal(str(self.price)))


class FakeApi:
    """Scripted TradingApiClient. Any value that is an exception gets raised."""

    def __init__(self, order_book=None, trades=None, user_orders=None,
                 create_result=None, cancel_result=None):
        self.order_book = order_book if order_book is not None else {"bids": [], "asks": []}
        self.trades = trades if trades is not None else []
        self.user_orders = user_orders if user_orders is not None else []
        self.create_result = create_result if create_result is not None else {}
        self.cancel_result = cancel_result if cancel_result is not None else {"success": True}
        self.calls = []

    def _reply(self, value):
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_order_book(self, symbol):
        self.calls.append(("order_book", symbol))
        return self._reply(self.order_book)

    async def fetch_trades(self, symbol, limit=50):
        self.calls.append(("trades", symbol, limit))
        return self._reply(self.trades)

    async def fetch_user_orders(self, user_id):
        self.calls.append(("user_orders", user_id))
        return self._reply(self.user_orders)

    async def create_order(self, payload):
        self.calls.append(("create", payload))
        return self._reply(self.create_result)

    async def cancel_order(self, order_id, user_id=None):
        self.calls.append(("cancel", order_id, user_id))
        return self._reply(self.cancel_result)


def rest_error(endpoint="GET x"):
    return RestFetchError(endpoint, "timed out after 3s")


class FakeController:
    def __init__(self):
        self.connects = 0

    def connect(self):
        self.connects += 1


class FakeResolver:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def resolve(self):
        if self.error:
            raise self.error
        return self.result


class FakeAudit:
    def __init__(self):
        self.rows = []

    async def log_order(self, row):
        self.rows.append(row)


# --- aiohttp stand-ins ---

def text(payload):
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data)


class FakeWebSocket:
    """Yields scripted frames; with hold=True it then stays open until released."""

    def __init__(self, frames=(), hold=False):
        self.frames = list(frames)
        self.hold = hold
        self.released = asyncio.Event()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.frames:
            await asyncio.sleep(0)
            return self.frames.pop(0)
        if self.hold:
            await self.released.wait()
        raise StopAsyncIteration

    def exception(self):
        return RuntimeError("boom")


class _WsContext:
    def __init__(self, behaviour):
        self.behaviour = behaviour

    async def __aenter__(self):
        if isinstance(self.behaviour, Exception):
            raise self.behaviour
        return self.behaviour

    async def __aexit__(self, *exc):
        return False


class FakeWsSession:
    """ws_connect() hands out scripted sockets in order, then refuses connections."""

    def __init__(self, *behaviours):
        self.behaviours = list(behaviours)
        self.connects = 0
        self.closed = False

    def ws_connect(self, url, **kwargs):
        self.connects += 1
        if self.behaviours:
            return _WsContext(self.behaviours.pop(0))
        return _WsContext(aiohttp.ClientConnectionError("connection refused"))

    async def close(self):
        self.closed = True


class FakeResponse:
    def __init__(self, status=200, body=None, delay=0.0):
        self.status = status
        self.body = body
        self.delay = delay

    async def __aenter__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.body, Exception):
            raise self.body
        return self

    async def __aexit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientPayloadError(f"HTTP {self.status}")

    async def json(self, content_type=None):
        if isinstance(self.body, str):
            return json.loads(self.body)
        return self.body

    async def text(self):
        return self.body if isinstance(self.body, str) else json.dumps(self.body)


class FakeHttpSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append(("GET", url, kwargs))
        return self.response

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return self.response


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
