import asyncio
from decimal import Decimal

import aiohttp
import pytest

from fakes import FakeWebSocket, FakeWsSession, text, wait_until
from tradesync.connection import ConnectionController, ConnectionState
from tradesync.models import Order


def make_controller(state, logger, session, delay=0.05):
    return ConnectionController("ws://test/ws", state, logger, session=session, reconnect_delay=delay)


@pytest.mark.asyncio
async def test_connect_open_and_dispatch(state, logger):
    ws = FakeWebSocket([
        text({"type": "trade", "trade": {"id": "t1", "price": 10, "quantity": 1, "side": "sell"}}),
        text({"type": "orderbook", "orderbook": {"bids": [{"price": 1, "quantity": 1}, {"price": 3, "quantity": 1}],
                                                 "asks": [{"price": 5, "quantity": 1}]}}),
        text({"type": "market_data", "last_price": 51000, "volume_24h": 3}),
    ], hold=True)
    session = FakeWsSession(ws)
    controller = make_controller(state, logger, session)

    assert controller.status is ConnectionState.DISCONNECTED
    controller.connect()
    assert controller.status is ConnectionState.CONNECTING

    await wait_until(lambda: state.market is not None)
    assert controller.status is ConnectionState.CONNECTED
    assert state.connected
    assert state.trades[0].id == "t1"
    assert [lvl.price for lvl in state.order_book.bids] == [3, 1]
    assert state.market.price == Decimal("51000")
    assert state.data_source == "Push Channel"

    await controller.disconnect()
    assert controller.status is ConnectionState.DISCONNECTED
    assert not state.connected


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(state, logger):
    ws = FakeWebSocket([
        text("{not json"),
        text("[1, 2]"),
        text({"type": "mystery"}),
        text({"type": "trade", "trade": {"price": 1}}),
        text({"type": "trade", "trade": {"id": "ok", "price": 2, "quantity": 1}}),
    ], hold=True)
    controller = make_controller(state, logger, FakeWsSession(ws))

    controller.connect()
    await wait_until(lambda: state.trades)

    assert [t.id for t in state.trades] == ["ok"]
    assert controller.status is ConnectionState.CONNECTED
    await controller.disconnect()


@pytest.mark.asyncio
async def test_drop_schedules_exactly_one_reconnect(state, logger):
    session = FakeWsSession(FakeWebSocket([]), FakeWebSocket(hold=True))
    controller = make_controller(state, logger, session, delay=0.05)

    controller.connect()
    await wait_until(lambda: controller.status is ConnectionState.RECONNECTING)
    assert controller.reconnect_pending
    assert session.connects == 1
    assert not state.connected

    await wait_until(lambda: controller.status is ConnectionState.CONNECTED)
    assert session.connects == 2
    assert controller.reconnect_attempts == 0

    await controller.disconnect()


@pytest.mark.asyncio
async def test_handshake_failure_keeps_retrying(state, logger):
    session = FakeWsSession(aiohttp.ClientConnectionError("refused"),
                            aiohttp.ClientConnectionError("refused"),
                            FakeWebSocket(hold=True))
    controller = make_controller(state, logger, session, delay=0.01)

    controller.connect()
    await wait_until(lambda: controller.status is ConnectionState.CONNECTED)

    assert session.connects == 3
    await controller.disconnect()


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect(state, logger):
    session = FakeWsSession(FakeWebSocket([]))
    controller = make_controller(state, logger, session, delay=0.05)

    controller.connect()
    await wait_until(lambda: controller.reconnect_pending)
    await controller.disconnect()
    await asyncio.sleep(0.15)

    assert session.connects == 1
    assert controller.status is ConnectionState.DISCONNECTED
    assert not controller.reconnect_pending


@pytest.mark.asyncio
async def test_disconnect_from_connecting(state, logger):
    class SlowSession(FakeWsSession):
        def ws_connect(self, url, **kwargs):
            self.connects += 1
            return _Stall()

    class _Stall:
        async def __aenter__(self):
            await asyncio.sleep(10)

        async def __aexit__(self, *exc):
            return False

    session = SlowSession()
    controller = make_controller(state, logger, session)
    controller.connect()
    await asyncio.sleep(0.01)

    await controller.disconnect()
    await asyncio.sleep(0.1)

    assert controller.status is ConnectionState.DISCONNECTED
    assert session.connects == 1


@pytest.mark.asyncio
async def test_connect_is_ignored_while_connected(state, logger):
    session = FakeWsSession(FakeWebSocket(hold=True))
    controller = make_controller(state, logger, session)

    controller.connect()
    await wait_until(lambda: controller.status is ConnectionState.CONNECTED)
    controller.connect()
    await asyncio.sleep(0.02)

    assert session.connects == 1
    await controller.disconnect()


def test_push_trades_respect_tape_bound(state, logger):
    controller = make_controller(state, logger, FakeWsSession())
    for i in range(130):
        controller.dispatch({"type": "trade", "id": f"t{i}", "price": 1, "quantity": 1})

    assert len(state.trades) == 100
    assert state.trades[0].id == "t129"
    assert state.trades[-1].id == "t30"


def test_order_update_replaces_tracked_order(state, logger):
    state.add_order(Order.from_payload({"id": "o1", "symbol": "BTC/USDT", "side": "buy",
                                        "type": "limit", "price": 100, "quantity": 2}))
    controller = make_controller(state, logger, FakeWsSession())

    controller.dispatch({"type": "order_update", "id": "o1", "symbol": "BTC/USDT", "side": "buy",
                         "order_type": "limit", "price": 100, "quantity": 2,
                         "filled_quantity": 2, "status": "filled"})
    controller.dispatch({"type": "order_update", "id": "other", "symbol": "BTC/USDT", "side": "buy",
                         "order_type": "market", "quantity": 1})

    assert len(state.orders) == 1
    assert state.orders[0].status.value == "filled"
    assert state.orders[0].filled_quantity == 2


def test_overfilled_order_update_is_dropped(state, logger):
    state.add_order(Order.from_payload({"id": "o1", "symbol": "BTC/USDT", "side": "buy",
                                        "type": "limit", "price": 100, "quantity": 1}))
    controller = make_controller(state, logger, FakeWsSession())

    controller.dispatch({"type": "order_update", "order_update": {
        "id": "o1", "symbol": "BTC/USDT", "side": "buy", "type": "limit",
        "price": 100, "quantity": 1, "filled_quantity": 5}})

    assert state.orders[0].filled_quantity == 0


def test_error_message_is_only_logged(state, logger):
    controller = make_controller(state, logger, FakeWsSession())
    controller.dispatch({"type": "error", "message": "bad symbol"})
    assert state.trades == [] and state.market is None


def test_non_finite_orderbook_frame_is_dropped(state, logger):
    controller = make_controller(state, logger, FakeWsSession())
    controller.dispatch({"type": "orderbook", "bids": [[1, 1]], "asks": [[2, 1]]})

    controller.handle_raw('{"type":"orderbook","bids":[[NaN,1],[1,1]],"asks":[]}')
    controller.handle_raw('{"type":"trade","id":"t1","price":1,"quantity":1,"timestamp":1e300}')

    assert [lvl.price for lvl in state.order_book.asks] == [2]
    assert state.trades == []


@pytest.mark.asyncio
async def test_bad_numbers_do_not_drop_the_channel(state, logger):
    ws = FakeWebSocket([
        text('{"type":"orderbook","bids":[[NaN,1],[1,1]],"asks":[]}'),
        text('{"type":"market_data","price":Infinity}'),
        text({"type": "trade", "id": "late", "price": 1, "quantity": 1, "timestamp": 1e300}),
        text({"type": "trade", "id": "ok", "price": 1, "quantity": 1}),
    ], hold=True)
    session = FakeWsSession(ws)
    controller = make_controller(state, logger, session)

    controller.connect()
    await wait_until(lambda: state.trades)

    assert [t.id for t in state.trades] == ["ok"]
    assert state.market is None
    assert controller.status is ConnectionState.CONNECTED
    assert session.connects == 1
    await controller.disconnect()


@pytest.mark.asyncio
async def test_manual_connect_replaces_pending_reconnect(state, logger):
    session = FakeWsSession(FakeWebSocket([]), FakeWebSocket([]))
    controller = make_controller(state, logger, session, delay=0.3)

    controller.connect()
    await wait_until(lambda: controller.reconnect_pending)
    first_timer = controller._reconnect_task

    controller.connect()
    await asyncio.sleep(0.01)
    assert first_timer.cancelled()

    # the manual channel drops too; a fresh full-delay timer must be scheduled
    await wait_until(lambda: session.connects == 2 and controller.reconnect_pending)
    assert controller._reconnect_task is not first_timer
    await asyncio.sleep(0.1)
    assert session.connects == 2

    await controller.disconnect()
