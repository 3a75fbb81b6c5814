import logging
import random
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from .errors import AllSourcesExhausted, RestFetchError
from .models import (
    MarketSnapshot, Order, OrderBookLevel, OrderBookSnapshot, Side, Trade, utcnow,
)

PLACEHOLDER_PRICE = Decimal("45000")


@dataclass(slots=True)
class BootstrapReport:
    market_source: Optional[str] = None
    market_error: Optional[str] = None
    order_book_placeholder: bool = False
    trades_placeholder: bool = False
    orders_loaded: bool = False


class TradingState:
    """
    Single owner of the session's trading data.
    The resolver, the push channel and the order client all mutate it through
    the methods below; nothing replaces the store itself.
    """
    SERVICE_BUSY_LABEL = "Service Busy"

    def __init__(self, symbol: str, logger: logging.Logger, user_id: str = "",
                 trade_limit: int = 100, history_limit: int = 50):
        self.symbol = symbol
        self.user_id = user_id
        self.logger = logger
        self.trade_limit = trade_limit
        self.history_limit = history_limit

        self.market: Optional[MarketSnapshot] = None
        self.data_source: str = "Unknown"
        self.order_book = OrderBookSnapshot()
        self.trades: List[Trade] = []
        self.orders: List[Order] = []
        self.connected = False

    # --- Market snapshot ---

    def set_market_snapshot(self, snapshot: MarketSnapshot, source: Optional[str] = None):
        self.market = snapshot
        if source:
            self.data_source = source

    @property
    def current_price(self) -> Decimal:
        return self.market.price if self.market else Decimal("0")

    @property
    def price_change(self) -> Decimal:
        return self.market.change_24h if self.market else Decimal("0")

    @property
    def price_change_pct(self) -> Decimal:
        return self.market.change_pct_24h if self.market else Decimal("0")

    @property
    def volume_24h(self) -> Decimal:
        return self.market.volume_24h if self.market else Decimal("0")

    # --- Order book / trade tape ---

    def replace_order_book(self, book: OrderBookSnapshot):
        self.order_book = book

    def replace_trades(self, trades: List[Trade]):
        self.trades = list(trades)[:self.trade_limit]

    def push_trade(self, trade: Trade):
        self.trades.insert(0, trade)
        del self.trades[self.trade_limit:]

    # --- User orders ---

    def replace_orders(self, orders: List[Order]):
        self.orders = list(orders)

    def add_order(self, order: Order):
        self.orders.insert(0, order)

    def get_order(self, order_id: str) -> Optional[Order]:
        for order in self.orders:
            if order.id == order_id:
                return order
        return None

    def replace_order(self, order: Order) -> bool:
        """Swaps in a whole new record for an order we already track."""
        for i, existing in enumerate(self.orders):
            if existing.id == order.id:
                self.orders[i] = order
                return True
        return False

    def remove_order(self, order_id: str) -> bool:
        before = len(self.orders)
        self.orders = [o for o in self.orders if o.id != order_id]
        return len(self.orders) != before

    def set_connected(self, connected: bool):
        self.connected = connected

    # --- Bootstrap ---

    async def initialize(self, resolver, api, controller) -> BootstrapReport:
        """
        Startup sequence. Every step runs even if the ones before it failed.
        """
        report = BootstrapReport()

        try:
            snapshot, source = await resolver.resolve()
            self.set_market_snapshot(snapshot, source)
            report.market_source = source
            self.logger.info(f"🎉 Market data loaded from {source}")
        except AllSourcesExhausted as e:
            self.data_source = self.SERVICE_BUSY_LABEL
            report.market_error = str(e)
            self.logger.error(f"Market data unavailable: {e}")

        try:
            raw = await api.fetch_order_book(self.symbol)
            self.replace_order_book(OrderBookSnapshot.from_payload(raw))
            self.logger.info(f"Order book loaded: {len(self.order_book.bids)} bids / {len(self.order_book.asks)} asks")
        except (RestFetchError, ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Order book fetch failed, using placeholder: {e}")
            self.replace_order_book(self.placeholder_order_book())
            report.order_book_placeholder = True

        try:
            raw = await api.fetch_trades(self.symbol, limit=self.history_limit)
            self.replace_trades([Trade.from_payload(t) for t in raw])
            self.logger.info(f"Trade history loaded: {len(self.trades)} trades")
        except (RestFetchError, ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Trade history fetch failed, using placeholder: {e}")
            self.replace_trades(self.placeholder_trades())
            report.trades_placeholder = True

        if self.user_id:
            try:
                raw = await api.fetch_user_orders(self.user_id)
                self.replace_orders([Order.from_payload(o) for o in raw])
                report.orders_loaded = True
            except (RestFetchError, ValueError, KeyError, TypeError) as e:
                # Never invent the user's own orders
                self.logger.warning(f"Open orders fetch failed: {e}")

        controller.connect()
        return report

    # --- Placeholders ---

    def _reference_price(self) -> Decimal:
        return self.market.price if self.market else PLACEHOLDER_PRICE

    def placeholder_order_book(self, depth: int = 10) -> OrderBookSnapshot:
        price = self._reference_price()
        bids, asks = [], []
        for i in range(depth):
            qty = Decimal(str(round(random.uniform(0.1, 5.1), 4)))
            step = Decimal((i + 1) * 10)
            bids.append(OrderBookLevel(price=price - step, quantity=qty))
            asks.append(OrderBookLevel(price=price + step, quantity=qty))
        return OrderBookSnapshot(bids=bids, asks=asks)

    def placeholder_trades(self, count: int = 20) -> List[Trade]:
        price = self._reference_price()
        now = utcnow()
        stamp = int(now.timestamp() * 1000)
        return [
            Trade(
                id=f"trade_{stamp}_{i}",
                price=(price + Decimal(str(round(random.uniform(-500, 500), 2)))),
                quantity=Decimal(str(round(random.uniform(0.01, 2.01), 4))),
                side=random.choice([Side.BUY, Side.SELL]),
                occurred_at=now - timedelta(minutes=i),
            )
            for i in range(count)
        ]
