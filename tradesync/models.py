from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

ZERO = Decimal("0")


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    LIMIT = "limit"
    MARKET = "market"


class OrderStatus(Enum):
    """
    Lifecycle states of a user order.
    The matching server reports freshly accepted orders as 'new'.
    """
    PENDING = "pending"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, raw: Any) -> "OrderStatus":
        value = str(raw or "pending").lower()
        if value == "new":
            return cls.PENDING
        if value == "partiallyfilled":
            return cls.PARTIALLY_FILLED
        return cls(value)


def to_decimal(value: Any, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    """Converts a JSON number/string to a finite Decimal. None and '' yield the default."""
    if value is None or value == "":
        return default
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")
    if not number.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return number


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: Any) -> datetime:
    """Accepts ISO-8601 strings, epoch seconds or epoch milliseconds."""
    if value is None or value == "":
        return utcnow()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValueError(f"epoch out of range: {value!r}")
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def symbol_parts(symbol: str) -> List[str]:
    """'BTC/USDT' -> ['BTC', 'USDT']"""
    for sep in ("/", "-"):
        if sep in symbol:
            base, quote = symbol.split(sep, 1)
            return [base.upper(), quote.upper()]
    raise ValueError(f"symbol must look like BASE/QUOTE: {symbol!r}")


def symbol_path(symbol: str) -> str:
    """URL form used by the trading server: 'BTC/USDT' -> 'BTC-USDT'"""
    return "-".join(symbol_parts(symbol))


@dataclass(slots=True)
class MarketSnapshot:
    """
    Full 24h market view for the active symbol.
    Always replaced as a whole, never merged field by field.
    """
    price: Decimal
    change_24h: Decimal = ZERO
    change_pct_24h: Decimal = ZERO
    volume_24h: Decimal = ZERO
    high_24h: Decimal = ZERO
    low_24h: Decimal = ZERO
    observed_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "MarketSnapshot":
        price = data.get("price", data.get("last_price"))
        if price is None:
            raise ValueError("market data without a price")
        return cls(
            price=to_decimal(price),
            change_24h=to_decimal(data.get("price_change_24h")),
            change_pct_24h=to_decimal(data.get("price_change_percentage_24h")),
            volume_24h=to_decimal(data.get("total_volume", data.get("volume_24h"))),
            high_24h=to_decimal(data.get("high_24h")),
            low_24h=to_decimal(data.get("low_24h")),
            observed_at=to_timestamp(data.get("timestamp")),
        )


@dataclass(slots=True)
class OrderBookLevel:
    price: Decimal
    quantity: Decimal

    @classmethod
    def from_payload(cls, data: Any) -> "OrderBookLevel":
        if isinstance(data, (list, tuple)):
            return cls(price=to_decimal(data[0]), quantity=to_decimal(data[1]))
        return cls(
            price=to_decimal(data["price"]),
            quantity=to_decimal(data.get("quantity", data.get("total_quantity"))),
        )


@dataclass(slots=True)
class OrderBookSnapshot:
    """Bids best-first (descending), asks best-first (ascending)."""
    bids: List[OrderBookLevel] = field(default_factory=list)
    asks: List[OrderBookLevel] = field(default_factory=list)

    def __post_init__(self):
        self.bids = sorted(self.bids, key=lambda lvl: lvl.price, reverse=True)
        self.asks = sorted(self.asks, key=lambda lvl: lvl.price)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "OrderBookSnapshot":
        return cls(
            bids=[OrderBookLevel.from_payload(b) for b in data.get("bids") or []],
            asks=[OrderBookLevel.from_payload(a) for a in data.get("asks") or []],
        )

    @property
    def best_bid(self) -> Optional[OrderBookLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[OrderBookLevel]:
        return self.asks[0] if self.asks else None


@dataclass(slots=True)
class Trade:
    id: str
    price: Decimal
    quantity: Decimal
    side: Side
    occurred_at: datetime

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Trade":
        # Server-side trade records carry no aggressor side
        return cls(
            id=str(data["id"]),
            price=to_decimal(data["price"]),
            quantity=to_decimal(data["quantity"]),
            side=Side(str(data.get("side") or "buy").lower()),
            occurred_at=to_timestamp(data.get("timestamp")),
        )


@dataclass(slots=True)
class Order:
    """
    One of the user's own orders. Records are replaced whole, never patched.
    """
    id: str
    symbol: str
    side: Side
    type: OrderType
    price: Optional[Decimal]
    quantity: Decimal
    filled_quantity: Decimal = ZERO
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.type is OrderType.LIMIT and self.price is None:
            raise ValueError("limit order requires a price")
        if self.type is OrderType.MARKET and self.price is not None:
            raise ValueError("market order must not carry a price")
        if self.filled_quantity < 0 or self.filled_quantity > self.quantity:
            raise ValueError(
                f"filled quantity {self.filled_quantity} outside [0, {self.quantity}]"
            )

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Order":
        symbol = data.get("symbol", "")
        if isinstance(symbol, dict):
            symbol = f"{symbol['base']}/{symbol['quote']}"
        order_type = OrderType(str(data.get("type", data.get("order_type"))).lower())
        price = to_decimal(data.get("price"), default=None)
        if order_type is OrderType.MARKET:
            price = None
        return cls(
            id=str(data["id"]),
            symbol=symbol,
            side=Side(str(data["side"]).lower()),
            type=order_type,
            price=price,
            quantity=to_decimal(data["quantity"]),
            filled_quantity=to_decimal(data.get("filled_quantity")),
            status=OrderStatus.parse(data.get("status")),
            created_at=to_timestamp(data.get("created_at", data.get("timestamp"))),
        )


@dataclass(slots=True)
class OrderRequest:
    symbol: str
    side: Side
    type: OrderType
    quantity: Decimal
    price: Optional[Decimal] = None
    user_id: str = ""

    def to_payload(self) -> Dict[str, Any]:
        base, quote = symbol_parts(self.symbol)
        return {
            "symbol": {"base": base, "quote": quote},
            "side": self.side.value,
            "order_type": self.type.value,
            "quantity": float(self.quantity),
            "price": float(self.price) if self.price is not None else None,
            "user_id": self.user_id,
        }


@dataclass(slots=True)
class ActionResult:
    """Outcome of a submit/cancel round trip."""
    success: bool
    order: Optional[Order] = None
    error: Optional[str] = None
