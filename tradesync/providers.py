import asyncio
import aiohttp
import ccxt.async_support as ccxt
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .errors import ProviderFetchError
from .models import MarketSnapshot, symbol_path, to_decimal, to_timestamp, utcnow


class DataSourceProvider:
    """
    One source of market data for the active symbol.
    Subclasses map their own response shape onto MarketSnapshot and raise
    ProviderFetchError for every kind of failure.
    """
    terminal = False

    async def fetch_data(self) -> MarketSnapshot:
        raise NotImplementedError

    def name(self) -> str:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name()!r}>"


class HttpJsonProvider(DataSourceProvider):
    """Shared GET-and-decode path for the plain HTTP providers."""

    def __init__(self, session: aiohttp.ClientSession, timeout: float):
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        try:
            async with self.session.get(
                url, params=params, timeout=self.timeout, headers={"Accept": "application/json"}
            ) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise ProviderFetchError(self.name(), f"timed out after {self.timeout.total}s")
        except aiohttp.ClientError as e:
            raise ProviderFetchError(self.name(), str(e) or e.__class__.__name__)
        except ValueError as e:
            raise ProviderFetchError(self.name(), f"undecodable body: {e}")


class BackendApiProvider(HttpJsonProvider):
    """The trading server's own market-data endpoint."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str, symbol: str, timeout: float = 3.0):
        super().__init__(session, timeout)
        self.url = f"{base_url.rstrip('/')}/market_data/{symbol_path(symbol)}"

    def name(self) -> str:
        return "Backend API"

    async def fetch_data(self) -> MarketSnapshot:
        data = await self._get_json(self.url)
        if not isinstance(data, dict) or not data.get("price"):
            raise ProviderFetchError(self.name(), "response carries no price")
        try:
            return MarketSnapshot.from_payload(data)
        except (ValueError, TypeError) as e:
            raise ProviderFetchError(self.name(), f"bad payload: {e}")


class BinanceApiProvider(DataSourceProvider):
    """
    Binance 24h ticker through ccxt.
    The ccxt client is created lazily unless one is injected.
    """

    def __init__(self, symbol: str, timeout: float = 5.0, exchange: Optional[Any] = None):
        self.symbol = symbol
        self.timeout = timeout
        self.exchange = exchange
        self._owns_exchange = exchange is None

    def name(self) -> str:
        return "Binance API"

    def _client(self):
        if self.exchange is None:
            self.exchange = ccxt.binance({
                'timeout': int(self.timeout * 1000),
                'enableRateLimit': True,
                'options': {'defaultType': 'spot'},
            })
        return self.exchange

    async def fetch_data(self) -> MarketSnapshot:
        try:
            ticker = await asyncio.wait_for(self._client().fetch_ticker(self.symbol), self.timeout)
        except asyncio.TimeoutError:
            raise ProviderFetchError(self.name(), f"timed out after {self.timeout}s")
        except ccxt.BaseError as e:
            raise ProviderFetchError(self.name(), f"{e.__class__.__name__}: {e}")

        if not ticker or not ticker.get('last'):
            raise ProviderFetchError(self.name(), "ticker carries no last price")

        return MarketSnapshot(
            price=to_decimal(ticker['last']),
            change_24h=to_decimal(ticker.get('change')),
            change_pct_24h=to_decimal(ticker.get('percentage')),
            volume_24h=to_decimal(ticker.get('baseVolume')),
            high_24h=to_decimal(ticker.get('high')),
            low_24h=to_decimal(ticker.get('low')),
            observed_at=utcnow(),
        )

    async def close(self):
        if self._owns_exchange and self.exchange is not None:
            await self.exchange.close()
            self.exchange = None


class CoinGeckoApiProvider(HttpJsonProvider):
    URL = "https://api.coingecko.com/api/v3/simple/price"

    def __init__(self, session: aiohttp.ClientSession, coin_id: str, timeout: float = 5.0):
        super().__init__(session, timeout)
        self.coin_id = coin_id

    def name(self) -> str:
        return "CoinGecko API"

    async def fetch_data(self) -> MarketSnapshot:
        data = await self._get_json(self.URL, params={
            'ids': self.coin_id,
            'vs_currencies': 'usd',
            'include_24hr_change': 'true',
            'include_24hr_vol': 'true',
            'include_last_updated_at': 'true',
        })
        coin = data.get(self.coin_id) if isinstance(data, dict) else None
        if not coin or not coin.get('usd'):
            raise ProviderFetchError(self.name(), f"no usd price for {self.coin_id}")

        price = to_decimal(coin['usd'])
        pct = to_decimal(coin.get('usd_24h_change'))
        # Only the percentage is published; back out the absolute move from it
        change = price - price / (1 + pct / 100) if pct > -100 else Decimal("0")
        return MarketSnapshot(
            price=price,
            change_24h=change,
            change_pct_24h=pct,
            volume_24h=to_decimal(coin.get('usd_24h_vol')),
            observed_at=to_timestamp(coin.get('last_updated_at')),
        )


class DefaultDataProvider(DataSourceProvider):
    """Fixed offline snapshot. Always last in the chain, never fails."""
    terminal = True

    def name(self) -> str:
        return "Default Data"

    async def fetch_data(self) -> MarketSnapshot:
        return MarketSnapshot(
            price=Decimal("45000"),
            change_24h=Decimal("0"),
            change_pct_24h=Decimal("0"),
            volume_24h=Decimal("25000000000"),
            high_24h=Decimal("46000"),
            low_24h=Decimal("44000"),
            observed_at=utcnow(),
        )


def build_providers(config: dict, session: aiohttp.ClientSession, symbol: str) -> List[DataSourceProvider]:
    """
    Builds the provider chain in configured priority order.
    The offline default is always appended last.
    """
    md = config['market_data']
    providers: List[DataSourceProvider] = []
    for key in md['providers']:
        if key == 'backend':
            providers.append(BackendApiProvider(
                session, md['backend_url'], symbol, timeout=md['timeouts']['backend']))
        elif key == 'binance':
            providers.append(BinanceApiProvider(symbol, timeout=md['timeouts']['binance']))
        elif key == 'coingecko':
            base = symbol.split('/')[0].upper()
            coin_id = md['coingecko_ids'].get(base, base.lower())
            providers.append(CoinGeckoApiProvider(
                session, coin_id, timeout=md['timeouts']['coingecko']))
        else:
            raise ValueError(f"unknown market data provider: {key!r}")
    providers.append(DefaultDataProvider())
    return providers
