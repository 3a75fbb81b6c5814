import asyncio
import aiohttp
import logging
from typing import Any, Dict, List, Optional

from .errors import RestFetchError
from .models import symbol_path


class TradingApiClient:
    """
    Thin REST client for the matching server.
    Every call is bounded by a client-side timeout; timeouts, transport
    failures, non-2xx statuses and undecodable bodies all raise RestFetchError.
    """
    def __init__(self, session: aiohttp.ClientSession, base_url: str,
                 logger: logging.Logger, timeout: float = 3.0):
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.logger = logger
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(method, url, timeout=self.timeout, **kwargs) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise RestFetchError(f"{method} {path}", f"HTTP {resp.status} {body[:200]}")
                return await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise RestFetchError(f"{method} {path}", f"timed out after {self.timeout.total}s")
        except aiohttp.ClientError as e:
            raise RestFetchError(f"{method} {path}", str(e) or e.__class__.__name__)
        except ValueError as e:
            raise RestFetchError(f"{method} {path}", f"undecodable body: {e}")

    async def fetch_order_book(self, symbol: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/orderbook/{symbol_path(symbol)}")
        if not isinstance(data, dict):
            raise RestFetchError("GET orderbook", "expected an object")
        return data

    async def fetch_trades(self, symbol: str, limit: int = 50) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/trades/{symbol_path(symbol)}", params={'limit': str(limit)})
        if not isinstance(data, list):
            raise RestFetchError("GET trades", "expected a list")
        return data

    async def fetch_user_orders(self, user_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/orders/user/{user_id}")
        if not isinstance(data, list):
            raise RestFetchError("GET orders", "expected a list")
        return data

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.logger.debug(f"POST /orders {payload}")
        data = await self._request("POST", "/orders", json=payload)
        return data if isinstance(data, dict) else {}

    async def cancel_order(self, order_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        params = {'user_id': user_id} if user_id else None
        data = await self._request("DELETE", f"/orders/{order_id}", params=params)
        return data if isinstance(data, dict) else {}
