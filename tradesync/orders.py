import dataclasses
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import OrderActionError, RestFetchError
from .logger import AsyncAuditLogger
from .models import ActionResult, Order, OrderRequest, OrderStatus
from .rest import TradingApiClient
from .state import TradingState


class OrderLifecycleClient:
    """
    Places and cancels the user's orders.

    Submission is pessimistic: nothing is inserted locally until the server
    acknowledges the order. Cancellation drops the order locally as soon as the
    server confirms it. Failures are always reported, never masked.
    """
    def __init__(self, api: TradingApiClient, state: TradingState, logger: logging.Logger,
                 audit_log: Optional[AsyncAuditLogger] = None):
        self.api = api
        self.state = state
        self.logger = logger
        self.audit_log = audit_log

    async def submit(self, request: OrderRequest) -> ActionResult:
        if not request.user_id:
            request = dataclasses.replace(request, user_id=self.state.user_id)
        self.logger.info(f"📨 SUBMIT: {request.side.value.upper()} {request.quantity} {request.symbol} "
                         f"{request.type.value} @ {request.price if request.price is not None else 'MKT'}")
        try:
            body = await self.api.create_order(request.to_payload())
            order = self._order_from_ack(request, body)
        except (RestFetchError, OrderActionError) as e:
            self.logger.error(f"❌ Order submission failed: {e}")
            await self._audit("submit", None, request, False, str(e))
            return ActionResult(success=False, error=str(e))

        self.state.add_order(order)
        self.logger.info(f"✅ Order {order.id} accepted ({order.status.value})")
        await self._audit("submit", order.id, request, True, order.status.value)
        return ActionResult(success=True, order=order)

    async def cancel(self, order_id: str) -> ActionResult:
        order = self.state.get_order(order_id)
        try:
            body = await self.api.cancel_order(order_id, self.state.user_id or None)
            if body.get('success') is False:
                raise OrderActionError(body.get('message') or "cancellation rejected")
        except (RestFetchError, OrderActionError) as e:
            self.logger.error(f"❌ Cancel {order_id} failed: {e}")
            await self._audit("cancel", order_id, order, False, str(e))
            return ActionResult(success=False, error=str(e))

        self.state.remove_order(order_id)
        self.logger.info(f"🗑️ Order {order_id} cancelled")
        await self._audit("cancel", order_id, order, True, "")
        return ActionResult(success=True)

    def _order_from_ack(self, request: OrderRequest, body: Dict[str, Any]) -> Order:
        """
        Accepts either {success, order: {...}} or the server's compact
        {order_id, status, message} acknowledgement.
        """
        if body.get('success') is False:
            raise OrderActionError(body.get('message') or body.get('error') or "order rejected")
        try:
            if isinstance(body.get('order'), dict):
                return Order.from_payload(body['order'])
            if body.get('order_id'):
                return Order(
                    id=str(body['order_id']),
                    symbol=request.symbol,
                    side=request.side,
                    type=request.type,
                    price=request.price,
                    quantity=request.quantity,
                    status=OrderStatus.parse(body.get('status')),
                    created_at=datetime.now(timezone.utc),
                )
        except (ValueError, KeyError, TypeError) as e:
            raise OrderActionError(f"unreadable order acknowledgement: {e}")
        raise OrderActionError("acknowledgement carries no order")

    async def _audit(self, action: str, order_id: Optional[str], source, success: bool, detail: str):
        if self.audit_log is None:
            return
        row = [datetime.now(timezone.utc).isoformat(), action, order_id or ""]
        if source is not None:
            price = source.price if source.price is not None else ""
            row += [source.symbol, source.side.value, source.type.value, str(price), str(source.quantity)]
        else:
            row += ["", "", "", "", ""]
        row += [success, detail]
        await self.audit_log.log_order(row)
