"""Bybit v5 unified trading adapter.

Requests are signed with HMAC-SHA256 over
``timestamp + api_key + recv_window + (query string | JSON body)`` and the
signature travels in the ``X-BAPI-*`` headers.  Responses carry
``retCode`` (0 = success) and ``retMsg``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

from config import settings
from services.brokers.base import (
    BrokerAuthError,
    BrokerError,
    BrokerGateway,
    BrokerRequestError,
    OrderRequest,
    OrderResult,
    SourceExecutionEvent,
)
from services.brokers.normalize import (
    ExecutionStatus,
    OrderType,
    Side,
    normalize_order_type,
    normalize_side,
    parse_float,
)
from utils.logger import broker_logger as logger
from utils.utcnow import to_utc_naive

# retCode values meaning the key/signature was refused
_AUTH_RET_CODES = {10003, 10004, 10005, 10007, 33004}


def _decimal_str(value: float) -> str:
    text = f"{value:.10f}".rstrip("0").rstrip(".")
    return text or "0"


def _epoch_ms(dt: datetime) -> int:
    return int((dt - datetime(1970, 1, 1)).total_seconds() * 1000)


class BybitGateway(BrokerGateway):
    broker_type = "bybit"

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        recv_window: Optional[int] = None,
        category: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(base_url or settings.BYBIT_API_URL, **kwargs)
        self._api_key = api_key
        self._api_secret = api_secret
        self._recv_window = recv_window or settings.BYBIT_RECV_WINDOW
        self.category = category or settings.BYBIT_CATEGORY

    def sign(self, timestamp: str, payload: str) -> str:
        message = f"{timestamp}{self._api_key}{self._recv_window}{payload}"
        return hmac.new(self._api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    def _signed_headers(self, payload: str) -> dict:
        if not (self._api_key and self._api_secret):
            raise BrokerAuthError("Bybit connection has no API key/secret")
        timestamp = str(int(time.time() * 1000))
        return {
            "Content-Type": "application/json",
            "X-BAPI-API-KEY": self._api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-SIGN": self.sign(timestamp, payload),
            "X-BAPI-RECV-WINDOW": str(self._recv_window),
        }

    async def _signed(self, method: str, path: str, payload: dict, *, write: bool = False) -> dict:
        if method == "GET":
            query = urlencode(payload)
            data = await self._request(
                "GET",
                f"{path}?{query}" if query else path,
                headers=self._signed_headers(query),
                authenticated=False,
            )
        else:
            body = json.dumps(payload, separators=(",", ":"))
            data = await self._request(
                "POST",
                path,
                content=body,
                headers=self._signed_headers(body),
                write=write,
                authenticated=False,
            )
        ret_code = data.get("retCode")
        if ret_code in _AUTH_RET_CODES:
            raise BrokerAuthError(f"Bybit rejected credentials: {data.get('retMsg')}")
        if ret_code not in (0, None):
            raise BrokerRequestError(f"Bybit {path} failed ({ret_code}): {data.get('retMsg')}")
        return data.get("result") or {}

    # -- reads ----------------------------------------------------------------

    async def list_recent_executions(
        self, account_id: str, since: datetime, until: datetime
    ) -> list[SourceExecutionEvent]:
        result = await self._signed(
            "GET",
            "/v5/execution/list",
            {
                "category": self.category,
                "startTime": _epoch_ms(since),
                "endTime": _epoch_ms(until),
                "limit": 100,
            },
        )
        events: list[SourceExecutionEvent] = []
        for item in result.get("list") or []:
            if (item.get("execType") or "Trade") != "Trade":
                continue  # funding, settlement, liquidation bookkeeping
            try:
                order_type = normalize_order_type(item.get("orderType"))
                if item.get("stopOrderType") and order_type == OrderType.MARKET:
                    order_type = OrderType.STOP
                closed_size = parse_float(item.get("closedSize")) or 0.0
                events.append(
                    SourceExecutionEvent(
                        broker=self.broker_type,
                        symbol=str(item.get("symbol")),
                        side=normalize_side(item.get("side")),
                        quantity=float(item.get("execQty") or 0),
                        order_type=order_type,
                        price=parse_float(item.get("orderPrice")) if order_type != OrderType.MARKET else parse_float(item.get("execPrice")),
                        stop_price=parse_float(item.get("triggerPrice")),
                        order_id=item.get("orderId"),
                        execution_id=item.get("execId"),
                        status=ExecutionStatus.FILLED,
                        pnl=parse_float(item.get("execPnl")),
                        occurred_at=to_utc_naive(item.get("execTime")),
                        reduces_position=closed_size > 0,
                        raw=item,
                    )
                )
            except ValueError as exc:
                logger.warning("Skipping malformed Bybit execution", exec_id=item.get("execId"), error=str(exc))
        return events

    # -- writes ---------------------------------------------------------------

    async def place_order(self, account_id: str, order: OrderRequest) -> OrderResult:
        body: dict[str, Any] = {
            "category": self.category,
            "symbol": order.symbol,
            "side": "Buy" if order.side == Side.BUY else "Sell",
            "orderType": "Limit" if order.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) else "Market",
            "qty": _decimal_str(order.quantity),
        }
        if order.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT):
            if order.price is None:
                return OrderResult.failed(f"{order.order_type.value} order requires a limit price")
            body["price"] = _decimal_str(order.price)
        if order.order_type.uses_stop_price:
            if order.stop_price is None:
                return OrderResult.failed(f"{order.order_type.value} order requires a stop price")
            body["triggerPrice"] = _decimal_str(order.stop_price)
            # Buy stops trigger on a rise, sell stops on a fall
            body["triggerDirection"] = 1 if order.side == Side.BUY else 2
        if order.tag:
            body["orderLinkId"] = order.tag[:36]
        try:
            result = await self._signed("POST", "/v5/order/create", body, write=True)
        except BrokerError as exc:
            return OrderResult.failed(str(exc))
        if not result.get("orderId"):
            return OrderResult.failed("Bybit returned no orderId")
        return OrderResult(success=True, order_id=str(result["orderId"]))

    async def cancel_order(
        self, account_id: str, order_id: str, *, symbol: Optional[str] = None
    ) -> OrderResult:
        if not symbol:
            return OrderResult.failed("Bybit cancel requires the order symbol")
        try:
            await self._signed(
                "POST",
                "/v5/order/cancel",
                {"category": self.category, "symbol": symbol, "orderId": str(order_id)},
                write=True,
            )
        except BrokerError as exc:
            return OrderResult.failed(str(exc))
        return OrderResult(success=True, order_id=str(order_id))

    async def modify_order(
        self,
        account_id: str,
        order_id: str,
        *,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        quantity: Optional[int] = None,
        symbol: Optional[str] = None,
        order_type: Optional[OrderType] = None,
    ) -> OrderResult:
        if not symbol:
            return OrderResult.failed("Bybit amend requires the order symbol")
        body: dict[str, Any] = {"category": self.category, "symbol": symbol, "orderId": str(order_id)}
        if limit_price is not None:
            body["price"] = _decimal_str(limit_price)
        if stop_price is not None:
            body["triggerPrice"] = _decimal_str(stop_price)
        if quantity is not None:
            body["qty"] = _decimal_str(quantity)
        try:
            await self._signed("POST", "/v5/order/amend", body, write=True)
        except BrokerError as exc:
            return OrderResult.failed(str(exc))
        return OrderResult(success=True, order_id=str(order_id))
