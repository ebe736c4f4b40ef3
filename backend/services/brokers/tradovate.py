"""Tradovate REST adapter (OAuth bearer auth)."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from config import settings
from services.brokers.base import (
    BrokerAuthError,
    BrokerError,
    BrokerGateway,
    OrderRequest,
    OrderResult,
    SourceExecutionEvent,
    TokenGrant,
)
from services.brokers.normalize import (
    ExecutionStatus,
    OrderType,
    normalize_order_type,
    normalize_side,
    parse_float,
)
from utils.logger import broker_logger as logger
from utils.utcnow import to_iso_z, to_utc_naive, utcnow

_ACTION = {"buy": "Buy", "sell": "Sell"}


class TradovateGateway(BrokerGateway):
    broker_type = "tradovate"

    def __init__(
        self,
        *,
        access_token: Optional[str] = None,
        account_name: Optional[str] = None,
        base_url: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(base_url or settings.TRADOVATE_API_URL, **kwargs)
        self._access_token = access_token
        self._account_name = account_name

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self._access_token}"} if self._access_token else {}

    def _require_token(self) -> None:
        if not self._access_token:
            raise BrokerAuthError("Tradovate connection has no access token")

    async def get_session_token(self) -> str:
        self._require_token()
        return self._access_token

    async def refresh_oauth_token(self, refresh_token: str) -> TokenGrant:
        if not (settings.TRADOVATE_CLIENT_ID and settings.TRADOVATE_CLIENT_SECRET):
            raise BrokerAuthError("Tradovate OAuth client credentials are not configured")
        data = await self._request(
            "POST",
            "/oauth/token",
            json_body={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.TRADOVATE_CLIENT_ID,
                "client_secret": settings.TRADOVATE_CLIENT_SECRET,
            },
            authenticated=False,
        )
        if not data.get("access_token"):
            raise BrokerAuthError(data.get("error_description") or "Tradovate token refresh failed")
        self._access_token = data["access_token"]
        expires_in = parse_float(data.get("expires_in"))
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in) if expires_in else None,
        )

    @staticmethod
    def _account_id(account_id: str) -> int:
        try:
            return int(str(account_id).strip())
        except (TypeError, ValueError):
            raise ValueError(f"Tradovate account id must be numeric, got {account_id!r}") from None

    @staticmethod
    def _failure(data: Any) -> Optional[str]:
        if isinstance(data, dict) and data.get("failureReason"):
            return f"{data['failureReason']}: {data.get('failureText') or ''}".strip(": ")
        if isinstance(data, dict) and data.get("errorText"):
            return str(data["errorText"])
        return None

    # -- reads ----------------------------------------------------------------

    async def _contract_names(self, contract_ids: set) -> dict[str, str]:
        if not contract_ids:
            return {}
        ids = ",".join(str(cid) for cid in sorted(contract_ids, key=str))
        data = await self._request("GET", "/contract/items", params={"ids": ids})
        return {str(item.get("id")): item.get("name") for item in (data or []) if item.get("name")}

    async def _order_versions(self, order_ids: set) -> dict[str, dict]:
        versions: dict[str, dict] = {}
        for order_id in order_ids:
            try:
                data = await self._request("GET", "/orderVersion/deps", params={"masterid": order_id})
            except BrokerError as exc:
                logger.warning("Tradovate order version lookup failed", order_id=order_id, error=str(exc))
                continue
            if isinstance(data, list) and data:
                versions[str(order_id)] = data[-1]
        return versions

    async def list_recent_executions(
        self, account_id: str, since: datetime, until: datetime
    ) -> list[SourceExecutionEvent]:
        self._require_token()
        fills = await self._request(
            "GET",
            "/fill/list",
            params={
                "accountId": self._account_id(account_id),
                "startTime": to_iso_z(since),
                "endTime": to_iso_z(until),
            },
        )
        fills = [f for f in (fills or []) if f.get("active", True)]
        if not fills:
            return []

        names = await self._contract_names({f.get("contractId") for f in fills if f.get("contractId") is not None})
        versions = await self._order_versions({f.get("orderId") for f in fills if f.get("orderId") is not None})

        events: list[SourceExecutionEvent] = []
        for fill in fills:
            occurred_at = to_utc_naive(fill.get("timestamp"))
            if occurred_at is not None and not (since <= occurred_at <= until):
                continue
            version = versions.get(str(fill.get("orderId")), {})
            try:
                order_type = normalize_order_type(version.get("orderType"))
                events.append(
                    SourceExecutionEvent(
                        broker=self.broker_type,
                        symbol=names.get(str(fill.get("contractId"))) or str(fill.get("contractId")),
                        side=normalize_side(fill.get("action")),
                        quantity=float(fill.get("qty") or 0),
                        order_type=order_type,
                        price=parse_float(version.get("price")) if order_type != OrderType.MARKET else parse_float(fill.get("price")),
                        stop_price=parse_float(version.get("stopPrice")),
                        order_id=str(fill["orderId"]) if fill.get("orderId") is not None else None,
                        execution_id=str(fill.get("id")),
                        status=ExecutionStatus.FILLED,
                        pnl=None,  # fills carry no realized PnL; fill pairs do
                        occurred_at=occurred_at,
                        raw=fill,
                    )
                )
            except ValueError as exc:
                logger.warning("Skipping malformed Tradovate fill", fill_id=fill.get("id"), error=str(exc))
        return events

    # -- writes ---------------------------------------------------------------

    async def place_order(self, account_id: str, order: OrderRequest) -> OrderResult:
        try:
            self._require_token()
            body: dict[str, Any] = {
                "accountSpec": self._account_name or str(account_id),
                "accountId": self._account_id(account_id),
                "action": _ACTION[order.side.value],
                "symbol": order.symbol,
                "orderQty": int(order.quantity),
                "orderType": order.order_type.value,
                "isAutomated": True,
            }
            if order.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT):
                if order.price is None:
                    return OrderResult.failed(f"{order.order_type.value} order requires a limit price")
                body["price"] = order.price
            if order.order_type.uses_stop_price:
                if order.stop_price is None:
                    return OrderResult.failed(f"{order.order_type.value} order requires a stop price")
                body["stopPrice"] = order.stop_price
            if order.tag:
                body["text"] = order.tag[:64]
            data = await self._request("POST", "/order/placeorder", json_body=body, write=True)
        except (BrokerError, ValueError) as exc:
            return OrderResult.failed(str(exc))

        failure = self._failure(data)
        if failure or data.get("orderId") is None:
            return OrderResult.failed(failure or "Tradovate returned no orderId")
        return OrderResult(success=True, order_id=str(data["orderId"]))

    async def cancel_order(
        self, account_id: str, order_id: str, *, symbol: Optional[str] = None
    ) -> OrderResult:
        try:
            self._require_token()
            data = await self._request(
                "POST",
                "/order/cancelorder",
                json_body={"orderId": int(order_id), "isAutomated": True},
                write=True,
            )
        except (BrokerError, ValueError) as exc:
            return OrderResult.failed(str(exc))
        failure = self._failure(data)
        if failure:
            return OrderResult.failed(failure)
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
        if quantity is None or order_type is None:
            return OrderResult.failed("Tradovate modify requires the order quantity and type")
        try:
            self._require_token()
            body: dict[str, Any] = {
                "orderId": int(order_id),
                "orderQty": int(quantity),
                "orderType": order_type.value,
                "isAutomated": True,
            }
            if limit_price is not None:
                body["price"] = limit_price
            if stop_price is not None:
                body["stopPrice"] = stop_price
            data = await self._request("POST", "/order/modifyorder", json_body=body, write=True)
        except (BrokerError, ValueError) as exc:
            return OrderResult.failed(str(exc))
        failure = self._failure(data)
        if failure:
            return OrderResult.failed(failure)
        return OrderResult(success=True, order_id=str(order_id))
