"""ProjectX Gateway API adapter (TopstepX, AlphaTicks and other white labels).

Auth is either ``POST /api/Auth/loginKey`` with username + API key (yields a
session JWT) or an OAuth access token.  Every gateway call is a JSON POST
answering ``{success, errorCode, errorMessage, ...}``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from config import projectx_api_url, settings
from services.brokers.base import (
    BrokerAuthError,
    BrokerError,
    BrokerGateway,
    BrokerRequestError,
    OrderRequest,
    OrderResult,
    SourceExecutionEvent,
    TokenGrant,
)
from services.brokers.normalize import (
    ExecutionStatus,
    OrderType,
    Side,
    normalize_order_type,
    normalize_side,
    normalize_status,
    parse_float,
)
from utils.logger import broker_logger as logger
from utils.utcnow import to_iso_z, to_utc_naive, utcnow

# Gateway enums
ORDER_TYPE_CODES = {
    1: OrderType.LIMIT,
    2: OrderType.MARKET,
    3: OrderType.STOP_LIMIT,
    4: OrderType.STOP,
    5: OrderType.TRAILING_STOP,
}
ORDER_TYPE_TO_CODE = {value: key for key, value in ORDER_TYPE_CODES.items()}
SIDE_CODES = {0: Side.BUY, 1: Side.SELL}  # 0 = Bid, 1 = Ask
SIDE_TO_CODE = {Side.BUY: 0, Side.SELL: 1}
ORDER_STATUS_CODES = {
    0: ExecutionStatus.UNKNOWN,
    1: ExecutionStatus.OPEN,
    2: ExecutionStatus.FILLED,
    3: ExecutionStatus.CANCELLED,
    4: ExecutionStatus.EXPIRED,
    5: ExecutionStatus.REJECTED,
    6: ExecutionStatus.PENDING,
}


def parse_account_id(value: Any) -> int:
    """The gateway and hub only accept numeric account ids."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError(f"ProjectX account id must be numeric, got {value!r}") from None


def _code(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _side(value: Any) -> Side:
    code = _code(value)
    if code is not None:
        if code not in SIDE_CODES:
            raise ValueError(f"Unrecognized ProjectX side code: {value!r}")
        return SIDE_CODES[code]
    return normalize_side(value)


def _order_type(value: Any) -> OrderType:
    code = _code(value)
    if code is not None:
        return ORDER_TYPE_CODES.get(code, OrderType.MARKET)
    return normalize_order_type(value)


def _status(value: Any) -> ExecutionStatus:
    code = _code(value)
    if code is not None:
        return ORDER_STATUS_CODES.get(code, ExecutionStatus.UNKNOWN)
    return normalize_status(value)


def event_from_order_payload(payload: dict, broker: str = "projectx") -> SourceExecutionEvent:
    """Normalize an order object (gateway search result or hub push).

    Accepts ProjectX numeric codes as well as string spellings, since the
    process-order-update endpoint receives orders relayed by clients.
    """
    symbol = (
        payload.get("contractId")
        or payload.get("symbol")
        or payload.get("symbolId")
        or payload.get("contractName")
    )
    if not symbol:
        raise ValueError("Order payload has no contract/symbol")
    quantity = parse_float(payload.get("size") or payload.get("quantity") or payload.get("qty"))
    if quantity is None or quantity <= 0:
        raise ValueError("Order payload has no positive size")
    order_id = payload.get("id") or payload.get("orderId") or payload.get("order_id")
    limit_price = parse_float(payload.get("limitPrice") or payload.get("price"))
    stop_price = parse_float(payload.get("stopPrice") or payload.get("triggerPrice"))
    raw_type = payload.get("type") if payload.get("type") is not None else payload.get("orderType")
    return SourceExecutionEvent(
        broker=broker,
        symbol=str(symbol),
        side=_side(payload.get("side") if payload.get("side") is not None else payload.get("direction")),
        quantity=quantity,
        order_type=_order_type(raw_type),
        price=limit_price,
        stop_price=stop_price,
        order_id=str(order_id) if order_id is not None else None,
        status=_status(payload.get("status")),
        pnl=parse_float(payload.get("profitAndLoss")),
        occurred_at=to_utc_naive(payload.get("updateTimestamp") or payload.get("creationTimestamp")),
        raw=payload,
    )


def event_from_trade_payload(
    trade: dict, order: Optional[dict] = None, broker: str = "projectx"
) -> SourceExecutionEvent:
    """Normalize a fill (Trade/search row or hub trade push).

    Fills carry no order type, so the parent order, when known, supplies the
    type, limit and stop price; otherwise the fill is copied as a market order.
    """
    order = order or {}
    order_type = _order_type(order.get("type")) if order else OrderType.MARKET
    quantity = parse_float(trade.get("size"))
    if quantity is None or quantity <= 0:
        raise ValueError("Trade payload has no positive size")
    return SourceExecutionEvent(
        broker=broker,
        symbol=str(trade.get("contractId")),
        side=_side(trade.get("side")),
        quantity=quantity,
        order_type=order_type,
        price=parse_float(order.get("limitPrice")) if order_type != OrderType.MARKET else parse_float(trade.get("price")),
        stop_price=parse_float(order.get("stopPrice")),
        order_id=str(trade["orderId"]) if trade.get("orderId") is not None else None,
        execution_id=str(trade.get("id")) if trade.get("id") is not None else None,
        status=ExecutionStatus.FILLED,
        pnl=parse_float(trade.get("profitAndLoss")),
        occurred_at=to_utc_naive(trade.get("creationTimestamp")),
        raw=trade,
    )


class ProjectXGateway(BrokerGateway):
    broker_type = "projectx"

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        access_token: Optional[str] = None,
        service_type: Optional[str] = None,
        base_url: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(base_url or projectx_api_url(service_type), **kwargs)
        self.service_type = (service_type or "topstepx").lower()
        self._api_key = api_key
        self._username = username
        self._access_token = access_token
        self._session_token: Optional[str] = None

    # -- auth -----------------------------------------------------------------

    def _auth_headers(self) -> dict:
        token = self._session_token or self._access_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _ensure_auth(self) -> None:
        if self._session_token or self._access_token:
            return
        if not (self._api_key and self._username):
            raise BrokerAuthError("ProjectX connection has neither an API key nor an access token")
        data = await self._request(
            "POST",
            "/api/Auth/loginKey",
            json_body={"userName": self._username, "apiKey": self._api_key},
            authenticated=False,
        )
        if data.get("errorCode") not in (0, None) or not data.get("success") or not data.get("token"):
            message = data.get("errorMessage") or f"loginKey failed (errorCode={data.get('errorCode')})"
            raise BrokerAuthError(message)
        self._session_token = data["token"]
        logger.debug("ProjectX session established", service_type=self.service_type)

    async def get_session_token(self) -> str:
        await self._ensure_auth()
        return self._session_token or self._access_token

    async def refresh_oauth_token(self, refresh_token: str) -> TokenGrant:
        if not (settings.PROJECTX_CLIENT_ID and settings.PROJECTX_CLIENT_SECRET):
            raise BrokerAuthError("ProjectX OAuth client credentials are not configured")
        data = await self._request(
            "POST",
            "/v1/oauth/token",
            json_body={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.PROJECTX_CLIENT_ID,
                "client_secret": settings.PROJECTX_CLIENT_SECRET,
            },
            authenticated=False,
        )
        if not data.get("access_token"):
            raise BrokerAuthError("ProjectX token refresh returned no access token")
        self._access_token = data["access_token"]
        expires_in = parse_float(data.get("expires_in"))
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in) if expires_in else None,
        )

    async def _call(self, path: str, body: dict, *, write: bool = False) -> dict:
        await self._ensure_auth()
        data = await self._request("POST", path, json_body=body, write=write)
        if not isinstance(data, dict):
            return {"items": data}
        if data.get("errorCode") not in (0, None) or data.get("success") is False:
            raise BrokerRequestError(
                data.get("errorMessage") or f"ProjectX {path} failed (errorCode={data.get('errorCode')})"
            )
        return data

    # -- reads ----------------------------------------------------------------

    async def search_orders(self, account_id: str, since: datetime, until: datetime) -> list[dict]:
        data = await self._call(
            "/api/Order/search",
            {
                "accountId": parse_account_id(account_id),
                "startTimestamp": to_iso_z(since),
                "endTimestamp": to_iso_z(until),
            },
        )
        return list(data.get("orders") or [])

    async def list_recent_executions(
        self, account_id: str, since: datetime, until: datetime
    ) -> list[SourceExecutionEvent]:
        data = await self._call(
            "/api/Trade/search",
            {
                "accountId": parse_account_id(account_id),
                "startTimestamp": to_iso_z(since),
                "endTimestamp": to_iso_z(until),
            },
        )
        trades = [t for t in (data.get("trades") or []) if not t.get("voided")]
        if not trades:
            return []

        # Trades carry no order type; join the parent orders to pass it through.
        orders_by_id: dict[str, dict] = {}
        try:
            for order in await self.search_orders(account_id, since - timedelta(minutes=5), until):
                orders_by_id[str(order.get("id"))] = order
        except BrokerRequestError as exc:
            logger.warning("ProjectX order lookup failed; copying fills as market", error=str(exc))

        events: list[SourceExecutionEvent] = []
        for trade in trades:
            try:
                events.append(
                    event_from_trade_payload(trade, orders_by_id.get(str(trade.get("orderId"))), self.broker_type)
                )
            except ValueError as exc:
                logger.warning("Skipping malformed ProjectX trade", trade_id=trade.get("id"), error=str(exc))
        return events

    # -- writes ---------------------------------------------------------------

    async def place_order(self, account_id: str, order: OrderRequest) -> OrderResult:
        try:
            account = parse_account_id(account_id)
        except ValueError as exc:
            return OrderResult.failed(str(exc))
        body: dict[str, Any] = {
            "accountId": account,
            "contractId": order.symbol,
            "type": ORDER_TYPE_TO_CODE[order.order_type],
            "side": SIDE_TO_CODE[order.side],
            "size": int(order.quantity),
            "limitPrice": None,
            "stopPrice": None,
            "trailPrice": None,
            "customTag": order.tag,
        }
        if order.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT):
            if order.price is None:
                return OrderResult.failed(f"{order.order_type.value} order requires a limit price")
            body["limitPrice"] = order.price
        if order.order_type in (OrderType.STOP, OrderType.STOP_LIMIT):
            if order.stop_price is None:
                return OrderResult.failed(f"{order.order_type.value} order requires a stop price")
            body["stopPrice"] = order.stop_price
        if order.order_type == OrderType.TRAILING_STOP:
            body["trailPrice"] = order.stop_price

        try:
            data = await self._call("/api/Order/place", body, write=True)
        except BrokerError as exc:
            return OrderResult.failed(str(exc))
        order_id = data.get("orderId")
        if order_id is None:
            return OrderResult.failed("ProjectX accepted the order but returned no orderId")
        return OrderResult(success=True, order_id=str(order_id))

    async def cancel_order(
        self, account_id: str, order_id: str, *, symbol: Optional[str] = None
    ) -> OrderResult:
        try:
            body = {"accountId": parse_account_id(account_id), "orderId": int(order_id)}
            await self._call("/api/Order/cancel", body, write=True)
        except (BrokerError, ValueError) as exc:
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
        try:
            body: dict[str, Any] = {
                "accountId": parse_account_id(account_id),
                "orderId": int(order_id),
                "size": quantity,
                "limitPrice": limit_price,
                "stopPrice": stop_price,
                "trailPrice": None,
            }
            await self._call("/api/Order/modify", body, write=True)
        except (BrokerError, ValueError) as exc:
            return OrderResult.failed(str(exc))
        return OrderResult(success=True, order_id=str(order_id))
