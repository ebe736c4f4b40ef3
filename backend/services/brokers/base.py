"""Broker gateway contract shared by ProjectX, Tradovate and Bybit adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from config import settings
from services.brokers.normalize import ExecutionStatus, OrderType, Side
from utils.logger import broker_logger as logger
from utils.retry import READ_RETRY, WRITE_RETRY, RetryConfig, RetryableClient


class BrokerError(Exception):
    """Base class for broker gateway failures."""


class BrokerAuthError(BrokerError):
    """Credentials missing, rejected, or a token refresh failed."""


class BrokerRequestError(BrokerError):
    """The broker answered with a non-success response or was unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class SourceExecutionEvent:
    """One observed broker-side occurrence, already normalized."""

    broker: str
    symbol: str
    side: Side
    quantity: float
    order_type: OrderType = OrderType.MARKET
    price: Optional[float] = None
    stop_price: Optional[float] = None
    order_id: Optional[str] = None
    execution_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.FILLED
    pnl: Optional[float] = None
    occurred_at: Optional[datetime] = None
    reduces_position: bool = False  # broker flagged the fill as closing
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def is_opening(self) -> bool:
        """A filled execution that realized no PnL opened (or added to) a position."""
        if self.status != ExecutionStatus.FILLED:
            return False
        if self.reduces_position:
            return False
        return self.pnl is None or self.pnl == 0

    @property
    def journal_trade_id(self) -> Optional[str]:
        """Identifier broker sync uses for the same execution in the journal."""
        if not self.execution_id:
            return None
        return f"{self.broker}_{self.execution_id}"


@dataclass
class TokenGrant:
    """Result of an OAuth refresh; the caller persists it immediately."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class OrderRequest:
    symbol: str
    side: Side
    quantity: int
    order_type: OrderType = OrderType.MARKET
    price: Optional[float] = None
    stop_price: Optional[float] = None
    tag: Optional[str] = None


@dataclass
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "OrderResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"success": self.success}
        if self.order_id is not None:
            data["orderId"] = self.order_id
        if self.error:
            data["error"] = self.error
        return data


class BrokerGateway(ABC):
    """Uniform async interface to one broker account's REST API.

    Instances are built per operation by ``services.brokers.factory`` and
    closed afterwards; they must not be cached across operations since
    credentials can be refreshed or disabled between calls.
    """

    broker_type: str = ""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout if timeout is not None else settings.BROKER_HTTP_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # -- contract -----------------------------------------------------------

    @abstractmethod
    async def list_recent_executions(
        self, account_id: str, since: datetime, until: datetime
    ) -> list[SourceExecutionEvent]:
        """Executions for ``account_id`` between ``since`` and ``until`` (naive UTC)."""

    @abstractmethod
    async def place_order(self, account_id: str, order: OrderRequest) -> OrderResult:
        """Create a live order; type, price and stop price pass through unchanged."""

    @abstractmethod
    async def cancel_order(
        self, account_id: str, order_id: str, *, symbol: Optional[str] = None
    ) -> OrderResult:
        ...

    @abstractmethod
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
        ...

    async def get_session_token(self) -> str:
        """Bearer token usable by real-time channels; not every broker has one."""
        raise BrokerError(f"{self.broker_type} does not expose a session token")

    # -- transport ----------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Return this gateway's HTTP client, creating it on first use."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "BrokerGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _auth_headers(self) -> dict:
        return {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        content: Optional[str] = None,
        write: bool = False,
        authenticated: bool = True,
    ) -> Any:
        """Send one request with the read or write retry policy; return parsed JSON."""
        client = RetryableClient(await self._get_client())
        policy: RetryConfig = WRITE_RETRY if write else READ_RETRY
        request_headers = dict(self._auth_headers()) if authenticated else {}
        if headers:
            request_headers.update(headers)
        url = f"{self.base_url}{path}"
        try:
            response = await client.request(
                method,
                url,
                config=policy,
                json=json_body,
                params=params,
                content=content,
                headers=request_headers,
            )
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            body = exc.response.text[:300]
            if status in (401, 403):
                raise BrokerAuthError(f"{self.broker_type} rejected credentials ({status}): {body}") from exc
            raise BrokerRequestError(f"{self.broker_type} {path} failed ({status}): {body}", status) from exc
        except httpx.HTTPError as exc:
            raise BrokerRequestError(f"{self.broker_type} {path} unreachable: {exc!r}") from exc

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            logger.warning("Broker returned non-JSON body", broker=self.broker_type, path=path)
            return {"raw": response.text}
