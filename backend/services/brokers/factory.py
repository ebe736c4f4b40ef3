"""Build broker gateways from stored BrokerConnection rows.

A gateway is constructed per operation and closed afterwards.  OAuth tokens
close to expiry are refreshed here and written back in their own
transaction before the gateway is handed out, so a concurrent poll cycle
for the same connection reads the fresh token instead of the stale one.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

from sqlalchemy import update

from config import settings
from models.database import AsyncSessionLocal, AuthMethod, BrokerConnection, BrokerType
from services.brokers.base import BrokerAuthError, BrokerError, BrokerGateway, TokenGrant
from services.brokers.bybit import BybitGateway
from services.brokers.projectx import ProjectXGateway
from services.brokers.tradovate import TradovateGateway
from utils.logger import broker_logger as logger
from utils.secrets import decrypt_secret, encrypt_secret
from utils.utcnow import utcnow


def resolve_auth_method(connection: BrokerConnection) -> AuthMethod:
    """Pick the one usable auth method for a connection or raise BrokerAuthError."""
    has_api_key = bool(connection.api_key) and (
        bool(connection.api_username) or bool(connection.api_secret)
    )
    has_oauth = bool(connection.access_token)
    preferred = (connection.auth_method or "").strip().lower()

    if preferred == AuthMethod.OAUTH.value and has_oauth:
        return AuthMethod.OAUTH
    if preferred == AuthMethod.API_KEY.value and has_api_key:
        return AuthMethod.API_KEY
    if has_api_key:
        return AuthMethod.API_KEY
    if has_oauth:
        return AuthMethod.OAUTH
    raise BrokerAuthError(
        f"Connection {connection.broker_account_name} has no usable credentials"
    )


def _token_needs_refresh(connection: BrokerConnection) -> bool:
    if connection.token_expires_at is None:
        return False
    margin = timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)
    return connection.token_expires_at - utcnow() < margin


async def persist_token_grant(connection: BrokerConnection, grant: TokenGrant) -> None:
    """Write refreshed tokens back immediately and mirror them onto the row object."""
    values = {
        "access_token": encrypt_secret(grant.access_token),
        "refresh_token": encrypt_secret(grant.refresh_token),
        "token_expires_at": grant.expires_at,
        "updated_at": utcnow(),
    }
    async with AsyncSessionLocal() as session:
        await session.execute(
            update(BrokerConnection).where(BrokerConnection.id == connection.id).values(**values)
        )
        await session.commit()
    connection.access_token = values["access_token"]
    connection.refresh_token = values["refresh_token"]
    connection.token_expires_at = grant.expires_at
    logger.info(
        "Broker token refreshed",
        connection_id=connection.id,
        broker=connection.broker_type,
        expires_at=str(grant.expires_at) if grant.expires_at else None,
    )


async def _refresh_if_needed(connection: BrokerConnection, gateway) -> None:
    if not _token_needs_refresh(connection):
        return
    refresh_token = decrypt_secret(connection.refresh_token)
    if not refresh_token:
        if connection.token_expires_at <= utcnow():
            raise BrokerAuthError(
                f"Access token for {connection.broker_account_name} expired and no refresh token is stored"
            )
        return
    try:
        grant = await gateway.refresh_oauth_token(refresh_token)
    except BrokerError as exc:
        await gateway.close()
        raise BrokerAuthError(f"Token refresh failed for {connection.broker_account_name}: {exc}") from exc
    await persist_token_grant(connection, grant)


async def build_gateway(connection: BrokerConnection, *, transport=None) -> BrokerGateway:
    """Construct an authenticated gateway for ``connection``.

    Raises BrokerAuthError when the connection cannot be used; callers skip
    the connection and record the message.
    """
    if connection.enabled is False:
        raise BrokerAuthError(f"Connection {connection.broker_account_name} is disabled")

    broker = (connection.broker_type or "").strip().lower()
    method = resolve_auth_method(connection)

    if broker == BrokerType.PROJECTX.value:
        if method == AuthMethod.API_KEY:
            return ProjectXGateway(
                api_key=decrypt_secret(connection.api_key),
                username=connection.api_username,
                service_type=connection.api_service_type,
                base_url=connection.api_base_url,
                transport=transport,
            )
        gateway = ProjectXGateway(
            access_token=decrypt_secret(connection.access_token),
            service_type=connection.api_service_type,
            base_url=connection.api_base_url,
            transport=transport,
        )
        await _refresh_if_needed(connection, gateway)
        return gateway

    if broker == BrokerType.TRADOVATE.value:
        if method != AuthMethod.OAUTH:
            raise BrokerAuthError("Tradovate connections require OAuth tokens")
        gateway = TradovateGateway(
            access_token=decrypt_secret(connection.access_token),
            account_name=connection.api_username,
            base_url=connection.api_base_url,
            transport=transport,
        )
        await _refresh_if_needed(connection, gateway)
        return gateway

    if broker == BrokerType.BYBIT.value:
        if method != AuthMethod.API_KEY or not connection.api_secret:
            raise BrokerAuthError("Bybit connections require an API key and secret")
        return BybitGateway(
            api_key=decrypt_secret(connection.api_key),
            api_secret=decrypt_secret(connection.api_secret),
            base_url=connection.api_base_url,
            transport=transport,
        )

    raise BrokerAuthError(f"Unsupported broker type: {connection.broker_type}")


@asynccontextmanager
async def open_gateway(connection: BrokerConnection) -> AsyncIterator[BrokerGateway]:
    """``async with open_gateway(conn) as gw:`` -- build, use once, close."""
    gateway = await build_gateway(connection)
    try:
        yield gateway
    finally:
        await gateway.close()
