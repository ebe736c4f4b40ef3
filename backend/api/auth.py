from typing import Optional

from fastapi import Header, HTTPException
from sqlalchemy import select

from models.database import AsyncSessionLocal, UserSession
from utils.secrets import hash_token
from utils.utcnow import utcnow


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> str:
    """Resolve ``Authorization: Bearer <token>`` to a user id or answer 401."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")

    async with AsyncSessionLocal() as session:
        row = await session.execute(
            select(UserSession).where(UserSession.token_hash == hash_token(token.strip()))
        )
        user_session = row.scalar_one_or_none()

    if user_session is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if user_session.expires_at is not None and user_session.expires_at <= utcnow():
        raise HTTPException(status_code=401, detail="Session expired")
    return user_session.user_id
