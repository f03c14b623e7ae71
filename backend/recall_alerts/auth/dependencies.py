"""FastAPI authentication dependencies for route protection."""

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from recall_alerts.auth.jwt import decode_token
from recall_alerts.database import get_db
from recall_alerts.models.subscriber import Subscriber

# Strict bearer — raises 403 automatically if no token provided
_bearer_scheme = HTTPBearer()


async def get_current_subscriber(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Subscriber:
    """Extract and validate the Bearer token, then return the authenticated subscriber.

    Raises:
        HTTPException 401: If the token is invalid, expired, wrong type, or the
            subscriber no longer exists.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise credentials_exception from None

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    sub: str | None = payload.get("sub")
    if sub is None:
        raise credentials_exception

    try:
        subscriber_id = uuid.UUID(sub)
    except ValueError:
        raise credentials_exception from None

    subscriber = await db.get(Subscriber, subscriber_id)
    if subscriber is None or subscriber.is_guest:
        raise credentials_exception

    return subscriber


async def require_worker(
    subscriber: Subscriber = Depends(get_current_subscriber),
) -> Subscriber:
    """Return the caller only if they act as a worker (admins included).

    Raises:
        HTTPException 403: For members.
    """
    if not subscriber.acts_as_worker:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Worker access required",
        )
    return subscriber
