"""
FastAPI dependency injection functions.

Provides reusable dependencies for authentication, database sessions and the
realtime hub.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from clawchat.core.exceptions import AuthenticationError
from clawchat.db.session import get_db
from clawchat.realtime.hub import RealtimeHub, get_realtime_hub
from clawchat.schemas.realtime import Identity

# HTTP Bearer token security scheme
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_identity(
    hub: Annotated[RealtimeHub, Depends(get_realtime_hub)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Identity:
    """
    Resolve the bearer session token to an identity.

    Raises:
        HTTPException: 401 if the token is missing, invalid or revoked
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await hub.verifier.verify_session_token(credentials.credentials)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Hub = Annotated[RealtimeHub, Depends(get_realtime_hub)]
CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
