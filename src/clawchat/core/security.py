"""
Security utilities for ClawChat.

Session token decoding and bot API key hashing. Token issuance belongs to the
auth service; ``create_session_token`` exists so tools and tests can mint
tokens with the same claim layout.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError

from clawchat.core.config import settings
from clawchat.core.exceptions import InvalidTokenError, TokenExpiredError

# API keys are stored as bcrypt hashes on the bot's user row
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGORITHM = "HS256"


class TokenPayload(BaseModel):
    """Session token claims."""

    sub: str  # User ID
    username: str
    role: str = "user"
    is_bot: bool = False
    exp: datetime
    iat: datetime | None = None
    jti: str | None = None  # JWT ID (for token revocation)


# =============================================================================
# Session Tokens
# =============================================================================


def create_session_token(
    user_id: str,
    username: str,
    role: str = "user",
    is_bot: bool = False,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a signed session token.

    Args:
        user_id: Token subject
        username: Display handle carried in the token
        role: user, admin or bot
        is_bot: Whether the subject is a bot account
        expires_delta: Lifetime, 24 hours by default

    Returns:
        Encoded JWT token
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta if expires_delta is not None else timedelta(hours=24))

    to_encode: dict[str, Any] = {
        "sub": str(user_id),
        "username": username,
        "role": role,
        "is_bot": is_bot,
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def decode_session_token(token: str, secret_key: str | None = None) -> TokenPayload:
    """
    Decode and validate a session token.

    Args:
        token: JWT token to decode
        secret_key: Override for the signing key

    Returns:
        Validated token payload

    Raises:
        TokenExpiredError: If the token is past its expiry
        InvalidTokenError: If the signature or claims are invalid
    """
    try:
        payload = jwt.decode(token, secret_key or settings.secret_key, algorithms=[ALGORITHM])
    except ExpiredSignatureError as e:
        raise TokenExpiredError() from e
    except JWTError as e:
        raise InvalidTokenError() from e

    # Chat API tokens carry the user id as ``id``; ``sub`` is the JWT standard claim
    subject = payload.get("id") or payload.get("sub")
    if subject is None:
        raise InvalidTokenError("Token is missing required claims")

    try:
        return TokenPayload(
            sub=str(subject),
            username=payload.get("username") or f"user-{str(subject)[:8]}",
            role=payload.get("role", "user"),
            is_bot=bool(payload.get("is_bot", False)),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=(
                datetime.fromtimestamp(payload["iat"], tz=timezone.utc)
                if "iat" in payload
                else None
            ),
            jti=payload.get("jti"),
        )
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        raise InvalidTokenError("Token is missing required claims") from e


# =============================================================================
# API Keys
# =============================================================================


def hash_api_key(api_key: str) -> str:
    """
    Hash an API key for storage.

    Args:
        api_key: API key to hash

    Returns:
        Hashed API key
    """
    return pwd_context.hash(api_key)


def verify_api_key(api_key: str, hashed_key: str) -> bool:
    """
    Verify an API key against its hash.

    Malformed stored hashes count as a mismatch.

    Args:
        api_key: API key to verify
        hashed_key: Hashed key to check against

    Returns:
        True if key matches, False otherwise
    """
    try:
        return pwd_context.verify(api_key, hashed_key)
    except (ValueError, TypeError):
        return False


def generate_api_key(prefix: str = "claw_") -> str:
    """Generate a new URL-safe bot API key."""
    return f"{prefix}{secrets.token_urlsafe(32)}"
