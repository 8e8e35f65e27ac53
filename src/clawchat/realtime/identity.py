"""
Identity verification for realtime connections.

Humans present a signed session token; bot accounts present an API key that
is compared against the bcrypt hashes stored on bot user rows.
"""

from dataclasses import dataclass
from typing import Mapping, Optional

from starlette.concurrency import run_in_threadpool

from clawchat.core.config import settings
from clawchat.core.exceptions import (
    AuthBackendError,
    AuthenticationError,
    InvalidAPIKeyError,
    InvalidTokenError,
    NoCredentialError,
    PersistenceSideEffectError,
)
from clawchat.core.logging import get_logger
from clawchat.core.security import decode_session_token, verify_api_key
from clawchat.core.session_store import RedisSessionStore
from clawchat.metrics import auth_failures_counter
from clawchat.realtime.gateway import BotCredential, PersistenceGateway
from clawchat.schemas.realtime import Identity, Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class Credential:
    """Credential presented at connect time. A token takes precedence over an API key."""

    token: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_transport(
        cls,
        headers: Mapping[str, str],
        query_params: Mapping[str, str],
    ) -> "Credential":
        """
        Extract a credential from the upgrade request.

        The session token comes from ``Authorization: Bearer`` or the
        ``token`` query field; the API key from the ``api_key`` query field.
        """
        token: Optional[str] = None
        authorization = headers.get("authorization")
        if authorization:
            scheme, _, value = authorization.partition(" ")
            if scheme.lower() == "bearer" and value.strip():
                token = value.strip()
        if token is None:
            token = query_params.get("token") or None
        return cls(token=token, api_key=query_params.get("api_key") or None)

    @property
    def present(self) -> bool:
        return bool(self.token or self.api_key)


def _match_api_key(api_key: str, candidates: list[BotCredential]) -> Optional[Identity]:
    # bcrypt is CPU bound; runs in the thread pool
    for candidate in candidates:
        if verify_api_key(api_key, candidate.key_hash):
            return candidate.identity
    return None


class IdentityVerifier:
    """Resolves a presented credential to an ``Identity``."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        session_store: Optional[RedisSessionStore] = None,
        secret_key: Optional[str] = None,
    ) -> None:
        self._gateway = gateway
        self._session_store = session_store
        self._secret_key = secret_key

    async def verify_session_token(self, token: str) -> Identity:
        """
        Verify a session token.

        Raises:
            TokenExpiredError: If the token is past its expiry
            InvalidTokenError: If the token is malformed, badly signed or revoked
        """
        payload = decode_session_token(token, secret_key=self._secret_key)

        if (
            self._session_store is not None
            and settings.token_blacklist_enabled
            and payload.jti
            and await self._session_store.is_token_blacklisted(payload.jti)
        ):
            raise InvalidTokenError("Token has been revoked", code="TOKEN_REVOKED")

        try:
            role = Role(payload.role)
        except ValueError:
            role = Role.USER

        return Identity(
            id=payload.sub,
            username=payload.username,
            role=role,
            is_bot=payload.is_bot or role == Role.BOT,
        )

    async def verify_api_key(self, api_key: str) -> Identity:
        """
        Verify a bot API key against every stored bot key hash.

        Raises:
            InvalidAPIKeyError: If no bot account matches
            AuthBackendError: If the bot key store could not be read
        """
        try:
            candidates = await self._gateway.find_bot_identities_with_key_hashes()
        except PersistenceSideEffectError as e:
            logger.error(f"Bot key lookup failed: {e.original_error or e}")
            raise AuthBackendError() from e

        identity = await run_in_threadpool(_match_api_key, api_key, candidates)
        if identity is None:
            raise InvalidAPIKeyError()
        return identity

    async def authenticate(self, credential: Credential) -> Identity:
        """
        Resolve a credential, preferring the session token when both are given.

        Raises:
            AuthenticationError: Any of the authentication failures
        """
        try:
            if credential.token:
                identity = await self.verify_session_token(credential.token)
            elif credential.api_key:
                identity = await self.verify_api_key(credential.api_key)
            else:
                raise NoCredentialError()
        except AuthenticationError as e:
            auth_failures_counter.labels(code=e.code).inc()
            logger.info(f"Authentication rejected: {e.code}")
            raise

        logger.debug(
            f"Authenticated {identity.username}",
            extra={"user_id": identity.id, "is_bot": identity.is_bot},
        )
        return identity
