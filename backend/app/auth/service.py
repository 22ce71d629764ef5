"""Credential verification for real-time connections.

Implements the connection-time half of authentication:
1. An :class:`IdentityProvider` turns a bearer token into an Identity
2. :class:`SessionAuthenticator` runs it once per connection attempt and
   normalises every failure into :class:`AuthError`

Token issuance lives here too so the registration/login collaborator (and
tests) can mint credentials the relay accepts.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from app.errors import AuthError

from .schemas import Identity

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_EXPIRE_MINUTES = 24 * 60


class IdentityProvider(ABC):
    """Abstract token verifier.

    Implementations must raise :class:`AuthError` for any token they cannot
    vouch for. Verification may be remote, hence async.
    """

    @abstractmethod
    async def verify(self, token: str) -> Identity:
        """Return the Identity embedded in ``token``.

        Raises:
            AuthError: If the token is malformed, badly signed or expired.
        """
        pass


class JWTIdentityProvider(IdentityProvider):
    """Issues and verifies HS256 JSON Web Tokens.

    Claims follow the account service layout: ``id``, ``username``,
    ``email`` plus standard ``iat``/``exp``.

    Args:
        secret_key: Shared signing secret.
        algorithm: JWT signing algorithm.
        expire_minutes: Lifetime of issued tokens.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        expire_minutes: int = DEFAULT_TOKEN_EXPIRE_MINUTES,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._expire_minutes = expire_minutes

    def issue_token(
        self, identity: Identity, expire_minutes: Optional[int] = None
    ) -> str:
        now = datetime.now(timezone.utc)
        minutes = self._expire_minutes if expire_minutes is None else expire_minutes
        payload = {
            "id": identity.userId,
            "username": identity.username,
            "email": identity.email,
            "iat": now,
            "exp": now + timedelta(minutes=minutes),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    async def verify(self, token: str) -> Identity:
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["exp", "id"]},
            )
        except ExpiredSignatureError:
            raise AuthError("Token expired")
        except InvalidTokenError as e:
            raise AuthError(f"Invalid token: {e}")

        user_id = claims.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError("Invalid token: missing user id")

        return Identity(
            userId=user_id,
            username=str(claims.get("username") or ""),
            email=str(claims.get("email") or ""),
        )


class SessionAuthenticator:
    """Validates the credential presented when a connection is opened.

    Stateless per call: the only outcome is an Identity or an AuthError.
    """

    def __init__(self, provider: IdentityProvider) -> None:
        self._provider = provider

    async def authenticate(self, credential: Optional[str]) -> Identity:
        """Verify ``credential`` and return the embedded Identity.

        Raises:
            AuthError: Missing, invalid or expired credential.
        """
        if not credential or not credential.strip():
            logger.info("[Auth] Rejected connection: missing token")
            raise AuthError("Missing token")

        try:
            identity = await self._provider.verify(credential.strip())
        except AuthError as e:
            logger.info(f"[Auth] Rejected connection: {e.reason}")
            raise

        logger.debug(f"[Auth] Authenticated userId={identity.userId}")
        return identity


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
