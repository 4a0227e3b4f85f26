"""
Caller identity verification.

Tokens are issued upstream; this module only turns a bearer token into a
verified owner id. Two backends:
    - StaticTokenVerifier: fixed token -> owner map (development, tests)
    - RemoteTokenVerifier: asks the identity service's /auth/v1/user

Invariants:
    - A missing Authorization header raises AuthRequiredError
    - Any token that cannot be verified raises InvalidTokenError
    - Tokens are never logged
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

import httpx

from .config import AuthConfig, AuthMode
from .errors import AuthRequiredError, InvalidTokenError

logger = logging.getLogger(__name__)


class TokenVerifier(Protocol):
    """Resolves a bearer token to an owner id."""

    async def verify(self, token: str) -> str:
        """Return the owner id for a token.

        Raises:
            InvalidTokenError: If the token cannot be verified
        """
        ...


class StaticTokenVerifier:
    """Verifies tokens against a fixed map."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self.tokens = dict(tokens)

    async def verify(self, token: str) -> str:
        owner_id = self.tokens.get(token)
        if not owner_id:
            raise InvalidTokenError()
        return owner_id


class RemoteTokenVerifier:
    """Verifies tokens with the upstream identity service."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize the verifier.

        Args:
            client: Shared HTTP client
            url: Identity service base URL
            api_key: Service API key, sent as the apikey header
            timeout_seconds: Request timeout
        """
        self.client = client
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def verify(self, token: str) -> str:
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            response = await self.client.get(
                f"{self.url}/auth/v1/user", headers=headers, timeout=self.timeout_seconds
            )
        except httpx.HTTPError as e:
            logger.warning("Identity service request failed", extra={"error": str(e)})
            raise InvalidTokenError() from e

        if response.status_code != 200:
            raise InvalidTokenError()

        try:
            user = response.json()
        except ValueError as e:
            raise InvalidTokenError() from e

        owner_id = user.get("id") if isinstance(user, dict) else None
        if not owner_id:
            raise InvalidTokenError()
        return str(owner_id)


def bearer_token(authorization: str | None) -> str:
    """Extract the token from an Authorization header value.

    Raises:
        AuthRequiredError: Header missing or empty
        InvalidTokenError: Header carries no token
    """
    if authorization is None or not authorization.strip():
        raise AuthRequiredError()

    value = authorization.strip()
    scheme, _, rest = value.partition(" ")
    token = rest.strip() if scheme.lower() == "bearer" else value
    if not token:
        raise InvalidTokenError()
    return token


async def authenticate(authorization: str | None, verifier: TokenVerifier) -> str:
    """Verify an Authorization header and return the caller's owner id."""
    return await verifier.verify(bearer_token(authorization))


def build_verifier(config: AuthConfig, client: httpx.AsyncClient) -> TokenVerifier:
    """Create the verifier selected by AUTH_MODE."""
    if config.mode == AuthMode.REMOTE:
        if not config.url:
            raise ValueError("AUTH_URL is required when AUTH_MODE=remote")
        return RemoteTokenVerifier(
            client,
            url=config.url,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
        )
    return StaticTokenVerifier(config.static_tokens)
