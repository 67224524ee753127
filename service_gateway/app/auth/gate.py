"""
Authorization gate.

Consulted once per request before routing. The gateway treats the identity
provider as a black box: a request is either allowed or denied with a
reason. Denials become ``Unauthorized`` (no or invalid credentials) or
``Forbidden`` (valid credentials lacking the required scope).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreakerManager, circuit_breaker_manager
from shared.config import ServiceConfig
from shared.errors import (
    ConfigurationError,
    ErrorKind,
    ForbiddenError,
    GatewayError,
    UnauthorizedError,
)
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception

from ..routing.context import RawRequest


@dataclass(frozen=True)
class AuthDecision:
    """Outcome of the authorization predicate."""
    allowed: bool
    subject: Optional[str] = None
    reason: str = ""
    kind: ErrorKind = ErrorKind.UNAUTHORIZED

    @classmethod
    def allow(cls, subject: Optional[str] = None) -> "AuthDecision":
        return cls(allowed=True, subject=subject)

    @classmethod
    def deny(cls, reason: str, kind: ErrorKind = ErrorKind.UNAUTHORIZED) -> "AuthDecision":
        return cls(allowed=False, reason=reason, kind=kind)

    def to_error(self) -> GatewayError:
        if self.kind is ErrorKind.FORBIDDEN:
            return ForbiddenError(self.reason)
        return UnauthorizedError(self.reason)


class AllowAllAuthorizer:
    """Gate used when no identity provider is configured."""

    async def authorize(self, request: RawRequest) -> AuthDecision:
        return AuthDecision.allow()

    async def close(self) -> None:
        pass


def bearer_token(request: RawRequest) -> Optional[str]:
    header = request.header("Authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IntrospectionAuthorizer:
    """Validates bearer tokens against an OAuth2 token-introspection endpoint."""

    def __init__(self,
                 introspection_url: str,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 *,
                 required_scope: Optional[str] = None,
                 timeout: float = 5.0,
                 breakers: Optional[CircuitBreakerManager] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.introspection_url = introspection_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.required_scope = required_scope
        self.timeout = timeout
        self.logger = get_logger("gateway.auth")
        self.circuit_breaker = (breakers or circuit_breaker_manager).get_circuit_breaker(
            "iam_introspection",
            failure_threshold=3,
            recovery_timeout=30.0,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            auth = (self.client_id, self.client_secret or "") if self.client_id else None
            self._client = httpx.AsyncClient(timeout=self.timeout, auth=auth, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @retry_on_exception((httpx.TransportError,), config=RetryConfig(max_attempts=2, base_delay=0.1))
    async def introspect(self, token: str) -> Dict[str, Any]:
        """Ask the identity provider about ``token``."""
        async def _introspect():
            response = await self._http().post(
                self.introspection_url,
                data={"token": token, "token_type_hint": "access_token"},
            )
            response.raise_for_status()
            return response.json()

        return await self.circuit_breaker.call(_introspect)

    async def authorize(self, request: RawRequest) -> AuthDecision:
        token = bearer_token(request)
        if token is None:
            return AuthDecision.deny("Bearer token required")

        try:
            claims = await self.introspect(token)
        except (GatewayError, RetryError, httpx.HTTPError, ValueError) as e:
            # The gate fails closed when the identity provider cannot answer.
            self.logger.error("Token introspection failed", error=str(e))
            return AuthDecision.deny("Identity provider unavailable")

        if not claims.get("active"):
            self.logger.info("Inactive token presented")
            return AuthDecision.deny("Token is not active")

        subject = claims.get("sub") or claims.get("client_id")
        if self.required_scope:
            scopes = str(claims.get("scope", "")).split()
            if self.required_scope not in scopes:
                self.logger.warning("Token lacks required scope", subject=subject, scope=self.required_scope)
                return AuthDecision.deny(
                    f"Scope '{self.required_scope}' required", kind=ErrorKind.FORBIDDEN
                )
        return AuthDecision.allow(subject)


def build_authorizer(config: ServiceConfig, breakers: Optional[CircuitBreakerManager] = None):
    """Authorization gate selected by ``auth_mode``."""
    if config.auth_mode == "none":
        return AllowAllAuthorizer()
    if config.auth_mode == "introspection":
        if not config.auth_introspection_url:
            raise ConfigurationError("auth_introspection_url is required for introspection auth")
        return IntrospectionAuthorizer(
            config.auth_introspection_url,
            config.auth_client_id,
            config.auth_client_secret,
            required_scope=config.auth_required_scope,
            timeout=config.auth_timeout_seconds,
            breakers=breakers,
        )
    raise ConfigurationError(f"Unknown auth_mode '{config.auth_mode}'")
