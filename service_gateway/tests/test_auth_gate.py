"""
Unit tests for the authorization gate.
"""

from urllib.parse import parse_qs

import httpx
import pytest

from service_gateway.app.auth.gate import (
    AllowAllAuthorizer,
    AuthDecision,
    IntrospectionAuthorizer,
    bearer_token,
    build_authorizer,
)
from service_gateway.app.routing.context import RawRequest
from shared.circuit_breaker import CircuitBreakerManager
from shared.config import get_config
from shared.errors import ConfigurationError, ErrorKind, ForbiddenError, UnauthorizedError


def with_token(token="abc123"):
    return RawRequest("GET", "/calmodels", headers={"authorization": f"Bearer {token}"})


def make_authorizer(handler, **kwargs):
    return IntrospectionAuthorizer(
        "http://iam.test/oauth2/introspect",
        "gateway",
        "secret",
        breakers=CircuitBreakerManager(),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestBearerToken:
    """Test cases for credential extraction."""

    @pytest.mark.parametrize("header,expected", [
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer ", None),
    ])
    def test_extraction(self, header, expected):
        assert bearer_token(RawRequest("GET", "/", headers={"Authorization": header})) == expected

    def test_missing_header(self):
        assert bearer_token(RawRequest("GET", "/")) is None


class TestIntrospectionAuthorizer:
    """Test cases for IntrospectionAuthorizer."""

    @pytest.mark.asyncio
    async def test_active_token_is_allowed(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"active": True, "sub": "astro-1", "scope": "gateway.read"})

        authorizer = make_authorizer(handler)
        decision = await authorizer.authorize(with_token())
        await authorizer.close()

        assert decision == AuthDecision.allow("astro-1")
        form = parse_qs(seen[0].content.decode())
        assert form["token"] == ["abc123"]
        assert seen[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_inactive_token_is_unauthorized(self):
        authorizer = make_authorizer(lambda request: httpx.Response(200, json={"active": False}))

        decision = await authorizer.authorize(with_token())

        assert not decision.allowed
        assert decision.kind is ErrorKind.UNAUTHORIZED
        assert isinstance(decision.to_error(), UnauthorizedError)

    @pytest.mark.asyncio
    async def test_missing_scope_is_forbidden(self):
        authorizer = make_authorizer(
            lambda request: httpx.Response(200, json={"active": True, "sub": "a", "scope": "other"}),
            required_scope="gateway.read",
        )

        decision = await authorizer.authorize(with_token())

        assert decision.kind is ErrorKind.FORBIDDEN
        error = decision.to_error()
        assert isinstance(error, ForbiddenError)
        assert error.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_token_skips_identity_provider(self):
        calls = []
        authorizer = make_authorizer(lambda request: calls.append(request) or httpx.Response(200, json={}))

        decision = await authorizer.authorize(RawRequest("GET", "/calmodels"))

        assert not decision.allowed
        assert decision.reason == "Bearer token required"
        assert calls == []

    @pytest.mark.asyncio
    async def test_identity_provider_error_fails_closed(self):
        authorizer = make_authorizer(lambda request: httpx.Response(500, text="boom"))

        decision = await authorizer.authorize(with_token())

        assert not decision.allowed
        assert decision.reason == "Identity provider unavailable"
        assert decision.to_error().status_code == 401

    @pytest.mark.asyncio
    async def test_unreachable_identity_provider_fails_closed(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        decision = await make_authorizer(handler).authorize(with_token())

        assert not decision.allowed
        assert decision.reason == "Identity provider unavailable"


class TestBuildAuthorizer:
    """Test cases for build_authorizer."""

    def test_default_allows_everything(self):
        assert isinstance(build_authorizer(get_config()), AllowAllAuthorizer)

    def test_introspection_requires_url(self):
        with pytest.raises(ConfigurationError):
            build_authorizer(get_config(auth_mode="introspection"))

    def test_introspection(self):
        config = get_config(auth_mode="introspection", auth_introspection_url="http://iam.test/introspect")

        authorizer = build_authorizer(config, CircuitBreakerManager())

        assert isinstance(authorizer, IntrospectionAuthorizer)
        assert authorizer.introspection_url == "http://iam.test/introspect"

    def test_unknown_mode(self):
        with pytest.raises(ConfigurationError):
            build_authorizer(get_config(auth_mode="ldap"))
