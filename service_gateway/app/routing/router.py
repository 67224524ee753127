"""
Request router.

Stateless dispatcher: resolves version and binding for a raw request,
hands the call to the aggregation engine and wraps the outcome in the
response envelope or a structured error body.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from shared.errors import GatewayError, MethodNotAllowedError
from shared.logging import get_logger

from ..aggregation.engine import AggregationEngine
from ..registry.models import AggregationStrategy, HttpMethod, VersioningStrategy
from ..registry.registry import ServiceRegistry
from ..versioning.resolver import VersionResolver
from .context import RawRequest, RequestContext, parse_body, parse_resource_path
from .envelope import build_envelope


@dataclass(frozen=True)
class GatewayResponse:
    """Transport-neutral response produced by the router."""
    status_code: int
    content: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    error_kind: Optional[str] = None


class RequestRouter:
    """Parses, resolves and dispatches one request at a time; holds no request state."""

    def __init__(self, registry: ServiceRegistry, engine: AggregationEngine):
        self.registry = registry
        self.engine = engine
        self.logger = get_logger("gateway.router")

    async def handle(self, raw: RawRequest) -> GatewayResponse:
        try:
            return await self._handle(raw)
        except GatewayError as exc:
            if exc.status_code >= 500 or exc.status_code == 207:
                self.logger.warning(
                    "Request failed",
                    method=raw.method,
                    path=raw.path,
                    error_kind=exc.kind.value,
                    message=exc.message,
                )
            return GatewayResponse(
                status_code=exc.status_code,
                content=exc.to_response().to_content(),
                headers=exc.headers(),
                error_kind=exc.kind.value,
            )

    async def _handle(self, raw: RawRequest) -> GatewayResponse:
        # One snapshot for the whole request, even if a reload swaps mid-flight.
        snapshot = self.registry.snapshot
        policy = snapshot.versioning
        resolver = VersionResolver(policy)

        resolved = resolver.resolve(raw.path, raw.query_params, raw.headers)
        parsed = parse_resource_path(resolved.path)
        descriptor = snapshot.descriptor(parsed.resource)

        allowed = [m.value for m in descriptor.methods_for(parsed.scope)]
        try:
            method = HttpMethod(raw.method.upper())
        except ValueError:
            method = None
        if method is None or not descriptor.allows(method, parsed.scope):
            raise MethodNotAllowedError(raw.method.upper(), parsed.resource, allowed)

        version = resolver.check_supported(resolved, descriptor.versions, resource=parsed.resource)
        binding = snapshot.resolve(parsed.resource, version, method, parsed.scope)

        query = dict(raw.query_params)
        if policy.strategy is VersioningStrategy.QUERY:
            query.pop(policy.query_param, None)

        context = RequestContext(
            resource=parsed.resource,
            version=version,
            method=method,
            scope=parsed.scope,
            path=parsed.path,
            self_link=raw.self_link,
            path_params=parsed.path_params,
            query=query,
            headers=dict(raw.headers),
            body=parse_body(method, raw.body),
        )

        result = await self.engine.execute(binding, context, snapshot)

        version_prefix = f"/{version}" if policy.strategy is VersioningStrategy.URI else ""
        warnings = None
        if result.strategy is AggregationStrategy.FAN_OUT_MERGE and not context.mutating:
            warnings = list(result.warnings)
        envelope = build_envelope(
            result.payload,
            context,
            descriptor,
            snapshot.children(parsed.resource),
            version_prefix=version_prefix,
            warnings=warnings,
        )
        if warnings:
            self.logger.info("Optional backends failed", resource=parsed.resource, warnings=warnings)

        return GatewayResponse(
            status_code=201 if method is HttpMethod.POST else 200,
            content=envelope.to_content(),
            headers={
                policy.header_name: version,
                "Cache-Control": envelope.cache.header_value(),
            },
        )
