"""
API Gateway service.

Wires the registry, reliability layer, aggregation engine and request
router into a FastAPI application. Administrative endpoints are
registered before the resource catch-all so they never collide with
configured resources.
"""

import asyncio
from typing import Optional, Set

from fastapi import Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.circuit_breaker import STATE_GAUGE_VALUES, CircuitBreakerManager, CircuitBreakerState
from shared.config import ServiceConfig, get_config
from shared.errors import ConfigurationError
from shared.logging import set_subject

from .aggregation.engine import AggregationEngine
from .auth.gate import AuthDecision, build_authorizer
from .registry.loader import ConfigLoader, default_adapter_builder
from .registry.registry import ServiceRegistry
from .reliability.invoker import ReliableInvoker
from .routing.context import RawRequest
from .routing.router import RequestRouter

ROUTED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def raw_request(request: Request, body: bytes = b"") -> RawRequest:
    return RawRequest(
        method=request.method,
        path=request.url.path,
        query_params=dict(request.query_params),
        headers=dict(request.headers),
        body=body,
        query_string=request.url.query,
    )


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 registry: Optional[ServiceRegistry] = None,
                 authorizer=None,
                 breakers: Optional[CircuitBreakerManager] = None,
                 adapter_builder=default_adapter_builder):
        config = config or get_config("gateway")
        super().__init__("gateway", config)

        self.breakers = breakers or CircuitBreakerManager()
        self.breakers.add_transition_listener(self._record_breaker_state)
        self.loader = ConfigLoader(self.config.config_file, adapter_builder)
        # A broken topology document is fatal at startup.
        self.registry = registry or ServiceRegistry(self.loader.load(generation=1))
        self.authorizer = authorizer or build_authorizer(self.config, self.breakers)

        self.invoker = ReliableInvoker(self.breakers, metrics=self.metrics)
        self.engine = AggregationEngine(self.invoker)
        self.router = RequestRouter(self.registry, self.engine)

        self._reload_lock = asyncio.Lock()
        self._retiring: Set[asyncio.Task] = set()

        @self.app.on_event("startup")
        async def _startup():
            await self.registry.start()
            self.logger.info(
                "Gateway started",
                generation=self.registry.generation,
                resources=len(self.registry.snapshot.descriptors),
                adapters=len(self.registry.snapshot.adapters),
            )

        @self.app.on_event("shutdown")
        async def _shutdown():
            for task in list(self._retiring):
                task.cancel()
            await self.registry.close()
            await self.authorizer.close()

    def _record_breaker_state(self, name: str, state: CircuitBreakerState) -> None:
        self.metrics.set_gauge("circuit_breaker_state", STATE_GAUGE_VALUES[state], adapter=name)

    async def _check_dependencies(self):
        open_breakers = self.breakers.open_breakers()
        return {
            "status": "degraded" if open_breakers else "ok",
            "generation": self.registry.generation,
            "open_breakers": open_breakers,
        }

    async def authorize(self, request: Request) -> AuthDecision:
        """Consult the authorization gate; raises on denial."""
        decision = await self.authorizer.authorize(raw_request(request))
        if not decision.allowed:
            self.logger.info("Request denied", path=request.url.path, reason=decision.reason)
            raise decision.to_error()
        set_subject(decision.subject)
        return decision

    async def reload(self) -> int:
        """Load the topology document again and swap it in; returns the new generation."""
        async with self._reload_lock:
            try:
                snapshot = self.loader.load(generation=self.registry.generation + 1)
            except ConfigurationError as e:
                self.metrics.increment_counter("config_reloads_total", status="failed")
                self.logger.error("Configuration reload rejected", error=e.message, details=e.details)
                raise

            previous = await self.registry.install(snapshot)
            self.metrics.increment_counter("config_reloads_total", status="ok")

        task = asyncio.create_task(self.registry.retire(previous, self.config.reload_grace_seconds))
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)
        return snapshot.generation

    def _setup_routes(self):
        """Set up common, administrative and resource routes."""
        super()._setup_routes()

        async def authorized(request: Request) -> AuthDecision:
            return await self.authorize(request)

        @self.app.get("/_gateway/routes")
        async def list_routes(_: AuthDecision = Depends(authorized)):
            """Active registry snapshot."""
            return self.registry.snapshot.describe()

        @self.app.get("/_gateway/breakers")
        async def list_breakers(_: AuthDecision = Depends(authorized)):
            return {"breakers": self.breakers.get_all_states()}

        @self.app.post("/_gateway/reload")
        async def reload_configuration(_: AuthDecision = Depends(authorized)):
            generation = await self.reload()
            return {"status": "reloaded", "generation": generation}

        @self.app.api_route("/{resource_path:path}", methods=ROUTED_METHODS)
        async def route_resource(request: Request, _: AuthDecision = Depends(authorized)):
            response = await self.router.handle(raw_request(request, await request.body()))
            if response.error_kind:
                self.metrics.increment_counter("gateway_errors_total", kind=response.error_kind)
            return JSONResponse(
                status_code=response.status_code,
                content=jsonable_encoder(response.content),
                headers=response.headers,
            )


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = GatewayService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
