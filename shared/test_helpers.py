"""
Test helper functions and factory methods for the gateway test suites.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from shared.errors import ErrorKind

from service_gateway.app.adapters.base import AdapterRequest, BackendAdapter, BackendCallResult
from service_gateway.app.registry.loader import AdapterSection, build_snapshot, parse_document
from service_gateway.app.registry.models import Capability
from service_gateway.app.registry.registry import RegistrySnapshot, ServiceRegistry

# Script entry that never answers; the reliability layer's timeout ends it.
HANG = object()

ALL_METHODS_COLLECTION = ["GET", "POST", "PUT", "DELETE"]
ALL_METHODS_ITEM = ["GET", "PUT", "PATCH", "DELETE"]


class FakeAdapter(BackendAdapter):
    """Scripted adapter recording every call it receives.

    ``script`` entries are consumed one per call: an ``ErrorKind`` yields a
    failure of that kind, an exception is raised, ``HANG`` never returns,
    anything else is returned as the success payload. Once the script is
    exhausted every call answers with ``payload``.
    """

    type_name = "fake"
    native_capabilities = frozenset(Capability)

    def __init__(self, adapter_id: str, payload: Any = None, *,
                 script: Optional[Iterable[Any]] = None,
                 delay: float = 0.0,
                 capabilities=None):
        super().__init__(adapter_id, capabilities)
        self.payload = payload
        self.script = list(script or [])
        self.delay = delay
        self.calls: List[AdapterRequest] = []
        self.cancelled = 0
        self.started = False
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def invoke(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        self.calls.append(request)
        outcome = self.script.pop(0) if self.script else self.payload
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if outcome is HANG:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise

        if isinstance(outcome, ErrorKind):
            return self.failed(outcome, "scripted failure")
        if isinstance(outcome, BaseException):
            raise outcome
        return self.succeeded(outcome)


class GatewayDocumentFactory:
    """Factory for topology documents."""

    @staticmethod
    def adapter(adapter_id: str, adapter_type: str = "fake", **options) -> Dict[str, Any]:
        return {"id": adapter_id, "type": adapter_type, **options}

    @staticmethod
    def binding(adapters: List[Any], versions: Optional[List[str]] = None,
                strategy: str = "single") -> Dict[str, Any]:
        return {"versions": versions or ["v1"], "strategy": strategy, "adapters": adapters}

    @staticmethod
    def resource(name: str, bindings: List[Dict[str, Any]], *,
                 versions: Optional[List[str]] = None,
                 collection_methods: Optional[List[str]] = None,
                 item_methods: Optional[List[str]] = None,
                 cache: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "name": name,
            "versions": versions or ["v1"],
            "collection_methods": collection_methods if collection_methods is not None else ALL_METHODS_COLLECTION,
            "item_methods": item_methods if item_methods is not None else ALL_METHODS_ITEM,
            "cache": cache or {"cacheable": False, "max_age_seconds": 0},
            "bindings": bindings,
        }

    @staticmethod
    def document(resources: List[Dict[str, Any]], adapters: List[Dict[str, Any]], *,
                 versioning: Optional[Dict[str, Any]] = None,
                 reliability: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "versioning": versioning or {"strategy": "header", "default_version": "v1"},
            "reliability": {
                # Fast defaults so failing scenarios finish quickly
                "timeout_seconds": 0.2,
                "max_attempts": 3,
                "base_delay_seconds": 0.001,
                "max_delay_seconds": 0.01,
                "jitter": False,
                "failure_threshold": 5,
                "recovery_timeout_seconds": 30.0,
                "request_deadline_seconds": 2.0,
                **(reliability or {}),
            },
            "adapters": adapters,
            "resources": resources,
        }

    @classmethod
    def calmodels(cls, **overrides) -> Dict[str, Any]:
        """Single-adapter ``calmodels`` resource with nested ``measurements``."""
        return cls.document(
            resources=[
                cls.resource(
                    "calmodels",
                    [cls.binding(["calmodels-db"])],
                    cache={"cacheable": True, "max_age_seconds": 60},
                ),
                cls.resource("calmodels/measurements", [cls.binding(["measurements-db"])]),
            ],
            adapters=[cls.adapter("calmodels-db"), cls.adapter("measurements-db")],
            **overrides,
        )


def fake_builder(fakes: Dict[str, BackendAdapter]):
    """Adapter builder handing out prepared fakes by id."""
    def build(section: AdapterSection) -> BackendAdapter:
        return fakes[section.id]
    return build


def build_test_snapshot(document: Dict[str, Any], fakes: Dict[str, BackendAdapter],
                        generation: int = 1) -> RegistrySnapshot:
    return build_snapshot(parse_document(document), generation, fake_builder(fakes))


def build_test_registry(document: Dict[str, Any], fakes: Dict[str, BackendAdapter]) -> ServiceRegistry:
    return ServiceRegistry(build_test_snapshot(document, fakes))
