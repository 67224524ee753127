"""
Backend adapter contract.

An adapter gives the gateway a uniform view of one upstream data source. It
declares the subset of operations it supports and answers every call with a
``BackendCallResult`` instead of raising, so the reliability layer can decide
on retries from the result alone.

Adapters are shared by all concurrent requests. Apart from the connection
handle opened in ``start()`` they hold no mutable state.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from shared.errors import (
    ConfigurationError,
    ErrorKind,
    GatewayError,
    RETRIABLE_KINDS,
    error_from_kind,
)
from shared.logging import get_logger

from ..registry.models import Capability, Scope

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000
PAGING_PARAMS = frozenset({"limit", "offset"})


@dataclass(frozen=True)
class AdapterRequest:
    """The part of a request context an adapter needs."""
    operation: Capability
    scope: Scope
    resource: str
    path: str
    path_params: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def item_id(self) -> Optional[str]:
        return self.path_params.get("id")

    @property
    def parent_id(self) -> Optional[str]:
        """Identifier of the enclosing item for nested resources."""
        if "/" not in self.resource:
            return None
        parent_leaf = self.resource.split("/")[-2]
        return self.path_params.get(f"{parent_leaf}_id")

    @property
    def filters(self) -> Dict[str, str]:
        return {k: v for k, v in self.query.items() if k not in PAGING_PARAMS}


@dataclass(frozen=True)
class BackendCallResult:
    """Outcome of one adapter invocation."""
    adapter_id: str
    ok: bool
    payload: Any = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    retriable: bool = False
    details: Optional[Dict[str, Any]] = None
    attempts: int = 1

    @classmethod
    def success(cls, adapter_id: str, payload: Any) -> "BackendCallResult":
        return cls(adapter_id=adapter_id, ok=True, payload=payload)

    @classmethod
    def failure(cls, adapter_id: str, kind: ErrorKind, message: str,
                details: Optional[Dict[str, Any]] = None,
                retriable: Optional[bool] = None) -> "BackendCallResult":
        if retriable is None:
            retriable = kind in RETRIABLE_KINDS
        return cls(
            adapter_id=adapter_id,
            ok=False,
            error_kind=kind,
            message=message,
            retriable=retriable,
            details=details,
        )

    def with_attempts(self, attempts: int) -> "BackendCallResult":
        return replace(self, attempts=attempts)

    @property
    def reason(self) -> str:
        """Short failure description used in warnings and error details."""
        return f"{self.error_kind.value}: {self.message}" if self.error_kind else ""

    def to_error(self) -> GatewayError:
        details = {"adapter": self.adapter_id, "attempts": self.attempts}
        if self.details:
            details.update(self.details)
        return error_from_kind(self.error_kind, f"{self.adapter_id}: {self.message}", details)


def paging(query: Mapping[str, str]) -> Tuple[int, int]:
    """Parse limit/offset query parameters; raises ValueError when invalid."""
    limit = int(query.get("limit", DEFAULT_PAGE_LIMIT))
    offset = int(query.get("offset", 0))
    if limit < 0 or offset < 0:
        raise ValueError("limit and offset must be non-negative")
    return min(limit, MAX_PAGE_LIMIT), offset


class BackendAdapter:
    """Base class for adapters; subclasses implement the operations they support."""

    type_name = "abstract"
    native_capabilities: FrozenSet[Capability] = frozenset()

    def __init__(self, adapter_id: str, capabilities: Optional[Iterable[Capability]] = None):
        self.adapter_id = adapter_id
        declared = frozenset(Capability(c) for c in capabilities) if capabilities is not None \
            else self.native_capabilities
        unsupported = declared - self.native_capabilities
        if unsupported:
            raise ConfigurationError(
                f"Adapter '{adapter_id}' ({self.type_name}) cannot provide "
                f"{', '.join(sorted(c.value for c in unsupported))}",
                {"adapter": adapter_id},
            )
        self.capabilities: FrozenSet[Capability] = declared
        self.logger = get_logger(f"gateway.adapter.{adapter_id}")

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    async def start(self) -> None:
        """Open connection handles."""

    async def close(self) -> None:
        """Release connection handles."""

    async def invoke(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        """Dispatch to the operation named by the request."""
        if not self.supports(request.operation):
            return self.failed(
                ErrorKind.UPSTREAM_REJECTED,
                f"operation '{request.operation.value}' is not supported",
            )
        handler = getattr(self, request.operation.value)
        return await handler(request, timeout)

    async def fetch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        raise NotImplementedError

    async def create(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        raise NotImplementedError

    async def replace(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        raise NotImplementedError

    async def patch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        raise NotImplementedError

    async def delete(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        raise NotImplementedError

    def succeeded(self, payload: Any) -> BackendCallResult:
        return BackendCallResult.success(self.adapter_id, payload)

    def failed(self, kind: ErrorKind, message: str, **details: Any) -> BackendCallResult:
        return BackendCallResult.failure(self.adapter_id, kind, message, details or None)

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.adapter_id,
            "type": self.type_name,
            "capabilities": sorted(c.value for c in self.capabilities),
        }
