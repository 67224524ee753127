"""
Registry data models: resource descriptors, service bindings and the
deployment-wide versioning and reliability policies.

All models are frozen; a configuration reload builds new instances instead
of mutating existing ones.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from shared.retry import RetryConfig

VERSION_PATTERN = re.compile(r"^v\d+(\.\d+)?$")
RESOURCE_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class HttpMethod(str, Enum):
    """HTTP methods routed by the gateway."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class Capability(str, Enum):
    """Operations a backend adapter may support."""
    FETCH = "fetch"
    CREATE = "create"
    REPLACE = "replace"
    PATCH = "patch"
    DELETE = "delete"


CAPABILITY_BY_METHOD = {
    HttpMethod.GET: Capability.FETCH,
    HttpMethod.POST: Capability.CREATE,
    HttpMethod.PUT: Capability.REPLACE,
    HttpMethod.PATCH: Capability.PATCH,
    HttpMethod.DELETE: Capability.DELETE,
}

MUTATING_METHODS = frozenset({HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH, HttpMethod.DELETE})

# Operations safe to repeat after an attempt whose outcome is unknown.
IDEMPOTENT_CAPABILITIES = frozenset({Capability.FETCH, Capability.REPLACE, Capability.DELETE})


class Scope(str, Enum):
    """Whether a request addresses a whole collection or a single item."""
    COLLECTION = "collection"
    ITEM = "item"


class AggregationStrategy(str, Enum):
    """How a binding combines its adapters."""
    SINGLE = "single"
    FAN_OUT_MERGE = "fan-out-merge"
    FAN_OUT_FIRST_SUCCESS = "fan-out-first-success"


class VersioningStrategy(str, Enum):
    """Where the requested API version is read from."""
    NONE = "none"
    URI = "uri"
    QUERY = "query"
    HEADER = "header"


@dataclass(frozen=True)
class CachePolicy:
    """Cache-control metadata advertised for a resource."""
    cacheable: bool = False
    max_age_seconds: int = 0


NO_STORE = CachePolicy(cacheable=False, max_age_seconds=0)


@dataclass(frozen=True)
class ResourceDescriptor:
    """A named resource exposed by the gateway."""
    name: str
    versions: FrozenSet[str]
    collection_methods: FrozenSet[HttpMethod]
    item_methods: FrozenSet[HttpMethod]
    cache: CachePolicy = NO_STORE

    @property
    def segments(self) -> Tuple[str, ...]:
        return tuple(self.name.split("/"))

    @property
    def parent(self) -> Optional[str]:
        """Name of the enclosing resource for nested resources."""
        if "/" not in self.name:
            return None
        return self.name.rsplit("/", 1)[0]

    @property
    def leaf(self) -> str:
        return self.segments[-1]

    def methods_for(self, scope: Scope) -> FrozenSet[HttpMethod]:
        if scope is Scope.ITEM:
            return self.item_methods
        return self.collection_methods

    def allows(self, method: HttpMethod, scope: Scope) -> bool:
        return method in self.methods_for(scope)

    @property
    def operations(self) -> FrozenSet[Capability]:
        """Every adapter operation this resource advertises."""
        methods = self.collection_methods | self.item_methods
        return frozenset(CAPABILITY_BY_METHOD[m] for m in methods)


@dataclass(frozen=True)
class AdapterRef:
    """An adapter's participation in a binding."""
    adapter_id: str
    required: bool = True
    merge_key: Optional[str] = None


@dataclass(frozen=True)
class ServiceBinding:
    """Resource + version bound to adapters and an aggregation strategy."""
    resource: str
    version: str
    strategy: AggregationStrategy
    adapters: Tuple[AdapterRef, ...]

    @property
    def primary(self) -> AdapterRef:
        """The adapter that receives mutating operations."""
        return self.adapters[0]

    @property
    def adapter_ids(self) -> Tuple[str, ...]:
        return tuple(ref.adapter_id for ref in self.adapters)


@dataclass(frozen=True)
class VersioningPolicy:
    """Deployment-wide versioning strategy."""
    strategy: VersioningStrategy = VersioningStrategy.HEADER
    default_version: str = "v1"
    header_name: str = "X-API-Version"
    query_param: str = "version"


@dataclass(frozen=True)
class CallPolicy:
    """Timeout, retry and breaker settings for one adapter."""
    timeout_seconds: float = 2.0
    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 2.0
    jitter: bool = True
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay_seconds,
            max_delay=self.max_delay_seconds,
            jitter=self.jitter,
        )


@dataclass(frozen=True)
class ReliabilityPolicy:
    """Global reliability defaults plus the overall request deadline."""
    defaults: CallPolicy = field(default_factory=CallPolicy)
    request_deadline_seconds: float = 10.0
