"""
Service registry.

A ``RegistrySnapshot`` is an immutable view of one configuration load: every
resource descriptor, binding, adapter and policy. The ``ServiceRegistry``
holds a reference to the active snapshot and replaces it wholesale on
reload, so a request that grabbed a snapshot keeps a consistent view until
it completes.
"""

import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

from shared.errors import (
    MethodNotAllowedError,
    UnknownResourceError,
    UnsupportedVersionError,
)
from shared.logging import get_logger

from ..adapters.base import BackendAdapter
from .models import (
    CallPolicy,
    HttpMethod,
    ReliabilityPolicy,
    ResourceDescriptor,
    Scope,
    ServiceBinding,
    VersioningPolicy,
)


@dataclass(frozen=True)
class RegistrySnapshot:
    """Everything one configuration load produced."""
    generation: int
    versioning: VersioningPolicy
    reliability: ReliabilityPolicy
    descriptors: Mapping[str, ResourceDescriptor]
    bindings: Mapping[Tuple[str, str], ServiceBinding]
    adapters: Mapping[str, BackendAdapter]
    adapter_policies: Mapping[str, CallPolicy] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze the mappings so nothing can edit a published snapshot.
        for name in ("descriptors", "bindings", "adapters", "adapter_policies"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    def descriptor(self, name: str) -> ResourceDescriptor:
        descriptor = self.descriptors.get(name)
        if descriptor is None:
            raise UnknownResourceError(name)
        return descriptor

    def resolve(self, name: str, version: str, operation: HttpMethod,
                scope: Scope = Scope.COLLECTION) -> ServiceBinding:
        """Exact lookup on (name, version) after checking the operation."""
        descriptor = self.descriptor(name)
        if not descriptor.allows(operation, scope):
            raise MethodNotAllowedError(
                operation.value, name, [m.value for m in descriptor.methods_for(scope)]
            )
        binding = self.bindings.get((name, version))
        if binding is None:
            raise UnsupportedVersionError(version, descriptor.versions, resource=name)
        return binding

    def adapter(self, adapter_id: str) -> BackendAdapter:
        return self.adapters[adapter_id]

    def policy_for(self, adapter_id: str) -> CallPolicy:
        return self.adapter_policies.get(adapter_id, self.reliability.defaults)

    def children(self, name: str) -> List[str]:
        """Names of resources nested directly beneath ``name``."""
        prefix = f"{name}/"
        return sorted(
            n for n in self.descriptors
            if n.startswith(prefix) and "/" not in n[len(prefix):]
        )

    def describe(self) -> Dict[str, Any]:
        resources = []
        for name, descriptor in sorted(self.descriptors.items()):
            resources.append({
                "name": name,
                "versions": sorted(descriptor.versions),
                "collection_methods": sorted(m.value for m in descriptor.collection_methods),
                "item_methods": sorted(m.value for m in descriptor.item_methods),
                "cache": {
                    "cacheable": descriptor.cache.cacheable,
                    "max_age_seconds": descriptor.cache.max_age_seconds,
                },
                "bindings": [
                    {
                        "version": binding.version,
                        "strategy": binding.strategy.value,
                        "adapters": [
                            {"id": ref.adapter_id, "required": ref.required, "merge_key": ref.merge_key}
                            for ref in binding.adapters
                        ],
                    }
                    for (resource, _), binding in sorted(self.bindings.items())
                    if resource == name
                ],
            })
        return {
            "generation": self.generation,
            "versioning": {
                "strategy": self.versioning.strategy.value,
                "default_version": self.versioning.default_version,
                "header_name": self.versioning.header_name,
                "query_param": self.versioning.query_param,
            },
            "resources": resources,
            "adapters": [a.describe() for _, a in sorted(self.adapters.items())],
        }


class ServiceRegistry:
    """Holds the active snapshot and swaps it atomically."""

    def __init__(self, snapshot: RegistrySnapshot):
        self._snapshot = snapshot
        self.logger = get_logger("gateway.registry")

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    def resolve(self, name: str, version: str, operation: HttpMethod,
                scope: Scope = Scope.COLLECTION) -> ServiceBinding:
        return self._snapshot.resolve(name, version, operation, scope)

    def swap(self, snapshot: RegistrySnapshot) -> RegistrySnapshot:
        """Publish ``snapshot``; returns the one it replaced."""
        previous, self._snapshot = self._snapshot, snapshot
        self.logger.info(
            "Registry snapshot swapped",
            previous_generation=previous.generation,
            generation=snapshot.generation,
        )
        return previous

    async def start(self) -> None:
        """Open connections for the active snapshot's adapters."""
        await _start_adapters(self._snapshot)

    async def install(self, snapshot: RegistrySnapshot) -> RegistrySnapshot:
        """Start the new snapshot's adapters, then swap it in."""
        await _start_adapters(snapshot)
        return self.swap(snapshot)

    async def retire(self, snapshot: RegistrySnapshot, grace_seconds: float = 0.0) -> None:
        """Close a replaced snapshot's adapters once in-flight requests had time to finish."""
        if grace_seconds > 0:
            await asyncio.sleep(grace_seconds)
        await _close_adapters(snapshot.adapters.values(), self.logger)
        self.logger.info("Retired registry snapshot", generation=snapshot.generation)

    async def close(self) -> None:
        await _close_adapters(self._snapshot.adapters.values(), self.logger)


async def _start_adapters(snapshot: RegistrySnapshot) -> None:
    logger = get_logger("gateway.registry")
    for adapter in snapshot.adapters.values():
        try:
            await adapter.start()
        except Exception as exc:
            # Adapters connect lazily, so a backend that is down at startup
            # surfaces as call failures instead of blocking the gateway.
            logger.warning("Adapter failed to start", adapter=adapter.adapter_id, error=str(exc))


async def _close_adapters(adapters, logger) -> None:
    for adapter in adapters:
        try:
            await adapter.close()
        except Exception as exc:
            logger.warning("Adapter close failed", adapter=adapter.adapter_id, error=str(exc))
