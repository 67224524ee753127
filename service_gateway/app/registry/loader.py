"""
Configuration loader for the gateway topology document.

The YAML document is parsed with pyyaml, validated structurally with
pydantic, then checked for cross-references and the capability invariant
while the snapshot is built. Every problem is reported as a
``ConfigurationError``.
"""

import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shared.errors import ConfigurationError
from shared.logging import get_logger

from ..adapters.base import BackendAdapter
from ..adapters.factory import create_adapter
from .models import (
    AdapterRef,
    AggregationStrategy,
    CachePolicy,
    CallPolicy,
    Capability,
    HttpMethod,
    RESOURCE_SEGMENT_PATTERN,
    ReliabilityPolicy,
    ResourceDescriptor,
    ServiceBinding,
    VERSION_PATTERN,
    VersioningPolicy,
    VersioningStrategy,
)
from .registry import RegistrySnapshot

RESERVED_SEGMENTS = frozenset({"health", "metrics", "_gateway"})
MERGE_KEY_PATTERN = re.compile(r"^(\$|[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*)$")

logger = get_logger("gateway.config_loader")


class VersioningSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: VersioningStrategy = VersioningStrategy.HEADER
    default_version: str = "v1"
    header_name: str = "X-API-Version"
    query_param: str = "version"


class ReliabilitySection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout_seconds: float = Field(2.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    base_delay_seconds: float = Field(0.1, ge=0)
    max_delay_seconds: float = Field(2.0, ge=0)
    jitter: bool = True
    failure_threshold: int = Field(5, ge=1)
    recovery_timeout_seconds: float = Field(30.0, ge=0)
    request_deadline_seconds: float = Field(10.0, gt=0)


class AdapterSection(BaseModel):
    """One adapter; keys not listed here are type-specific options."""
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    capabilities: Optional[List[Capability]] = None
    timeout_seconds: Optional[float] = Field(None, gt=0)
    max_attempts: Optional[int] = Field(None, ge=1)
    failure_threshold: Optional[int] = Field(None, ge=1)
    recovery_timeout_seconds: Optional[float] = Field(None, ge=0)

    @property
    def options(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class AdapterRefSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    required: bool = True
    merge_key: Optional[str] = None


class BindingSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    versions: List[str]
    strategy: AggregationStrategy = AggregationStrategy.SINGLE
    adapters: List[AdapterRefSection]

    @field_validator("adapters", mode="before")
    @classmethod
    def _expand_plain_ids(cls, value):
        if isinstance(value, list):
            return [{"id": v} if isinstance(v, str) else v for v in value]
        return value


class CacheSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cacheable: bool = False
    max_age_seconds: int = Field(0, ge=0)


class ResourceSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    versions: List[str]
    collection_methods: List[HttpMethod] = [HttpMethod.GET, HttpMethod.POST, HttpMethod.PUT, HttpMethod.DELETE]
    item_methods: List[HttpMethod] = [HttpMethod.GET, HttpMethod.PUT, HttpMethod.PATCH, HttpMethod.DELETE]
    cache: CacheSection = CacheSection()
    bindings: List[BindingSection]


class GatewayDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    versioning: VersioningSection = VersioningSection()
    reliability: ReliabilitySection = ReliabilitySection()
    adapters: List[AdapterSection] = []
    resources: List[ResourceSection] = []


AdapterBuilder = Callable[[AdapterSection], BackendAdapter]


def default_adapter_builder(section: AdapterSection) -> BackendAdapter:
    return create_adapter(section.id, section.type, section.options, capabilities=section.capabilities)


def parse_document(raw: Any) -> GatewayDocument:
    """Validate a decoded YAML/JSON document."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("Gateway configuration must be a mapping")
    try:
        return GatewayDocument.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(
            "Gateway configuration is invalid",
            {"errors": [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]},
        ) from exc


def read_document(path: Union[str, Path]) -> GatewayDocument:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read gateway configuration '{path}': {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in '{path}': {exc}") from exc
    return parse_document(raw)


def _check_version(label: str, where: str) -> None:
    if not VERSION_PATTERN.match(label):
        raise ConfigurationError(f"{where}: '{label}' is not a version label like 'v1' or 'v2.1'")


def _check_resource_name(name: str) -> None:
    segments = name.split("/")
    if not all(RESOURCE_SEGMENT_PATTERN.match(s) for s in segments):
        raise ConfigurationError(f"Resource name '{name}' is invalid")
    if segments[0] in RESERVED_SEGMENTS:
        raise ConfigurationError(f"Resource name '{name}' uses reserved segment '{segments[0]}'")


def _call_policy(section: AdapterSection, defaults: CallPolicy) -> CallPolicy:
    return CallPolicy(
        timeout_seconds=section.timeout_seconds or defaults.timeout_seconds,
        max_attempts=section.max_attempts or defaults.max_attempts,
        base_delay_seconds=defaults.base_delay_seconds,
        max_delay_seconds=defaults.max_delay_seconds,
        jitter=defaults.jitter,
        failure_threshold=section.failure_threshold or defaults.failure_threshold,
        recovery_timeout_seconds=(
            section.recovery_timeout_seconds
            if section.recovery_timeout_seconds is not None
            else defaults.recovery_timeout_seconds
        ),
    )


def build_snapshot(document: GatewayDocument, generation: int = 1,
                   adapter_builder: AdapterBuilder = default_adapter_builder) -> RegistrySnapshot:
    """Validate cross-references and build an immutable registry snapshot."""
    versioning = VersioningPolicy(**document.versioning.model_dump())
    _check_version(versioning.default_version, "versioning.default_version")

    rel = document.reliability
    defaults = CallPolicy(
        timeout_seconds=rel.timeout_seconds,
        max_attempts=rel.max_attempts,
        base_delay_seconds=rel.base_delay_seconds,
        max_delay_seconds=rel.max_delay_seconds,
        jitter=rel.jitter,
        failure_threshold=rel.failure_threshold,
        recovery_timeout_seconds=rel.recovery_timeout_seconds,
    )
    reliability = ReliabilityPolicy(defaults=defaults, request_deadline_seconds=rel.request_deadline_seconds)

    adapters: Dict[str, BackendAdapter] = {}
    policies: Dict[str, CallPolicy] = {}
    for section in document.adapters:
        if section.id in adapters:
            raise ConfigurationError(f"Duplicate adapter id '{section.id}'")
        try:
            adapters[section.id] = adapter_builder(section)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(
                f"Adapter '{section.id}' has invalid options: {e}", {"adapter": section.id}
            ) from e
        policies[section.id] = _call_policy(section, defaults)

    descriptors: Dict[str, ResourceDescriptor] = {}
    bindings: Dict[Tuple[str, str], ServiceBinding] = {}
    for resource in document.resources:
        descriptor = _build_descriptor(resource, descriptors)
        for binding in _build_bindings(resource, descriptor, adapters):
            bindings[(binding.resource, binding.version)] = binding
        descriptors[descriptor.name] = descriptor

    for name, descriptor in descriptors.items():
        if descriptor.parent is not None and descriptor.parent not in descriptors:
            raise ConfigurationError(f"Resource '{name}' is nested under unknown resource '{descriptor.parent}'")

    logger.info(
        "Gateway configuration loaded",
        generation=generation,
        resources=len(descriptors),
        adapters=len(adapters),
        versioning=versioning.strategy.value,
    )
    return RegistrySnapshot(
        generation=generation,
        versioning=versioning,
        reliability=reliability,
        descriptors=descriptors,
        bindings=bindings,
        adapters=adapters,
        adapter_policies=policies,
    )


def _build_descriptor(resource: ResourceSection, existing: Dict[str, ResourceDescriptor]) -> ResourceDescriptor:
    _check_resource_name(resource.name)
    if resource.name in existing:
        raise ConfigurationError(f"Duplicate resource '{resource.name}'")
    if not resource.versions:
        raise ConfigurationError(f"Resource '{resource.name}' declares no versions")
    for version in resource.versions:
        _check_version(version, f"resource '{resource.name}'")
    if HttpMethod.POST in resource.item_methods:
        raise ConfigurationError(f"Resource '{resource.name}' cannot allow POST on items")
    if not resource.collection_methods and not resource.item_methods:
        raise ConfigurationError(f"Resource '{resource.name}' allows no methods")

    return ResourceDescriptor(
        name=resource.name,
        versions=frozenset(resource.versions),
        collection_methods=frozenset(resource.collection_methods),
        item_methods=frozenset(resource.item_methods),
        cache=CachePolicy(
            cacheable=resource.cache.cacheable,
            max_age_seconds=resource.cache.max_age_seconds if resource.cache.cacheable else 0,
        ),
    )


def _build_bindings(resource: ResourceSection, descriptor: ResourceDescriptor,
                    adapters: Dict[str, BackendAdapter]) -> List[ServiceBinding]:
    bound_versions = set()
    built = []
    for section in resource.bindings:
        where = f"resource '{resource.name}'"
        if not section.adapters:
            raise ConfigurationError(f"{where}: binding lists no adapters")
        if section.strategy is AggregationStrategy.SINGLE and len(section.adapters) != 1:
            raise ConfigurationError(f"{where}: a single binding takes exactly one adapter")

        refs = []
        seen = set()
        for ref in section.adapters:
            if ref.id in seen:
                raise ConfigurationError(f"{where}: adapter '{ref.id}' listed twice in one binding")
            seen.add(ref.id)
            adapter = adapters.get(ref.id)
            if adapter is None:
                raise ConfigurationError(f"{where}: unknown adapter '{ref.id}'")
            missing = descriptor.operations - adapter.capabilities
            if missing:
                raise ConfigurationError(
                    f"{where}: adapter '{ref.id}' does not cover "
                    f"{', '.join(sorted(c.value for c in missing))}",
                    {"adapter": ref.id, "resource": resource.name},
                )
            if ref.merge_key is not None and not MERGE_KEY_PATTERN.match(ref.merge_key):
                raise ConfigurationError(f"{where}: invalid merge key '{ref.merge_key}'")
            refs.append(AdapterRef(adapter_id=ref.id, required=ref.required, merge_key=ref.merge_key))

        for version in section.versions:
            if version not in descriptor.versions:
                raise ConfigurationError(f"{where}: binding version '{version}' is not declared")
            if version in bound_versions:
                raise ConfigurationError(f"{where}: version '{version}' is bound twice")
            bound_versions.add(version)
            built.append(ServiceBinding(
                resource=resource.name,
                version=version,
                strategy=section.strategy,
                adapters=tuple(refs),
            ))

    unbound = descriptor.versions - bound_versions
    if unbound:
        raise ConfigurationError(f"resource '{resource.name}': versions without binding: {', '.join(sorted(unbound))}")
    return built


class ConfigLoader:
    """Reads the topology document and produces numbered snapshots."""

    def __init__(self, path: Union[str, Path], adapter_builder: AdapterBuilder = default_adapter_builder):
        self.path = Path(path)
        self.adapter_builder = adapter_builder

    def load(self, generation: int = 1) -> RegistrySnapshot:
        return build_snapshot(read_document(self.path), generation, self.adapter_builder)
