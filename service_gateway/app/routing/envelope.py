"""
Response envelope construction.

Every successful response is wrapped as
``{"data", "links", "cache", "version", "warnings"?}``. Links always carry
``self``; cacheability is always stated explicitly.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..registry.models import NO_STORE, CachePolicy, ResourceDescriptor, Scope
from .context import RequestContext


class CacheMetadata(BaseModel):
    """Cache-control metadata advertised to clients."""
    model_config = ConfigDict(populate_by_name=True)

    cacheable: bool
    max_age_seconds: int = Field(alias="maxAgeSeconds")

    @classmethod
    def from_policy(cls, policy: CachePolicy) -> "CacheMetadata":
        return cls(cacheable=policy.cacheable, max_age_seconds=policy.max_age_seconds)

    def header_value(self) -> str:
        if self.cacheable:
            return f"public, max-age={self.max_age_seconds}"
        return "no-store"


class ResponseEnvelope(BaseModel):
    """Uniform outward shape of a successful response."""
    data: Any = None
    links: Dict[str, str]
    cache: CacheMetadata
    version: str
    warnings: Optional[List[str]] = None

    def to_content(self) -> Dict[str, Any]:
        content = self.model_dump(by_alias=True)
        if self.warnings is None:
            content.pop("warnings")
        return content


def cache_metadata(descriptor: ResourceDescriptor, context: RequestContext) -> CacheMetadata:
    if context.mutating:
        return CacheMetadata.from_policy(NO_STORE)
    return CacheMetadata.from_policy(descriptor.cache)


def build_links(context: RequestContext, children: List[str], version_prefix: str = "") -> Dict[str, str]:
    """Hypermedia links for the addressed resource.

    ``children`` are names of resources registered directly beneath this one.
    """
    links = {"self": context.self_link}
    segments = [s for s in context.path.split("/") if s]

    if context.scope is Scope.ITEM:
        for child in children:
            leaf = child.rsplit("/", 1)[-1]
            links[leaf] = _join(version_prefix, segments + [leaf])

    if "/" in context.resource:
        # Drop this resource's own segments to land on the enclosing item.
        own = 2 if context.scope is Scope.ITEM else 1
        links["parent"] = _join(version_prefix, segments[:-own])
    return links


def _join(prefix: str, segments: List[str]) -> str:
    return prefix + "/" + "/".join(segments)


def build_envelope(payload: Any, context: RequestContext, descriptor: ResourceDescriptor,
                   children: List[str], version_prefix: str = "",
                   warnings: Optional[List[str]] = None) -> ResponseEnvelope:
    return ResponseEnvelope(
        data=payload,
        links=build_links(context, children, version_prefix),
        cache=cache_metadata(descriptor, context),
        version=context.version,
        warnings=warnings,
    )
