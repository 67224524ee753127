"""
Version resolver.

Exactly one strategy is active per deployment:

- none: always the default version
- uri: first path segment (``/v2/calmodels``); missing segment is an error
- query: named query parameter, default when absent
- header: named header, default when absent
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from shared.errors import MissingVersionError, UnsupportedVersionError
from shared.logging import get_logger

from ..registry.models import VERSION_PATTERN, VersioningPolicy, VersioningStrategy


@dataclass(frozen=True)
class ResolvedVersion:
    """Outcome of version resolution for one request."""
    version: str
    explicit: bool
    source: str
    path: str


class VersionResolver:
    """Determines the requested API version from URI, query string or header."""

    def __init__(self, policy: VersioningPolicy):
        self.policy = policy
        self.logger = get_logger("gateway.version_resolver")

    @staticmethod
    def normalize(label: str) -> str:
        """Canonical version label; bare numbers gain a ``v`` prefix."""
        candidate = label.strip().lower()
        if candidate and candidate[0].isdigit():
            candidate = f"v{candidate}"
        if not VERSION_PATTERN.match(candidate):
            raise UnsupportedVersionError(label)
        return candidate

    def _default(self, path: str) -> ResolvedVersion:
        return ResolvedVersion(self.policy.default_version, explicit=False, source="default", path=path)

    def resolve(self, path: str, query: Mapping[str, str], headers: Mapping[str, str]) -> ResolvedVersion:
        """Extract the requested version; ``path`` of the result has any version segment removed."""
        strategy = self.policy.strategy

        if strategy is VersioningStrategy.NONE:
            return self._default(path)

        if strategy is VersioningStrategy.URI:
            segments = [s for s in path.split("/") if s]
            if not segments or not VERSION_PATTERN.match(segments[0].lower()):
                raise MissingVersionError(
                    "Request path must start with a version segment such as /v1",
                    {"path": path},
                )
            remaining = "/" + "/".join(segments[1:])
            return ResolvedVersion(segments[0].lower(), explicit=True, source="uri", path=remaining)

        if strategy is VersioningStrategy.QUERY:
            value = query.get(self.policy.query_param)
            if value is None or value == "":
                return self._default(path)
            return ResolvedVersion(self.normalize(value), explicit=True, source="query", path=path)

        value = _header(headers, self.policy.header_name)
        if value is None or value.strip() == "":
            self.logger.info(
                "Using default version",
                header=self.policy.header_name,
                version=self.policy.default_version,
            )
            return self._default(path)
        return ResolvedVersion(self.normalize(value), explicit=True, source="header", path=path)

    def check_supported(self, resolved: ResolvedVersion, supported: Iterable[str],
                        resource: Optional[str] = None) -> str:
        """Return the version if the resource supports it; never substitutes another."""
        supported = frozenset(supported)
        if resolved.version not in supported:
            raise UnsupportedVersionError(resolved.version, supported, resource=resource)
        return resolved.version


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None
