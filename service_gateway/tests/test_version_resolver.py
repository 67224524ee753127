"""
Unit tests for the version resolver.
"""

import pytest

from service_gateway.app.registry.models import VersioningPolicy, VersioningStrategy
from service_gateway.app.versioning.resolver import VersionResolver
from shared.errors import ErrorKind, MissingVersionError, UnsupportedVersionError


def resolver_for(strategy: VersioningStrategy, **kwargs) -> VersionResolver:
    return VersionResolver(VersioningPolicy(strategy=strategy, **kwargs))


class TestVersionResolver:
    """Test cases for VersionResolver."""

    def test_none_strategy_always_uses_default(self):
        resolver = resolver_for(VersioningStrategy.NONE, default_version="v3")
        resolved = resolver.resolve("/calmodels", {"version": "v1"}, {"X-API-Version": "v2"})

        assert resolved.version == "v3"
        assert resolved.explicit is False
        assert resolved.path == "/calmodels"

    def test_uri_strategy_strips_version_segment(self):
        resolver = resolver_for(VersioningStrategy.URI)
        resolved = resolver.resolve("/v2/calmodels/7", {}, {})

        assert resolved.version == "v2"
        assert resolved.explicit is True
        assert resolved.source == "uri"
        assert resolved.path == "/calmodels/7"

    def test_uri_strategy_without_version_segment(self):
        resolver = resolver_for(VersioningStrategy.URI)

        with pytest.raises(MissingVersionError) as exc_info:
            resolver.resolve("/calmodels/7", {}, {})
        assert exc_info.value.kind is ErrorKind.MISSING_VERSION
        assert exc_info.value.status_code == 400

    def test_query_strategy_reads_parameter(self):
        resolver = resolver_for(VersioningStrategy.QUERY, query_param="api")
        resolved = resolver.resolve("/calmodels", {"api": "v2"}, {})

        assert resolved.version == "v2"
        assert resolved.source == "query"

    def test_query_strategy_absent_parameter_uses_default(self):
        resolver = resolver_for(VersioningStrategy.QUERY)
        resolved = resolver.resolve("/calmodels", {}, {})

        assert resolved.version == "v1"
        assert resolved.explicit is False

    def test_header_strategy_is_case_insensitive(self):
        resolver = resolver_for(VersioningStrategy.HEADER)
        resolved = resolver.resolve("/calmodels", {}, {"x-api-version": "v2"})

        assert resolved.version == "v2"
        assert resolved.source == "header"

    def test_header_strategy_absent_header_uses_default(self):
        resolver = resolver_for(VersioningStrategy.HEADER)
        resolved = resolver.resolve("/calmodels", {}, {})

        assert resolved.version == "v1"
        assert resolved.source == "default"

    @pytest.mark.parametrize("label,expected", [("2", "v2"), ("V2", "v2"), ("v2.1", "v2.1"), (" 1 ", "v1")])
    def test_normalize(self, label, expected):
        assert VersionResolver.normalize(label) == expected

    @pytest.mark.parametrize("label", ["latest", "v", "2.x", "v1.2.3"])
    def test_normalize_rejects_malformed_labels(self, label):
        with pytest.raises(UnsupportedVersionError):
            VersionResolver.normalize(label)

    @pytest.mark.parametrize("strategy,path,query,headers", [
        (VersioningStrategy.URI, "/v2/calmodels", {}, {}),
        (VersioningStrategy.QUERY, "/calmodels", {"version": "v2"}, {}),
        (VersioningStrategy.HEADER, "/calmodels", {}, {"X-API-Version": "v2"}),
    ])
    def test_supported_version_resolves_exactly(self, strategy, path, query, headers):
        resolver = resolver_for(strategy)
        resolved = resolver.resolve(path, query, headers)

        assert resolver.check_supported(resolved, {"v1", "v2"}, "calmodels") == "v2"

    @pytest.mark.parametrize("strategy,path,query,headers", [
        (VersioningStrategy.URI, "/v9/calmodels", {}, {}),
        (VersioningStrategy.QUERY, "/calmodels", {"version": "v9"}, {}),
        (VersioningStrategy.HEADER, "/calmodels", {}, {"X-API-Version": "v9"}),
    ])
    def test_unsupported_version_never_falls_back(self, strategy, path, query, headers):
        resolver = resolver_for(strategy)
        resolved = resolver.resolve(path, query, headers)

        with pytest.raises(UnsupportedVersionError) as exc_info:
            resolver.check_supported(resolved, {"v1", "v2"}, "calmodels")
        assert exc_info.value.details["requested"] == "v9"
        assert exc_info.value.details["supported"] == ["v1", "v2"]

    def test_default_version_not_supported_by_resource(self):
        resolver = resolver_for(VersioningStrategy.HEADER, default_version="v1")
        resolved = resolver.resolve("/calmodels", {}, {})

        with pytest.raises(UnsupportedVersionError):
            resolver.check_supported(resolved, {"v2"}, "calmodels")
