"""
Inbound request representation and per-request context.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from shared.errors import InvalidRequestError, UnknownResourceError

from ..adapters.base import AdapterRequest
from ..registry.models import (
    CAPABILITY_BY_METHOD,
    HttpMethod,
    MUTATING_METHODS,
    RESOURCE_SEGMENT_PATTERN,
    Scope,
)

BODY_METHODS = frozenset({HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH})
PATH_PARAM_CHARS = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~:@")


@dataclass(frozen=True)
class RawRequest:
    """Transport-independent view of an inbound HTTP request."""
    method: str
    path: str
    query_params: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    query_string: str = ""

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def self_link(self) -> str:
        return f"{self.path}?{self.query_string}" if self.query_string else self.path


@dataclass(frozen=True)
class ParsedPath:
    """Resource addressed by a path with any version segment removed."""
    resource: str
    scope: Scope
    path_params: Mapping[str, str]
    path: str


def parse_resource_path(path: str) -> ParsedPath:
    """Map ``/a/{x}/b/{y}`` onto resource ``a/b``, item scope, ``{a_id: x, id: y}``."""
    segments = [s for s in path.split("/") if s]
    if not segments:
        raise UnknownResourceError("/")

    names = segments[0::2]
    ids = segments[1::2]
    for name in names:
        if not RESOURCE_SEGMENT_PATTERN.match(name):
            raise UnknownResourceError("/".join(names))
    for value in ids:
        if not set(value) <= PATH_PARAM_CHARS:
            raise InvalidRequestError(f"Invalid identifier '{value}' in path")

    params: Dict[str, str] = {}
    for name, value in zip(names[:-1], ids):
        params[f"{name}_id"] = value
    scope = Scope.COLLECTION
    if len(ids) == len(names):
        params["id"] = ids[-1]
        scope = Scope.ITEM

    return ParsedPath(
        resource="/".join(names),
        scope=scope,
        path_params=params,
        path="/" + "/".join(segments),
    )


def parse_body(method: HttpMethod, raw: bytes) -> Any:
    """Decode the JSON body of methods that carry one."""
    if method not in BODY_METHODS or not raw:
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidRequestError(f"Request body is not valid JSON: {exc}") from exc


@dataclass(frozen=True)
class RequestContext:
    """Everything resolved about one request; immutable once built."""
    resource: str
    version: str
    method: HttpMethod
    scope: Scope
    path: str
    self_link: str
    path_params: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def mutating(self) -> bool:
        return self.method in MUTATING_METHODS

    def adapter_request(self) -> AdapterRequest:
        return AdapterRequest(
            operation=CAPABILITY_BY_METHOD[self.method],
            scope=self.scope,
            resource=self.resource,
            path=self.path,
            path_params=dict(self.path_params),
            query=dict(self.query),
            body=self.body,
        )
