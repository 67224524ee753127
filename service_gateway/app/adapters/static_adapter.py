"""
Static (read-only, in-memory) backend adapter.
"""

from types import MappingProxyType
from typing import Any, Dict, Iterable, Optional, Tuple

from shared.errors import ConfigurationError, ErrorKind

from ..registry.models import Capability, Scope
from .base import AdapterRequest, BackendAdapter, BackendCallResult, paging


class StaticAdapter(BackendAdapter):
    """Serves a fixed set of records declared in configuration."""

    type_name = "static"
    native_capabilities = frozenset({Capability.FETCH})

    def __init__(self, adapter_id: str, records: Iterable[Dict[str, Any]], *,
                 id_field: str = "id",
                 parent_field: Optional[str] = None,
                 capabilities=None):
        super().__init__(adapter_id, capabilities)
        self.id_field = id_field
        self.parent_field = parent_field
        self._records: Tuple[MappingProxyType, ...] = tuple(MappingProxyType(dict(r)) for r in records)

    @classmethod
    def from_options(cls, adapter_id: str, options: Dict[str, Any], capabilities=None) -> "StaticAdapter":
        records = options.get("records", [])
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise ConfigurationError(f"Adapter '{adapter_id}' records must be a list of objects", {"adapter": adapter_id})
        return cls(
            adapter_id,
            records,
            id_field=options.get("id_field", "id"),
            parent_field=options.get("parent_field"),
            capabilities=capabilities,
        )

    def _in_scope(self, record, request: AdapterRequest) -> bool:
        if self.parent_field and request.parent_id is not None:
            return str(record.get(self.parent_field)) == request.parent_id
        return True

    async def fetch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        records = [r for r in self._records if self._in_scope(r, request)]
        if request.scope is Scope.ITEM:
            for record in records:
                if str(record.get(self.id_field)) == request.item_id:
                    return self.succeeded(dict(record))
            return self.failed(ErrorKind.UPSTREAM_REJECTED, f"item '{request.item_id}' not found", upstreamStatus=404)

        for name, value in request.filters.items():
            records = [r for r in records if str(r.get(name)) == value]
        try:
            limit, offset = paging(request.query)
        except ValueError as exc:
            return self.failed(ErrorKind.UPSTREAM_REJECTED, str(exc))
        return self.succeeded([dict(r) for r in records[offset:offset + limit]])
