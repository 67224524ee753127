"""
Adapter factory keyed by the configured adapter ``type``.
"""

from typing import Any, Callable, Dict

from shared.errors import ConfigurationError

from .base import BackendAdapter
from .filesystem_adapter import FilesystemAdapter
from .http_adapter import HttpAdapter
from .postgres_adapter import PostgresAdapter
from .static_adapter import StaticAdapter

ADAPTER_TYPES: Dict[str, Any] = {
    HttpAdapter.type_name: HttpAdapter,
    PostgresAdapter.type_name: PostgresAdapter,
    FilesystemAdapter.type_name: FilesystemAdapter,
    StaticAdapter.type_name: StaticAdapter,
}

AdapterFactory = Callable[..., BackendAdapter]


def create_adapter(adapter_id: str, adapter_type: str, options: Dict[str, Any],
                   capabilities=None) -> BackendAdapter:
    """Build an adapter instance from its configuration section."""
    adapter_cls = ADAPTER_TYPES.get(adapter_type)
    if adapter_cls is None:
        raise ConfigurationError(
            f"Adapter '{adapter_id}' has unknown type '{adapter_type}'",
            {"adapter": adapter_id, "known_types": sorted(ADAPTER_TYPES)},
        )
    return adapter_cls.from_options(adapter_id, options, capabilities=capabilities)
