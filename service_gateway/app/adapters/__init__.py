"""
Backend adapters for the gateway.

Each adapter wraps one upstream data source behind the same contract:

- Declared capabilities (fetch, create, replace, patch, delete)
- A timeout budget passed on every call
- Failures reported as ``BackendCallResult`` kinds, never raised

Retry and circuit-breaking live in the reliability layer, not here.
Keep adapters thin and side-effect free outside of explicit calls.
"""

from .base import AdapterRequest, BackendAdapter, BackendCallResult
from .factory import ADAPTER_TYPES, create_adapter
from .filesystem_adapter import FilesystemAdapter
from .http_adapter import HttpAdapter
from .postgres_adapter import PostgresAdapter
from .static_adapter import StaticAdapter

__all__ = [
    "AdapterRequest",
    "BackendAdapter",
    "BackendCallResult",
    "ADAPTER_TYPES",
    "create_adapter",
    "FilesystemAdapter",
    "HttpAdapter",
    "PostgresAdapter",
    "StaticAdapter",
]
