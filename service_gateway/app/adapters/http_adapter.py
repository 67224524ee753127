"""
Remote HTTP backend adapter.
"""

from typing import Any, Dict, Optional

import httpx

from shared.errors import ConfigurationError, ErrorKind

from ..registry.models import Capability
from .base import AdapterRequest, BackendAdapter, BackendCallResult

# Upstream statuses that mean the service itself is unavailable.
UNAVAILABLE_STATUSES = frozenset({502, 503, 504})


class HttpAdapter(BackendAdapter):
    """Adapter for an upstream JSON web service."""

    type_name = "http"
    native_capabilities = frozenset(Capability)

    METHOD_BY_CAPABILITY = {
        Capability.FETCH: "GET",
        Capability.CREATE: "POST",
        Capability.REPLACE: "PUT",
        Capability.PATCH: "PATCH",
        Capability.DELETE: "DELETE",
    }

    def __init__(self, adapter_id: str, base_url: str, *,
                 path_prefix: str = "",
                 headers: Optional[Dict[str, str]] = None,
                 capabilities=None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(adapter_id, capabilities)
        self.base_url = base_url.rstrip("/")
        self.path_prefix = path_prefix.rstrip("/")
        self.headers = dict(headers or {})
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_options(cls, adapter_id: str, options: Dict[str, Any], capabilities=None) -> "HttpAdapter":
        base_url = options.get("base_url")
        if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Adapter '{adapter_id}' requires an http(s) base_url",
                {"adapter": adapter_id},
            )
        return cls(
            adapter_id,
            base_url,
            path_prefix=options.get("path_prefix", ""),
            headers=options.get("headers"),
            capabilities=capabilities,
        )

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._send(request, timeout)

    async def create(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._send(request, timeout)

    async def replace(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._send(request, timeout)

    async def patch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._send(request, timeout)

    async def delete(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._send(request, timeout)

    async def _send(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        if self._client is None:
            await self.start()

        method = self.METHOD_BY_CAPABILITY[request.operation]
        url = f"{self.path_prefix}{request.path}"
        kwargs: Dict[str, Any] = {"params": dict(request.query), "timeout": timeout}
        if request.body is not None:
            kwargs["json"] = request.body

        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            self.logger.warning("Upstream request timed out", method=method, url=url)
            return self.failed(ErrorKind.TIMEOUT, f"upstream timed out ({exc.__class__.__name__})")
        except httpx.TransportError as exc:
            self.logger.warning("Upstream unreachable", method=method, url=url, error=str(exc))
            return self.failed(ErrorKind.UNREACHABLE, str(exc) or exc.__class__.__name__)

        return self._to_result(response, method, url)

    def _to_result(self, response: httpx.Response, method: str, url: str) -> BackendCallResult:
        status = response.status_code
        if status in UNAVAILABLE_STATUSES:
            return self.failed(ErrorKind.UNREACHABLE, f"upstream unavailable ({status})", upstreamStatus=status)

        if status >= 400:
            self.logger.info("Upstream rejected request", method=method, url=url, status_code=status)
            return self.failed(
                ErrorKind.UPSTREAM_REJECTED,
                f"upstream returned {status}",
                upstreamStatus=status,
                upstreamBody=_safe_body(response),
            )

        if status == 204 or not response.content:
            return self.succeeded(None)

        try:
            payload = response.json()
        except ValueError:
            self.logger.error("Upstream returned undecodable body", method=method, url=url)
            return self.failed(ErrorKind.MALFORMED_UPSTREAM_RESPONSE, "upstream body is not valid JSON")

        return self.succeeded(payload)


def _safe_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]
