"""
Unit tests for backend adapters.
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from service_gateway.app.adapters.base import AdapterRequest, BackendCallResult, paging
from service_gateway.app.adapters.factory import create_adapter
from service_gateway.app.adapters.filesystem_adapter import FilesystemAdapter
from service_gateway.app.adapters.http_adapter import HttpAdapter
from service_gateway.app.adapters.postgres_adapter import PostgresAdapter
from service_gateway.app.adapters.static_adapter import StaticAdapter
from service_gateway.app.registry.models import CallPolicy, Capability, Scope
from service_gateway.app.reliability.invoker import ReliableInvoker
from shared.circuit_breaker import CircuitBreakerManager
from shared.errors import ConfigurationError, ErrorKind


def make_request(operation=Capability.FETCH, path="/calmodels/1", resource="calmodels",
                 query=None, body=None) -> AdapterRequest:
    segments = [s for s in path.split("/") if s]
    scope = Scope.ITEM if len(segments) % 2 == 0 else Scope.COLLECTION
    params = {}
    if scope is Scope.ITEM:
        params["id"] = segments[-1]
    if len(segments) > 2:
        params[f"{segments[0]}_id"] = segments[1]
    return AdapterRequest(
        operation=operation,
        scope=scope,
        resource=resource,
        path=path,
        path_params=params,
        query=query or {},
        body=body,
    )


class TestAdapterBase:
    """Test cases for the shared adapter contract."""

    def test_paging_defaults_and_bounds(self):
        assert paging({}) == (100, 0)
        assert paging({"limit": "5000", "offset": "10"}) == (1000, 10)

        with pytest.raises(ValueError):
            paging({"limit": "-1"})

    def test_parent_id_for_nested_resource(self):
        request = make_request(path="/calmodels/7/measurements", resource="calmodels/measurements")

        assert request.parent_id == "7"
        assert request.item_id is None

    def test_failure_reason_and_error(self):
        result = BackendCallResult.failure("db", ErrorKind.UNREACHABLE, "connection refused")

        assert result.retriable is True
        assert result.reason == "Unreachable: connection refused"
        error = result.with_attempts(3).to_error()
        assert error.status_code == 502
        assert error.details == {"adapter": "db", "attempts": 3}

    def test_declared_capabilities_must_be_native(self):
        with pytest.raises(ConfigurationError):
            StaticAdapter("catalogue", [], capabilities=["fetch", "create"])

    @pytest.mark.asyncio
    async def test_unsupported_operation_is_rejected(self):
        adapter = StaticAdapter("catalogue", [{"id": "a"}])

        result = await adapter.invoke(make_request(Capability.DELETE), timeout=1.0)

        assert result.error_kind is ErrorKind.UPSTREAM_REJECTED
        assert not result.retriable


class TestHttpAdapter:
    """Test cases for HttpAdapter."""

    def make_adapter(self, handler, **kwargs):
        return HttpAdapter(
            "archive",
            "http://archive.test",
            path_prefix="/api",
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_fetch_forwards_path_and_query(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": 1, "files": 3})

        adapter = self.make_adapter(handler)
        result = await adapter.invoke(make_request(query={"band": "L"}), timeout=1.0)
        await adapter.close()

        assert result.ok
        assert result.payload == {"id": 1, "files": 3}
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/api/calmodels/1"
        assert seen[0].url.params["band"] == "L"

    @pytest.mark.asyncio
    async def test_create_sends_json_body(self):
        def handler(request):
            assert request.method == "POST"
            return httpx.Response(201, json=json.loads(request.content))

        adapter = self.make_adapter(handler)
        result = await adapter.invoke(
            make_request(Capability.CREATE, path="/calmodels", body={"name": "Y"}), timeout=1.0
        )

        assert result.payload == {"name": "Y"}

    @pytest.mark.parametrize("status,kind,retriable", [
        (404, ErrorKind.UPSTREAM_REJECTED, False),
        (409, ErrorKind.UPSTREAM_REJECTED, False),
        (503, ErrorKind.UNREACHABLE, True),
    ])
    @pytest.mark.asyncio
    async def test_status_mapping(self, status, kind, retriable):
        adapter = self.make_adapter(lambda request: httpx.Response(status, json={"detail": "nope"}))

        result = await adapter.invoke(make_request(), timeout=1.0)

        assert result.error_kind is kind
        assert result.retriable is retriable
        assert result.details["upstreamStatus"] == status

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await self.make_adapter(handler).invoke(make_request(), timeout=1.0)

        assert result.error_kind is ErrorKind.TIMEOUT
        assert result.retriable

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await self.make_adapter(handler).invoke(make_request(), timeout=1.0)

        assert result.error_kind is ErrorKind.UNREACHABLE

    @pytest.mark.asyncio
    async def test_no_content(self):
        result = await self.make_adapter(lambda request: httpx.Response(204)).invoke(
            make_request(Capability.DELETE), timeout=1.0
        )

        assert result.ok
        assert result.payload is None

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        adapter = self.make_adapter(lambda request: httpx.Response(200, content=b"<html>"))

        result = await adapter.invoke(make_request(), timeout=1.0)

        assert result.error_kind is ErrorKind.MALFORMED_UPSTREAM_RESPONSE
        assert not result.retriable

    def test_requires_http_base_url(self):
        with pytest.raises(ConfigurationError):
            HttpAdapter.from_options("archive", {"base_url": "ftp://archive"})


class TestPostgresAdapter:
    """Test cases for PostgresAdapter with a mocked pool."""

    @pytest.fixture
    def pool(self):
        pool = MagicMock()
        pool.fetchrow = AsyncMock(return_value={"id": 1, "name": "X", "band": "L"})
        pool.fetch = AsyncMock(return_value=[{"id": 1, "name": "X", "band": "L"}])
        pool.execute = AsyncMock(return_value="DELETE 4")
        return pool

    def make_adapter(self, pool, **kwargs):
        options = dict(columns=["name", "band"], id_type="int", filterable=["band"], pool=pool)
        options.update(kwargs)
        return PostgresAdapter("calmodels-db", "postgresql://test", "calibration_models", **options)

    @pytest.mark.asyncio
    async def test_fetch_item(self, pool):
        adapter = self.make_adapter(pool)

        result = await adapter.invoke(make_request(), timeout=2.0)

        assert result.payload == {"id": 1, "name": "X", "band": "L"}
        sql, arg = pool.fetchrow.call_args.args
        assert sql == 'SELECT * FROM "calibration_models" WHERE "id" = $1'
        assert arg == 1
        assert pool.fetchrow.call_args.kwargs["timeout"] == 2.0

    @pytest.mark.asyncio
    async def test_fetch_collection_applies_filters_and_paging(self, pool):
        adapter = self.make_adapter(pool)

        result = await adapter.invoke(
            make_request(path="/calmodels", query={"band": "L", "owner": "x", "limit": "5"}), timeout=2.0
        )

        assert result.payload == [{"id": 1, "name": "X", "band": "L"}]
        sql, arg = pool.fetch.call_args.args
        assert '"band"::text = $1' in sql
        assert "owner" not in sql
        assert sql.endswith('ORDER BY "id" LIMIT 5 OFFSET 0')
        assert arg == "L"

    @pytest.mark.asyncio
    async def test_missing_item(self, pool):
        pool.fetchrow.return_value = None

        result = await self.make_adapter(pool).invoke(make_request(), timeout=2.0)

        assert result.error_kind is ErrorKind.UPSTREAM_REJECTED
        assert result.details["upstreamStatus"] == 404

    @pytest.mark.asyncio
    async def test_nested_resource_scoped_to_parent(self, pool):
        adapter = self.make_adapter(pool, parent_column="calmodel_id")

        await adapter.invoke(
            make_request(path="/calmodels/3/measurements", resource="calmodels/measurements"), timeout=2.0
        )

        sql, arg = pool.fetch.call_args.args
        assert '"calmodel_id" = $1' in sql
        assert arg == 3

    @pytest.mark.asyncio
    async def test_patch_updates_supplied_columns(self, pool):
        adapter = self.make_adapter(pool)

        result = await adapter.invoke(
            make_request(Capability.PATCH, body={"band": "S"}), timeout=2.0
        )

        assert result.ok
        sql, value, item_id = pool.fetchrow.call_args.args
        assert sql == 'UPDATE "calibration_models" SET "band" = $1 WHERE "id" = $2 RETURNING *'
        assert (value, item_id) == ("S", 1)

    @pytest.mark.asyncio
    async def test_unknown_fields_are_rejected(self, pool):
        result = await self.make_adapter(pool).invoke(
            make_request(Capability.PATCH, body={"colour": "red"}), timeout=2.0
        )

        assert result.error_kind is ErrorKind.UPSTREAM_REJECTED
        pool.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_collection_reports_count(self, pool):
        result = await self.make_adapter(pool).invoke(
            make_request(Capability.DELETE, path="/calmodels"), timeout=2.0
        )

        assert result.payload == {"deleted": 4}

    @pytest.mark.parametrize("exc,kind", [
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
        (ConnectionRefusedError("refused"), ErrorKind.UNREACHABLE),
    ])
    @pytest.mark.asyncio
    async def test_driver_errors(self, pool, exc, kind):
        pool.fetchrow.side_effect = exc

        result = await self.make_adapter(pool).invoke(make_request(), timeout=2.0)

        assert result.error_kind is kind
        assert result.retriable

    def test_rejects_unsafe_identifiers(self):
        with pytest.raises(ConfigurationError):
            PostgresAdapter("db", "postgresql://test", "models; DROP TABLE x", columns=["name"])


class SlowWriteFilesystemAdapter(FilesystemAdapter):
    def _write(self, path, document):
        time.sleep(0.15)
        super()._write(path, document)


class TestFilesystemAdapter:
    """Test cases for FilesystemAdapter."""

    @pytest.fixture
    def adapter(self, tmp_path):
        return FilesystemAdapter("measurements-fs", str(tmp_path))

    @pytest.mark.asyncio
    async def test_create_then_fetch(self, adapter, tmp_path):
        created = await adapter.invoke(
            make_request(Capability.CREATE, path="/calmodels", body={"id": "m1", "band": "L"}), timeout=1.0
        )
        fetched = await adapter.invoke(make_request(path="/calmodels/m1"), timeout=1.0)

        assert created.payload == {"id": "m1", "band": "L"}
        assert fetched.payload == {"id": "m1", "band": "L"}
        assert (tmp_path / "calmodels" / "m1.json").exists()

    @pytest.mark.asyncio
    async def test_create_assigns_id(self, adapter):
        result = await adapter.invoke(
            make_request(Capability.CREATE, path="/calmodels", body={"band": "L"}), timeout=1.0
        )

        assert result.payload["id"]

    @pytest.mark.asyncio
    async def test_list_filters_documents(self, adapter, tmp_path):
        collection = tmp_path / "calmodels" / "1" / "measurements"
        collection.mkdir(parents=True)
        (collection / "a.json").write_text(json.dumps({"id": "a", "band": "L"}))
        (collection / "b.json").write_text(json.dumps({"id": "b", "band": "S"}))

        result = await adapter.invoke(
            make_request(path="/calmodels/1/measurements", resource="calmodels/measurements",
                         query={"band": "S"}),
            timeout=1.0,
        )

        assert result.payload == [{"id": "b", "band": "S"}]

    @pytest.mark.asyncio
    async def test_patch_and_delete(self, adapter, tmp_path):
        (tmp_path / "calmodels").mkdir()
        (tmp_path / "calmodels" / "m1.json").write_text(json.dumps({"id": "m1", "band": "L"}))

        patched = await adapter.invoke(
            make_request(Capability.PATCH, path="/calmodels/m1", body={"band": "S", "id": "other"}), timeout=1.0
        )
        deleted = await adapter.invoke(make_request(Capability.DELETE, path="/calmodels/m1"), timeout=1.0)

        assert patched.payload == {"id": "m1", "band": "S"}
        assert deleted.payload == {"id": "m1", "band": "S"}
        assert not (tmp_path / "calmodels" / "m1.json").exists()

    @pytest.mark.asyncio
    async def test_timed_out_create_writes_nothing(self, tmp_path):
        adapter = SlowWriteFilesystemAdapter("measurements-fs", str(tmp_path))
        invoker = ReliableInvoker(CircuitBreakerManager())
        policy = CallPolicy(timeout_seconds=0.05, max_attempts=3, base_delay_seconds=0.001, jitter=False)

        result = await invoker.invoke(
            adapter, make_request(Capability.CREATE, path="/calmodels", body={"name": "X"}), policy
        )
        await asyncio.sleep(0.3)

        assert result.error_kind is ErrorKind.TIMEOUT
        assert result.attempts == 1
        assert list((tmp_path / "calmodels").glob("*.json")) == []

    @pytest.mark.asyncio
    async def test_missing_item(self, adapter):
        result = await adapter.invoke(make_request(path="/calmodels/nope"), timeout=1.0)

        assert result.error_kind is ErrorKind.UPSTREAM_REJECTED
        assert result.details["upstreamStatus"] == 404

    @pytest.mark.asyncio
    async def test_corrupt_document(self, adapter, tmp_path):
        (tmp_path / "calmodels").mkdir()
        (tmp_path / "calmodels" / "bad.json").write_text("{not json")

        result = await adapter.invoke(make_request(path="/calmodels/bad"), timeout=1.0)

        assert result.error_kind is ErrorKind.MALFORMED_UPSTREAM_RESPONSE

    @pytest.mark.asyncio
    async def test_missing_collection_is_empty(self, adapter):
        result = await adapter.invoke(make_request(path="/calmodels"), timeout=1.0)

        assert result.ok
        assert result.payload == []


class TestStaticAdapter:
    """Test cases for StaticAdapter."""

    @pytest.fixture
    def adapter(self):
        return StaticAdapter("catalogue", [
            {"id": "meerkat", "dishes": 64, "site": "karoo"},
            {"id": "askap", "dishes": 36, "site": "murchison"},
        ])

    @pytest.mark.asyncio
    async def test_fetch_item(self, adapter):
        result = await adapter.invoke(make_request(path="/telescopes/askap", resource="telescopes"), timeout=1.0)

        assert result.payload == {"id": "askap", "dishes": 36, "site": "murchison"}

    @pytest.mark.asyncio
    async def test_fetch_filtered_collection(self, adapter):
        result = await adapter.invoke(
            make_request(path="/telescopes", resource="telescopes", query={"site": "karoo"}), timeout=1.0
        )

        assert [r["id"] for r in result.payload] == ["meerkat"]

    @pytest.mark.asyncio
    async def test_records_cannot_be_mutated_through_payload(self, adapter):
        first = await adapter.invoke(make_request(path="/telescopes/meerkat", resource="telescopes"), timeout=1.0)
        first.payload["dishes"] = 0

        second = await adapter.invoke(make_request(path="/telescopes/meerkat", resource="telescopes"), timeout=1.0)

        assert second.payload["dishes"] == 64


class TestAdapterFactory:
    """Test cases for create_adapter."""

    def test_builds_known_type(self):
        adapter = create_adapter("catalogue", "static", {"records": [{"id": "a"}]})

        assert isinstance(adapter, StaticAdapter)
        assert adapter.describe() == {"id": "catalogue", "type": "static", "capabilities": ["fetch"]}

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError) as exc_info:
            create_adapter("x", "mongodb", {})

        assert "mongodb" in exc_info.value.message

    def test_missing_options(self):
        with pytest.raises(ConfigurationError):
            create_adapter("db", "postgres", {"dsn": "postgresql://test"})
