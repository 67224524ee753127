"""
PostgreSQL backend adapter.

Each adapter instance maps one resource onto one table. Rows are returned as
plain dicts; the router takes care of JSON encoding.
"""

import asyncio
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from shared.errors import ConfigurationError, ErrorKind

from ..registry.models import Capability, Scope
from .base import AdapterRequest, BackendAdapter, BackendCallResult, paging

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

CONNECTION_ERRORS = (
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.InterfaceError,
)


def _quote(identifier: str) -> str:
    return f'"{identifier}"'


class PostgresAdapter(BackendAdapter):
    """Adapter for a table in a PostgreSQL database."""

    type_name = "postgres"
    native_capabilities = frozenset(Capability)

    def __init__(self, adapter_id: str, dsn: str, table: str, *,
                 columns: Sequence[str],
                 id_column: str = "id",
                 id_type: str = "str",
                 parent_column: Optional[str] = None,
                 filterable: Sequence[str] = (),
                 min_pool_size: int = 1,
                 max_pool_size: int = 10,
                 capabilities=None,
                 pool=None):
        super().__init__(adapter_id, capabilities)
        for identifier in [table, id_column, *columns, *filterable, *([parent_column] if parent_column else [])]:
            if not IDENTIFIER_PATTERN.match(identifier):
                raise ConfigurationError(
                    f"Adapter '{adapter_id}' has invalid SQL identifier '{identifier}'",
                    {"adapter": adapter_id},
                )
        if id_type not in ("str", "int"):
            raise ConfigurationError(f"Adapter '{adapter_id}' id_type must be 'str' or 'int'")

        self.dsn = dsn
        self.table = table
        self.columns = tuple(columns)
        self.id_column = id_column
        self.id_type = id_type
        self.parent_column = parent_column
        self.filterable = frozenset(filterable)
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool = pool

    @classmethod
    def from_options(cls, adapter_id: str, options: Dict[str, Any], capabilities=None) -> "PostgresAdapter":
        missing = [key for key in ("dsn", "table", "columns") if not options.get(key)]
        if missing:
            raise ConfigurationError(
                f"Adapter '{adapter_id}' is missing {', '.join(missing)}",
                {"adapter": adapter_id},
            )
        return cls(
            adapter_id,
            options["dsn"],
            options["table"],
            columns=options["columns"],
            id_column=options.get("id_column", "id"),
            id_type=options.get("id_type", "str"),
            parent_column=options.get("parent_column"),
            filterable=options.get("filterable", ()),
            min_pool_size=options.get("min_pool_size", 1),
            max_pool_size=options.get("max_pool_size", 10),
            capabilities=capabilities,
        )

    async def start(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            self.logger.info("PostgreSQL pool started", table=self.table)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def _coerce_id(self, value: str) -> Any:
        return int(value) if self.id_type == "int" else value

    def _scope_clause(self, request: AdapterRequest, args: List[Any]) -> List[str]:
        """WHERE terms restricting rows to the addressed parent and item."""
        clauses = []
        if self.parent_column and request.parent_id is not None:
            args.append(self._coerce_id(request.parent_id))
            clauses.append(f"{_quote(self.parent_column)} = ${len(args)}")
        if request.scope is Scope.ITEM:
            args.append(self._coerce_id(request.item_id))
            clauses.append(f"{_quote(self.id_column)} = ${len(args)}")
        return clauses

    def _row_values(self, request: AdapterRequest, body: Any, *, partial: bool) -> Dict[str, Any]:
        if not isinstance(body, dict):
            raise ValueError("request body must be a JSON object")
        unknown = set(body) - set(self.columns) - {self.id_column}
        if unknown:
            raise ValueError(f"unknown fields: {', '.join(sorted(unknown))}")
        if partial:
            values = {k: body[k] for k in self.columns if k in body}
        else:
            values = {k: body.get(k) for k in self.columns}
        if self.parent_column and request.parent_id is not None:
            values[self.parent_column] = self._coerce_id(request.parent_id)
        return values

    async def _run(self, request: AdapterRequest, timeout: float, operation) -> BackendCallResult:
        try:
            if self._pool is None:
                await self.start()
            return await operation()
        except ValueError as exc:
            return self.failed(ErrorKind.UPSTREAM_REJECTED, str(exc))
        except asyncio.TimeoutError:
            return self.failed(ErrorKind.TIMEOUT, "database query timed out")
        except CONNECTION_ERRORS as exc:
            self.logger.warning("Database unreachable", table=self.table, error=str(exc))
            return self.failed(ErrorKind.UNREACHABLE, str(exc) or exc.__class__.__name__)
        except asyncpg.PostgresError as exc:
            self.logger.info("Database rejected statement", table=self.table, error=str(exc))
            return self.failed(ErrorKind.UPSTREAM_REJECTED, str(exc), sqlstate=getattr(exc, "sqlstate", None))

    def _not_found(self, request: AdapterRequest) -> BackendCallResult:
        return self.failed(ErrorKind.UPSTREAM_REJECTED, f"item '{request.item_id}' not found", upstreamStatus=404)

    async def fetch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        async def _fetch():
            args: List[Any] = []
            clauses = self._scope_clause(request, args)
            if request.scope is Scope.ITEM:
                sql = f"SELECT * FROM {_quote(self.table)} WHERE {' AND '.join(clauses)}"
                row = await self._pool.fetchrow(sql, *args, timeout=timeout)
                return self.succeeded(dict(row)) if row is not None else self._not_found(request)

            for name, value in request.filters.items():
                if name in self.filterable:
                    args.append(value)
                    clauses.append(f"{_quote(name)}::text = ${len(args)}")
            limit, offset = paging(request.query)
            where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
            sql = (
                f"SELECT * FROM {_quote(self.table)}{where} "
                f"ORDER BY {_quote(self.id_column)} LIMIT {limit} OFFSET {offset}"
            )
            rows = await self._pool.fetch(sql, *args, timeout=timeout)
            return self.succeeded([dict(r) for r in rows])

        return await self._run(request, timeout, _fetch)

    def _insert_sql(self, values: Dict[str, Any]) -> Tuple[str, List[Any]]:
        names = list(values)
        placeholders = ", ".join(f"${i}" for i in range(1, len(names) + 1))
        sql = (
            f"INSERT INTO {_quote(self.table)} ({', '.join(_quote(n) for n in names)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        return sql, [values[n] for n in names]

    def _insert_values(self, request: AdapterRequest, body: Any) -> Dict[str, Any]:
        values = self._row_values(request, body, partial=False)
        if isinstance(body, dict) and self.id_column in body:
            values[self.id_column] = body[self.id_column]
        return values

    async def create(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        async def _create():
            sql, args = self._insert_sql(self._insert_values(request, request.body))
            row = await self._pool.fetchrow(sql, *args, timeout=timeout)
            return self.succeeded(dict(row))

        return await self._run(request, timeout, _create)

    async def _update(self, request: AdapterRequest, timeout: float, *, partial: bool) -> BackendCallResult:
        values = self._row_values(request, request.body, partial=partial)
        if not values:
            raise ValueError("no writable fields supplied")
        args: List[Any] = list(values.values())
        assignments = ", ".join(f"{_quote(name)} = ${i}" for i, name in enumerate(values, start=1))
        clauses = self._scope_clause(request, args)
        sql = f"UPDATE {_quote(self.table)} SET {assignments} WHERE {' AND '.join(clauses)} RETURNING *"
        row = await self._pool.fetchrow(sql, *args, timeout=timeout)
        return self.succeeded(dict(row)) if row is not None else self._not_found(request)

    async def replace(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        async def _replace():
            if request.scope is Scope.ITEM:
                return await self._update(request, timeout, partial=False)
            return await self._replace_collection(request, timeout)

        return await self._run(request, timeout, _replace)

    async def _replace_collection(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        if not isinstance(request.body, list):
            raise ValueError("bulk replace requires a JSON array")
        rows = [self._insert_values(request, item) for item in request.body]
        args: List[Any] = []
        clauses = self._scope_clause(request, args)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(f"DELETE FROM {_quote(self.table)}{where}", *args, timeout=timeout)
                created = []
                for values in rows:
                    sql, insert_args = self._insert_sql(values)
                    created.append(dict(await conn.fetchrow(sql, *insert_args, timeout=timeout)))
        return self.succeeded(created)

    async def patch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        async def _patch():
            if request.scope is not Scope.ITEM:
                raise ValueError("bulk patch is not supported")
            return await self._update(request, timeout, partial=True)

        return await self._run(request, timeout, _patch)

    async def delete(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        async def _delete():
            args: List[Any] = []
            clauses = self._scope_clause(request, args)
            where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
            if request.scope is Scope.ITEM:
                row = await self._pool.fetchrow(
                    f"DELETE FROM {_quote(self.table)}{where} RETURNING *", *args, timeout=timeout
                )
                return self.succeeded(dict(row)) if row is not None else self._not_found(request)

            status = await self._pool.execute(f"DELETE FROM {_quote(self.table)}{where}", *args, timeout=timeout)
            return self.succeeded({"deleted": _affected(status)})

        return await self._run(request, timeout, _delete)

    def describe(self) -> Dict[str, Any]:
        description = super().describe()
        description["table"] = self.table
        return description


def _affected(status: str) -> int:
    """Row count from a command tag such as 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
