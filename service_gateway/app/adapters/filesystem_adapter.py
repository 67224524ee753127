"""
Filesystem backend adapter.

A collection is a directory mirroring the resource path below ``root``;
each item is a ``<id>.json`` document inside it.
"""

import asyncio
import contextvars
import json
import os
import re
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List

from shared.errors import ConfigurationError, ErrorKind

from ..registry.models import Capability, Scope
from .base import AdapterRequest, BackendAdapter, BackendCallResult, paging

ITEM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

# Set once the awaiting call is cancelled; worker threads must not commit after that.
_abandoned: contextvars.ContextVar[threading.Event] = contextvars.ContextVar("filesystem_abandoned")


class _NotFound(Exception):
    pass


class _Abandoned(Exception):
    pass


class FilesystemAdapter(BackendAdapter):
    """Adapter for JSON documents stored on a local or mounted filesystem."""

    type_name = "filesystem"
    native_capabilities = frozenset(Capability)

    def __init__(self, adapter_id: str, root: str, *, capabilities=None):
        super().__init__(adapter_id, capabilities)
        self.root = Path(root)

    @classmethod
    def from_options(cls, adapter_id: str, options: Dict[str, Any], capabilities=None) -> "FilesystemAdapter":
        root = options.get("root")
        if not root:
            raise ConfigurationError(f"Adapter '{adapter_id}' requires a root directory", {"adapter": adapter_id})
        return cls(adapter_id, root, capabilities=capabilities)

    def _collection_dir(self, request: AdapterRequest) -> Path:
        segments = [s for s in request.path.split("/") if s]
        if request.scope is Scope.ITEM:
            segments = segments[:-1]
        for segment in segments:
            if not ITEM_ID_PATTERN.match(segment) or segment in (".", ".."):
                raise ValueError(f"invalid path segment '{segment}'")
        return self.root.joinpath(*segments)

    def _item_file(self, collection: Path, item_id: Any) -> Path:
        item_id = str(item_id)
        if not ITEM_ID_PATTERN.match(item_id) or item_id in (".", ".."):
            raise ValueError(f"invalid item id '{item_id}'")
        return collection / f"{item_id}.json"

    async def _run(self, request: AdapterRequest, func, *args) -> BackendCallResult:
        abandoned = threading.Event()
        _abandoned.set(abandoned)
        try:
            payload = await asyncio.to_thread(func, request, *args)
        except asyncio.CancelledError:
            abandoned.set()
            raise
        except _NotFound:
            return self.failed(
                ErrorKind.UPSTREAM_REJECTED, f"item '{request.item_id}' not found", upstreamStatus=404
            )
        except json.JSONDecodeError as exc:
            self.logger.error("Stored document is not valid JSON", error=str(exc))
            return self.failed(ErrorKind.MALFORMED_UPSTREAM_RESPONSE, f"stored document is not valid JSON: {exc}")
        except ValueError as exc:
            return self.failed(ErrorKind.UPSTREAM_REJECTED, str(exc))
        except OSError as exc:
            self.logger.warning("Filesystem unavailable", root=str(self.root), error=str(exc))
            return self.failed(ErrorKind.UNREACHABLE, str(exc))
        return self.succeeded(payload)

    # Blocking helpers; run in a worker thread.

    def _read(self, path: Path) -> Any:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise _NotFound() from None
        return json.loads(text)

    def _check_abandoned(self) -> None:
        event = _abandoned.get(None)
        if event is not None and event.is_set():
            raise _Abandoned()

    def _write(self, path: Path, document: Any) -> None:
        self._check_abandoned()
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle)
            self._check_abandoned()
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _list(self, collection: Path) -> List[Any]:
        if not collection.is_dir():
            return []
        return [self._read(p) for p in sorted(collection.glob("*.json"))]

    def _fetch(self, request: AdapterRequest) -> Any:
        collection = self._collection_dir(request)
        if request.scope is Scope.ITEM:
            return self._read(self._item_file(collection, request.item_id))

        documents = self._list(collection)
        filters = request.filters
        if filters:
            documents = [
                d for d in documents
                if isinstance(d, dict) and all(str(d.get(k)) == v for k, v in filters.items())
            ]
        limit, offset = paging(request.query)
        return documents[offset:offset + limit]

    def _with_id(self, document: Any) -> Dict[str, Any]:
        if not isinstance(document, dict):
            raise ValueError("request body must be a JSON object")
        if document.get("id") in (None, ""):
            document = {**document, "id": str(uuid.uuid4())}
        return document

    def _create(self, request: AdapterRequest) -> Any:
        document = self._with_id(request.body)
        target = self._item_file(self._collection_dir(request), document["id"])
        if target.exists():
            raise ValueError(f"item '{document['id']}' already exists")
        self._write(target, document)
        return document

    def _replace(self, request: AdapterRequest) -> Any:
        collection = self._collection_dir(request)
        if request.scope is Scope.ITEM:
            if not isinstance(request.body, dict):
                raise ValueError("request body must be a JSON object")
            target = self._item_file(collection, request.item_id)
            if not target.exists():
                raise _NotFound()
            document = {**request.body, "id": request.item_id}
            self._write(target, document)
            return document

        if not isinstance(request.body, list):
            raise ValueError("bulk replace requires a JSON array")
        documents = [self._with_id(d) for d in request.body]
        targets = [self._item_file(collection, d["id"]) for d in documents]
        self._clear(collection)
        for target, document in zip(targets, documents):
            self._write(target, document)
        return documents

    def _patch(self, request: AdapterRequest) -> Any:
        if request.scope is not Scope.ITEM:
            raise ValueError("bulk patch is not supported")
        if not isinstance(request.body, dict):
            raise ValueError("request body must be a JSON object")
        target = self._item_file(self._collection_dir(request), request.item_id)
        document = self._read(target)
        document.update({k: v for k, v in request.body.items() if k != "id"})
        self._write(target, document)
        return document

    def _clear(self, collection: Path) -> int:
        removed = 0
        if collection.is_dir():
            for path in collection.glob("*.json"):
                path.unlink()
                removed += 1
        return removed

    def _delete(self, request: AdapterRequest) -> Any:
        collection = self._collection_dir(request)
        if request.scope is Scope.ITEM:
            target = self._item_file(collection, request.item_id)
            document = self._read(target)
            target.unlink()
            return document
        return {"deleted": self._clear(collection)}

    async def fetch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._run(request, self._fetch)

    async def create(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._run(request, self._create)

    async def replace(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._run(request, self._replace)

    async def patch(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._run(request, self._patch)

    async def delete(self, request: AdapterRequest, timeout: float) -> BackendCallResult:
        return await self._run(request, self._delete)

    def describe(self) -> Dict[str, Any]:
        description = super().describe()
        description["root"] = str(self.root)
        return description
