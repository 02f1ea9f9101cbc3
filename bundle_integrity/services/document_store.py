"""
Document store abstraction with an optional Supabase backend.
- DOCUMENT_STORE=supabase: Postgres tables behind supabase-py, batches via RPC.
- Otherwise an in-memory store (process-local, not for production).

Every backend offers the same four calls: get-by-id, query a collection, put a
document, and commit an all-or-nothing batch of at most `max_batch_ops`
operations.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from bundle_integrity.utils.errors import (
    BatchLimitExceeded,
    StoreUnavailableError,
    WriteFailure,
)
from bundle_integrity.utils.observability import log_event

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_OPS = 500

OP_SET = "set"
OP_UPDATE = "update"
OP_INCREMENT = "increment"
OP_DELETE = "delete"

_CACHED_STORE: Optional["BaseDocumentStore"] = None
_CACHED_STORE_CONFIG: Optional[tuple] = None


@dataclass(frozen=True)
class WriteOp:
    """
    One mutation inside a batch.

    - set: replace the document (or deep-merge into it when `merge`)
    - update: assign dotted field paths; the document must exist
    - increment: add numeric deltas to dotted field paths; the document must exist
    - delete: remove the document if present
    """

    op: str
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False

    @classmethod
    def set(cls, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = False) -> "WriteOp":
        return cls(OP_SET, collection, str(doc_id), dict(data), merge=merge)

    @classmethod
    def update(cls, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteOp":
        return cls(OP_UPDATE, collection, str(doc_id), dict(fields))

    @classmethod
    def increment(cls, collection: str, doc_id: str, deltas: Dict[str, float]) -> "WriteOp":
        return cls(OP_INCREMENT, collection, str(doc_id), dict(deltas))

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> "WriteOp":
        return cls(OP_DELETE, collection, str(doc_id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op": self.op,
            "collection": self.collection,
            "doc_id": self.doc_id,
            "data": self.data,
            "merge": self.merge,
        }


def chunk_ops(ops: Sequence[WriteOp], size: int) -> Iterator[List[WriteOp]]:
    size = max(1, int(size))
    for start in range(0, len(ops), size):
        yield list(ops[start : start + size])


class BaseDocumentStore:
    max_batch_ops: int = DEFAULT_MAX_BATCH_OPS

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def query(
        self, collection: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def commit_batch(self, ops: Iterable[WriteOp]) -> None:
        raise NotImplementedError

    async def put(
        self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = False
    ) -> None:
        await self.commit_batch([WriteOp.set(collection, doc_id, data, merge=merge)])

    def _check_batch(self, ops: List[WriteOp]) -> None:
        if len(ops) > int(self.max_batch_ops):
            raise BatchLimitExceeded(
                f"batch carries {len(ops)} operations; limit is {self.max_batch_ops}"
            )


# --- In-memory backend ---


def _split_path(path: str) -> List[str]:
    parts = [p for p in str(path).split(".") if p]
    if not parts:
        raise ValueError(f"empty field path: {path!r}")
    return parts


def _assign_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = _split_path(path)
    cur = doc
    for key in parts[:-1]:
        nxt = cur.get(key)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[key] = nxt
        cur = nxt
    cur[parts[-1]] = copy.deepcopy(value)


def _read_path(doc: Dict[str, Any], path: str) -> Any:
    cur: Any = doc
    for key in _split_path(path):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _deep_merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in incoming.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def _matches(doc: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    for key, expected in (filters or {}).items():
        if _read_path(doc, key) != expected:
            return False
    return True


class InMemoryDocumentStore(BaseDocumentStore):
    def __init__(self, *, max_batch_ops: int = DEFAULT_MAX_BATCH_OPS):
        self.max_batch_ops = int(max_batch_ops)
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.committed_batches = 0

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self.collections.get(collection, {}).get(str(doc_id))
        return copy.deepcopy(doc) if doc is not None else None

    async def query(
        self, collection: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        docs = self.collections.get(collection, {})
        return [copy.deepcopy(d) for d in docs.values() if _matches(d, filters)]

    async def commit_batch(self, ops: Iterable[WriteOp]) -> None:
        ops = list(ops)
        self._check_batch(ops)
        if not ops:
            return
        # Copy-on-write: a failing op leaves the live collections untouched.
        staged = copy.deepcopy(self.collections)
        for op in ops:
            self._apply(staged, op)
        self.collections = staged
        self.committed_batches += 1

    @staticmethod
    def _apply(collections: Dict[str, Dict[str, Dict[str, Any]]], op: WriteOp) -> None:
        docs = collections.setdefault(op.collection, {})
        current = docs.get(op.doc_id)
        if op.op == OP_SET:
            if op.merge and current is not None:
                docs[op.doc_id] = _deep_merge(current, op.data)
            else:
                docs[op.doc_id] = copy.deepcopy(op.data)
            return
        if op.op == OP_DELETE:
            docs.pop(op.doc_id, None)
            return
        if current is None:
            raise WriteFailure(f"{op.op} on missing document {op.collection}/{op.doc_id}")
        if op.op == OP_UPDATE:
            for path, value in op.data.items():
                _assign_path(current, path, value)
            return
        if op.op == OP_INCREMENT:
            for path, delta in op.data.items():
                prev = _read_path(current, path)
                base = prev if isinstance(prev, (int, float)) and not isinstance(prev, bool) else 0
                _assign_path(current, path, base + delta)
            return
        raise WriteFailure(f"unknown batch operation: {op.op}")


# --- Supabase backend ---


class SupabaseDocumentStore(BaseDocumentStore):
    """
    One table per collection: `doc_id text primary key, data jsonb, updated_at`.
    supabase-py is blocking; calls are offloaded with `asyncio.to_thread`.
    """

    _PAGE_SIZE = 1000
    _BATCH_RPC = "commit_document_batch"

    def __init__(self, client: Any, *, max_batch_ops: int = DEFAULT_MAX_BATCH_OPS):
        self.client = client
        self.max_batch_ops = int(max_batch_ops)

    def _get_sync(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        resp = (
            self.client.table(collection)
            .select("data")
            .eq("doc_id", str(doc_id))
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None)
        if not isinstance(rows, list) or not rows:
            return None
        data = rows[0].get("data") if isinstance(rows[0], dict) else None
        return data if isinstance(data, dict) else None

    def _query_sync(
        self, collection: str, filters: Optional[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        start = 0
        while True:
            q = self.client.table(collection).select("data")
            for key, value in (filters or {}).items():
                parts = _split_path(key)
                json_path = "data" + "".join(f"->{p}" for p in parts[:-1]) + f"->>{parts[-1]}"
                q = q.eq(json_path, str(value))
            resp = q.order("doc_id").range(start, start + self._PAGE_SIZE - 1).execute()
            rows = getattr(resp, "data", None)
            if not isinstance(rows, list) or not rows:
                break
            for row in rows:
                data = row.get("data") if isinstance(row, dict) else None
                if isinstance(data, dict):
                    out.append(data)
            if len(rows) < self._PAGE_SIZE:
                break
            start += self._PAGE_SIZE
        return out

    def _commit_sync(self, ops: List[WriteOp]) -> None:
        self.client.rpc(self._BATCH_RPC, {"ops": [op.to_dict() for op in ops]}).execute()

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._get_sync, collection, doc_id)
        except Exception as e:
            raise StoreUnavailableError(f"read {collection}/{doc_id} failed: {e}") from e

    async def query(
        self, collection: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._query_sync, collection, filters)
        except Exception as e:
            raise StoreUnavailableError(f"query {collection} failed: {e}") from e

    async def commit_batch(self, ops: Iterable[WriteOp]) -> None:
        ops = list(ops)
        self._check_batch(ops)
        if not ops:
            return
        try:
            await asyncio.to_thread(self._commit_sync, ops)
        except Exception as e:
            log_event(
                logger,
                "document_batch_failed",
                level="warning",
                ops=len(ops),
                error_type=e.__class__.__name__,
                error=str(e),
            )
            raise WriteFailure(f"batched write rejected: {e}") from e


def get_document_store() -> BaseDocumentStore:
    """Process-wide store for the configured backend (rebuilt when config changes)."""
    global _CACHED_STORE, _CACHED_STORE_CONFIG
    from bundle_integrity.utils.settings import get_settings

    settings = get_settings()
    backend = str(settings.document_store or "memory").strip().lower()
    config = (backend, settings.supabase_url, int(settings.store_max_batch_ops))
    if _CACHED_STORE is not None and _CACHED_STORE_CONFIG == config:
        return _CACHED_STORE

    if backend == "supabase":
        from bundle_integrity.utils.supabase_client import get_supabase_client

        store: BaseDocumentStore = SupabaseDocumentStore(
            get_supabase_client(), max_batch_ops=settings.store_max_batch_ops
        )
    elif backend == "memory":
        store = InMemoryDocumentStore(max_batch_ops=settings.store_max_batch_ops)
    else:
        raise StoreUnavailableError(f"unknown DOCUMENT_STORE backend: {backend}")

    _CACHED_STORE = store
    _CACHED_STORE_CONFIG = config
    log_event(logger, "document_store_ready", backend=backend)
    return store
