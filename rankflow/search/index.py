from __future__ import annotations

import json
import threading
from typing import Any, Iterable, Optional, Protocol

import redis

from rankflow.core.errors import TransientStorageError

from .schema import SearchDocument


class SearchIndex(Protocol):
    """Document store keyed by document id; upserts with the same id converge."""

    def ensure_collection(self, schema: dict[str, Any]) -> bool:
        """Create the collection if missing. Returns True when it was created."""
        ...

    def upsert(self, collection: str, document: SearchDocument) -> None:
        ...

    def import_documents(self, collection: str, documents: Iterable[SearchDocument]) -> int:
        ...

    def get(self, collection: str, document_id: str) -> Optional[SearchDocument]:
        ...

    def delete(self, collection: str, document_id: str) -> bool:
        """Returns False when the document did not exist (not an error)."""
        ...

    def document_ids(self, collection: str) -> list[str]:
        ...


class InMemorySearchIndex:
    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Any]] = {}
        self._docs: dict[str, dict[str, SearchDocument]] = {}
        self._lock = threading.Lock()

    def ensure_collection(self, schema: dict[str, Any]) -> bool:
        with self._lock:
            name = schema["name"]
            if name in self._collections:
                return False
            self._collections[name] = schema
            self._docs.setdefault(name, {})
            return True

    def upsert(self, collection: str, document: SearchDocument) -> None:
        with self._lock:
            self._docs.setdefault(collection, {})[document.id] = document

    def import_documents(self, collection: str, documents: Iterable[SearchDocument]) -> int:
        n = 0
        for doc in documents:
            self.upsert(collection, doc)
            n += 1
        return n

    def get(self, collection: str, document_id: str) -> Optional[SearchDocument]:
        with self._lock:
            return self._docs.get(collection, {}).get(document_id)

    def delete(self, collection: str, document_id: str) -> bool:
        with self._lock:
            return self._docs.get(collection, {}).pop(document_id, None) is not None

    def document_ids(self, collection: str) -> list[str]:
        with self._lock:
            return list(self._docs.get(collection, {}))

    def documents(self, collection: str) -> dict[str, SearchDocument]:
        with self._lock:
            return dict(self._docs.get(collection, {}))


class RedisSearchIndex:
    """Search documents kept as JSON in one Redis hash per collection.

    Keys: `search:<collection>:schema` (collection schema) and `search:<collection>:docs`
    (field = document id). HSET on the document id makes every upsert idempotent.
    """

    def __init__(self, client: redis.Redis, *, key_prefix: str = "search"):
        self._client = client
        self._prefix = key_prefix.rstrip(":")

    def _schema_key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}:schema"

    def _docs_key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}:docs"

    def ensure_collection(self, schema: dict[str, Any]) -> bool:
        try:
            return bool(self._client.set(self._schema_key(schema["name"]), json.dumps(schema), nx=True))
        except redis.RedisError as e:
            raise TransientStorageError(f"ensure_collection failed: {e}") from e

    def upsert(self, collection: str, document: SearchDocument) -> None:
        try:
            self._client.hset(self._docs_key(collection), document.id, json.dumps(document.to_dict()))
        except redis.RedisError as e:
            raise TransientStorageError(f"upsert {document.id} failed: {e}") from e

    def import_documents(self, collection: str, documents: Iterable[SearchDocument]) -> int:
        mapping = {d.id: json.dumps(d.to_dict()) for d in documents}
        if not mapping:
            return 0
        try:
            self._client.hset(self._docs_key(collection), mapping=mapping)
        except redis.RedisError as e:
            raise TransientStorageError(f"import into {collection} failed: {e}") from e
        return len(mapping)

    def get(self, collection: str, document_id: str) -> Optional[SearchDocument]:
        try:
            raw = self._client.hget(self._docs_key(collection), document_id)
        except redis.RedisError as e:
            raise TransientStorageError(f"get {document_id} failed: {e}") from e
        return SearchDocument.from_dict(json.loads(raw)) if raw else None

    def delete(self, collection: str, document_id: str) -> bool:
        try:
            return bool(self._client.hdel(self._docs_key(collection), document_id))
        except redis.RedisError as e:
            raise TransientStorageError(f"delete {document_id} failed: {e}") from e

    def document_ids(self, collection: str) -> list[str]:
        try:
            keys = self._client.hkeys(self._docs_key(collection))
        except redis.RedisError as e:
            raise TransientStorageError(f"listing {collection} failed: {e}") from e
        return [k.decode("utf-8") if isinstance(k, bytes) else str(k) for k in keys]
