"""
Document repository interface and the in-memory implementation.

The engine only relies on keyed get/set/update/delete, merge-writes carrying
field transforms (increment, array union), key-range queries and
single-unit transactions. Anything backed by a real store lives in
``packages.db.sql_repository``.
"""
from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Mapping
from typing import Any, Callable, Optional, TypeVar

from packages.db.field_ops import ArrayUnion, Increment, apply_patch
from packages.shared.errors import RecordNotFound
from packages.shared.keys import KEY_RANGE_END

T = TypeVar("T")

_DELETED = object()


class Transaction(ABC):
    """Reads and buffered writes that commit as one unit."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[dict]:
        ...

    @abstractmethod
    def set(self, collection: str, key: str, data: Mapping, merge: bool = False) -> None:
        ...

    @abstractmethod
    def delete(self, collection: str, key: str) -> None:
        ...

    def update(self, collection: str, key: str, data: Mapping) -> None:
        """Merge-write into a document that must already exist."""
        if self.get(collection, key) is None:
            raise RecordNotFound(collection, key)
        self.set(collection, key, data, merge=True)

    def create(self, collection: str, key: str, data: Mapping) -> bool:
        """Write ``data`` only when no document exists yet. Returns True if written."""
        if self.get(collection, key) is not None:
            return False
        self.set(collection, key, data)
        return True


class DocumentRepository(ABC):

    @abstractmethod
    def run_transaction(self, fn: Callable[[Transaction], T], max_attempts: int = 5) -> T:
        """Run ``fn`` inside a transaction and commit its writes atomically."""

    @abstractmethod
    def range_query(self, collection: str, start_key: str, end_key: str) -> list[tuple[str, dict]]:
        """Return ``(key, document)`` pairs with ``start_key <= key <= end_key``, ordered by key."""

    def get(self, collection: str, key: str) -> Optional[dict]:
        return self.run_transaction(lambda txn: txn.get(collection, key))

    def set(self, collection: str, key: str, data: Mapping, merge: bool = False) -> None:
        self.run_transaction(lambda txn: txn.set(collection, key, data, merge=merge))

    def update(self, collection: str, key: str, data: Mapping) -> None:
        self.run_transaction(lambda txn: txn.update(collection, key, data))

    def delete(self, collection: str, key: str) -> None:
        self.run_transaction(lambda txn: txn.delete(collection, key))

    def increment(self, collection: str, key: str, field: str, amount: float) -> None:
        self.set(collection, key, {field: Increment(amount)}, merge=True)

    def union_append(self, collection: str, key: str, field: str, values: list[Any]) -> None:
        self.set(collection, key, {field: ArrayUnion(*values)}, merge=True)

    def query_prefix(self, collection: str, prefix: str) -> list[tuple[str, dict]]:
        return self.range_query(collection, prefix, prefix + KEY_RANGE_END)


class _MemoryTransaction(Transaction):
    def __init__(self, store: dict[str, dict[str, dict]]):
        self._store = store
        self._staged: dict[tuple[str, str], Any] = {}

    def get(self, collection: str, key: str) -> Optional[dict]:
        staged = self._staged.get((collection, key))
        if staged is _DELETED:
            return None
        if staged is not None:
            return copy.deepcopy(staged)
        doc = self._store[collection].get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def set(self, collection: str, key: str, data: Mapping, merge: bool = False) -> None:
        current = self.get(collection, key) if merge else None
        self._staged[(collection, key)] = apply_patch(current, data, merge)

    def delete(self, collection: str, key: str) -> None:
        self._staged[(collection, key)] = _DELETED

    def commit(self) -> None:
        for (collection, key), doc in self._staged.items():
            if doc is _DELETED:
                self._store[collection].pop(key, None)
            else:
                self._store[collection][key] = doc


class InMemoryRepository(DocumentRepository):
    """Process-local store. Transactions are serialized by a single lock."""

    def __init__(self):
        self._store: dict[str, dict[str, dict]] = defaultdict(dict)
        self._lock = threading.RLock()

    def run_transaction(self, fn: Callable[[Transaction], T], max_attempts: int = 5) -> T:
        with self._lock:
            txn = _MemoryTransaction(self._store)
            result = fn(txn)
            txn.commit()
            return result

    def range_query(self, collection: str, start_key: str, end_key: str) -> list[tuple[str, dict]]:
        with self._lock:
            docs = self._store[collection]
            return [
                (key, copy.deepcopy(docs[key]))
                for key in sorted(docs)
                if start_key <= key <= end_key
            ]

    def keys(self, collection: str) -> list[str]:
        with self._lock:
            return sorted(self._store[collection])
