"""
SQLAlchemy-backed document repository.

Transactions are optimistic: every document read records its version, and
commit only succeeds when none of those versions moved. Conflicts are
retried by re-running the transaction function; transport errors are
retried with exponential backoff before surfacing as PersistenceFailure.
"""
from __future__ import annotations

import copy
import logging
import os
import time
from collections.abc import Mapping
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from packages.db.database import SessionLocal, get_session
from packages.db.field_ops import apply_patch
from packages.db.models import StoredDocument, utcnow
from packages.db.repository import DocumentRepository, Transaction
from packages.shared.errors import PersistenceFailure, TransactionConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
STORE_RETRY_BACKOFF_SECONDS = float(os.getenv("STORE_RETRY_BACKOFF_SECONDS", "0.2"))

_DELETED = object()


class _SqlTransaction(Transaction):
    def __init__(self, session: Session):
        self._session = session
        self._versions: dict[tuple[str, str], Optional[int]] = {}
        self._snapshots: dict[tuple[str, str], Optional[dict]] = {}
        self._staged: dict[tuple[str, str], Any] = {}
        self.last_target: tuple[Optional[str], Optional[str]] = (None, None)

    def _load(self, collection: str, key: str) -> Optional[dict]:
        ident = (collection, key)
        if ident not in self._versions:
            row = self._session.get(StoredDocument, ident)
            self._versions[ident] = row.version if row is not None else None
            self._snapshots[ident] = copy.deepcopy(row.data) if row is not None else None
        return self._snapshots[ident]

    def get(self, collection: str, key: str) -> Optional[dict]:
        self.last_target = (collection, key)
        staged = self._staged.get((collection, key))
        if staged is _DELETED:
            return None
        if staged is not None:
            return copy.deepcopy(staged)
        doc = self._load(collection, key)
        return copy.deepcopy(doc) if doc is not None else None

    def set(self, collection: str, key: str, data: Mapping, merge: bool = False) -> None:
        current = self.get(collection, key)
        self._staged[(collection, key)] = apply_patch(current if merge else None, data, merge)

    def delete(self, collection: str, key: str) -> None:
        self.get(collection, key)
        self._staged[(collection, key)] = _DELETED

    def commit(self) -> None:
        for ident, expected in self._versions.items():
            collection, key = ident
            self.last_target = ident
            if ident not in self._staged:
                current = self._session.execute(
                    select(StoredDocument.version).where(
                        StoredDocument.collection == collection, StoredDocument.key == key
                    )
                ).scalar_one_or_none()
                if current != expected:
                    raise TransactionConflict(collection, key, "read document changed")
                continue

            doc = self._staged[ident]
            if doc is _DELETED:
                if expected is None:
                    continue
                result = self._session.execute(
                    delete(StoredDocument)
                    .where(
                        StoredDocument.collection == collection,
                        StoredDocument.key == key,
                        StoredDocument.version == expected,
                    )
                    .execution_options(synchronize_session=False)
                )
            elif expected is None:
                self._session.add(StoredDocument(collection=collection, key=key, data=doc, version=1))
                try:
                    self._session.flush()
                except IntegrityError as exc:
                    raise TransactionConflict(collection, key, "document created concurrently") from exc
                continue
            else:
                result = self._session.execute(
                    update(StoredDocument)
                    .where(
                        StoredDocument.collection == collection,
                        StoredDocument.key == key,
                        StoredDocument.version == expected,
                    )
                    .values(data=doc, version=expected + 1, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount != 1:
                raise TransactionConflict(collection, key, "version changed before commit")


class SqlDocumentRepository(DocumentRepository):

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        retry_attempts: int = STORE_RETRY_ATTEMPTS,
        backoff_seconds: float = STORE_RETRY_BACKOFF_SECONDS,
    ):
        self._session_factory = session_factory or SessionLocal
        self._retry_attempts = max(1, retry_attempts)
        self._backoff_seconds = backoff_seconds

    def _sleep(self, attempt: int) -> None:
        if self._backoff_seconds > 0:
            time.sleep(self._backoff_seconds * (2 ** (attempt - 1)))

    def run_transaction(self, fn: Callable[[Transaction], T], max_attempts: int = 5) -> T:
        conflicts = 0
        transport_failures = 0
        while True:
            txn: Optional[_SqlTransaction] = None
            try:
                with get_session(self._session_factory) as session:
                    txn = _SqlTransaction(session)
                    result = fn(txn)
                    txn.commit()
                return result
            except TransactionConflict as exc:
                conflicts += 1
                if conflicts >= max_attempts:
                    raise
                logger.info(f"Transaction conflict on {exc.collection}/{exc.key}, retry {conflicts}/{max_attempts}")
                self._sleep(conflicts)
            except OperationalError as exc:
                transport_failures += 1
                collection, key = txn.last_target if txn else (None, None)
                if transport_failures >= self._retry_attempts:
                    raise PersistenceFailure(collection, key, str(exc.orig or exc)) from exc
                logger.warning(
                    "Store transport error (attempt %d/%d) on %s/%s: %s",
                    transport_failures, self._retry_attempts, collection, key, exc,
                )
                self._sleep(transport_failures)
            except SQLAlchemyError as exc:
                collection, key = txn.last_target if txn else (None, None)
                raise PersistenceFailure(collection, key, str(exc)) from exc

    def range_query(self, collection: str, start_key: str, end_key: str) -> list[tuple[str, dict]]:
        for attempt in range(1, self._retry_attempts + 1):
            try:
                with get_session(self._session_factory) as session:
                    rows = session.execute(
                        select(StoredDocument.key, StoredDocument.data)
                        .where(
                            StoredDocument.collection == collection,
                            StoredDocument.key >= start_key,
                            StoredDocument.key <= end_key,
                        )
                        .order_by(StoredDocument.key)
                    ).all()
                    return [(row.key, copy.deepcopy(row.data)) for row in rows]
            except OperationalError as exc:
                if attempt >= self._retry_attempts:
                    raise PersistenceFailure(collection, f"{start_key}..{end_key}", str(exc.orig or exc)) from exc
                logger.warning(
                    "Range query transport error (attempt %d/%d) on %s: %s",
                    attempt, self._retry_attempts, collection, exc,
                )
                self._sleep(attempt)
            except SQLAlchemyError as exc:
                raise PersistenceFailure(collection, f"{start_key}..{end_key}", str(exc)) from exc
        return []
