"""Transactional document storage with optimistic concurrency.

The TransactionalStore protocol is the only coordination primitive shared
by pipeline workers. ``run_transaction(fn)`` calls *fn* with a
``Transaction``, records the version of every document *fn* reads, and
commits the buffered writes only if none of those versions changed in the
meantime. On a conflict the whole function is re-run against fresh state.

Two backends share that loop:
- InMemoryDocumentStore: dict of ``(version, data)``, for tests and local runs.
- SqliteDocumentStore: stdlib sqlite3 with a version column as the
  compare-and-swap guard.
"""

from __future__ import annotations

import copy
import json
import sqlite3
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

from storyloom.observability.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 25


class DocumentStoreError(Exception):
    """Base class for document store failures."""


class DocumentNotFoundError(DocumentStoreError):
    """Raised when a transaction needs a document that does not exist."""

    def __init__(self, doc_id: str) -> None:
        self.doc_id = doc_id
        super().__init__(f"Document '{doc_id}' does not exist")


class DocumentExistsError(DocumentStoreError):
    """Raised when creating a document whose id is already taken."""

    def __init__(self, doc_id: str) -> None:
        self.doc_id = doc_id
        super().__init__(f"Document '{doc_id}' already exists")


class TransactionConflictError(DocumentStoreError):
    """Raised when a transaction keeps conflicting past its retry bound."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Transaction still conflicting after {attempts} attempts")


class Transaction:
    """Read-then-write unit of work handed to ``run_transaction`` callbacks.

    Reads return deep copies; writes are buffered until commit. A
    document must be read before it is updated so its version is guarded.
    """

    def __init__(self, reader: Callable[[str], tuple[int, dict[str, Any]] | None]) -> None:
        self._reader = reader
        self.reads: dict[str, int] = {}
        self.writes: dict[str, dict[str, Any]] = {}
        self._snapshots: dict[str, dict[str, Any] | None] = {}

    def get(self, doc_id: str) -> dict[str, Any] | None:
        """Read a document, pinning its version for the commit check."""
        if doc_id in self.writes:
            return copy.deepcopy(self.writes[doc_id])
        if doc_id not in self._snapshots:
            row = self._reader(doc_id)
            if row is None:
                self.reads[doc_id] = 0
                self._snapshots[doc_id] = None
            else:
                version, data = row
                self.reads[doc_id] = version
                self._snapshots[doc_id] = data
        snapshot = self._snapshots[doc_id]
        return copy.deepcopy(snapshot) if snapshot is not None else None

    def require(self, doc_id: str) -> dict[str, Any]:
        """Read a document that must exist.

        Raises:
            DocumentNotFoundError: If it does not.
        """
        data = self.get(doc_id)
        if data is None:
            raise DocumentNotFoundError(doc_id)
        return data

    def set(self, doc_id: str, data: dict[str, Any]) -> None:
        """Buffer a full replacement of *doc_id*."""
        if doc_id not in self.reads:
            self.get(doc_id)
        self.writes[doc_id] = copy.deepcopy(data)

    def update(self, doc_id: str, **fields: Any) -> None:
        """Buffer a shallow merge of *fields* into an existing document."""
        current = self.require(doc_id)
        current.update(fields)
        self.writes[doc_id] = current


@runtime_checkable
class TransactionalStore(Protocol):
    """Storage protocol for the shared story documents."""

    def get(self, doc_id: str) -> dict[str, Any] | None:
        """Non-transactional snapshot read."""
        ...

    def create(self, doc_id: str, data: dict[str, Any]) -> None:
        """Create a new document. Raises DocumentExistsError if present."""
        ...

    def put(self, doc_id: str, data: dict[str, Any]) -> None:
        """Unconditional overwrite (bumps the version)."""
        ...

    async def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run *fn* atomically, re-running it on write conflicts."""
        ...


class _OptimisticStore:
    """Commit loop shared by the concrete backends."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    before_commit: Callable[[], Awaitable[None]] | None = None

    def _read(self, doc_id: str) -> tuple[int, dict[str, Any]] | None:
        raise NotImplementedError

    def _commit(self, txn: Transaction) -> bool:
        raise NotImplementedError

    def get(self, doc_id: str) -> dict[str, Any] | None:
        row = self._read(doc_id)
        return copy.deepcopy(row[1]) if row is not None else None

    async def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            txn = Transaction(self._read)
            result = fn(txn)
            if not txn.writes:
                return result
            if self.before_commit is not None:
                await self.before_commit()
            if self._commit(txn):
                return result
            log.debug("transaction_conflict", attempt=attempt, docs=sorted(txn.reads))
        raise TransactionConflictError(self.max_attempts)


class InMemoryDocumentStore(_OptimisticStore):
    """Dict-backed document store with per-document version counters.

    ``before_commit`` is awaited between a transaction's reads and its
    commit, letting sibling tasks interleave there.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        *,
        before_commit: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.before_commit = before_commit
        self._docs: dict[str, tuple[int, dict[str, Any]]] = {}

    def _read(self, doc_id: str) -> tuple[int, dict[str, Any]] | None:
        return self._docs.get(doc_id)

    def _commit(self, txn: Transaction) -> bool:
        for doc_id, version in txn.reads.items():
            current = self._docs.get(doc_id)
            if (current[0] if current else 0) != version:
                return False
        for doc_id, data in txn.writes.items():
            current = self._docs.get(doc_id)
            self._docs[doc_id] = ((current[0] if current else 0) + 1, copy.deepcopy(data))
        return True

    def create(self, doc_id: str, data: dict[str, Any]) -> None:
        if doc_id in self._docs:
            raise DocumentExistsError(doc_id)
        self._docs[doc_id] = (1, copy.deepcopy(data))

    def put(self, doc_id: str, data: dict[str, Any]) -> None:
        current = self._docs.get(doc_id)
        self._docs[doc_id] = ((current[0] if current else 0) + 1, copy.deepcopy(data))

    def version(self, doc_id: str) -> int:
        current = self._docs.get(doc_id)
        return current[0] if current else 0


_SCHEMA = """\
CREATE TABLE IF NOT EXISTS documents (
    doc_id     TEXT PRIMARY KEY,
    version    INTEGER NOT NULL,
    data       JSON NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);
"""


class SqliteDocumentStore(_OptimisticStore):
    """SQLite-backed document store.

    Each commit runs inside ``BEGIN IMMEDIATE`` and re-checks the versions
    pinned by the transaction's reads before writing.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Open or create a SQLite document database.

        Args:
            db_path: Path to ``.db`` file, or ``":memory:"`` for in-memory.
            max_attempts: Conflict retry bound for ``run_transaction``.
        """
        self.max_attempts = max_attempts
        self._db_path = str(db_path)
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self._db_path,
            isolation_level=None,  # autocommit; commits are explicit
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _read(self, doc_id: str) -> tuple[int, dict[str, Any]] | None:
        row = self._conn.execute(
            "SELECT version, data FROM documents WHERE doc_id = ?", (doc_id,)
        ).fetchone()
        if row is None:
            return None
        return int(row["version"]), json.loads(row["data"])

    def _current_version(self, doc_id: str) -> int:
        row = self._conn.execute(
            "SELECT version FROM documents WHERE doc_id = ?", (doc_id,)
        ).fetchone()
        return int(row["version"]) if row is not None else 0

    def _commit(self, txn: Transaction) -> bool:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            for doc_id, version in txn.reads.items():
                if self._current_version(doc_id) != version:
                    self._conn.execute("ROLLBACK")
                    return False
            for doc_id, data in txn.writes.items():
                self._upsert(doc_id, data)
        except Exception:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")
        return True

    def _upsert(self, doc_id: str, data: dict[str, Any]) -> None:
        self._conn.execute(
            "INSERT INTO documents (doc_id, version, data) VALUES (?, 1, ?) "
            "ON CONFLICT(doc_id) DO UPDATE SET "
            "version = documents.version + 1, data = excluded.data, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')",
            (doc_id, json.dumps(data)),
        )

    def create(self, doc_id: str, data: dict[str, Any]) -> None:
        try:
            self._conn.execute(
                "INSERT INTO documents (doc_id, version, data) VALUES (?, 1, ?)",
                (doc_id, json.dumps(data)),
            )
        except sqlite3.IntegrityError as e:
            raise DocumentExistsError(doc_id) from e

    def put(self, doc_id: str, data: dict[str, Any]) -> None:
        self._upsert(doc_id, data)

    def version(self, doc_id: str) -> int:
        return self._current_version(doc_id)
