"""JSON-backed record store with per-record transactions.

All records and their audit trails live in a single JSON file, loaded on
init.  Writes only happen through ``RecordStore.transaction``: the caller
mutates a private copy of one record and appends to that record's audit
trail, and the store commits both together with an atomic file replace.
Leaving the ``with`` block through an exception discards everything.

Store instances on the same directory serialize reload, version check and
replace through a sidecar ``.lock`` file, so separate processes can share
one store file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from heritage.audit.log import AuditLog
from heritage.audit.models import AuditEntry
from heritage.errors import ConcurrentModification, NotFound
from heritage.records.models import Classification, ContentRecord, RecordStatus

logger = logging.getLogger(__name__)

STORE_FILENAME = ".heritage-store.json"
LOCK_SUFFIX = ".lock"
DEFAULT_LOCK_TIMEOUT = 5.0

# Alias to avoid shadowing by RecordStore.list method
_list = list


class _StoreData(BaseModel):
    """Internal wrapper for JSON serialization."""

    records: dict[str, ContentRecord] = Field(default_factory=dict)
    audit: dict[str, list[AuditEntry]] = Field(default_factory=dict)


class RecordTransaction:
    """Working copy of one record and its audit trail inside a transaction."""

    def __init__(self, record_id: str, record: ContentRecord | None, audit: AuditLog) -> None:
        self.record_id = record_id
        self.base_version = record.version if record is not None else None
        self._record = record
        self.audit = audit

    @property
    def record(self) -> ContentRecord:
        if self._record is None:
            raise NotFound(f"Record {self.record_id!r} not found", record_id=self.record_id)
        return self._record

    @property
    def exists(self) -> bool:
        return self._record is not None

    def create(self, record: ContentRecord) -> ContentRecord:
        """Place a brand-new record into an empty transaction slot."""
        if self._record is not None:
            raise ValueError(f"Record {self.record_id!r} already exists")
        if record.id != self.record_id:
            raise ValueError(f"Record id {record.id!r} does not match {self.record_id!r}")
        self._record = record
        return record


class RecordStore:
    """Record store with single-record atomic read-modify-write.

    Args:
        directory: Directory holding the store file.  ``None`` keeps
            everything in memory.
        lock_timeout: Seconds to wait for a busy record or a busy store
            file before giving up.
    """

    def __init__(
        self,
        directory: Path | None = None,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self._path = directory / STORE_FILENAME if directory is not None else None
        self._lock_timeout = lock_timeout
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._io_lock = threading.RLock()
        self._file_lock = (
            FileLock(self._path.with_name(self._path.name + LOCK_SUFFIX))
            if self._path is not None
            else None
        )
        self._data = self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    # ── Private helpers ──────────────────────────────────────────

    def _load(self) -> _StoreData:
        if self._path is None or not self._path.exists():
            return _StoreData()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return _StoreData.model_validate(raw)
        except (json.JSONDecodeError, PydanticValidationError, ValueError, KeyError):
            backup = self._path.with_name(self._path.name + ".corrupt")
            logger.warning(
                "Corrupt record store at %s, moved to %s and starting fresh",
                self._path,
                backup,
            )
            os.replace(self._path, backup)
            return _StoreData()

    def _save(self, data: _StoreData) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=self._path.name, suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data.model_dump_json(indent=2))
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _refresh(self) -> None:
        """Pick up writes made by other store instances on the same file."""
        if self._path is not None:
            self._data = self._load()

    @contextmanager
    def _exclusive(self, record_id: str) -> Iterator[None]:
        """Hold the store file lock shared by every process using this directory.

        Reload, version check and replace must all happen under it, or a
        write from another store instance can be overwritten.
        """
        with self._io_lock:
            if self._file_lock is None:
                yield
                return
            Path(self._file_lock.lock_file).parent.mkdir(parents=True, exist_ok=True)
            try:
                self._file_lock.acquire(timeout=self._lock_timeout)
            except Timeout:
                raise ConcurrentModification(
                    f"Timed out waiting for the store lock at {self._file_lock.lock_file}",
                    record_id=record_id,
                ) from None
            try:
                yield
            finally:
                self._file_lock.release()

    def _lock_for(self, record_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(record_id)
            if lock is None:
                lock = self._locks[record_id] = threading.Lock()
            return lock

    def _commit(self, tx: RecordTransaction) -> None:
        if not tx.exists:
            return
        with self._exclusive(tx.record_id):
            self._refresh()
            stored = self._data.records.get(tx.record_id)
            stored_version = stored.version if stored is not None else None
            if stored_version != tx.base_version:
                raise ConcurrentModification(
                    f"Record {tx.record_id!r} changed during the transaction "
                    f"(expected version {tx.base_version}, found {stored_version})",
                    record_id=tx.record_id,
                )
            tx.record.version = (tx.base_version or 0) + 1
            record = tx.record.model_copy(deep=True)
            records = dict(self._data.records)
            records[tx.record_id] = record
            audit = dict(self._data.audit)
            audit[tx.record_id] = tx.audit.list_for(tx.record_id)
            candidate = _StoreData(records=records, audit=audit)
            self._save(candidate)
            self._data = candidate
        logger.debug("Committed %s at version %d", tx.record_id, record.version)

    # ── Transactions ─────────────────────────────────────────────

    @contextmanager
    def transaction(self, record_id: str) -> Iterator[RecordTransaction]:
        """Open an atomic read-modify-write unit on a single record.

        Raises ConcurrentModification if the record stays locked past the
        timeout or was changed by another writer before commit.
        """
        lock = self._lock_for(record_id)
        if not lock.acquire(timeout=self._lock_timeout):
            raise ConcurrentModification(
                f"Timed out waiting for record {record_id!r}", record_id=record_id
            )
        try:
            with self._exclusive(record_id):
                self._refresh()
                current = self._data.records.get(record_id)
                trail = _list(self._data.audit.get(record_id, []))
            tx = RecordTransaction(
                record_id,
                current.model_copy(deep=True) if current is not None else None,
                AuditLog({record_id: trail}),
            )
            yield tx
            self._commit(tx)
        finally:
            lock.release()

    # ── Read operations ──────────────────────────────────────────

    def get(self, record_id: str) -> ContentRecord | None:
        """Return a copy of a record, or None if not found."""
        with self._io_lock:
            self._refresh()
            record = self._data.records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    def require(self, record_id: str) -> ContentRecord:
        """Return a copy of a record; raises NotFound if missing."""
        record = self.get(record_id)
        if record is None:
            raise NotFound(f"Record {record_id!r} not found", record_id=record_id)
        return record

    def exists(self, record_id: str) -> bool:
        return self.get(record_id) is not None

    def list(
        self,
        status: RecordStatus | None = None,
        classification: Classification | None = None,
        has_pending_change: bool | None = None,
    ) -> _list[ContentRecord]:
        """Return records sorted by id, optionally filtered."""
        with self._io_lock:
            self._refresh()
            results = _list(self._data.records.values())
        if status is not None:
            results = [r for r in results if r.status == status]
        if classification is not None:
            results = [r for r in results if r.classification == classification]
        if has_pending_change is not None:
            results = [r for r in results if r.has_pending_change == has_pending_change]
        return [r.model_copy(deep=True) for r in sorted(results, key=lambda r: r.id)]

    def audit_trail(self, record_id: str) -> _list[AuditEntry]:
        """Return a record's audit entries in write order."""
        with self._io_lock:
            self._refresh()
            trail = _list(self._data.audit.get(record_id, []))
        return [entry.model_copy(deep=True) for entry in trail]
