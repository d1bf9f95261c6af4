"""Append-only audit log keyed by record id.

There is no update or delete: once an entry is appended it
stays for the lifetime of the record, through retraction and
republication.  Entries for one record carry consecutive sequence numbers
and non-decreasing timestamps.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from heritage.audit.models import AuditAction, AuditEntry
from heritage.records.models import Actor, RecordStatus

logger = logging.getLogger(__name__)


class AuditLog:
    """Time-ordered audit trails for any number of records."""

    def __init__(self, entries: Mapping[str, Iterable[AuditEntry]] | None = None) -> None:
        self._trails: dict[str, list[AuditEntry]] = defaultdict(list)
        for trail in (entries or {}).values():
            for entry in trail:
                self.append(entry)

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry to its record's trail.

        Raises ValueError if the sequence number is not the next one or
        the timestamp goes backwards.
        """
        trail = self._trails[entry.record_id]
        expected = len(trail) + 1
        if entry.sequence != expected:
            raise ValueError(
                f"Audit entry for {entry.record_id} has sequence {entry.sequence}, "
                f"expected {expected}"
            )
        if trail and entry.timestamp < trail[-1].timestamp:
            raise ValueError(
                f"Audit entry for {entry.record_id} at {entry.timestamp.isoformat()} "
                f"predates the previous entry at {trail[-1].timestamp.isoformat()}"
            )
        trail.append(entry)
        return entry

    def record(
        self,
        record_id: str,
        *,
        actor: Actor,
        action: AuditAction,
        from_status: RecordStatus | None,
        to_status: RecordStatus,
        timestamp: datetime,
        notes: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Build the next entry for ``record_id`` and append it."""
        previous = self.latest(record_id)
        if previous is not None and timestamp < previous.timestamp:
            # Trail timestamps never decrease.
            timestamp = previous.timestamp
        entry = AuditEntry(
            record_id=record_id,
            sequence=self.count(record_id) + 1,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            action=action,
            from_status=from_status,
            to_status=to_status,
            timestamp=timestamp,
            notes=notes,
            metadata=dict(metadata or {}),
        )
        return self.append(entry)

    def list_for(self, record_id: str) -> list[AuditEntry]:
        """Return the record's entries in the order they were written."""
        return [entry.model_copy(deep=True) for entry in self._trails.get(record_id, [])]

    def latest(self, record_id: str) -> AuditEntry | None:
        trail = self._trails.get(record_id)
        if not trail:
            return None
        return trail[-1]

    def count(self, record_id: str) -> int:
        return len(self._trails.get(record_id, []))
