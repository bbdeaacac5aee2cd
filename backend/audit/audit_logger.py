"""
Audit log for Shipgate pipeline runs.

Append-only record of every state transition and per-image outcome.
Entries hold non-secret metadata only: AuditEntry refuses Secret values
and anything that isn't plain text.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Union

from database import AuditLogRecord, DatabaseManager
from secret_store import Secret

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Audit action types"""
    TRANSITION = 'transition'
    DECISION = 'decision'
    BUILD = 'build'
    PUSH = 'push'
    CLEANUP = 'cleanup'


@dataclass(frozen=True)
class AuditEntry:
    """
    One audit record.

    Every field is a plain string (or None); constructing an entry with a
    Secret or any other object raises TypeError.
    """
    run_id: str
    action: str = AuditAction.TRANSITION.value
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    subject: Optional[str] = None
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == 'timestamp':
                if not isinstance(value, datetime):
                    raise TypeError("AuditEntry.timestamp must be a datetime")
                continue
            if isinstance(value, Secret):
                raise TypeError(f"AuditEntry.{f.name} cannot hold a secret")
            if isinstance(value, Enum):
                # Accept AuditAction / PipelineState members, store their text value
                object.__setattr__(self, f.name, value.value)
                continue
            if value is not None and not isinstance(value, str):
                raise TypeError(f"AuditEntry.{f.name} must be a string, got {type(value).__name__}")
        if not self.run_id:
            raise ValueError("AuditEntry.run_id is required")


class AuditLog(ABC):
    """
    Append-only audit log.

    entries() returns a lazy, finite iterator in append order; calling it
    again replays from the start.
    """

    @abstractmethod
    def append(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    def entries(self, run_id: Optional[str] = None) -> Iterator[AuditEntry]:
        ...


class MemoryAuditLog(AuditLog):
    """In-process audit log (library use, dry runs, tests)."""

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self, run_id: Optional[str] = None) -> Iterator[AuditEntry]:
        with self._lock:
            snapshot = tuple(self._entries)
        return (e for e in snapshot if run_id is None or e.run_id == run_id)

    def __len__(self) -> int:
        return len(self._entries)


class DatabaseAuditLog(AuditLog):
    """
    Audit log persisted in the SQLite audit_log table.

    Each append commits immediately so the trail survives a crash mid-run.
    """

    def __init__(self, db: DatabaseManager, batch_size: int = 200):
        self.db = db
        self.batch_size = batch_size
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> None:
        record = AuditLogRecord(
            run_id=entry.run_id,
            timestamp=entry.timestamp,
            action=entry.action,
            from_state=entry.from_state,
            to_state=entry.to_state,
            subject=entry.subject,
            reason=entry.reason,
        )
        with self._lock:
            with self.db.get_session() as session:
                session.add(record)
                session.commit()

    def entries(self, run_id: Optional[str] = None) -> Iterator[AuditEntry]:
        with self.db.get_session() as session:
            query = session.query(AuditLogRecord)
            if run_id is not None:
                query = query.filter(AuditLogRecord.run_id == run_id)
            for record in query.order_by(AuditLogRecord.id).yield_per(self.batch_size):
                yield AuditEntry(
                    run_id=record.run_id,
                    action=record.action,
                    from_state=record.from_state,
                    to_state=record.to_state,
                    subject=record.subject,
                    reason=record.reason,
                    timestamp=record.timestamp,
                )


def log_transition(
    audit_log: AuditLog,
    run_id: str,
    from_state: Union[Enum, str],
    to_state: Union[Enum, str],
    reason: Optional[str] = None,
) -> AuditEntry:
    """Record a state transition."""
    entry = AuditEntry(
        run_id=run_id,
        action=AuditAction.TRANSITION,
        from_state=from_state,
        to_state=to_state,
        reason=reason,
    )
    audit_log.append(entry)
    logger.debug(f"Audit: run {run_id} {entry.from_state} -> {entry.to_state}{f' ({reason})' if reason else ''}")
    return entry


def log_image_event(
    audit_log: AuditLog,
    run_id: str,
    action: AuditAction,
    repository: str,
    reason: Optional[str] = None,
) -> AuditEntry:
    """Record the outcome of a build/push/cleanup for one image."""
    entry = AuditEntry(run_id=run_id, action=action, subject=repository, reason=reason)
    audit_log.append(entry)
    logger.debug(f"Audit: run {run_id} {entry.action} {repository}{f' ({reason})' if reason else ''}")
    return entry


def log_decision(audit_log: AuditLog, run_id: str, allowed: bool, reasons: Iterable[str]) -> AuditEntry:
    """Record a gate decision (reasons joined with commas)."""
    reasons = list(reasons)
    entry = AuditEntry(
        run_id=run_id,
        action=AuditAction.DECISION,
        subject='allowed' if allowed else 'denied',
        reason=','.join(reasons) or None,
    )
    audit_log.append(entry)
    return entry


def replay_states(entries: Iterable[AuditEntry], run_id: Optional[str] = None) -> List[str]:
    """
    Rebuild the state sequence a run went through from its audit entries.

    Args:
        entries: Audit entries in append order
        run_id: Only consider this run (all entries when None)

    Returns:
        State names starting with the first from_state, e.g.
        ["pending", "validating", "failed"]
    """
    states: List[str] = []
    for entry in entries:
        if entry.action != AuditAction.TRANSITION.value:
            continue
        if run_id is not None and entry.run_id != run_id:
            continue
        if not states and entry.from_state:
            states.append(entry.from_state)
        states.append(entry.to_state)
    return states
