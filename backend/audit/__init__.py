"""
Audit logging module for Shipgate.

Provides the append-only audit log of pipeline runs and helper functions
for recording transitions and per-image outcomes.
"""

from .audit_logger import (
    AuditAction,
    AuditEntry,
    AuditLog,
    MemoryAuditLog,
    DatabaseAuditLog,
    log_transition,
    log_image_event,
    log_decision,
    replay_states,
)

__all__ = [
    'AuditAction',
    'AuditEntry',
    'AuditLog',
    'MemoryAuditLog',
    'DatabaseAuditLog',
    'log_transition',
    'log_image_event',
    'log_decision',
    'replay_states',
]
