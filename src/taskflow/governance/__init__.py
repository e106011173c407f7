"""Governance module for Taskflow.

Provides the hash-chained audit log of notification lifecycle changes.
"""

from taskflow.governance.audit import AuditEntry, AuditLogger

__all__ = ["AuditEntry", "AuditLogger"]
