"""Audit trail."""

from __future__ import annotations

from .audit import AuditEvent, AuditEventType, AuditLogger

__all__ = ["AuditEvent", "AuditEventType", "AuditLogger"]
