"""Audit infrastructure components."""

from mcu_batch.infrastructure.audit.change_audit_logger import ChangeAuditLogger

__all__ = ["ChangeAuditLogger"]
