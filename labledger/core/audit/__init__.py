from labledger.core.audit.models import AuditLog
from labledger.core.audit.service import AuditAction, AuditService

__all__ = ["AuditLog", "AuditAction", "AuditService"]
