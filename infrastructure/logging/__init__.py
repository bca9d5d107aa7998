from .audit import AuditLogger

__all__ = ["AuditLogger"]
