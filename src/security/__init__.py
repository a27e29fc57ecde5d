"""
PBIP Lineage Security Module
Provides refactor audit logging and rename/write policy enforcement
"""

from .audit_logger import (
    AuditLogger,
    AuditEventType,
    AuditSeverity,
)

from .refactor_policy import (
    RefactorPolicyEngine,
    GlobalRefactorPolicy,
    ProtectedObject,
    PolicyCheckResult
)

__all__ = [
    # Audit Logging
    'AuditLogger',
    'AuditEventType',
    'AuditSeverity',
    # Refactor Policies
    'RefactorPolicyEngine',
    'GlobalRefactorPolicy',
    'ProtectedObject',
    'PolicyCheckResult',
]
