"""
Refactor Audit Logging Module
Records project loads, rename plans and write transactions as JSON lines
"""
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from enum import Enum
import hashlib

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of auditable events"""
    PROJECT_LOADED = "project_loaded"
    RENAME_PLANNED = "rename_planned"
    RENAME_REJECTED = "rename_rejected"
    APPLY_SUCCESS = "apply_success"
    APPLY_FAILURE = "apply_failure"
    ROLLBACK_SUCCESS = "rollback_success"
    ROLLBACK_FAILURE = "rollback_failure"
    POLICY_VIOLATION = "policy_violation"
    ACCESS_DENIED = "access_denied"


class AuditSeverity(Enum):
    """Severity levels for audit events"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditLogger:
    """
    Audit trail for PBIP refactoring

    Features:
    - JSON-formatted logs for easy parsing
    - Rotation support
    - Thread-safe logging
    - Per-session transaction numbering

    Usage:
        audit = AuditLogger(log_dir="./logs")
        audit.log_apply(
            target="measure",
            old_name="Total Sales",
            new_name="Revenue",
            files=["Sales.SemanticModel/definition/tables/Sales.tmdl"],
            change_count=3
        )
    """

    def __init__(
        self,
        log_dir: Optional[str] = None,
        log_file: str = "refactor_audit.log",
        max_file_size_mb: int = 10,
        backup_count: int = 5,
        include_content: bool = False
    ):
        """
        Initialize the audit logger

        Args:
            log_dir: Directory for log files (default: ./logs)
            log_file: Name of the log file
            max_file_size_mb: Max size before rotation
            backup_count: Number of backup files to keep
            include_content: Include old/new text of every change in apply events
        """
        self.log_dir = Path(log_dir) if log_dir else Path(__file__).parent.parent.parent / "logs"
        self.log_file = self.log_dir / log_file
        self.max_file_size = max_file_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.include_content = include_content

        self._lock = threading.Lock()
        self._session_id = self._generate_session_id()
        self._transaction_count = 0

        # Ensure log directory exists
        self.log_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Audit logger initialized: {self.log_file}")

    def _generate_session_id(self) -> str:
        """Generate a unique session ID"""
        timestamp = datetime.now(timezone.utc).isoformat()
        return hashlib.sha256(f"{timestamp}{os.getpid()}".encode()).hexdigest()[:16]

    def _rotate_if_needed(self):
        """Rotate log file if it exceeds max size"""
        if self.log_file.exists() and self.log_file.stat().st_size > self.max_file_size:
            for i in range(self.backup_count - 1, 0, -1):
                old_backup = self.log_dir / f"{self.log_file.stem}.{i}{self.log_file.suffix}"
                new_backup = self.log_dir / f"{self.log_file.stem}.{i + 1}{self.log_file.suffix}"
                if old_backup.exists():
                    old_backup.replace(new_backup)

            backup_1 = self.log_dir / f"{self.log_file.stem}.1{self.log_file.suffix}"
            self.log_file.replace(backup_1)

            logger.info(f"Rotated audit log: {self.log_file}")

    def _write_log(self, event: Dict[str, Any]):
        """Thread-safe log writing"""
        with self._lock:
            try:
                self._rotate_if_needed()
                with open(self.log_file, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(event, default=str) + '\n')
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")

    def log_event(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity = AuditSeverity.INFO,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Log a generic audit event

        Args:
            event_type: Type of event
            severity: Severity level
            message: Human-readable message
            details: Additional details
            **kwargs: Extra fields to include

        Returns:
            The logged event record
        """
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'session_id': self._session_id,
            'event_type': event_type.value,
            'severity': severity.value,
            'message': message,
            'details': details or {},
            **kwargs
        }

        self._write_log(event)
        return event

    def log_project_loaded(
        self,
        project_path: str,
        node_count: int,
        edge_count: int,
        skipped_count: int = 0,
        snapshot_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Log a project load / graph rebuild"""
        return self.log_event(
            event_type=AuditEventType.PROJECT_LOADED,
            severity=AuditSeverity.WARNING if skipped_count else AuditSeverity.INFO,
            message=f"Loaded project {project_path}: {node_count} nodes, {edge_count} edges",
            details={
                'project': project_path,
                'nodes': node_count,
                'edges': edge_count,
                'skipped': skipped_count,
                'snapshot_id': snapshot_id
            }
        )

    def log_rename_planned(
        self,
        target: str,
        old_name: str,
        new_name: str,
        change_count: int,
        files: List[str],
        table: Optional[str] = None
    ) -> Dict[str, Any]:
        """Log a successfully planned rename"""
        return self.log_event(
            event_type=AuditEventType.RENAME_PLANNED,
            message=f"Planned {target} rename '{old_name}' -> '{new_name}' ({change_count} changes)",
            details={
                'target': target,
                'table': table,
                'old_name': old_name,
                'new_name': new_name,
                'changes': change_count,
                'files': files
            }
        )

    def log_rename_rejected(
        self,
        target: str,
        old_name: str,
        new_name: str,
        code: str,
        reason: str
    ) -> Dict[str, Any]:
        """Log a rename request that failed validation"""
        return self.log_event(
            event_type=AuditEventType.RENAME_REJECTED,
            severity=AuditSeverity.WARNING,
            message=f"Rejected {target} rename '{old_name}' -> '{new_name}': {reason}",
            details={
                'target': target,
                'old_name': old_name,
                'new_name': new_name,
                'code': code,
                'reason': reason
            }
        )

    def log_apply(
        self,
        target: str,
        old_name: str,
        new_name: str,
        files: List[str],
        change_count: int,
        success: bool = True,
        error_message: Optional[str] = None,
        changes: Optional[List[Dict[str, Any]]] = None
    ) -> Dict[str, Any]:
        """
        Log a write transaction

        Args:
            target: "measure", "column" or "table"
            old_name: Name before the rename
            new_name: Name after the rename
            files: Files touched (or attempted)
            change_count: Number of planned changes
            success: Whether the transaction committed
            error_message: Failure cause
            changes: Individual change records (only kept when include_content is set)

        Returns:
            The logged event record
        """
        self._transaction_count += 1

        if success:
            event_type, severity = AuditEventType.APPLY_SUCCESS, AuditSeverity.INFO
            message = f"Applied {target} rename '{old_name}' -> '{new_name}': {change_count} changes in {len(files)} files"
        else:
            event_type, severity = AuditEventType.APPLY_FAILURE, AuditSeverity.ERROR
            message = f"Failed {target} rename '{old_name}' -> '{new_name}': {error_message}"

        details = {
            'transaction_id': f"{self._session_id}_{self._transaction_count}",
            'target': target,
            'old_name': old_name,
            'new_name': new_name,
            'files': files,
            'changes': change_count,
            'success': success,
            'error': error_message
        }
        if self.include_content and changes:
            details['change_records'] = changes

        if success:
            logger.info(message)
        else:
            logger.error(message)
        return self.log_event(event_type=event_type, severity=severity, message=message, details=details)

    def log_rollback(
        self,
        restored_files: List[str],
        success: bool = True,
        failures: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Log the outcome of a rollback"""
        if success:
            return self.log_event(
                event_type=AuditEventType.ROLLBACK_SUCCESS,
                severity=AuditSeverity.WARNING,
                message=f"Rolled back {len(restored_files)} file(s)",
                details={'restored': restored_files}
            )
        return self.log_event(
            event_type=AuditEventType.ROLLBACK_FAILURE,
            severity=AuditSeverity.CRITICAL,
            message="Rollback failed - manual recovery may be needed",
            details={'restored': restored_files, 'failures': failures or []}
        )

    def log_policy_violation(
        self,
        policy_name: str,
        violation_type: str,
        target: Optional[str] = None,
        name: Optional[str] = None,
        action_taken: str = "blocked"
    ) -> Dict[str, Any]:
        """Log a policy violation"""
        return self.log_event(
            event_type=AuditEventType.POLICY_VIOLATION,
            severity=AuditSeverity.WARNING,
            message=f"Policy violation: {policy_name} - {violation_type}",
            details={
                'policy': policy_name,
                'violation': violation_type,
                'target': target,
                'name': name,
                'action': action_taken
            }
        )

    def log_access_denied(self, reason: str) -> Dict[str, Any]:
        """Log a refused write permission request"""
        return self.log_event(
            event_type=AuditEventType.ACCESS_DENIED,
            severity=AuditSeverity.WARNING,
            message=f"Write access denied: {reason}",
            details={'reason': reason}
        )

    def get_session_summary(self) -> Dict[str, Any]:
        """Get a summary of the current session"""
        return {
            'session_id': self._session_id,
            'transaction_count': self._transaction_count,
            'log_file': str(self.log_file)
        }

    def get_recent_events(self, count: int = 100) -> List[Dict[str, Any]]:
        """Read recent events from the log file"""
        events = []

        if not self.log_file.exists():
            return events

        try:
            with open(self.log_file, 'r', encoding='utf-8') as f:
                lines = f.readlines()
                for line in lines[-count:]:
                    try:
                        events.append(json.loads(line.strip()))
                    except json.JSONDecodeError:
                        continue
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")

        return events

