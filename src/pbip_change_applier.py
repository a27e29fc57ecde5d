"""
PBIP Change Applier
Writes a planned ChangeSet through a PBIPFileStore as one all-or-nothing transaction.

Order of work:
  1. write permission is checked (and requested) once, before any file is touched
  2. file renames: read, back up {directory, old name, new name, content}, rename, patch, write
  3. content edits grouped per file: read, back up, substitute, write
On any failure every backup is restored in reverse order and the original error is re-raised
as ApplyError, or PartialRollbackError when the restore itself failed.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pbip_file_store import PBIPFileStore, join_path
from pbip_refactor_planner import ChangeEntry, ChangeSet

logger = logging.getLogger(__name__)


class WritePermissionError(PermissionError):
    """Raised when the store refuses write access; nothing has been modified"""


class ChangeSetConsumedError(RuntimeError):
    """Raised when a ChangeSet that was already applied is applied again"""


class ApplyError(Exception):
    """A write failed and every modified file was restored"""

    def __init__(self, path: str, cause: BaseException, rollback_errors: Optional[List[str]] = None):
        self.path = path
        self.cause = cause
        self.rollback_errors = rollback_errors or []
        super().__init__(self._format())

    @property
    def rolled_back(self) -> bool:
        return not self.rollback_errors

    def _format(self) -> str:
        return f"Failed to update {self.path}: {self.cause} (changes were rolled back)"


class PartialRollbackError(ApplyError):
    """A write failed and at least one file could not be restored"""

    def _format(self) -> str:
        return (f"Failed to update {self.path}: {self.cause} "
                f"(WARNING: rollback also failed - manual recovery may be needed)")


@dataclass
class FileBackup:
    path: str
    original_content: str


@dataclass
class RenameBackup:
    directory: str
    old_name: str
    new_name: str
    original_content: str


@dataclass
class ApplyResult:
    files_modified: int
    total_changes: int
    files: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'files_modified': self.files_modified,
            'total_changes': self.total_changes,
            'files': self.files,
            'warnings': self.warnings,
        }


def apply_substitution(content: str, entry: ChangeEntry) -> Optional[str]:
    """
    Apply one literal substitution

    Returns:
        The new content, or None when old_content is not present
    """
    if entry.old_content not in content:
        return None
    if entry.replace_all:
        return content.replace(entry.old_content, entry.new_content)
    return content.replace(entry.old_content, entry.new_content, 1)


class TransactionalApplier:
    """
    Applies ChangeSets with backup and rollback

    Usage:
        applier = TransactionalApplier(store, policy=policy_engine, audit=AuditLogger(log_dir))
        try:
            result = await applier.apply(change_set)
        except PartialRollbackError as e:
            print("Manual recovery needed:", e)
        except ApplyError as e:
            print(e)
    """

    def __init__(self, store: PBIPFileStore, policy=None, audit=None):
        """
        Args:
            store: Storage collaborator used for every read and write
            policy: Optional RefactorPolicyEngine enforced before writing
            audit: Optional AuditLogger receiving apply/rollback events
        """
        self.store = store
        self.policy = policy
        self.audit = audit
        self._backups: List[Union[FileBackup, RenameBackup]] = []

    async def _ensure_write_permission(self):
        if await self.store.check_write_permission():
            return
        if await self.store.request_write_permission():
            return
        if self.audit:
            self.audit.log_access_denied("Write permission was refused by the file store")
        raise WritePermissionError("Write permission denied; no files were modified")

    def _check_policy(self, change_set: ChangeSet):
        if self.policy is None:
            return
        check = self.policy.check_apply(len(change_set))
        if not check.allowed:
            if self.audit:
                self.audit.log_policy_violation("refactor_policy", check.reason,
                                                target=change_set.target.value, name=change_set.old_name)
            raise WritePermissionError(check.reason)

    async def apply(self, change_set: ChangeSet) -> ApplyResult:
        """
        Apply every entry of a ChangeSet

        Args:
            change_set: Plan produced by RefactorPlanner; consumed on success

        Returns:
            ApplyResult with modified file count, change count and pattern-miss warnings

        Raises:
            ChangeSetConsumedError: if the ChangeSet was already applied
            WritePermissionError: if writing is refused (nothing modified)
            ApplyError / PartialRollbackError: if a write failed
        """
        if change_set.consumed:
            raise ChangeSetConsumedError("ChangeSet has already been applied; plan the rename again")

        self._check_policy(change_set)
        await self._ensure_write_permission()

        self._backups = []
        warnings: List[str] = []
        files: List[str] = []
        total = len(change_set)

        grouped: "OrderedDict[str, List[ChangeEntry]]" = OrderedDict()
        for entry in change_set.content_entries:
            grouped.setdefault(entry.file_path, []).append(entry)

        current = ""
        try:
            for entry in change_set.file_renames:
                current = entry.file_path
                await self._apply_file_rename(entry, warnings)
                files.append(entry.new_file_path)

            for path, entries in grouped.items():
                current = path
                if await self._apply_content(path, entries, warnings) and path not in files:
                    files.append(path)

        except Exception as e:
            logger.error(f"Apply failed at {current}: {e}")
            rollback_errors = await self._rollback()
            if self.audit:
                self.audit.log_apply(change_set.target.value, change_set.old_name, change_set.new_name,
                                     files=files, change_count=total, success=False, error_message=str(e))
            if rollback_errors:
                raise PartialRollbackError(current, e, rollback_errors) from e
            raise ApplyError(current, e) from e

        self._backups = []
        if self.audit:
            self.audit.log_apply(change_set.target.value, change_set.old_name, change_set.new_name,
                                 files=files, change_count=total,
                                 changes=[c.to_dict() for c in change_set.entries])
        change_set.clear()

        logger.info(f"Applied {total} change(s) to {len(files)} file(s)")
        return ApplyResult(files_modified=len(files), total_changes=total, files=files, warnings=warnings)

    async def _apply_file_rename(self, entry: ChangeEntry, warnings: List[str]):
        content = await self.store.read_file(entry.file_path)
        self._backups.append(RenameBackup(entry.directory, entry.old_file_name, entry.new_file_name, content))

        if entry.new_file_name != entry.old_file_name:
            await self.store.rename_file(entry.directory, entry.old_file_name, entry.new_file_name)

        patched = apply_substitution(content, entry)
        if patched is None:
            warnings.append(f"Pattern not found in {entry.file_path}: {entry.description}")
            logger.warning(f"Pattern not found in {entry.file_path}: {entry.old_content[:80]!r}")
            patched = content
        await self.store.write_file(entry.new_file_path, patched)
        logger.debug(f"Renamed {entry.file_path} -> {entry.new_file_path}")

    async def _apply_content(self, path: str, entries: List[ChangeEntry], warnings: List[str]) -> bool:
        content = await self.store.read_file(path)
        self._backups.append(FileBackup(path, content))

        updated = content
        applied = 0
        for entry in entries:
            result = apply_substitution(updated, entry)
            if result is None:
                warnings.append(f"Pattern not found in {path}: {entry.description}")
                logger.warning(f"Pattern not found in {path}: {entry.old_content[:80]!r}")
                continue
            updated = result
            applied += 1

        if updated == content:
            return False
        await self.store.write_file(path, updated)
        logger.debug(f"Updated {path} ({applied} substitution(s))")
        return True

    async def _rollback(self) -> List[str]:
        """Restore every backup in reverse order; returns the failures"""
        failures: List[str] = []
        restored: List[str] = []

        for backup in reversed(self._backups):
            try:
                if isinstance(backup, RenameBackup):
                    if backup.new_name != backup.old_name:
                        await self._undo_rename(backup)
                    path = join_path(backup.directory, backup.old_name)
                    await self.store.write_file(path, backup.original_content)
                else:
                    path = backup.path
                    await self.store.write_file(path, backup.original_content)
                restored.append(path)
            except Exception as e:
                logger.error(f"Rollback failed for {backup}: {e}")
                failures.append(f"{getattr(backup, 'path', None) or backup.old_name}: {e}")

        self._backups = []
        if failures:
            logger.error(f"Rollback incomplete: {len(failures)} file(s) could not be restored")
        else:
            logger.info(f"Rolled back {len(restored)} file(s)")
        if self.audit:
            self.audit.log_rollback(restored, success=not failures, failures=failures)
        return failures

    async def _undo_rename(self, backup: RenameBackup):
        """Move the renamed file back; tolerates a rename that never completed"""
        entries = await self.store.list_directory(backup.directory)
        names = {e.name for e in entries if not e.is_directory}
        if backup.new_name in names:
            await self.store.rename_file(backup.directory, backup.new_name, backup.old_name)
