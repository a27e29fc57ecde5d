"""
Refactor Policy Engine
Decides which model objects may be renamed and whether the project may be written at all
"""
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

OBJECT_KINDS = ("table", "column", "measure")


@dataclass
class ProtectedObject:
    """An object (or name pattern) that must not be renamed"""
    kind: str
    name: str
    table: Optional[str] = None  # columns only; None matches any table
    reason: str = ""

    def matches(self, kind: str, name: str, table: Optional[str] = None) -> bool:
        if kind != self.kind:
            return False
        if self.table and not _name_matches(self.table, table or ""):
            return False
        return _name_matches(self.name, name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'name': self.name,
            'table': self.table,
            'reason': self.reason
        }


@dataclass
class GlobalRefactorPolicy:
    """Global policy settings"""
    enabled: bool = True
    read_only: bool = False
    allow_table_renames: bool = True
    max_changes_per_apply: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'read_only': self.read_only,
            'allow_table_renames': self.allow_table_renames,
            'max_changes_per_apply': self.max_changes_per_apply
        }


@dataclass
class PolicyCheckResult:
    """Result of a policy check"""
    allowed: bool
    reason: str = ""
    violations: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _name_matches(pattern: str, name: str) -> bool:
    """Case-insensitive match; '*' in the pattern is a wildcard"""
    if '*' in pattern:
        regex = '^' + '.*'.join(re.escape(part) for part in pattern.split('*')) + '$'
        return re.match(regex, name, re.IGNORECASE) is not None
    return pattern.lower() == name.lower()


class RefactorPolicyEngine:
    """
    Engine for enforcing rename / write policies

    Usage:
        engine = RefactorPolicyEngine()
        engine.load_from_file("config/refactor_policy.yaml")

        result = engine.check_rename("table", "Date")
        if not result.allowed:
            print(result.reason)
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the policy engine

        Args:
            config_path: Path to YAML config file (optional)
        """
        self.global_policy = GlobalRefactorPolicy()
        self.protected: List[ProtectedObject] = []

        if config_path:
            self.load_from_file(config_path)

    def load_from_file(self, config_path: str) -> bool:
        """
        Load policies from a YAML configuration file

        Args:
            config_path: Path to the YAML file

        Returns:
            True if loaded successfully
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning(f"Refactor policy config not found: {config_path}")
            return False

        try:
            with open(path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f) or {}

            self._parse_config(config)
            logger.info(f"Loaded refactor policies from: {config_path}")
            return True

        except (yaml.YAMLError, OSError, ValueError) as e:
            logger.error(f"Failed to load refactor policy config: {e}")
            return False

    def load_from_dict(self, config: Dict[str, Any]):
        """Load policies from a dictionary"""
        self._parse_config(config)

    def _parse_config(self, config: Dict[str, Any]):
        """Parse configuration dictionary into policy objects"""
        if 'global' in config:
            g = config['global'] or {}
            self.global_policy = GlobalRefactorPolicy(
                enabled=g.get('enabled', True),
                read_only=g.get('read_only', False),
                allow_table_renames=g.get('allow_table_renames', True),
                max_changes_per_apply=g.get('max_changes_per_apply')
            )

        # Handle None values from YAML (e.g., when list items are commented out)
        for item in config.get('protected') or []:
            kind = str(item.get('kind', '')).lower()
            name = item.get('name', '')
            if kind not in OBJECT_KINDS or not name:
                raise ValueError(f"Invalid protected entry: {item}")
            self.protected.append(ProtectedObject(
                kind=kind,
                name=name,
                table=item.get('table'),
                reason=item.get('reason', '')
            ))

    def add_protected(self, obj: ProtectedObject):
        self.protected.append(obj)

    def allows_writes(self) -> bool:
        return not (self.global_policy.enabled and self.global_policy.read_only)

    def check_rename(self, kind: str, name: str, table: Optional[str] = None) -> PolicyCheckResult:
        """
        Check if renaming an object is allowed

        Args:
            kind: "table", "column" or "measure"
            name: Current object name
            table: Owning table (columns only)

        Returns:
            PolicyCheckResult with decision and details
        """
        if not self.global_policy.enabled:
            return PolicyCheckResult(allowed=True)

        violations = []

        if self.global_policy.read_only:
            violations.append({
                'type': 'read_only',
                'message': "Project is read-only by policy"
            })

        if kind == "table" and not self.global_policy.allow_table_renames:
            violations.append({
                'type': 'table_renames_disabled',
                'table': name,
                'message': "Table renames are disabled by policy"
            })

        for obj in self.protected:
            if obj.matches(kind, name, table):
                label = f"{table}[{name}]" if kind == "column" and table else name
                violations.append({
                    'type': 'protected_object',
                    'kind': kind,
                    'name': name,
                    'message': obj.reason or f"{kind.capitalize()} '{label}' is protected by policy"
                })
                break

        return PolicyCheckResult(
            allowed=not violations,
            reason=violations[0]['message'] if violations else "",
            violations=violations
        )

    def check_apply(self, change_count: int) -> PolicyCheckResult:
        """Check if a change set of the given size may be written"""
        if not self.global_policy.enabled:
            return PolicyCheckResult(allowed=True)

        if self.global_policy.read_only:
            return PolicyCheckResult(allowed=False, reason="Project is read-only by policy")

        limit = self.global_policy.max_changes_per_apply
        if limit is not None and change_count > limit:
            return PolicyCheckResult(
                allowed=False,
                reason=f"Change set has {change_count} changes, policy limit is {limit}"
            )
        return PolicyCheckResult(allowed=True)

    def export_config(self) -> Dict[str, Any]:
        """Export current configuration as a dictionary"""
        return {
            'global': self.global_policy.to_dict(),
            'protected': [p.to_dict() for p in self.protected]
        }

    def export_to_file(self, path: str):
        """Export configuration to a YAML file"""
        config = self.export_config()
        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Exported refactor policy config to: {path}")
