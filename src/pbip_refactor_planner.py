"""
PBIP Refactor Planner
Plans cascading renames of measures, columns and tables as a ChangeSet of literal text edits.

Each rename request moves through:
  VALIDATE -> PLAN_DEFINITION_EDIT -> PLAN_REFERENCE_EDITS -> PLAN_CASCADE_EDITS (tables) -> DONE
or ends in REJECTED when validation fails. Nothing is written here; the ChangeSet is handed to
the TransactionalApplier once the caller commits.

Edits per rename:
  measure  - declaration, measures using it ([Old]), visuals ("Property"), field parameters ([Old])
  column   - declaration, measures/calculation items (Table[Old]), visuals, relationships,
             field parameters ('Table'[Old])
  table    - file rename + declaration, DAX table references in every measure and calculation
             item, visuals ("Entity"), relationship endpoints, field parameter qualifiers,
             'ref table' lines in model.tmdl
"""
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pbip_dependency_graph import (
    DependencyGraph,
    EdgeKind,
    Node,
    NodeKind,
    column_id,
    measure_id,
    table_id,
)
from pbip_file_store import join_path, split_path
from pbip_model_parser import RelationshipDef
from pbip_reference_extractor import (
    quote_tmdl_name,
    rename_column_in_dax,
    rename_measure_in_dax,
    rename_table_in_dax,
)

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100

DAX_RESERVED_KEYWORDS = {
    'TRUE', 'FALSE', 'AND', 'OR', 'NOT', 'IN', 'VAR', 'RETURN',
    'DEFINE', 'MEASURE', 'EVALUATE', 'ORDER', 'BY', 'ASC', 'DESC',
    'CALCULATE', 'FILTER', 'ALL', 'VALUES', 'DISTINCT', 'RELATED',
    'SUM', 'AVERAGE', 'COUNT', 'MIN', 'MAX', 'IF', 'SWITCH', 'BLANK',
    'TABLE', 'COLUMN', 'ROW', 'SUMMARIZE', 'ADDCOLUMNS', 'SELECTCOLUMNS',
}
TMDL_RESERVED_KEYWORDS = {
    'table', 'column', 'measure', 'relationship', 'partition', 'expression',
    'formatString', 'isHidden', 'dataType', 'sourceColumn',
}
INVALID_NAME_CHARS = re.compile(r"[\[\]{}'\"\\/\n\r\t]")
INVALID_FILE_CHARS = re.compile(r'[<>:"/\\|?*]')

_ENDPOINT = re.compile(r"^(?P<table>'(?:[^']|'')+'|[^.'\s]+)\.(?P<column>.+)$")
_MODEL_REF_NAME = re.compile(r"^(ref[ \t]+table[ \t]+)(?:'(?:[^']|'')+'|[^\s']+)")


class RenameTarget(Enum):
    MEASURE = "measure"
    COLUMN = "column"
    TABLE = "table"


class PlanStage(Enum):
    VALIDATE = "validate"
    PLAN_DEFINITION_EDIT = "plan-definition-edit"
    PLAN_REFERENCE_EDITS = "plan-reference-edits"
    PLAN_CASCADE_EDITS = "plan-cascade-edits"
    DONE = "done"
    REJECTED = "rejected"


class RejectionCode(Enum):
    EMPTY_NAME = "EmptyName"
    UNCHANGED = "Unchanged"
    NOT_FOUND = "NotFound"
    NAME_CONFLICT = "NameConflict"
    RESERVED_KEYWORD = "ReservedKeyword"
    INVALID_CHARACTER = "InvalidCharacter"
    POLICY_DENIED = "PolicyDenied"


class ChangeKind(Enum):
    CONTENT = "content"
    FILE_RENAME = "file-rename"


class StaleChangeSetError(Exception):
    """Raised when a ChangeSet is used against a graph it was not planned from"""


@dataclass
class NameIssue:
    code: RejectionCode
    message: str


@dataclass
class NameValidation:
    """Outcome of validating a proposed name"""
    name: str
    issues: List[NameIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues


class RenameRejectedError(ValueError):
    """Raised when a rename request fails validation; no plan is produced"""

    def __init__(self, issues: List[NameIssue], warnings: Optional[List[str]] = None):
        self.issues = issues
        self.warnings = warnings or []
        super().__init__("; ".join(i.message for i in issues))

    @property
    def code(self) -> RejectionCode:
        return self.issues[0].code


@dataclass
class ChangeEntry:
    """
    One planned edit

    CONTENT entries replace old_content with new_content in file_path. FILE_RENAME entries
    move file_path to new_file_path and patch old_content -> new_content in the same step.
    """
    file_path: str
    description: str
    old_content: str
    new_content: str
    kind: ChangeKind = ChangeKind.CONTENT
    change_type: str = ""
    new_file_path: Optional[str] = None
    replace_all: bool = True

    @property
    def directory(self) -> str:
        return split_path(self.file_path)[0]

    @property
    def old_file_name(self) -> str:
        return split_path(self.file_path)[1]

    @property
    def new_file_name(self) -> Optional[str]:
        return split_path(self.new_file_path)[1] if self.new_file_path else None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'file': self.file_path,
            'type': self.change_type,
            'kind': self.kind.value,
            'description': self.description,
            'old_content': self.old_content,
            'new_content': self.new_content,
        }
        if self.new_file_path:
            result['new_file'] = self.new_file_path
        return result


@dataclass
class ChangeSet:
    """Ordered, pre-validated edits for one rename; single use"""
    target: RenameTarget
    old_name: str
    new_name: str
    snapshot_id: str
    owning_table: Optional[str] = None
    entries: List[ChangeEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stage: PlanStage = PlanStage.VALIDATE
    consumed: bool = False

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def file_renames(self) -> List[ChangeEntry]:
        return [e for e in self.entries if e.kind == ChangeKind.FILE_RENAME]

    @property
    def content_entries(self) -> List[ChangeEntry]:
        return [e for e in self.entries if e.kind == ChangeKind.CONTENT]

    @property
    def files(self) -> List[str]:
        seen: Dict[str, None] = {}
        for entry in self.entries:
            seen.setdefault(entry.new_file_path or entry.file_path, None)
        return list(seen)

    def is_valid_for(self, graph: DependencyGraph) -> bool:
        return self.snapshot_id == graph.snapshot_id

    def validate(self) -> Tuple[bool, List[str]]:
        """Check for conflicting duplicate edits (same file and old content)"""
        issues = []
        keys = set()
        for entry in self.entries:
            key = (entry.file_path, entry.old_content)
            if key in keys:
                issues.append(f"Duplicate change detected in {entry.file_path}")
            keys.add(key)
        return not issues, issues

    def clear(self):
        self.entries = []
        self.consumed = True

    def summary(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for entry in self.entries:
            by_type[entry.change_type] = by_type.get(entry.change_type, 0) + 1
        return {
            'target': self.target.value,
            'old_name': self.old_name,
            'new_name': self.new_name,
            'owning_table': self.owning_table,
            'total_changes': len(self.entries),
            'files': self.files,
            'by_type': by_type,
            'warnings': list(self.warnings),
        }


def _redeclare(declaration: str, keyword: str, name_token: str, new_name: str) -> str:
    """Swap the name in a declaration, keeping the existing quoting style"""
    start = declaration.index(name_token, len(keyword))
    new_token = quote_tmdl_name(new_name, force=name_token.startswith("'"))
    return declaration[:start] + new_token + declaration[start + len(name_token):]


def _json_property(key: str, value: str) -> str:
    return f'"{key}": {json.dumps(value, ensure_ascii=False)}'


def _endpoint_parts(ref: str) -> Tuple[str, str]:
    """Split a relationship endpoint (Sales.Amount, 'Sales Data'.'Customer Id') as written"""
    match = _ENDPOINT.match(ref.strip())
    if not match:
        raise ValueError(f"Unrecognised relationship endpoint: {ref}")
    return match.group("table"), match.group("column")


class RefactorPlanner:
    """
    Plans renames against one graph snapshot

    Usage:
        planner = RefactorPlanner(graph)
        try:
            change_set = planner.plan_rename("measure", "Total Sales", "Revenue")
        except RenameRejectedError as e:
            print(e.code.value, e)
    """

    def __init__(self, graph: DependencyGraph, policy=None):
        """
        Args:
            graph: Graph snapshot the plan is computed from
            policy: Optional RefactorPolicyEngine consulted during validation
        """
        self.graph = graph
        self.policy = policy

    # ==================== VALIDATION ====================

    def _target_node_id(self, target: RenameTarget, name: str, owning_table: Optional[str]) -> str:
        if target == RenameTarget.MEASURE:
            return measure_id(name)
        if target == RenameTarget.COLUMN:
            return column_id(owning_table or "", name)
        return table_id(name)

    def _conflicts(self, target: RenameTarget, old_name: str, new_name: str,
                   owning_table: Optional[str]) -> bool:
        """Another node of the same kind already carries the new name (case-insensitive)"""
        candidate = self.graph.get(self._target_node_id(target, new_name, owning_table))
        current = self.graph.get(self._target_node_id(target, old_name, owning_table))
        if candidate is None:
            return False
        kind = {RenameTarget.MEASURE: NodeKind.MEASURE, RenameTarget.COLUMN: NodeKind.COLUMN,
                RenameTarget.TABLE: NodeKind.TABLE}[target]
        return candidate.kind == kind and candidate is not current

    def validate_new_name(self, target, old_name: str, new_name: str,
                          owning_table: Optional[str] = None) -> NameValidation:
        """
        Validate a proposed name

        Returns:
            NameValidation with blocking issues and non-blocking warnings
        """
        target = RenameTarget(target)
        raw = new_name or ""
        name = raw.strip()
        result = NameValidation(name=name)

        if not name:
            result.issues.append(NameIssue(RejectionCode.EMPTY_NAME, "New name cannot be empty"))
            return result

        if name != raw:
            result.warnings.append("Leading/trailing whitespace will be removed")

        if name == old_name:
            result.issues.append(NameIssue(RejectionCode.UNCHANGED, "New name is the same as the current name"))
            return result

        invalid = sorted(set(INVALID_NAME_CHARS.findall(name)))
        if invalid:
            shown = ", ".join(repr(c) for c in invalid)
            result.issues.append(NameIssue(RejectionCode.INVALID_CHARACTER, f"Name contains invalid characters: {shown}"))

        if target == RenameTarget.TABLE and INVALID_FILE_CHARS.search(name):
            result.issues.append(NameIssue(RejectionCode.INVALID_CHARACTER,
                                           "Table name contains characters not allowed in file names"))

        if name.upper() in DAX_RESERVED_KEYWORDS:
            result.issues.append(NameIssue(RejectionCode.RESERVED_KEYWORD, f'"{name}" is a reserved DAX keyword'))
        elif name.lower() in {k.lower() for k in TMDL_RESERVED_KEYWORDS}:
            result.issues.append(NameIssue(RejectionCode.RESERVED_KEYWORD, f'"{name}" is a reserved TMDL keyword'))

        if self._conflicts(target, old_name, name, owning_table):
            label = f"{owning_table}[{name}]" if target == RenameTarget.COLUMN else name
            result.issues.append(NameIssue(RejectionCode.NAME_CONFLICT, f'A {target.value} named "{label}" already exists'))

        if len(name) > MAX_NAME_LENGTH:
            result.warnings.append(f"Name is very long ({len(name)} characters)")
        if name[0].isdigit():
            result.warnings.append("Names starting with a digit always need quoting in DAX")

        return result

    # ==================== PLANNING ====================

    def plan_rename(self, target, old_name: str, new_name: str,
                    owning_table: Optional[str] = None) -> ChangeSet:
        """
        Plan a cascading rename

        Args:
            target: "measure", "column" or "table" (or a RenameTarget)
            old_name: Current name
            new_name: Proposed name
            owning_table: Table of the column (columns only)

        Returns:
            ChangeSet bound to the current graph snapshot

        Raises:
            RenameRejectedError: if validation fails
        """
        target = RenameTarget(target)
        change_set = ChangeSet(target=target, old_name=old_name, new_name=(new_name or "").strip(),
                               snapshot_id=self.graph.snapshot_id, owning_table=owning_table)

        node = self.graph.get(self._target_node_id(target, old_name, owning_table))
        issues: List[NameIssue] = []
        if node is None or node.kind.value != target.value:
            label = f"{owning_table}[{old_name}]" if target == RenameTarget.COLUMN else old_name
            issues.append(NameIssue(RejectionCode.NOT_FOUND, f"{target.value.capitalize()} '{label}' not found"))
        else:
            # Lookup is case-insensitive; every literal edit must use the name as written in the model
            if target == RenameTarget.COLUMN:
                old_name, owning_table = node.payload.column, node.payload.table
            else:
                old_name = node.payload.name
            change_set.old_name, change_set.owning_table = old_name, owning_table
            validation = self.validate_new_name(target, old_name, new_name, owning_table)
            issues.extend(validation.issues)
            change_set.warnings.extend(validation.warnings)
            if self.policy is not None:
                check = self.policy.check_rename(target.value, old_name, owning_table)
                if not check.allowed:
                    issues.append(NameIssue(RejectionCode.POLICY_DENIED, check.reason))

        if issues:
            change_set.stage = PlanStage.REJECTED
            logger.warning(f"Rename {target.value} '{old_name}' -> '{new_name}' rejected: "
                           f"{'; '.join(i.message for i in issues)}")
            raise RenameRejectedError(issues, change_set.warnings)

        if target == RenameTarget.MEASURE:
            self._plan_measure(change_set, node)
        elif target == RenameTarget.COLUMN:
            self._plan_column(change_set, node)
        else:
            self._plan_table(change_set, node)

        self._advance(change_set, PlanStage.DONE)
        logger.info(f"Planned {target.value} rename '{old_name}' -> '{change_set.new_name}': "
                    f"{len(change_set)} change(s) across {len(change_set.files)} file(s)")
        return change_set

    def _advance(self, change_set: ChangeSet, stage: PlanStage):
        logger.debug(f"Rename plan {change_set.old_name!r}: {change_set.stage.value} -> {stage.value}")
        change_set.stage = stage

    def _add(self, change_set: ChangeSet, entry: ChangeEntry):
        for existing in change_set.entries:
            if (existing.file_path, existing.old_content, existing.new_content) == \
                    (entry.file_path, entry.old_content, entry.new_content):
                return
        change_set.entries.append(entry)

    def _add_expression_edit(self, change_set: ChangeSet, file_path: str, description: str,
                             old_expression: str, new_expression: str, change_type: str):
        if new_expression != old_expression:
            self._add(change_set, ChangeEntry(file_path, description, old_expression, new_expression,
                                              change_type=change_type, replace_all=False))

    def _visual_edit(self, change_set: ChangeSet, node: Node, key: str, old: str, new: str, what: str):
        self._add(change_set, ChangeEntry(
            file_path=node.payload.definition.file_path,
            description=f"Update {what} in visual '{node.name}'",
            old_content=_json_property(key, old),
            new_content=_json_property(key, new),
            change_type="visual-reference",
        ))

    # -------------------- measure --------------------

    def _plan_measure(self, change_set: ChangeSet, node: Node):
        old, new = change_set.old_name, change_set.new_name
        measure = node.payload.definition

        self._advance(change_set, PlanStage.PLAN_DEFINITION_EDIT)
        self._add(change_set, ChangeEntry(
            file_path=measure.file_path,
            description=f"Rename measure definition '{old}' -> '{new}'",
            old_content=measure.declaration,
            new_content=_redeclare(measure.declaration, "measure", measure.name_token, new),
            change_type="measure-definition",
        ))

        self._advance(change_set, PlanStage.PLAN_REFERENCE_EDITS)
        for edge in node.used_by:
            source = self.graph.nodes[edge.target_id]
            if edge.kind == EdgeKind.MEASURE_TO_MEASURE:
                user = source.payload.definition
                self._add_expression_edit(
                    change_set, user.file_path, f"Update reference to [{old}] in measure '{user.name}'",
                    user.expression, rename_measure_in_dax(user.expression, old, new, measure.table),
                    "measure-dax-reference",
                )
            elif edge.kind == EdgeKind.VISUAL_TO_MEASURE:
                self._visual_edit(change_set, source, "Property", old, new, f"measure [{old}]")
            elif edge.kind == EdgeKind.FIELD_PARAMETER_TO_MEASURE:
                self._add(change_set, ChangeEntry(
                    file_path=source.payload.definition.file_path,
                    description=f"Update field parameter '{source.payload.table}' mapping of [{old}]",
                    old_content=f"[{old}]",
                    new_content=f"[{new}]",
                    change_type="field-parameter-reference",
                ))

    # -------------------- column --------------------

    def _relationship_endpoint_edit(self, change_set: ChangeSet, rel: RelationshipDef, side: str,
                                    new_table: Optional[str] = None, new_column: Optional[str] = None):
        line = rel.from_line if side == "from" else rel.to_line
        ref = rel.from_column_ref if side == "from" else rel.to_column_ref
        if not line:
            change_set.warnings.append(f"Relationship '{rel.name}' {side}Column line not found; skipped")
            return
        table_text, column_text = _endpoint_parts(ref)
        if new_table is not None:
            table_text = quote_tmdl_name(new_table, force=table_text.startswith("'"))
        if new_column is not None:
            column_text = quote_tmdl_name(new_column, force=column_text.startswith("'"))
        new_ref = f"{table_text}.{column_text}"
        self._add(change_set, ChangeEntry(
            file_path=rel.file_path,
            description=f"Update {side}Column of relationship '{rel.name}' to {new_ref}",
            old_content=line,
            new_content=line.replace(ref, new_ref, 1),
            change_type="relationship-reference",
        ))

    def _plan_column(self, change_set: ChangeSet, node: Node):
        old, new = change_set.old_name, change_set.new_name
        column = node.payload.definition
        table_name = node.payload.table
        table = self.graph.require(table_id(table_name)).payload.definition

        self._advance(change_set, PlanStage.PLAN_DEFINITION_EDIT)
        self._add(change_set, ChangeEntry(
            file_path=table.file_path,
            description=f"Rename column definition '{table_name}'[{old}] -> [{new}]",
            old_content=column.declaration,
            new_content=_redeclare(column.declaration, "column", column.name_token, new),
            change_type="column-definition",
        ))

        self._advance(change_set, PlanStage.PLAN_REFERENCE_EDITS)
        for edge in node.used_by:
            source = self.graph.nodes[edge.target_id]
            if edge.kind == EdgeKind.MEASURE_TO_COLUMN:
                user = source.payload.definition
                self._add_expression_edit(
                    change_set, user.file_path, f"Update reference to {table_name}[{old}] in measure '{user.name}'",
                    user.expression, rename_column_in_dax(user.expression, table_name, old, new),
                    "measure-dax-reference",
                )
            elif edge.kind == EdgeKind.CALC_ITEM_TO_COLUMN:
                item = source.payload
                group_file = self.graph.require(table_id(item.table)).payload.definition.file_path
                self._add_expression_edit(
                    change_set, group_file, f"Update reference to {table_name}[{old}] in calculation item '{item.name}'",
                    item.expression, rename_column_in_dax(item.expression, table_name, old, new),
                    "calculation-item-reference",
                )
            elif edge.kind == EdgeKind.VISUAL_TO_COLUMN:
                self._visual_edit(change_set, source, "Property", old, new, f"column {table_name}[{old}]")
            elif edge.kind == EdgeKind.FIELD_PARAMETER_TO_COLUMN:
                for entry in source.payload.entries:
                    ref = entry.reference
                    if ref.table.casefold() == table_name.casefold() and ref.property.casefold() == old.casefold():
                        self._add(change_set, ChangeEntry(
                            file_path=source.payload.definition.file_path,
                            description=f"Update field parameter '{source.payload.table}' mapping of {table_name}[{old}]",
                            old_content=f"{ref.qualifier}[{ref.property}]",
                            new_content=f"{ref.qualifier}[{new}]",
                            change_type="field-parameter-reference",
                        ))

        for rel in self.graph.relationships:
            if rel.from_table.casefold() == table_name.casefold() and rel.from_column.casefold() == old.casefold():
                self._relationship_endpoint_edit(change_set, rel, "from", new_column=new)
            if rel.to_table.casefold() == table_name.casefold() and rel.to_column.casefold() == old.casefold():
                self._relationship_endpoint_edit(change_set, rel, "to", new_column=new)

    # -------------------- table --------------------

    def _plan_table(self, change_set: ChangeSet, node: Node):
        old, new = change_set.old_name, change_set.new_name
        table = node.payload.definition
        directory, _ = split_path(table.file_path)
        new_path = join_path(directory, f"{new}.tmdl")

        self._advance(change_set, PlanStage.PLAN_DEFINITION_EDIT)
        self._add(change_set, ChangeEntry(
            file_path=table.file_path,
            description=f"Rename table file and declaration '{old}' -> '{new}'",
            old_content=table.declaration,
            new_content=_redeclare(table.declaration, "table", table.name_token, new),
            kind=ChangeKind.FILE_RENAME,
            change_type="table-file-rename",
            new_file_path=new_path,
        ))

        self._advance(change_set, PlanStage.PLAN_REFERENCE_EDITS)
        model = self.graph.model
        for measure in model.measures:
            self._add_expression_edit(
                change_set, measure.file_path, f"Update table references to '{old}' in measure '{measure.name}'",
                measure.expression, rename_table_in_dax(measure.expression, old, new),
                "measure-dax-reference",
            )
        for group in model.tables:
            for item in group.calculation_items:
                self._add_expression_edit(
                    change_set, group.file_path, f"Update table references to '{old}' in calculation item '{item.name}'",
                    item.expression, rename_table_in_dax(item.expression, old, new),
                    "calculation-item-reference",
                )

        self._advance(change_set, PlanStage.PLAN_CASCADE_EDITS)
        for visual in self.graph.nodes_of_kind(NodeKind.VISUAL):
            if any(f.entity.casefold() == old.casefold() for f in visual.payload.definition.fields):
                self._visual_edit(change_set, visual, "Entity", old, new, f"table '{old}'")

        for rel in self.graph.relationships:
            if rel.from_table.casefold() == old.casefold():
                self._relationship_endpoint_edit(change_set, rel, "from", new_table=new)
            if rel.to_table.casefold() == old.casefold():
                self._relationship_endpoint_edit(change_set, rel, "to", new_table=new)

        for param in model.tables:
            qualifiers = {e.reference.qualifier for e in param.field_parameter_entries
                          if e.reference.table.casefold() == old.casefold()}
            for qualifier in sorted(qualifiers):
                self._add(change_set, ChangeEntry(
                    file_path=param.file_path,
                    description=f"Update field parameter '{param.name}' table qualifier '{old}'",
                    old_content=f"{qualifier}[",
                    new_content=quote_tmdl_name(new, force=qualifier.startswith("'")) + "[",
                    change_type="field-parameter-reference",
                ))

        for ref in model.model_table_refs:
            if ref.table.casefold() == old.casefold():
                self._add(change_set, ChangeEntry(
                    file_path=ref.file_path,
                    description=f"Update model table reference '{old}'",
                    old_content=ref.line_text,
                    new_content=_MODEL_REF_NAME.sub(lambda m: m.group(1) + quote_tmdl_name(new),
                                                    ref.line_text, count=1),
                    change_type="model-table-reference",
                ))

        # Content edits aimed at the renamed file must follow it to its new path
        for entry in change_set.content_entries:
            if entry.file_path == table.file_path:
                entry.file_path = new_path
