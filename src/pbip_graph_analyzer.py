"""
PBIP Graph Analyzer
Read-only algorithms over a DependencyGraph.

- upstream_of / downstream_of: depth-first closure, grouped by node kind
- analyze_rename: both closures for a rename preview
- analyze_delete: direct vs cascade breaks, relationship breaks and a risk level
- detect_cycles: circular dependency chains starting from measures
- statistics: counts and orphaned references for health checks
- CSV projection of impact and delete results

Traversal records each node at the depth of its FIRST discovery in DFS order, not at its
shortest-path depth. A node reachable via two paths of different length keeps the depth
from whichever path is explored first.
"""
import csv
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pbip_dependency_graph import DependencyGraph, NodeKind, OrphanedReference
from pbip_model_parser import RelationshipDef

logger = logging.getLogger(__name__)

MAX_CYCLE_DEPTH = 1000
CAUTION_THRESHOLD = 5

# Dependents that stop working when their source is deleted
BREAK_KINDS = (NodeKind.MEASURE, NodeKind.VISUAL)

IMPACT_CSV_HEADER = ["Selected Object", "Object Type", "Direction", "Dependency Name", "Dependency Type", "Depth"]
DELETE_CSV_HEADER = ["Deleted Object", "Object Type", "Risk Level", "Break Type", "Broken Item", "Item Type", "Depth"]


class RiskLevel(Enum):
    SAFE = "safe"
    CAUTION = "caution"
    DANGEROUS = "dangerous"


@dataclass
class NodeHit:
    """A node reached during traversal"""
    node_id: str
    kind: NodeKind
    name: str
    depth: int

    def to_dict(self) -> Dict[str, Any]:
        return {'node_id': self.node_id, 'kind': self.kind.value, 'name': self.name, 'depth': self.depth}


# NodeKind -> GroupedNodes attribute
_GROUP_FIELDS = {
    NodeKind.MEASURE: "measures",
    NodeKind.COLUMN: "columns",
    NodeKind.TABLE: "tables",
    NodeKind.VISUAL: "visuals",
    NodeKind.CALCULATION_GROUP: "calculation_groups",
    NodeKind.CALCULATION_ITEM: "calculation_items",
    NodeKind.FIELD_PARAMETER: "field_parameters",
}


@dataclass
class GroupedNodes:
    """Traversal result grouped by node kind, each group sorted by ascending depth"""
    measures: List[NodeHit] = field(default_factory=list)
    columns: List[NodeHit] = field(default_factory=list)
    tables: List[NodeHit] = field(default_factory=list)
    visuals: List[NodeHit] = field(default_factory=list)
    calculation_groups: List[NodeHit] = field(default_factory=list)
    calculation_items: List[NodeHit] = field(default_factory=list)
    field_parameters: List[NodeHit] = field(default_factory=list)

    def add(self, hit: NodeHit):
        getattr(self, _GROUP_FIELDS[hit.kind]).append(hit)

    def sort(self):
        for name in _GROUP_FIELDS.values():
            getattr(self, name).sort(key=lambda h: h.depth)

    def all(self) -> List[NodeHit]:
        hits = []
        for name in _GROUP_FIELDS.values():
            hits.extend(getattr(self, name))
        return hits

    @property
    def total_count(self) -> int:
        return sum(len(getattr(self, name)) for name in _GROUP_FIELDS.values())

    def contains(self, node_id: str) -> bool:
        return any(h.node_id == node_id for h in self.all())

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {name: [h.to_dict() for h in getattr(self, name)]
                                  for name in _GROUP_FIELDS.values()}
        result['total_count'] = self.total_count
        return result


@dataclass
class BreakSet(GroupedNodes):
    """Dependents that break on delete, plus relationships for column targets"""
    relationships: List[RelationshipDef] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return super().total_count + len(self.relationships)


@dataclass
class RenameImpact:
    node_id: str
    node_kind: NodeKind
    node_name: str
    upstream: GroupedNodes
    downstream: GroupedNodes


@dataclass
class DeleteAnalysis:
    node_id: str
    node_kind: NodeKind
    node_name: str
    risk_level: RiskLevel
    direct_breaks: BreakSet
    cascade_breaks: BreakSet
    total_downstream: int
    expression: Optional[str] = None
    other_dependents: GroupedNodes = field(default_factory=GroupedNodes)

    @property
    def total_breaks(self) -> int:
        return self.direct_breaks.total_count + self.cascade_breaks.total_count

    @property
    def safe_message(self) -> Optional[str]:
        if self.risk_level != RiskLevel.SAFE:
            return None
        if self.other_dependents.total_count:
            return f"No measures or visuals depend on this {self.node_kind.value} - safe to delete."
        return f"No objects depend on this {self.node_kind.value} - safe to delete."


class GraphAnalyzer:
    """
    Read-only analysis of a dependency graph

    Usage:
        analyzer = GraphAnalyzer(graph)
        impact = analyzer.downstream_of("Sales.Amount")
        result = analyzer.analyze_delete("Measure.Total Sales")
        print(result.risk_level.value)
    """

    def __init__(self, graph: DependencyGraph, max_cycle_depth: int = MAX_CYCLE_DEPTH):
        self.graph = graph
        self.max_cycle_depth = max_cycle_depth

    # ==================== TRAVERSAL ====================

    def _closure(self, node_id: str, upstream: bool, max_depth: Optional[int]) -> GroupedNodes:
        start = self.graph.require(node_id)
        visited: Set[str] = set()
        result = GroupedNodes()

        # Iterative DFS in the same pre-order a recursive walk would take
        stack = [(start.id, 0)]
        while stack:
            current_id, depth = stack.pop()
            if current_id in visited:
                continue
            visited.add(current_id)
            if max_depth is not None and depth > max_depth:
                continue

            node = self.graph.nodes[current_id]
            if depth > 0:
                result.add(NodeHit(node.id, node.kind, node.name, depth))

            edges = node.dependencies if upstream else node.used_by
            for edge in reversed(edges):
                if edge.target_id not in visited:
                    stack.append((edge.target_id, depth + 1))

        result.sort()
        return result

    def upstream_of(self, node_id: str, max_depth: Optional[int] = None) -> GroupedNodes:
        """
        Everything the node depends on, transitively

        Args:
            node_id: Node to start from
            max_depth: Stop after this many hops (None = unbounded)

        Raises:
            NodeNotFoundError: if node_id is not in the graph
        """
        return self._closure(node_id, upstream=True, max_depth=max_depth)

    def downstream_of(self, node_id: str, max_depth: Optional[int] = None) -> GroupedNodes:
        """Everything that depends on the node, transitively"""
        return self._closure(node_id, upstream=False, max_depth=max_depth)

    def analyze_rename(self, node_id: str) -> RenameImpact:
        node = self.graph.require(node_id)
        upstream = self.upstream_of(node.id)
        downstream = self.downstream_of(node.id)
        logger.info(f"Impact analysis for {node.id}: {upstream.total_count} upstream, "
                    f"{downstream.total_count} downstream")
        return RenameImpact(node.id, node.kind, node.name, upstream, downstream)

    # ==================== DELETE ====================

    def relationships_using_column(self, table: str, column: str) -> List[RelationshipDef]:
        table_key, column_key = table.casefold(), column.casefold()
        return [
            rel for rel in self.graph.relationships
            if (rel.from_table.casefold() == table_key and rel.from_column.casefold() == column_key)
            or (rel.to_table.casefold() == table_key and rel.to_column.casefold() == column_key)
        ]

    def analyze_delete(self, node_id: str) -> DeleteAnalysis:
        """
        Score the risk of deleting a node

        Only measures and visuals count as breaks. Other dependents (calculation items,
        field parameters) are listed in other_dependents but do not affect the score.
        Risk is safe with no breaks and no relationship breaks, caution with at most
        five breaks and no relationship breaks, dangerous otherwise.
        """
        node = self.graph.require(node_id)
        downstream = self.downstream_of(node.id)

        direct, cascade, other = BreakSet(), BreakSet(), GroupedNodes()
        for hit in downstream.all():
            if hit.kind not in BREAK_KINDS:
                other.add(hit)
            else:
                (direct if hit.depth == 1 else cascade).add(hit)
        direct.sort()
        cascade.sort()
        other.sort()

        if node.kind == NodeKind.COLUMN:
            direct.relationships = self.relationships_using_column(node.payload.table, node.payload.column)

        total = len(downstream.measures) + len(downstream.visuals)
        has_relationship_breaks = bool(direct.relationships)
        if total == 0 and not has_relationship_breaks:
            risk = RiskLevel.SAFE
        elif total <= CAUTION_THRESHOLD and not has_relationship_breaks:
            risk = RiskLevel.CAUTION
        else:
            risk = RiskLevel.DANGEROUS

        expression = getattr(node.payload, "expression", None)
        analysis = DeleteAnalysis(node.id, node.kind, node.name, risk, direct, cascade, total, expression,
                                  other_dependents=other)
        logger.info(f"Delete analysis for {node.id}: {risk.value} risk, {analysis.total_breaks} total breaks")
        return analysis

    # ==================== CYCLES ====================

    def detect_cycles(self) -> List[List[str]]:
        """
        Find circular dependency chains reachable from measures

        Each cycle is the path slice from the repeated node to the current node, with the
        repeated node appended again at the end (A -> B -> C -> A gives [A, B, C, A]).
        Nodes explored from an earlier start are not walked again, so no separate
        de-duplication pass is needed.
        """
        cycles: List[List[str]] = []
        visited: Set[str] = set()
        on_stack: Set[str] = set()

        for start in self.graph.nodes_of_kind(NodeKind.MEASURE):
            path: List[str] = []
            # Frames are (node_id, None) before entry and (node_id, iterator) while open
            stack: List[Any] = [(start.id, None)]
            while stack:
                current_id, pending = stack[-1]
                if pending is None:
                    stack.pop()
                    if len(path) >= self.max_cycle_depth:
                        logger.warning(f"Max depth ({self.max_cycle_depth}) reached during cycle "
                                       f"detection at node: {current_id}")
                        continue
                    if current_id in on_stack:
                        cycles.append(path[path.index(current_id):] + [current_id])
                        continue
                    if current_id in visited:
                        continue
                    visited.add(current_id)
                    on_stack.add(current_id)
                    path.append(current_id)
                    node = self.graph.nodes[current_id]
                    stack.append((current_id, iter([e.target_id for e in node.dependencies])))
                    continue

                next_id = next(pending, None)
                if next_id is None:
                    stack.pop()
                    on_stack.discard(current_id)
                    path.pop()
                else:
                    stack.append((next_id, None))

        if cycles:
            logger.warning(f"Detected {len(cycles)} circular dependency chain(s)")
        return cycles

    # ==================== HEALTH ====================

    def measures_with_orphaned_references(self) -> List[str]:
        seen: Dict[str, None] = {}
        for orphan in self.graph.orphaned_references:
            seen.setdefault(orphan.source_id, None)
        return list(seen)

    def statistics(self) -> Dict[str, Any]:
        counts = {kind.value: 0 for kind in NodeKind}
        for node in self.graph.nodes.values():
            counts[node.kind.value] += 1

        model = self.graph.model
        orphans: List[OrphanedReference] = self.graph.orphaned_references
        return {
            'total_nodes': len(self.graph.nodes),
            'counts_by_kind': counts,
            'measure_count': counts[NodeKind.MEASURE.value],
            'column_count': counts[NodeKind.COLUMN.value],
            'table_count': counts[NodeKind.TABLE.value],
            'visual_count': counts[NodeKind.VISUAL.value],
            'edge_count': self.graph.edge_count,
            'relationship_count': len(self.graph.relationships),
            'hierarchy_count': sum(len(t.hierarchies) for t in model.tables),
            'page_count': len(model.pages),
            'orphaned_count': len(orphans),
            'orphaned_references': [o.to_dict() for o in orphans],
            'measures_with_orphans': self.measures_with_orphaned_references(),
            'skipped_count': len(model.skipped),
            'warnings': list(self.graph.warnings),
        }

    # ==================== CSV PROJECTION ====================

    def impact_csv_rows(self, node_id: str) -> List[List[Any]]:
        """Rows for an impact export: one per upstream/downstream node"""
        impact = self.analyze_rename(node_id)
        node = self.graph.require(node_id)
        rows: List[List[Any]] = [IMPACT_CSV_HEADER]
        for direction, grouped in (("Upstream", impact.upstream), ("Downstream", impact.downstream)):
            for hit in grouped.all():
                rows.append([node.name, node.kind.value, direction, hit.name, hit.kind.value, hit.depth])
        return rows

    def delete_csv_rows(self, node_id: str) -> List[List[Any]]:
        """Rows for a delete export: one per broken item, relationships included"""
        analysis = self.analyze_delete(node_id)
        node = self.graph.require(node_id)
        label = node.name
        risk = analysis.risk_level.value
        rows: List[List[Any]] = [DELETE_CSV_HEADER]
        for break_type, breaks in (("Direct", analysis.direct_breaks), ("Cascade", analysis.cascade_breaks)):
            for hit in breaks.all():
                rows.append([label, node.kind.value, risk, break_type, hit.name, hit.kind.value, hit.depth])
            for rel in breaks.relationships:
                broken = f"{rel.from_table}[{rel.from_column}] -> {rel.to_table}[{rel.to_column}]"
                rows.append([label, node.kind.value, risk, break_type, broken, "relationship", 1])
        return rows


def write_csv(rows: List[List[Any]], path: str) -> int:
    """Write rows (header first) to a CSV file; returns the number of data rows"""
    with open(path, 'w', encoding='utf-8', newline='') as f:
        csv.writer(f).writerows(rows)
    logger.info(f"Exported {max(len(rows) - 1, 0)} rows to {path}")
    return max(len(rows) - 1, 0)


# ==================== TEXT REPORTS ====================

_GROUP_LABELS = {
    "measures": "Measures",
    "columns": "Columns",
    "tables": "Tables",
    "visuals": "Visuals",
    "calculation_groups": "Calculation Groups",
    "calculation_items": "Calculation Items",
    "field_parameters": "Field Parameters",
}


def format_grouped_nodes(grouped: GroupedNodes, indent: str = "  ") -> str:
    """Plain-text listing of a traversal result, one block per non-empty kind"""
    text = ""
    for attr, label in _GROUP_LABELS.items():
        hits = getattr(grouped, attr)
        if not hits:
            continue
        text += f"{label} ({len(hits)}):\n"
        for hit in hits:
            text += f"{indent}[depth {hit.depth}] {hit.name}\n"
    return text


def _format_other_dependents(analysis: DeleteAnalysis) -> str:
    others = analysis.other_dependents
    if not others.total_count:
        return ""
    text = f"\n--- Other dependents, not scored ({others.total_count}) ---\n"
    return text + format_grouped_nodes(others)


def format_delete_analysis(analysis: DeleteAnalysis) -> str:
    text = f"=== Delete Analysis: {analysis.node_name} ({analysis.node_kind.value}) ===\n\n"
    text += f"Risk level: {analysis.risk_level.value.upper()}\n"
    text += f"Total downstream: {analysis.total_downstream}\n"
    text += f"Total breaks: {analysis.total_breaks}\n"

    if analysis.safe_message:
        return text + f"\n{analysis.safe_message}\n" + _format_other_dependents(analysis)

    for title, breaks in (("Direct breaks", analysis.direct_breaks), ("Cascade breaks", analysis.cascade_breaks)):
        if not breaks.total_count:
            continue
        text += f"\n--- {title} ({breaks.total_count}) ---\n"
        text += format_grouped_nodes(breaks)
        if breaks.relationships:
            text += f"Relationships ({len(breaks.relationships)}):\n"
            for rel in breaks.relationships:
                text += f"  {rel.from_table}[{rel.from_column}] -> {rel.to_table}[{rel.to_column}]\n"

    text += _format_other_dependents(analysis)
    if analysis.expression:
        text += f"\nExpression:\n  {analysis.expression}\n"
    return text
