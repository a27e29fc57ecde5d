"""
PBIP Dependency Graph
Nodes for every addressable model entity and the directed "depends on" edges between them.

Node ids are derived from kind + natural key, so re-parsing the same model yields the same ids:
  Measure.<name>            measure
  <table>.<column>          column
  Table.<name>              table
  <pageId>/<visualId>       visual
  CalcGroup.<table>         calculation group
  CalcItem.<table>.<item>   calculation item
  FieldParam.<table>        field parameter

Every edge lives twice: in the source's `dependencies` and in the target's `used_by`.
A reference whose target does not exist becomes an OrphanedReference instead of an edge.
"""
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

from pbip_model_parser import (
    CalculationItemDef,
    ColumnDef,
    FieldParameterEntry,
    MeasureDef,
    ParsedModel,
    RelationshipDef,
    TableDef,
    VisualDef,
)
from pbip_reference_extractor import extract_references

logger = logging.getLogger(__name__)


class NodeNotFoundError(KeyError):
    """Raised when a node id is not present in the graph"""

    def __str__(self):
        return f"Node '{self.args[0]}' not found in dependency graph"


class NodeKind(Enum):
    MEASURE = "measure"
    COLUMN = "column"
    TABLE = "table"
    VISUAL = "visual"
    CALCULATION_GROUP = "calculationGroup"
    CALCULATION_ITEM = "calculationItem"
    FIELD_PARAMETER = "fieldParameter"


class EdgeKind(Enum):
    MEASURE_TO_MEASURE = "measure-to-measure"
    MEASURE_TO_COLUMN = "measure-to-column"
    MEASURE_TO_TABLE = "measure-to-table"
    VISUAL_TO_MEASURE = "visual-to-measure"
    VISUAL_TO_COLUMN = "visual-to-column"
    VISUAL_TO_TABLE = "visual-to-table"
    VISUAL_TO_FIELD_PARAMETER = "visual-to-fieldParameter"
    VISUAL_TO_CALCULATION_GROUP = "visual-to-calculationGroup"
    CALC_ITEM_TO_CALC_GROUP = "calcItem-to-calcGroup"
    CALC_ITEM_TO_COLUMN = "calcItem-to-column"
    CALC_ITEM_TO_TABLE = "calcItem-to-table"
    FIELD_PARAMETER_TO_MEASURE = "fieldParam-to-measure"
    FIELD_PARAMETER_TO_COLUMN = "fieldParam-to-column"


def measure_id(name: str) -> str:
    return f"Measure.{name}"


def column_id(table: str, column: str) -> str:
    return f"{table}.{column}"


def table_id(name: str) -> str:
    return f"Table.{name}"


def visual_node_id(page_id: str, visual_id: str) -> str:
    return f"{page_id}/{visual_id}"


def calc_group_id(table: str) -> str:
    return f"CalcGroup.{table}"


def calc_item_id(table: str, item: str) -> str:
    return f"CalcItem.{table}.{item}"


def field_param_id(table: str) -> str:
    return f"FieldParam.{table}"


# ==================== NODE PAYLOADS ====================

@dataclass
class MeasurePayload:
    name: str
    table: str
    expression: str
    definition: MeasureDef


@dataclass
class ColumnPayload:
    table: str
    column: str
    data_type: Optional[str]
    is_hidden: bool
    definition: ColumnDef


@dataclass
class TablePayload:
    name: str
    definition: TableDef


@dataclass
class VisualPayload:
    page_id: str
    visual_id: str
    visual_type: str
    display_name: Optional[str]
    page_display_name: Optional[str]
    definition: VisualDef


@dataclass
class CalculationGroupPayload:
    table: str
    item_names: List[str]
    definition: TableDef


@dataclass
class CalculationItemPayload:
    table: str
    name: str
    expression: str
    uses_selected_measure: bool
    definition: CalculationItemDef


@dataclass
class FieldParameterPayload:
    table: str
    entries: List[FieldParameterEntry]
    definition: TableDef


NodePayload = Union[MeasurePayload, ColumnPayload, TablePayload, VisualPayload,
                    CalculationGroupPayload, CalculationItemPayload, FieldParameterPayload]


@dataclass(frozen=True)
class Edge:
    """One side of a dependency; target_id is the node at the other end"""
    target_id: str
    kind: EdgeKind


@dataclass
class Node:
    id: str
    kind: NodeKind
    payload: NodePayload
    dependencies: List[Edge] = field(default_factory=list)
    used_by: List[Edge] = field(default_factory=list)

    @property
    def name(self) -> str:
        """Human readable name"""
        p = self.payload
        if isinstance(p, MeasurePayload):
            return p.name
        if isinstance(p, ColumnPayload):
            return f"{p.table}[{p.column}]"
        if isinstance(p, TablePayload):
            return p.name
        if isinstance(p, VisualPayload):
            visual = p.display_name or p.visual_type
            page = p.page_display_name or p.page_id
            return f"{page}/{visual}"
        if isinstance(p, CalculationItemPayload):
            return f"{p.table}[{p.name}]"
        return p.table


@dataclass
class OrphanedReference:
    """A parsed reference whose target is not in the graph"""
    kind: EdgeKind
    source_id: str
    referenced_name: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'kind': self.kind.value,
            'source_id': self.source_id,
            'referenced_name': self.referenced_name,
        }


class DependencyGraph:
    """
    Owned graph value, rebuilt wholesale on every model load

    Usage:
        graph = build_graph(parsed_model)
        node = graph.require("Measure.Total Sales")
        for edge in node.used_by:
            print(edge.target_id, edge.kind.value)
    """

    def __init__(self, model: ParsedModel):
        self.model = model
        self.snapshot_id = uuid.uuid4().hex
        self.nodes: Dict[str, Node] = {}
        self.relationships: List[RelationshipDef] = list(model.relationships)
        self.orphaned_references: List[OrphanedReference] = []
        self.warnings: List[str] = []
        self._folded: Dict[str, str] = {}
        self._edge_keys: Set[Tuple[str, str, EdgeKind]] = set()

    def __contains__(self, node_id: str) -> bool:
        return self.get(node_id) is not None

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str) -> Optional[Node]:
        """Look up a node by id, falling back to a case-insensitive match"""
        node = self.nodes.get(node_id)
        if node is None:
            folded = self._folded.get(node_id.casefold())
            node = self.nodes.get(folded) if folded else None
        return node

    def require(self, node_id: str) -> Node:
        node = self.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def nodes_of_kind(self, kind: NodeKind) -> Iterator[Node]:
        return (n for n in self.nodes.values() if n.kind == kind)

    @property
    def edge_count(self) -> int:
        return len(self._edge_keys)

    def add_node(self, node: Node) -> bool:
        """Add a node; a duplicate id keeps the first node and records a warning"""
        if node.id in self.nodes:
            message = f"Duplicate node id '{node.id}' ({node.kind.value}) ignored"
            logger.warning(message)
            self.warnings.append(message)
            return False
        self.nodes[node.id] = node
        self._folded.setdefault(node.id.casefold(), node.id)
        return True

    def add_edge(self, source_id: str, target_id: str, kind: EdgeKind) -> bool:
        """Add an edge to both endpoints; both nodes must already exist"""
        source = self.require(source_id)
        target = self.require(target_id)
        key = (source.id, target.id, kind)
        if key in self._edge_keys:
            return False
        self._edge_keys.add(key)
        source.dependencies.append(Edge(target_id=target.id, kind=kind))
        target.used_by.append(Edge(target_id=source.id, kind=kind))
        return True

    def add_orphan(self, kind: EdgeKind, source_id: str, referenced_name: str):
        logger.debug(f"Orphaned reference from {source_id}: {referenced_name} ({kind.value})")
        self.orphaned_references.append(OrphanedReference(kind, source_id, referenced_name))

    def link(self, source_id: str, target_id: Optional[str], kind: EdgeKind, referenced_name: str) -> bool:
        """Add an edge when the target exists, otherwise record an orphan"""
        if target_id is not None and target_id in self:
            self.add_edge(source_id, target_id, kind)
            return True
        self.add_orphan(kind, source_id, referenced_name)
        return False


class GraphBuilder:
    """
    Builds a DependencyGraph from a ParsedModel

    All nodes are created first (measures, columns, tables, visuals, calculation groups
    and items, field parameters); edges are wired afterwards so every target can be found.
    """

    def __init__(self, model: ParsedModel):
        self.model = model
        self.graph = DependencyGraph(model)

    def build(self) -> DependencyGraph:
        self._add_measure_nodes()
        self._add_column_nodes()
        self._add_table_nodes()
        self._add_visual_nodes()
        self._add_calculation_group_nodes()
        self._add_field_parameter_nodes()

        self._wire_measures()
        self._wire_visuals()
        self._wire_calculation_items()
        self._wire_field_parameters()

        graph = self.graph
        if graph.orphaned_references:
            logger.warning(f"{len(graph.orphaned_references)} orphaned reference(s) found")
        logger.info(f"Built dependency graph: {len(graph.nodes)} nodes, {graph.edge_count} edges")
        return graph

    # -------------------- nodes --------------------

    def _add_measure_nodes(self):
        for measure in self.model.measures:
            self.graph.add_node(Node(
                id=measure_id(measure.name),
                kind=NodeKind.MEASURE,
                payload=MeasurePayload(measure.name, measure.table, measure.expression, measure),
            ))

    def _add_column_nodes(self):
        for table in self.model.tables:
            for column in table.columns:
                self.graph.add_node(Node(
                    id=column_id(table.name, column.name),
                    kind=NodeKind.COLUMN,
                    payload=ColumnPayload(table.name, column.name, column.data_type, column.is_hidden, column),
                ))

    def _add_table_nodes(self):
        for table in self.model.tables:
            self.graph.add_node(Node(
                id=table_id(table.name),
                kind=NodeKind.TABLE,
                payload=TablePayload(table.name, table),
            ))

    def _add_visual_nodes(self):
        for visual in self.model.visuals:
            page = self.model.get_page(visual.page_id)
            self.graph.add_node(Node(
                id=visual_node_id(visual.page_id, visual.id),
                kind=NodeKind.VISUAL,
                payload=VisualPayload(
                    page_id=visual.page_id,
                    visual_id=visual.id,
                    visual_type=visual.visual_type,
                    display_name=visual.display_name,
                    page_display_name=page.display_name if page else None,
                    definition=visual,
                ),
            ))

    def _add_calculation_group_nodes(self):
        for table in self.model.tables:
            if not table.is_calculation_group:
                continue
            self.graph.add_node(Node(
                id=calc_group_id(table.name),
                kind=NodeKind.CALCULATION_GROUP,
                payload=CalculationGroupPayload(table.name, [i.name for i in table.calculation_items], table),
            ))
            for item in table.calculation_items:
                self.graph.add_node(Node(
                    id=calc_item_id(table.name, item.name),
                    kind=NodeKind.CALCULATION_ITEM,
                    payload=CalculationItemPayload(table.name, item.name, item.expression,
                                                   item.uses_selected_measure, item),
                ))

    def _add_field_parameter_nodes(self):
        for table in self.model.tables:
            if table.is_field_parameter:
                self.graph.add_node(Node(
                    id=field_param_id(table.name),
                    kind=NodeKind.FIELD_PARAMETER,
                    payload=FieldParameterPayload(table.name, list(table.field_parameter_entries), table),
                ))

    # -------------------- edges --------------------

    def _qualified_measure(self, table: str, name: str) -> Optional[str]:
        """Table[Name] written for a measure that lives in Table"""
        node = self.graph.get(measure_id(name))
        if node and node.payload.table.casefold() == table.casefold():
            return node.id
        return None

    def _wire_measures(self):
        graph = self.graph
        for measure in self.model.measures:
            source = measure_id(measure.name)
            if graph.get(source).payload.definition is not measure:
                continue  # duplicate measure name, first definition wins
            refs = extract_references(measure.expression, self.model.measure_table)

            for name in refs.measure_refs:
                graph.link(source, measure_id(name), EdgeKind.MEASURE_TO_MEASURE, f"[{name}]")

            for ref in refs.column_refs:
                target = column_id(ref.table, ref.column)
                if target not in graph:
                    qualified = self._qualified_measure(ref.table, ref.column)
                    if qualified:
                        graph.add_edge(source, qualified, EdgeKind.MEASURE_TO_MEASURE)
                        continue
                graph.link(source, target, EdgeKind.MEASURE_TO_COLUMN, f"{ref.table}[{ref.column}]")

            for name in refs.table_refs:
                graph.link(source, table_id(name), EdgeKind.MEASURE_TO_TABLE, name)

    def _wire_visuals(self):
        graph = self.graph
        for visual in self.model.visuals:
            source = visual_node_id(visual.page_id, visual.id)
            for visual_field in visual.fields:
                entity, prop = visual_field.entity, visual_field.property
                if visual_field.kind == "measure":
                    graph.link(source, measure_id(prop), EdgeKind.VISUAL_TO_MEASURE, f"[{prop}]")
                elif visual_field.kind == "hierarchy":
                    graph.link(source, table_id(entity), EdgeKind.VISUAL_TO_TABLE, f"{entity}.{prop}")
                elif field_param_id(entity) in graph:
                    graph.add_edge(source, field_param_id(entity), EdgeKind.VISUAL_TO_FIELD_PARAMETER)
                elif calc_group_id(entity) in graph:
                    graph.add_edge(source, calc_group_id(entity), EdgeKind.VISUAL_TO_CALCULATION_GROUP)
                else:
                    graph.link(source, column_id(entity, prop), EdgeKind.VISUAL_TO_COLUMN, f"{entity}[{prop}]")

    def _wire_calculation_items(self):
        graph = self.graph
        for table in self.model.tables:
            if not table.is_calculation_group:
                continue
            for item in table.calculation_items:
                source = calc_item_id(table.name, item.name)
                graph.add_edge(source, calc_group_id(table.name), EdgeKind.CALC_ITEM_TO_CALC_GROUP)
                refs = extract_references(item.expression, self.model.measure_table)
                for ref in refs.column_refs:
                    graph.link(source, column_id(ref.table, ref.column), EdgeKind.CALC_ITEM_TO_COLUMN,
                               f"{ref.table}[{ref.column}]")
                for name in refs.table_refs:
                    graph.link(source, table_id(name), EdgeKind.CALC_ITEM_TO_TABLE, name)

    def _wire_field_parameters(self):
        graph = self.graph
        for table in self.model.tables:
            if not table.is_field_parameter:
                continue
            source = field_param_id(table.name)
            for entry in table.field_parameter_entries:
                ref = entry.reference
                if ref.is_measure:
                    graph.link(source, measure_id(ref.property), EdgeKind.FIELD_PARAMETER_TO_MEASURE,
                               f"[{ref.property}]")
                    continue
                target = column_id(ref.table, ref.property)
                if target not in graph:
                    qualified = self._qualified_measure(ref.table, ref.property)
                    if qualified:
                        graph.add_edge(source, qualified, EdgeKind.FIELD_PARAMETER_TO_MEASURE)
                        continue
                graph.link(source, target, EdgeKind.FIELD_PARAMETER_TO_COLUMN, f"{ref.table}[{ref.property}]")


def build_graph(model: ParsedModel) -> DependencyGraph:
    """Build a fresh dependency graph from a parsed model"""
    return GraphBuilder(model).build()
