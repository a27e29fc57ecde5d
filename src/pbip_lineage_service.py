"""
PBIP Lineage Service
Orchestrates project loading, graph analysis, rename planning and transactional apply.

The service owns the current graph snapshot and at most one pending ChangeSet. A reload
rebuilds the graph from scratch; it is refused while an apply is writing files.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pbip_change_applier import ApplyResult, TransactionalApplier
from pbip_dependency_graph import (
    DependencyGraph,
    build_graph,
    column_id,
    measure_id,
    table_id,
)
from pbip_file_store import LocalFileStore, PBIPFileStore
from pbip_graph_analyzer import (
    MAX_CYCLE_DEPTH,
    DeleteAnalysis,
    GraphAnalyzer,
    GroupedNodes,
    RenameImpact,
    write_csv,
)
from pbip_model_parser import ParsedModel, PBIPProjectLoader
from pbip_reference_extractor import DEFAULT_MEASURE_TABLE
from pbip_refactor_planner import (
    ChangeSet,
    RefactorPlanner,
    RenameRejectedError,
    StaleChangeSetError,
)
from security import AuditLogger, RefactorPolicyEngine

logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = Path(__file__).parent.parent / "config" / "refactor_policy.yaml"


class ProjectNotLoadedError(RuntimeError):
    """Raised when an operation needs a loaded project"""

    def __init__(self):
        super().__init__("No PBIP project loaded. Use 'pbip_load_project' first.")


class ApplyInProgressError(RuntimeError):
    """Raised when a reload or second apply is attempted while files are being written"""


@dataclass
class LineageSettings:
    """Service configuration, normally read from the environment"""
    measure_table: str = DEFAULT_MEASURE_TABLE
    read_only: bool = False
    policy_path: Optional[str] = None
    enable_audit: bool = True
    audit_log_dir: Optional[str] = None
    max_cycle_depth: int = MAX_CYCLE_DEPTH

    @classmethod
    def from_env(cls) -> "LineageSettings":
        policy_path = os.getenv("PBIP_POLICY_PATH")
        if not policy_path and DEFAULT_POLICY_PATH.exists():
            policy_path = str(DEFAULT_POLICY_PATH)

        return cls(
            measure_table=os.getenv("PBIP_MEASURE_TABLE", DEFAULT_MEASURE_TABLE),
            read_only=os.getenv("PBIP_READ_ONLY", "false").lower() == "true",
            policy_path=policy_path,
            enable_audit=os.getenv("ENABLE_AUDIT", "true").lower() == "true",
            audit_log_dir=os.getenv("AUDIT_LOG_DIR") or None,
            max_cycle_depth=int(os.getenv("PBIP_MAX_CYCLE_DEPTH", str(MAX_CYCLE_DEPTH))),
        )


class PBIPLineageService:
    """
    Single entry point for the MCP server and the diagnostic tool

    Usage:
        service = PBIPLineageService(LineageSettings.from_env())
        await service.load_project("C:/Projects/Sales")
        impact = service.analyze_rename(service.find_node_id("measure", "Total Sales"))
        service.plan_rename("measure", "Total Sales", "Revenue")
        result = await service.apply_pending()
    """

    def __init__(self, settings: Optional[LineageSettings] = None,
                 policy: Optional[RefactorPolicyEngine] = None,
                 audit: Optional[AuditLogger] = None):
        self.settings = settings or LineageSettings()
        self.policy = policy or RefactorPolicyEngine(self.settings.policy_path)
        if self.settings.read_only:
            self.policy.global_policy.read_only = True

        if audit is not None:
            self.audit = audit
        elif self.settings.enable_audit:
            self.audit = AuditLogger(log_dir=self.settings.audit_log_dir)
        else:
            self.audit = None

        self.store: Optional[PBIPFileStore] = None
        self.project_path: Optional[str] = None
        self.selection: Tuple[Optional[str], Optional[str]] = (None, None)
        self.model: Optional[ParsedModel] = None
        self._graph: Optional[DependencyGraph] = None
        self._analyzer: Optional[GraphAnalyzer] = None
        self.pending: Optional[ChangeSet] = None
        self._applying = False

    # ==================== LOADING ====================

    @property
    def is_loaded(self) -> bool:
        return self._graph is not None

    @property
    def graph(self) -> DependencyGraph:
        if self._graph is None:
            raise ProjectNotLoadedError()
        return self._graph

    @property
    def analyzer(self) -> GraphAnalyzer:
        if self._analyzer is None:
            raise ProjectNotLoadedError()
        return self._analyzer

    async def load_project(self, project_path: str, semantic_model: Optional[str] = None,
                           report: Optional[str] = None) -> Dict[str, Any]:
        """Open a PBIP folder (or .pbip file) on the local disk and build its graph"""
        store = LocalFileStore(project_path, read_only=self.settings.read_only,
                               permission_check=self.policy.allows_writes)
        return await self.load_store(store, project_path, semantic_model, report)

    async def load_store(self, store: PBIPFileStore, label: str = "", semantic_model: Optional[str] = None,
                         report: Optional[str] = None) -> Dict[str, Any]:
        """
        Load a project through any PBIPFileStore and rebuild the graph

        Args:
            store: Where the project files live
            label: Project path shown in results and the audit log
            semantic_model: Semantic model folder to load (None = first one with a bound report)
            report: Report folder to load; must be bound to the chosen semantic model

        Returns:
            statistics() of the new graph

        Raises:
            ApplyInProgressError: if an apply is writing files
            ProjectLayoutError: if the store holds no semantic model, or a requested model or
                report is missing or unbound
        """
        if self._applying:
            raise ApplyInProgressError("Cannot reload the project while changes are being applied")

        model = await PBIPProjectLoader(store, self.settings.measure_table, semantic_model, report).load()
        graph = await asyncio.get_event_loop().run_in_executor(None, build_graph, model)

        self.store = store
        self.project_path = label
        self.selection = (semantic_model, report)
        self.model = model
        self._graph = graph
        self._analyzer = GraphAnalyzer(graph, self.settings.max_cycle_depth)
        if self.pending is not None:
            logger.info("Discarding pending rename plan: project reloaded")
            self.pending = None

        stats = self._analyzer.statistics()
        if self.audit:
            self.audit.log_project_loaded(label, stats['total_nodes'], stats['edge_count'],
                                          stats['skipped_count'], graph.snapshot_id)
        return stats

    async def reload(self) -> Dict[str, Any]:
        if self.store is None:
            raise ProjectNotLoadedError()
        return await self.load_store(self.store, self.project_path or "", *self.selection)

    # ==================== LOOKUP ====================

    def find_node_id(self, kind: Optional[str], name: str, table: Optional[str] = None) -> str:
        """
        Turn a user-facing (kind, name, table) into a node id

        Args:
            kind: "measure", "column", "table" or None to treat name as a node id
            name: Object name, or a raw node id when kind is None
            table: Owning table (columns only)
        """
        if not kind:
            node_id = name
        elif kind == "measure":
            node_id = measure_id(name)
        elif kind == "column":
            if not table:
                raise ValueError("'table' is required for columns")
            node_id = column_id(table, name)
        elif kind == "table":
            node_id = table_id(name)
        else:
            raise ValueError(f"Unsupported object kind: {kind}")
        return self.graph.require(node_id).id

    # ==================== ANALYSIS ====================

    def statistics(self) -> Dict[str, Any]:
        stats = self.analyzer.statistics()
        stats['project'] = self.project_path
        stats['semantic_model'] = self.model.semantic_model_folder
        stats['report'] = self.model.report_folder
        stats['skipped'] = [{'kind': s.kind, 'source': s.source, 'reason': s.reason}
                            for s in self.model.skipped]
        return stats

    def upstream(self, node_id: str, max_depth: Optional[int] = None) -> GroupedNodes:
        return self.analyzer.upstream_of(node_id, max_depth)

    def downstream(self, node_id: str, max_depth: Optional[int] = None) -> GroupedNodes:
        return self.analyzer.downstream_of(node_id, max_depth)

    def analyze_rename(self, node_id: str) -> RenameImpact:
        return self.analyzer.analyze_rename(node_id)

    def analyze_delete(self, node_id: str) -> DeleteAnalysis:
        return self.analyzer.analyze_delete(node_id)

    def detect_cycles(self) -> List[List[str]]:
        return self.analyzer.detect_cycles()

    def orphaned_references(self) -> List[Dict[str, str]]:
        return [o.to_dict() for o in self.graph.orphaned_references]

    def export_csv(self, node_id: str, mode: str, path: str) -> int:
        """Write an impact or delete CSV for a node; returns the data row count"""
        if mode == "impact":
            rows = self.analyzer.impact_csv_rows(node_id)
        elif mode == "delete":
            rows = self.analyzer.delete_csv_rows(node_id)
        else:
            raise ValueError(f"Unknown export mode: {mode} (use 'impact' or 'delete')")
        return write_csv(rows, path)

    # ==================== REFACTORING ====================

    def plan_rename(self, kind: str, old_name: str, new_name: str,
                    table: Optional[str] = None) -> ChangeSet:
        """
        Plan a rename and hold it as the pending ChangeSet

        Raises:
            RenameRejectedError: if the name is rejected; the previous pending plan is kept
        """
        planner = RefactorPlanner(self.graph, self.policy)
        try:
            change_set = planner.plan_rename(kind, old_name, new_name, table)
        except RenameRejectedError as e:
            if self.audit:
                self.audit.log_rename_rejected(kind, old_name, new_name, e.code.value, str(e))
            raise

        self.pending = change_set
        if self.audit:
            self.audit.log_rename_planned(kind, old_name, change_set.new_name, len(change_set),
                                          change_set.files, table)
        return change_set

    def discard_pending(self) -> bool:
        had_plan = self.pending is not None
        self.pending = None
        return had_plan

    async def apply_pending(self) -> ApplyResult:
        """
        Apply the pending ChangeSet and reload the project

        Raises:
            ValueError: if nothing is pending
            StaleChangeSetError: if the graph was rebuilt after planning
            ApplyInProgressError: if another apply is running
            WritePermissionError, ApplyError, PartialRollbackError: from the applier
        """
        if self.pending is None:
            raise ValueError("No pending rename plan. Use 'pbip_plan_rename' first.")
        return await self.apply(self.pending)

    async def apply(self, change_set: ChangeSet) -> ApplyResult:
        if self._applying:
            raise ApplyInProgressError("Another apply is already in progress")
        if not change_set.is_valid_for(self.graph):
            raise StaleChangeSetError("The model changed since this rename was planned; plan it again")

        applier = TransactionalApplier(self.store, policy=self.policy, audit=self.audit)
        self._applying = True
        try:
            result = await applier.apply(change_set)
        finally:
            self._applying = False

        if self.pending is change_set:
            self.pending = None
        await self.reload()
        return result
