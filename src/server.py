"""
PBIP Lineage MCP Server
Dependency analysis and safe cascading renames for Power BI Projects (PBIP / TMDL / PBIR)
Features: Impact Analysis, Delete Risk, Cycle Detection, Transactional Renames, Audit Logging
"""
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from mcp.server import Server, NotificationOptions
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent
from mcp.server.models import InitializationOptions

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)]
)
logger = logging.getLogger("pbip-lineage-mcp")

from pbip_graph_analyzer import format_delete_analysis, format_grouped_nodes
from pbip_change_applier import ApplyError, PartialRollbackError
from pbip_lineage_service import LineageSettings, PBIPLineageService
from pbip_refactor_planner import RenameRejectedError

_OBJECT_SCHEMA = {
    "kind": {
        "type": "string",
        "enum": ["measure", "column", "table"],
        "description": "Object kind. Omit to pass a raw node id in 'name' (e.g. 'ReportSection1/visual42')"
    },
    "name": {
        "type": "string",
        "description": "Object name (or node id when 'kind' is omitted)"
    },
    "table": {
        "type": "string",
        "description": "Owning table (required for columns)"
    }
}


class PBIPLineageMCPServer:
    """MCP server exposing PBIP lineage analysis and refactoring"""

    def __init__(self):
        self.server = Server("pbip-lineage-mcp")
        self.settings = LineageSettings.from_env()
        self.service = PBIPLineageService(self.settings)
        self._setup_handlers()

    def _setup_handlers(self):
        """Set up MCP tool handlers"""

        @self.server.list_tools()
        async def handle_list_tools() -> List[Tool]:
            """Return list of available tools"""
            return [
                Tool(
                    name="pbip_load_project",
                    description="Load a PBIP project folder (or .pbip file) and build its dependency graph",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "path": {
                                "type": "string",
                                "description": "Path to the project folder or .pbip file"
                            },
                            "semantic_model": {
                                "type": "string",
                                "description": "Semantic model folder to load, e.g. Sales or Sales.SemanticModel (optional)"
                            },
                            "report": {
                                "type": "string",
                                "description": "Report folder to load; must point at the chosen semantic model (optional)"
                            }
                        },
                        "required": ["path"]
                    }
                ),
                Tool(
                    name="pbip_model_stats",
                    description="Health check: object counts, relationships, orphaned references and skipped files",
                    inputSchema={"type": "object", "properties": {}, "required": []}
                ),
                Tool(
                    name="pbip_upstream",
                    description="List everything an object depends on, grouped by kind",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            **_OBJECT_SCHEMA,
                            "max_depth": {"type": "integer", "description": "Optional traversal depth limit"}
                        },
                        "required": ["name"]
                    }
                ),
                Tool(
                    name="pbip_downstream",
                    description="List everything that depends on an object (measures, visuals, ...), grouped by kind",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            **_OBJECT_SCHEMA,
                            "max_depth": {"type": "integer", "description": "Optional traversal depth limit"}
                        },
                        "required": ["name"]
                    }
                ),
                Tool(
                    name="pbip_analyze_rename",
                    description="Show the upstream and downstream impact of renaming an object",
                    inputSchema={"type": "object", "properties": _OBJECT_SCHEMA, "required": ["name"]}
                ),
                Tool(
                    name="pbip_analyze_delete",
                    description="Score the risk of deleting an object: direct and cascade breaks, relationship breaks",
                    inputSchema={"type": "object", "properties": _OBJECT_SCHEMA, "required": ["name"]}
                ),
                Tool(
                    name="pbip_detect_cycles",
                    description="Find circular dependencies between measures",
                    inputSchema={"type": "object", "properties": {}, "required": []}
                ),
                Tool(
                    name="pbip_orphaned_references",
                    description="List references to measures, columns or tables that do not exist",
                    inputSchema={"type": "object", "properties": {}, "required": []}
                ),
                Tool(
                    name="pbip_plan_rename",
                    description="Plan a cascading rename of a measure, column or table. Nothing is written until pbip_apply_plan.",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "kind": {"type": "string", "enum": ["measure", "column", "table"]},
                            "old_name": {"type": "string", "description": "Current name"},
                            "new_name": {"type": "string", "description": "New name"},
                            "table": {"type": "string", "description": "Owning table (required for columns)"},
                            "show_changes": {"type": "boolean", "description": "Include old/new text of every edit"}
                        },
                        "required": ["kind", "old_name", "new_name"]
                    }
                ),
                Tool(
                    name="pbip_apply_plan",
                    description="Apply the pending rename plan. All files are rolled back if any write fails.",
                    inputSchema={"type": "object", "properties": {}, "required": []}
                ),
                Tool(
                    name="pbip_discard_plan",
                    description="Discard the pending rename plan",
                    inputSchema={"type": "object", "properties": {}, "required": []}
                ),
                Tool(
                    name="pbip_export_csv",
                    description="Export an impact or delete analysis of an object to a CSV file",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            **_OBJECT_SCHEMA,
                            "mode": {"type": "string", "enum": ["impact", "delete"]},
                            "output_path": {"type": "string", "description": "Destination .csv file"}
                        },
                        "required": ["name", "mode", "output_path"]
                    }
                ),
                Tool(
                    name="refactor_audit_log",
                    description="View recent refactoring audit log entries",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "count": {"type": "integer", "description": "Number of entries to show (default: 10)"}
                        },
                        "required": []
                    }
                ),
            ]

        @self.server.call_tool()
        async def handle_call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> List[TextContent]:
            """Handle tool calls"""
            try:
                logger.info(f"Tool called: {name} with args: {arguments}")
                args = arguments or {}

                if name == "pbip_load_project":
                    result = await self._handle_load_project(args)
                elif name == "pbip_model_stats":
                    result = await self._handle_model_stats()
                elif name == "pbip_upstream":
                    result = await self._handle_closure(args, upstream=True)
                elif name == "pbip_downstream":
                    result = await self._handle_closure(args, upstream=False)
                elif name == "pbip_analyze_rename":
                    result = await self._handle_analyze_rename(args)
                elif name == "pbip_analyze_delete":
                    result = await self._handle_analyze_delete(args)
                elif name == "pbip_detect_cycles":
                    result = await self._handle_detect_cycles()
                elif name == "pbip_orphaned_references":
                    result = await self._handle_orphaned_references()
                elif name == "pbip_plan_rename":
                    result = await self._handle_plan_rename(args)
                elif name == "pbip_apply_plan":
                    result = await self._handle_apply_plan()
                elif name == "pbip_discard_plan":
                    result = await self._handle_discard_plan()
                elif name == "pbip_export_csv":
                    result = await self._handle_export_csv(args)
                elif name == "refactor_audit_log":
                    result = await self._handle_audit_log(args)
                else:
                    result = f"Unknown tool: {name}"

                return [TextContent(type="text", text=result)]

            except Exception as e:
                error_msg = f"Error executing {name}: {str(e)}"
                logger.error(error_msg, exc_info=True)
                return [TextContent(type="text", text=error_msg)]

    async def _run_sync(self, fn, *args):
        return await asyncio.get_event_loop().run_in_executor(None, fn, *args)

    def _resolve(self, args: Dict[str, Any]) -> str:
        name = args.get("name")
        if not name:
            raise ValueError("'name' is required")
        return self.service.find_node_id(args.get("kind"), name, args.get("table"))

    # ==================== PROJECT HANDLERS ====================

    async def _handle_load_project(self, args: Dict[str, Any]) -> str:
        """Load a PBIP project"""
        try:
            path = args.get("path")
            if not path:
                return "Error: 'path' is required"

            stats = await self.service.load_project(path, args.get("semantic_model"), args.get("report"))

            result = "=== PBIP Project Loaded ===\n\n"
            result += f"Project: {path}\n"
            result += f"Semantic model: {self.service.model.semantic_model_folder}\n"
            result += f"Report: {self.service.model.report_folder or '(none)'}\n\n"
            result += f"Tables: {stats['table_count']}\n"
            result += f"Measures: {stats['measure_count']}\n"
            result += f"Columns: {stats['column_count']}\n"
            result += f"Visuals: {stats['visual_count']}\n"
            result += f"Relationships: {stats['relationship_count']}\n"
            result += f"Dependencies: {stats['edge_count']}\n"

            if stats['orphaned_count']:
                result += f"\nWARNING: {stats['orphaned_count']} orphaned reference(s). Use pbip_orphaned_references.\n"
            if stats['skipped_count']:
                result += f"WARNING: {stats['skipped_count']} file(s) could not be parsed. Use pbip_model_stats.\n"
            return result

        except Exception as e:
            logger.error(f"PBIP load error: {e}")
            return f"Error: {str(e)}"

    async def _handle_model_stats(self) -> str:
        """Model statistics and health check"""
        try:
            stats = await self._run_sync(self.service.statistics)

            result = "=== PBIP Model Statistics ===\n\n"
            result += f"Project: {stats['project']}\n"
            result += f"Total nodes: {stats['total_nodes']}\n"
            for kind, count in stats['counts_by_kind'].items():
                result += f"  {kind}: {count}\n"
            result += f"Dependencies: {stats['edge_count']}\n"
            result += f"Relationships: {stats['relationship_count']}\n"
            result += f"Hierarchies: {stats['hierarchy_count']}\n"
            result += f"Pages: {stats['page_count']}\n\n"

            result += f"Orphaned references: {stats['orphaned_count']}\n"
            if stats['measures_with_orphans']:
                result += f"Objects with orphaned references: {', '.join(stats['measures_with_orphans'][:20])}\n"

            if stats['skipped']:
                result += f"\n--- Skipped ({stats['skipped_count']}) ---\n"
                for skip in stats['skipped']:
                    result += f"  [{skip['kind']}] {skip['source']}: {skip['reason']}\n"

            if stats['warnings']:
                result += "\n--- Warnings ---\n"
                for warning in stats['warnings']:
                    result += f"  {warning}\n"
            return result

        except Exception as e:
            logger.error(f"PBIP stats error: {e}")
            return f"Error: {str(e)}"

    # ==================== ANALYSIS HANDLERS ====================

    async def _handle_closure(self, args: Dict[str, Any], upstream: bool) -> str:
        """Upstream or downstream dependencies of an object"""
        try:
            node_id = self._resolve(args)
            max_depth = args.get("max_depth")
            fn = self.service.upstream if upstream else self.service.downstream
            grouped = await self._run_sync(fn, node_id, max_depth)

            direction = "Upstream (depends on)" if upstream else "Downstream (used by)"
            result = f"=== {direction}: {node_id} ===\n\n"
            if not grouped.total_count:
                return result + "No dependencies found.\n"
            result += format_grouped_nodes(grouped)
            result += f"\nTotal: {grouped.total_count}\n"
            return result

        except Exception as e:
            logger.error(f"PBIP dependency error: {e}")
            return f"Error: {str(e)}"

    async def _handle_analyze_rename(self, args: Dict[str, Any]) -> str:
        """Impact of renaming an object"""
        try:
            node_id = self._resolve(args)
            impact = await self._run_sync(self.service.analyze_rename, node_id)

            result = f"=== Rename Impact: {impact.node_name} ({impact.node_kind.value}) ===\n\n"
            result += f"--- Upstream ({impact.upstream.total_count}) ---\n"
            result += format_grouped_nodes(impact.upstream) or "  (none)\n"
            result += f"\n--- Downstream ({impact.downstream.total_count}) ---\n"
            result += format_grouped_nodes(impact.downstream) or "  (none)\n"
            result += "\nUse pbip_plan_rename to see the exact file edits.\n"
            return result

        except Exception as e:
            logger.error(f"PBIP rename analysis error: {e}")
            return f"Error: {str(e)}"

    async def _handle_analyze_delete(self, args: Dict[str, Any]) -> str:
        """Delete risk of an object"""
        try:
            node_id = self._resolve(args)
            analysis = await self._run_sync(self.service.analyze_delete, node_id)
            return format_delete_analysis(analysis)

        except Exception as e:
            logger.error(f"PBIP delete analysis error: {e}")
            return f"Error: {str(e)}"

    async def _handle_detect_cycles(self) -> str:
        """Circular dependencies"""
        try:
            cycles = await self._run_sync(self.service.detect_cycles)

            if not cycles:
                return "No circular dependencies found."

            result = f"=== Circular Dependencies ({len(cycles)}) ===\n\n"
            for i, cycle in enumerate(cycles, 1):
                result += f"{i}. {' -> '.join(cycle)}\n"
            return result

        except Exception as e:
            logger.error(f"PBIP cycle detection error: {e}")
            return f"Error: {str(e)}"

    async def _handle_orphaned_references(self) -> str:
        """References whose target does not exist"""
        try:
            orphans = self.service.orphaned_references()

            if not orphans:
                return "No orphaned references found."

            result = f"=== Orphaned References ({len(orphans)}) ===\n\n"
            for orphan in orphans:
                result += f"  {orphan['source_id']} -> {orphan['referenced_name']} ({orphan['kind']})\n"
            return result

        except Exception as e:
            logger.error(f"PBIP orphan scan error: {e}")
            return f"Error: {str(e)}"

    async def _handle_export_csv(self, args: Dict[str, Any]) -> str:
        """Export impact/delete analysis to CSV"""
        try:
            node_id = self._resolve(args)
            mode = args.get("mode", "impact")
            output_path = args.get("output_path")
            if not output_path:
                return "Error: 'output_path' is required"

            count = await self._run_sync(self.service.export_csv, node_id, mode, output_path)
            return f"Exported {count} {mode} row(s) for {node_id} to {output_path}"

        except Exception as e:
            logger.error(f"PBIP CSV export error: {e}")
            return f"Error: {str(e)}"

    # ==================== REFACTOR HANDLERS ====================

    async def _handle_plan_rename(self, args: Dict[str, Any]) -> str:
        """Plan a cascading rename"""
        try:
            kind = args.get("kind")
            old_name = args.get("old_name")
            new_name = args.get("new_name")
            if not kind or not old_name or new_name is None:
                return "Error: 'kind', 'old_name' and 'new_name' are required"

            try:
                change_set = await self._run_sync(
                    self.service.plan_rename, kind, old_name, new_name, args.get("table")
                )
            except RenameRejectedError as e:
                result = f"REJECTED ({e.code.value}): {e}\n"
                for warning in e.warnings:
                    result += f"  Warning: {warning}\n"
                return result

            summary = change_set.summary()
            result = f"=== Rename Plan: {kind} '{old_name}' -> '{change_set.new_name}' ===\n\n"
            result += f"Total changes: {summary['total_changes']}\n"
            for change_type, count in summary['by_type'].items():
                result += f"  {change_type}: {count}\n"

            result += f"\n--- Files ({len(summary['files'])}) ---\n"
            for f in summary['files']:
                result += f"  - {f}\n"

            result += "\n--- Changes ---\n"
            for entry in change_set.entries:
                result += f"  [{entry.change_type}] {entry.description}\n"
                if args.get("show_changes"):
                    result += f"      - {json.dumps(entry.old_content)}\n"
                    result += f"      + {json.dumps(entry.new_content)}\n"

            for warning in change_set.warnings:
                result += f"\nWarning: {warning}"

            result += "\nUse pbip_apply_plan to write these changes or pbip_discard_plan to drop them.\n"
            return result

        except Exception as e:
            logger.error(f"PBIP plan rename error: {e}")
            return f"Error: {str(e)}"

    async def _handle_apply_plan(self) -> str:
        """Apply the pending rename plan"""
        try:
            pending = self.service.pending
            if pending is None:
                return "No pending rename plan. Use 'pbip_plan_rename' first."
            label = f"{pending.target.value} '{pending.old_name}' -> '{pending.new_name}'"

            applied = await self.service.apply_pending()

            result = f"=== Rename Applied: {label} ===\n\n"
            result += f"Files modified: {applied.files_modified}\n"
            result += f"Total changes: {applied.total_changes}\n\n"
            for f in applied.files[:20]:
                result += f"  - {f}\n"
            if len(applied.files) > 20:
                result += f"  ... and {len(applied.files) - 20} more\n"

            if applied.warnings:
                result += "\n--- Warnings ---\n"
                for warning in applied.warnings:
                    result += f"  {warning}\n"

            result += "\nProject reloaded. Reopen the project in Power BI Desktop to see the changes.\n"
            return result

        except PartialRollbackError as e:
            logger.error(f"PBIP apply error with partial rollback: {e}")
            return f"CRITICAL: {str(e)}\nFailed restores:\n" + "\n".join(f"  {r}" for r in e.rollback_errors)
        except ApplyError as e:
            logger.error(f"PBIP apply error: {e}")
            return f"Error: {str(e)}"
        except Exception as e:
            logger.error(f"PBIP apply error: {e}")
            return f"Error: {str(e)}"

    async def _handle_discard_plan(self) -> str:
        if self.service.discard_pending():
            return "Pending rename plan discarded."
        return "No pending rename plan."

    async def _handle_audit_log(self, args: Dict[str, Any]) -> str:
        """View recent audit log entries"""
        try:
            count = args.get("count", 10)

            if not self.service.audit:
                return "Audit logging is not enabled."

            events = self.service.audit.get_recent_events(count)

            if not events:
                return "No audit log entries found."

            result = f"=== Recent Refactor Audit Log ({len(events)} entries) ===\n\n"

            for event in events[-count:]:
                timestamp = event.get('timestamp', 'N/A')
                event_type = event.get('event_type', 'unknown')
                severity = event.get('severity', 'info')
                details = event.get('details', {})

                result += f"[{timestamp}] [{severity.upper()}] {event_type}\n"
                result += f"  {event.get('message', '')}\n"

                if event_type in ('apply_success', 'apply_failure'):
                    result += f"  Transaction: {details.get('transaction_id', 'N/A')}\n"
                    result += f"  Files: {len(details.get('files', []))}, Changes: {details.get('changes', 0)}\n"
                elif event_type == 'rollback_failure':
                    for failure in details.get('failures', []):
                        result += f"  Not restored: {failure}\n"

                result += "\n"

            return result

        except Exception as e:
            logger.error(f"Audit log error: {e}")
            return f"Error reading audit log: {str(e)}"

    async def run(self):
        """Run the MCP server"""
        async with stdio_server() as (read_stream, write_stream):
            logger.info("PBIP Lineage MCP Server starting...")
            await self.server.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name="pbip-lineage-mcp",
                    server_version="1.0.0",
                    capabilities=self.server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={}
                    )
                )
            )


def main():
    """Main entry point"""
    server = PBIPLineageMCPServer()
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
