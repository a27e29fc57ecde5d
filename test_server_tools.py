"""
Tool Test Suite for PBIP Lineage MCP Server
Runs every tool handler against a generated sample project
"""
import asyncio
import os
import shutil
import sys
import tempfile

sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from pbip_test_project import build_sales_project

# Test results tracking
test_results = {
    'passed': [],
    'failed': []
}


def log_pass(test_name: str, message: str = ""):
    test_results['passed'].append(test_name)
    print(f"  [PASS] {test_name}" + (f" - {message}" if message else ""))


def log_fail(test_name: str, error: str):
    test_results['failed'].append((test_name, error))
    print(f"  [FAIL] {test_name} - {error}")


def _run(name, test):
    try:
        test()
    except AssertionError as e:
        log_fail(name, str(e) or "assertion failed")
    except Exception as e:
        log_fail(name, f"{type(e).__name__}: {e}")


def _make_server(log_dir: str):
    os.environ["AUDIT_LOG_DIR"] = log_dir
    os.environ["ENABLE_AUDIT"] = "true"
    os.environ["PBIP_READ_ONLY"] = "false"
    from server import PBIPLineageMCPServer
    return PBIPLineageMCPServer()


def run_tool_tests(project: str, log_dir: str, export_dir: str):
    """Call the tools in the order a client would"""
    print("\n" + "=" * 60)
    print("TESTING MCP TOOLS")
    print("=" * 60)

    server = _make_server(log_dir)

    def load_project():
        result = asyncio.run(server._handle_load_project({"path": project}))
        assert "=== PBIP Project Loaded ===" in result, result
        assert "Tables: 4" in result and "Measures: 4" in result, result
        assert "Visuals: 2" in result and "Relationships: 1" in result, result
        assert "WARNING" not in result, result
        log_pass("pbip_load_project")

    def load_missing_path():
        result = asyncio.run(server._handle_load_project({}))
        assert result == "Error: 'path' is required"
        log_pass("pbip_load_project (no path)")

    def model_stats():
        result = asyncio.run(server._handle_model_stats())
        assert "Total nodes: 21" in result, result
        assert "Orphaned references: 0" in result, result
        assert "Hierarchies: 1" in result and "Pages: 1" in result, result
        log_pass("pbip_model_stats")

    def downstream():
        result = asyncio.run(server._handle_closure(
            {"kind": "column", "table": "Sales", "name": "Amount"}, upstream=False))
        assert "Downstream (used by): Sales.Amount" in result, result
        assert "[depth 1] Total Sales" in result, result
        assert "Total: 5" in result, result
        log_pass("pbip_downstream")

    def upstream_limited():
        result = asyncio.run(server._handle_closure(
            {"kind": "measure", "name": "Sales per Customer", "max_depth": 1}, upstream=True))
        assert "[depth 1] Total Sales" in result, result
        assert "[depth 1] Customer Count" in result, result
        assert "Amount" not in result, result
        log_pass("pbip_upstream (max_depth=1)")

    def unknown_object():
        result = asyncio.run(server._handle_closure({"kind": "measure", "name": "Nope"}, upstream=True))
        assert result.startswith("Error:"), result
        result = asyncio.run(server._handle_closure({"kind": "column", "name": "Amount"}, upstream=True))
        assert "'table' is required" in result, result
        log_pass("unknown object / missing table")

    def analyze_rename():
        result = asyncio.run(server._handle_analyze_rename({"kind": "measure", "name": "total sales"}))
        assert "=== Rename Impact: Total Sales (measure) ===" in result, result
        assert "Sales per Customer" in result, result
        log_pass("pbip_analyze_rename", "case-insensitive lookup")

    def analyze_delete():
        result = asyncio.run(server._handle_analyze_delete({"kind": "measure", "name": "Sales Count"}))
        assert "Risk level: SAFE" in result, result
        result = asyncio.run(server._handle_analyze_delete(
            {"kind": "column", "table": "Sales", "name": "CustomerKey"}))
        assert "Risk level: DANGEROUS" in result, result
        assert "Sales[CustomerKey] -> Customer[CustomerKey]" in result, result
        log_pass("pbip_analyze_delete")

    def detect_cycles():
        result = asyncio.run(server._handle_detect_cycles())
        assert result == "No circular dependencies found.", result
        log_pass("pbip_detect_cycles")

    def orphaned_references():
        result = asyncio.run(server._handle_orphaned_references())
        assert result == "No orphaned references found.", result
        log_pass("pbip_orphaned_references")

    def export_csv():
        output = os.path.join(export_dir, "impact.csv")
        result = asyncio.run(server._handle_export_csv(
            {"kind": "measure", "name": "Total Sales", "mode": "impact", "output_path": output}))
        assert result.startswith("Exported "), result
        with open(output, 'r', encoding='utf-8') as f:
            lines = f.read().splitlines()
        assert len(lines) > 1 and "Total Sales" in lines[1], lines

        result = asyncio.run(server._handle_export_csv(
            {"kind": "measure", "name": "Total Sales", "mode": "bogus", "output_path": output}))
        assert "Unknown export mode" in result, result
        log_pass("pbip_export_csv", f"{len(lines) - 1} rows")

    def plan_rejected():
        result = asyncio.run(server._handle_plan_rename(
            {"kind": "measure", "old_name": "Total Sales", "new_name": "Sales Count"}))
        assert result.startswith("REJECTED ("), result
        assert server.service.pending is None
        log_pass("pbip_plan_rename (rejected)")

    def plan_and_apply():
        result = asyncio.run(server._handle_plan_rename(
            {"kind": "measure", "old_name": "Total Sales", "new_name": "Revenue", "show_changes": True}))
        assert "Total changes: 4" in result, result
        assert "+ " in result, result
        assert server.service.pending is not None

        result = asyncio.run(server._handle_apply_plan())
        assert "=== Rename Applied: measure 'Total Sales' -> 'Revenue' ===" in result, result
        assert "Files modified: 4" in result, result
        assert server.service.find_node_id("measure", "Revenue") == "Measure.Revenue"
        log_pass("pbip_plan_rename + pbip_apply_plan")

    def apply_without_plan():
        result = asyncio.run(server._handle_apply_plan())
        assert result.startswith("No pending rename plan"), result
        log_pass("pbip_apply_plan (nothing pending)")

    def discard_plan():
        asyncio.run(server._handle_plan_rename(
            {"kind": "measure", "old_name": "Revenue", "new_name": "Total Sales"}))
        assert asyncio.run(server._handle_discard_plan()) == "Pending rename plan discarded."
        assert asyncio.run(server._handle_discard_plan()) == "No pending rename plan."
        log_pass("pbip_discard_plan")

    def audit_log():
        result = asyncio.run(server._handle_audit_log({"count": 20}))
        assert "=== Recent Refactor Audit Log" in result, result
        for event_type in ("project_loaded", "rename_rejected", "rename_planned", "apply_success"):
            assert event_type in result, f"missing {event_type}"
        log_pass("refactor_audit_log")

    for name, test in (
        ("pbip_load_project", load_project),
        ("pbip_load_project (no path)", load_missing_path),
        ("pbip_model_stats", model_stats),
        ("pbip_downstream", downstream),
        ("pbip_upstream", upstream_limited),
        ("unknown object", unknown_object),
        ("pbip_analyze_rename", analyze_rename),
        ("pbip_analyze_delete", analyze_delete),
        ("pbip_detect_cycles", detect_cycles),
        ("pbip_orphaned_references", orphaned_references),
        ("pbip_export_csv", export_csv),
        ("pbip_plan_rename (rejected)", plan_rejected),
        ("pbip_plan_rename + pbip_apply_plan", plan_and_apply),
        ("pbip_apply_plan (nothing pending)", apply_without_plan),
        ("pbip_discard_plan", discard_plan),
        ("refactor_audit_log", audit_log),
    ):
        _run(name, test)


def test_mcp_tools():
    """Build the sample project in a temp dir and run every tool against it"""
    failed_before = len(test_results['failed'])
    work_dir = tempfile.mkdtemp()
    saved = {key: os.environ.get(key) for key in ("AUDIT_LOG_DIR", "ENABLE_AUDIT", "PBIP_READ_ONLY")}
    try:
        project = os.path.join(work_dir, "project")
        log_dir = os.path.join(work_dir, "logs")
        build_sales_project(project)
        run_tool_tests(project, log_dir, work_dir)
    finally:
        for key, value in saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        shutil.rmtree(work_dir, ignore_errors=True)

    failures = test_results['failed'][failed_before:]
    assert not failures, failures


def main():
    print("\n" + "=" * 60)
    print("PBIP LINEAGE MCP SERVER - TOOL TEST SUITE")
    print("=" * 60)

    try:
        test_mcp_tools()
    except AssertionError:
        pass

    print("\n" + "=" * 60)
    print("TEST SUMMARY")
    print("=" * 60)
    print(f"  Passed: {len(test_results['passed'])}")
    print(f"  Failed: {len(test_results['failed'])}")
    for name, error in test_results['failed']:
        print(f"    - {name}: {error}")

    return 0 if not test_results['failed'] else 1


if __name__ == "__main__":
    sys.exit(main())
