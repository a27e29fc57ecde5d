"""
Test transactional apply and the lineage service

Tests for:
1. Measure and table rename round trips restore the original files exactly
2. A failed write rolls back every file already modified
3. Rollback failures are reported as PartialRollbackError
4. Write permission, policy limits, consumed and stale ChangeSets
5. Audit trail of a plan/apply session
"""
import sys
import os
import asyncio
import tempfile
import shutil

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from pbip_file_store import LocalFileStore
from pbip_model_parser import PBIPProjectLoader
from pbip_dependency_graph import build_graph
from pbip_refactor_planner import RefactorPlanner, RejectionCode, RenameRejectedError, StaleChangeSetError
from pbip_change_applier import (
    ApplyError,
    ChangeSetConsumedError,
    PartialRollbackError,
    TransactionalApplier,
    WritePermissionError,
)
from pbip_lineage_service import LineageSettings, PBIPLineageService
from security.audit_logger import AuditLogger
from security.refactor_policy import RefactorPolicyEngine
from pbip_test_project import (
    CUSTOMER_TMDL,
    MODEL_DIR,
    PAGE_DIR,
    SALES_TMDL,
    TABLES_DIR,
    build_sales_project,
    read_file,
    snapshot,
    write_file,
)


def log_pass(test_name, msg=""):
    print(f"  [PASS] {test_name}: {msg}")


def log_fail(test_name, msg=""):
    print(f"  [FAIL] {test_name}: {msg}")


class FailingStore(LocalFileStore):
    """LocalFileStore whose writes to one file fail (times=None: always)"""

    def __init__(self, root_path, fail_suffix, times=1):
        super().__init__(root_path)
        self.fail_suffix = fail_suffix
        self.remaining = times

    async def write_file(self, path, text):
        if path.endswith(self.fail_suffix) and (self.remaining is None or self.remaining > 0):
            if self.remaining is not None:
                self.remaining -= 1
            raise OSError(f"Simulated write failure: {path}")
        await super().write_file(path, text)


class Workspace:
    """Sample project plus a separate audit log folder"""

    def __enter__(self):
        self.project = build_sales_project(tempfile.mkdtemp())
        self.log_dir = tempfile.mkdtemp()
        self.original = snapshot(self.project)
        return self

    def __exit__(self, *exc):
        shutil.rmtree(self.project, ignore_errors=True)
        shutil.rmtree(self.log_dir, ignore_errors=True)
        return False

    def service(self, store=None, **settings):
        service = PBIPLineageService(LineageSettings(**settings), policy=RefactorPolicyEngine(),
                                     audit=AuditLogger(log_dir=self.log_dir))
        if store is None:
            asyncio.run(service.load_project(self.project))
        else:
            asyncio.run(service.load_store(store, self.project))
        return service

    def planner(self, store):
        model = asyncio.run(PBIPProjectLoader(store).load())
        return RefactorPlanner(build_graph(model))


def test_measure_round_trip():
    """M -> M2 -> M leaves every file byte-identical"""
    print("\n" + "="*70)
    print("TEST 1: Measure Rename Round Trip")
    print("="*70)

    with Workspace() as ws:
        service = ws.service()
        service.plan_rename("measure", "Total Sales", "Revenue")
        result = asyncio.run(service.apply_pending())
        assert result.files_modified == 4
        assert result.total_changes == 4
        assert result.warnings == []
        assert service.pending is None
        log_pass("Apply", f"{result.total_changes} changes in {result.files_modified} files")

        assert "measure 'Revenue' = SUM(Sales[Amount])" in read_file(ws.project, TABLES_DIR + "/Sales.tmdl")
        assert '"Property": "Revenue"' in read_file(ws.project, PAGE_DIR + "/visuals/salesByRegion/visual.json")
        assert "NAMEOF('Sales'[Revenue])" in read_file(ws.project, TABLES_DIR + "/Metric Selector.tmdl")

        # The reloaded graph resolves every reference to the new name
        assert service.find_node_id("measure", "Revenue") == "Measure.Revenue"
        assert service.orphaned_references() == []
        downstream = service.downstream("Measure.Revenue")
        assert downstream.contains("Measure.Sales per Customer")
        assert downstream.contains("overview/salesByRegion")
        assert downstream.contains("FieldParam.Metric Selector")
        log_pass("Reloaded graph", f"{downstream.total_count} dependents of [Revenue]")

        service.plan_rename("measure", "Revenue", "Total Sales")
        asyncio.run(service.apply_pending())
        assert snapshot(ws.project) == ws.original
        log_pass("Round trip", "files identical to the original")


def test_table_round_trip():
    """Table rename moves the file and back again"""
    print("\n" + "="*70)
    print("TEST 2: Table Rename Round Trip")
    print("="*70)

    with Workspace() as ws:
        service = ws.service()
        service.plan_rename("table", "Sales", "Orders")
        result = asyncio.run(service.apply_pending())
        assert result.files_modified == 6
        assert result.files[0] == TABLES_DIR + "/Orders.tmdl"

        files = snapshot(ws.project)
        assert TABLES_DIR + "/Sales.tmdl" not in files
        orders = files[TABLES_DIR + "/Orders.tmdl"]
        assert orders.startswith("table Orders\n")
        assert "SUM(Orders[Amount])" in orders
        assert "COUNTROWS(Orders)" in orders
        assert service.orphaned_references() == []
        assert service.find_node_id("column", "Amount", "Orders") == "Orders.Amount"
        log_pass("Sales -> Orders", f"{result.total_changes} changes")

        service.plan_rename("table", "Orders", "Sales")
        asyncio.run(service.apply_pending())
        assert snapshot(ws.project) == ws.original
        log_pass("Round trip", "files identical to the original")


def test_column_rename_apply():
    """Join key rename keeps the relationship intact"""
    print("\n" + "="*70)
    print("TEST 3: Column Rename Apply")
    print("="*70)

    with Workspace() as ws:
        service = ws.service()
        service.plan_rename("column", "CustomerKey", "CustKey", "Sales")
        asyncio.run(service.apply_pending())

        relationships = service.model.relationships
        assert len(relationships) == 1
        assert (relationships[0].from_table, relationships[0].from_column) == ("Sales", "CustKey")
        analysis = service.analyze_delete(service.find_node_id("column", "CustKey", "Sales"))
        assert len(analysis.direct_breaks.relationships) == 1
        log_pass("Relationship follows the column", relationships[0].from_column_ref)


def test_rollback():
    """A failure in the middle restores every file"""
    print("\n" + "="*70)
    print("TEST 4: Rollback")
    print("="*70)

    with Workspace() as ws:
        store = FailingStore(ws.project, "salesByRegion/visual.json")
        service = ws.service(store)
        change_set = service.plan_rename("measure", "Total Sales", "Revenue")
        try:
            asyncio.run(service.apply_pending())
            assert False, "expected ApplyError"
        except PartialRollbackError as e:
            assert False, f"rollback should have succeeded: {e}"
        except ApplyError as e:
            assert e.rolled_back
            assert "changes were rolled back" in str(e)
            assert e.path.endswith("visual.json")
            log_pass("Write failure", str(e))

        assert snapshot(ws.project) == ws.original
        assert service.pending is change_set
        assert not change_set.consumed
        log_pass("Files restored", "identical to the original")

        # The store only fails once, so the same plan can be retried
        result = asyncio.run(service.apply_pending())
        assert result.files_modified == 4
        log_pass("Retry", "applied")

        events = [e['event_type'] for e in service.audit.get_recent_events()]
        assert "apply_failure" in events
        assert "rollback_success" in events
        assert events[-1] == "project_loaded"
        assert "apply_success" in events
        log_pass("Audit trail", ", ".join(events))


def test_table_rename_rollback():
    """A failure after the file rename moves the file back"""
    print("\n" + "="*70)
    print("TEST 5: Table Rename Rollback")
    print("="*70)

    with Workspace() as ws:
        store = FailingStore(ws.project, "model.tmdl")
        service = ws.service(store)
        service.plan_rename("table", "Sales", "Orders")
        try:
            asyncio.run(service.apply_pending())
            assert False, "expected ApplyError"
        except ApplyError as e:
            assert not isinstance(e, PartialRollbackError), str(e)
            log_pass("Write failure", str(e))

        files = snapshot(ws.project)
        assert TABLES_DIR + "/Orders.tmdl" not in files
        assert files == ws.original
        log_pass("File rename undone", "Sales.tmdl restored")


def test_partial_rollback():
    """When the restore also fails the error says so"""
    print("\n" + "="*70)
    print("TEST 6: Partial Rollback")
    print("="*70)

    with Workspace() as ws:
        store = FailingStore(ws.project, "salesByRegion/visual.json", times=None)
        service = ws.service(store)
        service.plan_rename("measure", "Total Sales", "Revenue")
        try:
            asyncio.run(service.apply_pending())
            assert False, "expected PartialRollbackError"
        except PartialRollbackError as e:
            assert isinstance(e, ApplyError)
            assert not e.rolled_back
            assert e.rollback_errors
            assert "manual recovery" in str(e)
            log_pass("Rollback failure reported", str(e))

        # Files written before the failure were still restored
        files = snapshot(ws.project)
        assert files[TABLES_DIR + "/Sales.tmdl"] == ws.original[TABLES_DIR + "/Sales.tmdl"]
        assert files[TABLES_DIR + "/Customer.tmdl"] == ws.original[TABLES_DIR + "/Customer.tmdl"]
        events = [e['event_type'] for e in service.audit.get_recent_events()]
        assert "rollback_failure" in events
        log_pass("Other files restored", "Sales.tmdl, Customer.tmdl")


def test_permission_and_policy():
    """Refused writes modify nothing"""
    print("\n" + "="*70)
    print("TEST 7: Permission and Policy")
    print("="*70)

    with Workspace() as ws:
        store = LocalFileStore(ws.project, read_only=True)
        change_set = ws.planner(store).plan_rename("measure", "Total Sales", "Revenue")
        try:
            asyncio.run(TransactionalApplier(store).apply(change_set))
            assert False, "expected WritePermissionError"
        except WritePermissionError as e:
            log_pass("Read-only store", str(e))
        assert snapshot(ws.project) == ws.original
        assert not change_set.consumed

        policy = RefactorPolicyEngine()
        policy.load_from_dict({'global': {'max_changes_per_apply': 2}})
        store = LocalFileStore(ws.project)
        try:
            asyncio.run(TransactionalApplier(store, policy=policy).apply(change_set))
            assert False, "expected WritePermissionError"
        except WritePermissionError as e:
            assert "limit is 2" in str(e)
            log_pass("Change limit", str(e))
        assert snapshot(ws.project) == ws.original

        service = ws.service(read_only=True)
        try:
            service.plan_rename("measure", "Total Sales", "Revenue")
            assert False, "expected RenameRejectedError"
        except RenameRejectedError as e:
            assert e.code == RejectionCode.POLICY_DENIED
            log_pass("Read-only service", str(e))


def test_consumed_and_stale():
    """A ChangeSet is single use and bound to its graph snapshot"""
    print("\n" + "="*70)
    print("TEST 8: Consumed and Stale ChangeSets")
    print("="*70)

    with Workspace() as ws:
        store = LocalFileStore(ws.project)
        change_set = ws.planner(store).plan_rename("measure", "Total Sales", "Revenue")
        asyncio.run(TransactionalApplier(store).apply(change_set))
        assert change_set.consumed
        assert len(change_set) == 0
        try:
            asyncio.run(TransactionalApplier(store).apply(change_set))
            assert False, "expected ChangeSetConsumedError"
        except ChangeSetConsumedError as e:
            log_pass("Second apply", str(e))

    with Workspace() as ws:
        service = ws.service()
        change_set = service.plan_rename("measure", "Total Sales", "Revenue")
        asyncio.run(service.reload())
        assert service.pending is None
        try:
            asyncio.run(service.apply(change_set))
            assert False, "expected StaleChangeSetError"
        except StaleChangeSetError as e:
            log_pass("Plan from an old snapshot", str(e))
        assert snapshot(ws.project) == ws.original

        try:
            asyncio.run(service.apply_pending())
            assert False, "expected ValueError"
        except ValueError as e:
            log_pass("Nothing pending", str(e))


def test_pattern_not_found():
    """An edit whose text disappeared is reported, the rest still applies"""
    print("\n" + "="*70)
    print("TEST 9: Pattern Not Found")
    print("="*70)

    with Workspace() as ws:
        store = LocalFileStore(ws.project)
        change_set = ws.planner(store).plan_rename("measure", "Total Sales", "Revenue")
        edited = CUSTOMER_TMDL.replace("DIVIDE([Total Sales], [Customer Count])", "[Customer Count]")
        write_file(ws.project, TABLES_DIR + "/Customer.tmdl", edited)

        result = asyncio.run(TransactionalApplier(store).apply(change_set))
        assert len(result.warnings) == 1
        assert "Pattern not found" in result.warnings[0]
        assert result.files_modified == 3
        assert read_file(ws.project, TABLES_DIR + "/Customer.tmdl") == edited
        log_pass("Missing pattern", result.warnings[0])


def test_case_insensitive_apply():
    """A table named in a different case still updates relationships, visuals and model.tmdl"""
    print("\n" + "="*70)
    print("TEST 10: Case-Insensitive Table Rename")
    print("="*70)

    with Workspace() as ws:
        service = ws.service()
        change_set = service.plan_rename("table", "sales", "Orders")
        assert change_set.old_name == "Sales"
        result = asyncio.run(service.apply_pending())
        assert result.warnings == []

        assert [(r.from_table, r.to_table) for r in service.graph.relationships] == [("Orders", "Customer")]
        assert service.orphaned_references() == []
        assert '"Entity": "Orders"' in read_file(ws.project, PAGE_DIR + "/visuals/salesByRegion/visual.json")
        assert "ref table Orders\n" in read_file(ws.project, MODEL_DIR + "/model.tmdl")
        log_pass("sales -> Orders", f"{result.total_changes} changes, no orphans")


def test_crlf_apply():
    """Multi-line measures in CRLF files are rewritten in place"""
    print("\n" + "="*70)
    print("TEST 11: CRLF Table File")
    print("="*70)

    big_sales = "\n".join([
        "\tmeasure 'Big Sales' = CALCULATE(",
        "\t\t\tSUM(Sales[Amount]),",
        "\t\t\tSales[Amount] > 100)",
        "\t\tlineageTag: 1",
        "",
        "\tcolumn Amount",
        "",
    ])
    crlf = SALES_TMDL.replace("\tcolumn Amount\n", big_sales).replace("\n", "\r\n")

    with Workspace() as ws:
        write_file(ws.project, TABLES_DIR + "/Sales.tmdl", crlf)
        service = ws.service()
        service.plan_rename("column", "Amount", "Net Amount", "Sales")
        result = asyncio.run(service.apply_pending())
        assert result.warnings == [], result.warnings

        sales = read_file(ws.project, TABLES_DIR + "/Sales.tmdl")
        assert "Sales[Amount]" not in sales
        assert "CALCULATE(\r\n\t\t\tSUM(Sales[Net Amount]),\r\n\t\t\tSales[Net Amount] > 100)\r\n" in sales
        assert "\tcolumn 'Net Amount'\r\n" in sales
        assert service.orphaned_references() == []
        log_pass("Amount -> Net Amount", "CRLF preserved, no pattern misses")



def _run(name, test):
    try:
        test()
        return name, True
    except AssertionError as e:
        log_fail(name, str(e))
        return name, False


def main():
    print("\n" + "="*70)
    print("  TRANSACTIONAL APPLY - TEST SUITE")
    print("="*70)

    results = [
        _run("Measure Round Trip", test_measure_round_trip),
        _run("Table Round Trip", test_table_round_trip),
        _run("Column Rename Apply", test_column_rename_apply),
        _run("Rollback", test_rollback),
        _run("Table Rename Rollback", test_table_rename_rollback),
        _run("Partial Rollback", test_partial_rollback),
        _run("Permission and Policy", test_permission_and_policy),
        _run("Consumed and Stale", test_consumed_and_stale),
        _run("Pattern Not Found", test_pattern_not_found),
        _run("Case-Insensitive Table Rename", test_case_insensitive_apply),
        _run("CRLF Table File", test_crlf_apply),
    ]

    print("\n" + "="*70)
    print("  TEST SUMMARY")
    print("="*70)

    passed = sum(1 for _, r in results if r)
    for name, result in results:
        print(f"  [{'OK' if result else 'XX'}] {'PASS' if result else 'FAIL':5s} - {name}")
    print(f"\n  Total: {passed}/{len(results)} test groups passed")

    return 0 if passed == len(results) else 1


if __name__ == "__main__":
    sys.exit(main())
