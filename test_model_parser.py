"""
Test the PBIP model parser

Tests for:
1. Table TMDL: measures, columns, hierarchies, calculation groups, field parameters
2. Relationship and model.tmdl parsing
3. PBIR visual.json field extraction
4. Whole-project loading through LocalFileStore, including skipped files
5. Report selection through definition.pbir
"""
import sys
import os
import json
import asyncio
import tempfile
import shutil

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from pbip_file_store import LocalFileStore
from pbip_model_parser import (
    PBIPProjectLoader,
    ProjectLayoutError,
    TMDLParseError,
    parse_field_parameter_source,
    parse_model_table_refs,
    parse_relationships_tmdl,
    parse_table_tmdl,
    parse_visual_json,
)
from pbip_test_project import (
    CUSTOMER_TMDL,
    METRIC_SELECTOR_TMDL,
    MODEL_TMDL,
    SALES_BY_REGION_VISUAL,
    SALES_TMDL,
    TABLES_DIR,
    TIME_INTELLIGENCE_TMDL,
    build_sales_project,
    write_file,
)


def log_pass(test_name, msg=""):
    print(f"  [PASS] {test_name}: {msg}")


def log_fail(test_name, msg=""):
    print(f"  [FAIL] {test_name}: {msg}")


def test_parse_table():
    """Test measures and columns of a plain table"""
    print("\n" + "="*70)
    print("TEST 1: Table TMDL")
    print("="*70)

    table = parse_table_tmdl(SALES_TMDL, "tables/Sales.tmdl")
    assert table.name == "Sales"
    assert table.declaration == "table Sales\n"
    log_pass("Table declaration", repr(table.declaration))

    assert [m.name for m in table.measures] == ["Total Sales", "Sales Count"]
    total = table.measures[0]
    assert total.expression == "SUM(Sales[Amount])"
    assert total.declaration == "measure 'Total Sales' ="
    assert total.name_token == "'Total Sales'"
    assert total.format_string == "#,0.00"
    assert total.table == "Sales"
    log_pass("Measure", f"{total.name} = {total.expression}")

    assert [c.name for c in table.columns] == ["Amount", "CustomerKey", "OrderDate"]
    amount = table.columns[0]
    assert amount.declaration == "column Amount\n"
    assert amount.data_type == "decimal"
    assert amount.summarize_by == "sum"
    assert amount.expression is None
    log_pass("Columns", str([c.name for c in table.columns]))

    customer = parse_table_tmdl(CUSTOMER_TMDL, "tables/Customer.tmdl")
    assert customer.columns[0].is_hidden
    assert len(customer.hierarchies) == 1
    assert customer.hierarchies[0].name == "Geography"
    assert customer.hierarchies[0].levels == ["Region"]
    log_pass("Hierarchy", "Geography -> [Region]")


def test_multiline_measure():
    """Test a measure whose expression spans several lines"""
    print("\n" + "="*70)
    print("TEST 2: Multi-line Measure")
    print("="*70)

    content = "\n".join([
        "table Sales",
        "",
        "\tmeasure 'Big Sales' =",
        "\t\t\tCALCULATE(",
        "\t\t\t\t[Total Sales],",
        "\t\t\t\tSales[Amount] > 100",
        "\t\t\t)",
        "\t\tformatString: 0",
        "\t\tlineageTag: 1",
        "",
        "\tcolumn Amount",
        "\t\tdataType: decimal",
        "",
    ])
    table = parse_table_tmdl(content, "tables/Sales.tmdl")
    measure = table.measures[0]
    assert measure.expression.startswith("CALCULATE(")
    assert measure.expression.endswith(")")
    assert "[Total Sales]" in measure.expression
    assert "formatString" not in measure.expression
    assert measure.format_string == "0"
    assert measure.declaration == "measure 'Big Sales' ="
    log_pass("Multi-line expression", "stops at formatString")

    # CRLF file, expression starting on the declaration line
    content = "\r\n".join([
        "table Sales",
        "",
        "\tmeasure 'Big Sales' = CALCULATE(",
        "\t\t\tSUM(Sales[Amount]),",
        "\t\t\tSales[Amount] > 100)",
        "\t\tlineageTag: 1",
        "",
        "\tcolumn Amount",
        "\t\tdataType: decimal",
        "",
    ])
    table = parse_table_tmdl(content, "tables/Sales.tmdl")
    measure = table.measures[0]
    assert measure.expression == "CALCULATE(\r\n\t\t\tSUM(Sales[Amount]),\r\n\t\t\tSales[Amount] > 100)"
    assert measure.expression in content
    assert table.columns[0].declaration == "column Amount\r\n"
    assert table.columns[0].declaration in content
    log_pass("CRLF expression", "matches the file text verbatim")


def test_parse_errors():
    """Files without a table declaration or measures without '=' raise"""
    print("\n" + "="*70)
    print("TEST 3: Parse Errors")
    print("="*70)

    try:
        parse_table_tmdl("// nothing here\n", "tables/Broken.tmdl")
        assert False, "expected TMDLParseError"
    except TMDLParseError as e:
        log_pass("No table declaration", str(e))

    try:
        parse_table_tmdl("table T\n\tmeasure Foo\n", "tables/T.tmdl")
        assert False, "expected TMDLParseError"
    except TMDLParseError as e:
        log_pass("Measure without expression", str(e))


def test_calculation_group_and_field_parameter():
    """Test calculation items and field parameter entries"""
    print("\n" + "="*70)
    print("TEST 4: Calculation Group and Field Parameter")
    print("="*70)

    group = parse_table_tmdl(TIME_INTELLIGENCE_TMDL, "tables/Time Intelligence.tmdl")
    assert group.name == "Time Intelligence"
    assert group.is_calculation_group
    assert group.calculation_group_precedence == 1
    assert [i.name for i in group.calculation_items] == ["YTD", "Current"]
    ytd = group.calculation_items[0]
    assert ytd.expression == "CALCULATE(SELECTEDMEASURE(), DATESYTD(Sales[OrderDate]))"
    assert ytd.uses_selected_measure
    log_pass("Calculation group", f"{len(group.calculation_items)} items")

    param = parse_table_tmdl(METRIC_SELECTOR_TMDL, "tables/Metric Selector.tmdl")
    assert param.is_field_parameter
    assert len(param.field_parameter_entries) == 2
    first, second = param.field_parameter_entries
    assert first.display_name == "Total Sales"
    assert first.ordinal == 0
    assert first.reference.table == "Sales"
    assert first.reference.property == "Total Sales"
    assert first.reference.qualifier == "'Sales'"
    assert second.reference.table == "Customer"
    assert second.reference.property == "Region"
    assert second.ordinal == 1
    log_pass("Field parameter", "2 entries")

    entries = parse_field_parameter_source(
        "{ (\"Sales\", NAMEOF('Measure'[Total Sales]), 0), (\"Region\", NAMEOF('Customer'[Region]), 1) }")
    assert [e.reference.is_measure for e in entries] == [True, False]
    log_pass("Measure table classification", "Measure -> measure, Customer -> column")


def test_relationships_and_model_refs():
    """Test relationships.tmdl and model.tmdl"""
    print("\n" + "="*70)
    print("TEST 5: Relationships and Model References")
    print("="*70)

    content = "\n".join([
        "relationship r1",
        "\tfromColumn: Sales.CustomerKey",
        "\ttoColumn: Customer.CustomerKey",
        "",
        "relationship r2",
        "\tisActive: false",
        "\tfromColumn: 'Order Lines'.'Product Key'",
        "\ttoColumn: Product.'Product Key'",
        "",
        "relationship r3",
        "\tfromColumn: Sales.OrderDate",
        "",
    ])
    relationships, skipped = parse_relationships_tmdl(content, "relationships.tmdl")
    assert len(relationships) == 2
    assert len(skipped) == 1
    assert skipped[0].kind == "relationship"

    r1 = relationships[0]
    assert (r1.from_table, r1.from_column, r1.to_table, r1.to_column) == \
        ("Sales", "CustomerKey", "Customer", "CustomerKey")
    assert r1.from_column_ref == "Sales.CustomerKey"
    assert r1.from_line == "fromColumn: Sales.CustomerKey\n"
    assert r1.is_active
    log_pass("Plain relationship", r1.from_column_ref)

    r2 = relationships[1]
    assert r2.from_table == "Order Lines"
    assert r2.from_column == "Product Key"
    assert r2.is_active is False
    log_pass("Quoted endpoints", f"{r2.from_table}.{r2.from_column}")

    refs = parse_model_table_refs(MODEL_TMDL, "model.tmdl")
    assert [r.table for r in refs] == ["Sales", "Customer", "Time Intelligence", "Metric Selector"]
    assert refs[2].line_text == "ref table 'Time Intelligence'\n"
    log_pass("Model table refs", f"{len(refs)} refs")


def test_parse_visual():
    """Test field extraction from a PBIR visual"""
    print("\n" + "="*70)
    print("TEST 6: Visual JSON")
    print("="*70)

    visual = parse_visual_json(json.dumps(SALES_BY_REGION_VISUAL, indent=2), "salesByRegion", "overview",
                               "visual.json")
    assert visual.visual_type == "clusteredColumnChart"
    assert visual.display_name == "Sales by Region"
    fields = {(f.kind, f.entity, f.property) for f in visual.fields}
    assert fields == {("column", "Customer", "Region"), ("measure", "Sales", "Total Sales")}
    log_pass("Visual fields", str(sorted(fields)))

    try:
        parse_visual_json("[1, 2]", "v", "p", "visual.json")
        assert False, "expected ValueError"
    except ValueError as e:
        log_pass("Non-object JSON", str(e))


def test_load_project():
    """Test loading the whole sample project"""
    print("\n" + "="*70)
    print("TEST 7: Project Loader")
    print("="*70)

    temp_dir = tempfile.mkdtemp()
    try:
        build_sales_project(temp_dir)
        model = asyncio.run(PBIPProjectLoader(LocalFileStore(temp_dir)).load())

        assert model.semantic_model_folder == "Sales.SemanticModel"
        assert model.report_folder == "Sales.Report"
        assert sorted(t.name for t in model.tables) == ["Customer", "Metric Selector", "Sales", "Time Intelligence"]
        assert len(model.measures) == 4
        assert len(model.relationships) == 1
        assert len(model.model_table_refs) == 4
        assert len(model.pages) == 1
        assert model.pages[0].display_name == "Overview"
        assert sorted(model.pages[0].visual_ids) == ["metricCard", "salesByRegion"]
        assert len(model.visuals) == 2
        assert model.skipped == []
        log_pass("Sample project", f"{len(model.tables)} tables, {len(model.visuals)} visuals")

        # A broken table file is skipped, the rest still loads
        write_file(temp_dir, TABLES_DIR + "/Broken.tmdl", "// not a table\n")
        model = asyncio.run(PBIPProjectLoader(LocalFileStore(temp_dir)).load())
        assert len(model.tables) == 4
        assert len(model.skipped) == 1
        assert model.skipped[0].kind == "table"
        assert model.skipped[0].source.endswith("Broken.tmdl")
        log_pass("Broken table skipped", model.skipped[0].reason)
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    empty_dir = tempfile.mkdtemp()
    try:
        asyncio.run(PBIPProjectLoader(LocalFileStore(empty_dir)).load())
        assert False, "expected ProjectLayoutError"
    except ProjectLayoutError as e:
        log_pass("Missing semantic model", str(e))
    finally:
        shutil.rmtree(empty_dir, ignore_errors=True)


def test_report_binding():
    """Test that only a report bound to the loaded semantic model is read"""
    print("\n" + "="*70)
    print("TEST 8: Report Binding")
    print("="*70)

    def pbir(model_folder):
        return json.dumps({"version": "4.0", "datasetReference": {"byPath": {"path": f"../{model_folder}"}}})

    temp_dir = tempfile.mkdtemp()
    try:
        build_sales_project(temp_dir)
        for target in ("Other.SemanticModel", "BigSales.SemanticModel"):
            write_file(temp_dir, "Sales.Report/definition.pbir", pbir(target))
            model = asyncio.run(PBIPProjectLoader(LocalFileStore(temp_dir)).load())
            assert model.semantic_model_folder == "Sales.SemanticModel"
            assert model.report_folder is None, target
            assert model.visuals == [] and model.pages == []
            log_pass(f"Report bound to {target}", "not loaded")

        # A second report that does point at Sales.SemanticModel is picked instead
        write_file(temp_dir, "Bound.Report/definition.pbir", pbir("Sales.SemanticModel"))
        model = asyncio.run(PBIPProjectLoader(LocalFileStore(temp_dir)).load())
        assert model.report_folder == "Bound.Report"
        log_pass("Bound report chosen", model.report_folder)

        model = asyncio.run(PBIPProjectLoader(LocalFileStore(temp_dir), semantic_model="Sales").load())
        assert model.semantic_model_folder == "Sales.SemanticModel"
        assert model.report_folder == "Bound.Report"
        log_pass("Explicit semantic model", model.semantic_model_folder)

        for kwargs in ({"report": "Sales.Report"}, {"report": "Missing"}, {"semantic_model": "Missing"}):
            try:
                asyncio.run(PBIPProjectLoader(LocalFileStore(temp_dir), **kwargs).load())
                assert False, f"expected ProjectLayoutError for {kwargs}"
            except ProjectLayoutError as e:
                log_pass(f"Rejected {kwargs}", str(e))
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


def _run(name, test):
    try:
        test()
        return name, True
    except AssertionError as e:
        log_fail(name, str(e))
        return name, False


def main():
    print("\n" + "="*70)
    print("  PBIP MODEL PARSER - TEST SUITE")
    print("="*70)

    results = [
        _run("Table TMDL", test_parse_table),
        _run("Multi-line Measure", test_multiline_measure),
        _run("Parse Errors", test_parse_errors),
        _run("Calculation Group / Field Parameter", test_calculation_group_and_field_parameter),
        _run("Relationships / Model Refs", test_relationships_and_model_refs),
        _run("Visual JSON", test_parse_visual),
        _run("Project Loader", test_load_project),
        _run("Report Binding", test_report_binding),
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
