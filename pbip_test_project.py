"""
Sample PBIP project used by the test scripts

Layout written under a temp folder:
  Sales.pbip
  Sales.SemanticModel/definition/model.tmdl
  Sales.SemanticModel/definition/relationships.tmdl
  Sales.SemanticModel/definition/tables/{Sales,Customer,Time Intelligence,Metric Selector}.tmdl
  Sales.Report/definition.pbir
  Sales.Report/definition/pages/overview/page.json
  Sales.Report/definition/pages/overview/visuals/{salesByRegion,metricCard}/visual.json
"""
import json
import os
from typing import Dict

MODEL_DIR = "Sales.SemanticModel/definition"
TABLES_DIR = MODEL_DIR + "/tables"
PAGE_DIR = "Sales.Report/definition/pages/overview"

SALES_TMDL = "\n".join([
    "table Sales",
    "\tlineageTag: 5f0c1a2b",
    "",
    "\tmeasure 'Total Sales' = SUM(Sales[Amount])",
    "\t\tformatString: #,0.00",
    "\t\tlineageTag: 6a1d2e3f",
    "",
    "\tmeasure 'Sales Count' = COUNTROWS(Sales)",
    "\t\tlineageTag: 7b2e3f40",
    "",
    "\tcolumn Amount",
    "\t\tdataType: decimal",
    "\t\tlineageTag: 8c3f4051",
    "\t\tsummarizeBy: sum",
    "\t\tsourceColumn: Amount",
    "",
    "\tcolumn CustomerKey",
    "\t\tdataType: int64",
    "\t\tlineageTag: 9d405162",
    "\t\tsummarizeBy: none",
    "\t\tsourceColumn: CustomerKey",
    "",
    "\tcolumn OrderDate",
    "\t\tdataType: dateTime",
    "\t\tlineageTag: ae516273",
    "\t\tsummarizeBy: none",
    "\t\tsourceColumn: OrderDate",
    "",
    "\tpartition Sales = m",
    "\t\tmode: import",
    "\t\tsource = Sales",
    "",
])

CUSTOMER_TMDL = "\n".join([
    "table Customer",
    "\tlineageTag: 0a1b2c3d",
    "",
    "\tmeasure 'Customer Count' = DISTINCTCOUNT(Customer[CustomerKey])",
    "\t\tlineageTag: 1b2c3d4e",
    "",
    "\tmeasure 'Sales per Customer' = DIVIDE([Total Sales], [Customer Count])",
    "\t\tformatString: 0.00",
    "\t\tlineageTag: 2c3d4e5f",
    "",
    "\tcolumn CustomerKey",
    "\t\tdataType: int64",
    "\t\tisHidden",
    "\t\tlineageTag: 3d4e5f60",
    "\t\tsummarizeBy: none",
    "\t\tsourceColumn: CustomerKey",
    "",
    "\tcolumn Region",
    "\t\tdataType: string",
    "\t\tlineageTag: 4e5f6071",
    "\t\tsummarizeBy: none",
    "\t\tsourceColumn: Region",
    "",
    "\thierarchy Geography",
    "\t\tlineageTag: 5f607182",
    "",
    "\t\tlevel Region",
    "\t\t\tlineageTag: 60718293",
    "\t\t\tcolumn: Region",
    "",
    "\tpartition Customer = m",
    "\t\tmode: import",
    "\t\tsource = Customer",
    "",
])

TIME_INTELLIGENCE_TMDL = "\n".join([
    "table 'Time Intelligence'",
    "\tlineageTag: 718293a4",
    "",
    "\tcalculationGroup",
    "\t\tprecedence: 1",
    "",
    "\t\tcalculationItem YTD = CALCULATE(SELECTEDMEASURE(), DATESYTD(Sales[OrderDate]))",
    "",
    "\t\tcalculationItem Current = SELECTEDMEASURE()",
    "",
    "\tcolumn Name",
    "\t\tdataType: string",
    "\t\tlineageTag: 8293a4b5",
    "\t\tsummarizeBy: none",
    "\t\tsourceColumn: Name",
    "",
])

METRIC_SELECTOR_TMDL = "\n".join([
    "table 'Metric Selector'",
    "\tlineageTag: 93a4b5c6",
    "",
    "\tcolumn 'Metric Selector'",
    "\t\tdataType: string",
    "\t\tlineageTag: a4b5c6d7",
    "\t\tsummarizeBy: none",
    "\t\tsourceColumn: [Value1]",
    "",
    "\t\textendedProperty ParameterMetadata =",
    "\t\t\t\t{",
    "\t\t\t\t  \"version\": 3,",
    "\t\t\t\t  \"kind\": 2",
    "\t\t\t\t}",
    "",
    "\tpartition 'Metric Selector' = calculated",
    "\t\tmode: import",
    "\t\tsource =",
    "\t\t\t\t{",
    "\t\t\t\t    (\"Total Sales\", NAMEOF('Sales'[Total Sales]), 0),",
    "\t\t\t\t    (\"Region\", NAMEOF('Customer'[Region]), 1)",
    "\t\t\t\t}",
    "",
])

RELATIONSHIPS_TMDL = "\n".join([
    "relationship 3f2a9c10-5b7e-4d1a-9f00-1c2d3e4f5a6b",
    "\tfromColumn: Sales.CustomerKey",
    "\ttoColumn: Customer.CustomerKey",
    "",
])

MODEL_TMDL = "\n".join([
    "model Model",
    "\tculture: en-US",
    "",
    "ref table Sales",
    "ref table Customer",
    "ref table 'Time Intelligence'",
    "ref table 'Metric Selector'",
    "",
])


def _projection(kind: str, entity: str, prop: str) -> Dict:
    return {
        "field": {kind: {"Expression": {"SourceRef": {"Entity": entity}}, "Property": prop}},
        "queryRef": f"{entity}.{prop}",
    }


SALES_BY_REGION_VISUAL = {
    "name": "salesByRegion",
    "visual": {
        "visualType": "clusteredColumnChart",
        "query": {
            "queryState": {
                "Category": {"projections": [_projection("Column", "Customer", "Region")]},
                "Y": {"projections": [_projection("Measure", "Sales", "Total Sales")]},
            }
        },
        "visualContainerObjects": {
            "title": [{"properties": {"text": {"expr": {"Literal": {"Value": "'Sales by Region'"}}}}}]
        },
    },
}

METRIC_CARD_VISUAL = {
    "name": "metricCard",
    "visual": {
        "visualType": "card",
        "query": {
            "queryState": {
                "Values": {"projections": [_projection("Column", "Metric Selector", "Metric Selector")]},
            }
        },
    },
}

PBIR = {"version": "4.0", "datasetReference": {"byPath": {"path": "../Sales.SemanticModel"}}}


def write_file(root: str, relative_path: str, content: str):
    path = os.path.join(root, *relative_path.split("/"))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def build_sales_project(root: str) -> str:
    """Write the sample project under root and return root"""
    files = {
        "Sales.pbip": json.dumps({"version": "1.0", "artifacts": [{"report": {"path": "Sales.Report"}}]}, indent=2),
        MODEL_DIR + "/model.tmdl": MODEL_TMDL,
        MODEL_DIR + "/relationships.tmdl": RELATIONSHIPS_TMDL,
        TABLES_DIR + "/Sales.tmdl": SALES_TMDL,
        TABLES_DIR + "/Customer.tmdl": CUSTOMER_TMDL,
        TABLES_DIR + "/Time Intelligence.tmdl": TIME_INTELLIGENCE_TMDL,
        TABLES_DIR + "/Metric Selector.tmdl": METRIC_SELECTOR_TMDL,
        "Sales.Report/definition.pbir": json.dumps(PBIR, indent=2),
        PAGE_DIR + "/page.json": json.dumps({"name": "overview", "displayName": "Overview"}, indent=2),
        PAGE_DIR + "/visuals/salesByRegion/visual.json": json.dumps(SALES_BY_REGION_VISUAL, indent=2),
        PAGE_DIR + "/visuals/metricCard/visual.json": json.dumps(METRIC_CARD_VISUAL, indent=2),
    }
    for relative_path, content in files.items():
        write_file(root, relative_path, content)
    return root


def snapshot(root: str) -> Dict[str, str]:
    """Every file under root (relative '/' path -> text)"""
    result = {}
    for directory, _, names in os.walk(root):
        for name in names:
            path = os.path.join(directory, name)
            relative = os.path.relpath(path, root).replace(os.sep, "/")
            with open(path, "r", encoding="utf-8", newline="") as f:
                result[relative] = f.read()
    return result


def read_file(root: str, relative_path: str) -> str:
    with open(os.path.join(root, *relative_path.split("/")), "r", encoding="utf-8", newline="") as f:
        return f.read()
