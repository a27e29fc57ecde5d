"""
PBIP Model Parser
Turns the text of a Power BI Project (TMDL semantic model + PBIR report) into structured records.

PBIP Structure:
  project.pbip
  ProjectName.SemanticModel/
    definition/
      model.tmdl              <- 'ref table' ordering lines
      tables/*.tmdl           <- one file per table (columns, measures, partitions)
      relationships.tmdl      <- Or individual files under relationships/
  ProjectName.Report/
    definition.pbir           <- Points to semantic model
    definition/
      pages/
        [page_id]/
          page.json           <- Page settings (displayName)
          visuals/
            [visual_id]/
              visual.json     <- Individual visual definition with Entity refs

The text parsers are pure functions. PBIPProjectLoader walks a project through a
PBIPFileStore and collects everything into a ParsedModel. A table, relationship file,
page or visual that fails to parse is recorded as a ParseSkip and the load continues.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pbip_file_store import PBIPFileStore, join_path
from pbip_reference_extractor import (
    DEFAULT_MEASURE_TABLE,
    ParameterRef,
    extract_references,
    unquote_tmdl_name,
)

logger = logging.getLogger(__name__)


class TMDLParseError(ValueError):
    """Raised when a TMDL file cannot be interpreted"""


class ProjectLayoutError(Exception):
    """Raised when a folder does not look like a PBIP project"""


# Object declarations that start a new block in a table file
_DECLARATION = re.compile(
    r"^(?P<indent>[ \t]*)"
    r"(?P<keyword>table|measure|column|hierarchy|level|partition|calculationItem|calculationGroup)"
    r"(?:[ \t]+(?P<name>'(?:[^']|'')+'|[^\s=']+))?"
    r"(?P<assign>[ \t]*=(?P<rest>.*))?\s*$"
)
_PROPERTY = re.compile(r"^\s*(?P<key>[A-Za-z]\w*)\s*:\s*(?P<value>.*?)\s*$")
_FLAG = re.compile(r"^\s*(?P<key>isHidden|isActive|isPrivate)\s*$")

# Lines that end a multi-line DAX expression
_EXPRESSION_TERMINATORS = re.compile(
    r"^\s*(?:lineageTag|formatString|formatStringDefinition|displayFolder|dataCategory|description|"
    r"annotation|changedProperty|extendedProperty|isHidden|detailRowsDefinition|dataType|sourceColumn|"
    r"summarizeBy|sortByColumn|isAvailableInMdx|ordinal|kpi|///)\b"
)
_RELATIONSHIP = re.compile(r"^(?P<indent>[ \t]*)relationship[ \t]+(?P<name>'(?:[^']|'')+'|\S+)\s*$")
_COLUMN_ENDPOINT = re.compile(r"^(?:'(?P<qtable>(?:[^']|'')+)'|(?P<table>[^.'\s]+))\.(?P<column>.+)$")
_MODEL_TABLE_REF = re.compile(r"^(?P<indent>[ \t]*)ref[ \t]+table[ \t]+(?P<name>'(?:[^']|'')+'|\S+)\s*$")
_FIELD_PARAMETER_TUPLE = re.compile(
    r'\(\s*"(?P<label>(?:[^"]|"")*)"\s*,\s*(?P<nameof>NAMEOF\s*\([^()]*\))\s*,\s*(?P<ordinal>\d+)',
    re.IGNORECASE,
)

VISUAL_OBJECT_SCAN_DEPTH = 10


@dataclass
class MeasureDef:
    """A measure declared in a table file"""
    name: str
    expression: str
    table: str
    file_path: str
    declaration: str
    name_token: str
    format_string: Optional[str] = None
    display_folder: Optional[str] = None
    description: Optional[str] = None
    is_hidden: bool = False


@dataclass
class ColumnDef:
    """A column declared in a table file"""
    name: str
    table: str
    declaration: str
    name_token: str
    data_type: Optional[str] = None
    is_hidden: bool = False
    source_column: Optional[str] = None
    format_string: Optional[str] = None
    summarize_by: Optional[str] = None
    display_folder: Optional[str] = None
    expression: Optional[str] = None


@dataclass
class HierarchyDef:
    name: str
    table: str
    levels: List[str] = field(default_factory=list)


@dataclass
class CalculationItemDef:
    """A named expression inside a calculation group"""
    name: str
    expression: str
    ordinal: Optional[int] = None
    uses_selected_measure: bool = False


@dataclass
class FieldParameterEntry:
    """One row of a field parameter: label, wrapped reference, ordinal"""
    reference: ParameterRef
    display_name: Optional[str] = None
    ordinal: Optional[int] = None


@dataclass
class TableDef:
    """A table file: columns, measures and the enterprise constructs it may carry"""
    name: str
    file_path: str
    declaration: str
    name_token: str
    columns: List[ColumnDef] = field(default_factory=list)
    measures: List[MeasureDef] = field(default_factory=list)
    hierarchies: List[HierarchyDef] = field(default_factory=list)
    is_hidden: bool = False
    is_calculation_group: bool = False
    calculation_group_precedence: Optional[int] = None
    calculation_items: List[CalculationItemDef] = field(default_factory=list)
    is_field_parameter: bool = False
    field_parameter_entries: List[FieldParameterEntry] = field(default_factory=list)


@dataclass
class RelationshipDef:
    """A relationship between two columns"""
    name: str
    from_table: str
    from_column: str
    to_table: str
    to_column: str
    from_column_ref: str
    to_column_ref: str
    from_line: str
    to_line: str
    file_path: str
    from_cardinality: Optional[str] = None
    to_cardinality: Optional[str] = None
    cross_filtering_behavior: Optional[str] = None
    is_active: bool = True


@dataclass
class ModelTableRef:
    """A 'ref table' line in model.tmdl"""
    table: str
    line_text: str
    file_path: str


@dataclass
class VisualField:
    """A field a visual binds to"""
    kind: str  # column, measure or hierarchy
    entity: str
    property: str
    query_ref: Optional[str] = None
    locations: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class VisualDef:
    id: str
    page_id: str
    visual_type: str
    file_path: str
    display_name: Optional[str] = None
    fields: List[VisualField] = field(default_factory=list)


@dataclass
class PageDef:
    id: str
    file_path: Optional[str] = None
    display_name: Optional[str] = None
    visual_ids: List[str] = field(default_factory=list)


@dataclass
class ParseSkip:
    """Something that failed to parse and was left out of the model"""
    kind: str
    source: str
    reason: str


@dataclass
class ParsedModel:
    """Everything read from one PBIP project"""
    semantic_model_folder: str
    report_folder: Optional[str] = None
    measure_table: str = DEFAULT_MEASURE_TABLE
    tables: List[TableDef] = field(default_factory=list)
    relationships: List[RelationshipDef] = field(default_factory=list)
    pages: List[PageDef] = field(default_factory=list)
    visuals: List[VisualDef] = field(default_factory=list)
    model_table_refs: List[ModelTableRef] = field(default_factory=list)
    skipped: List[ParseSkip] = field(default_factory=list)

    @property
    def measures(self) -> List[MeasureDef]:
        return [m for t in self.tables for m in t.measures]

    def get_page(self, page_id: str) -> Optional[PageDef]:
        for page in self.pages:
            if page.id == page_id:
                return page
        return None


# ==================== TMDL ====================

def _declaration_text(line: str, indent: str, has_next_line: bool) -> str:
    """Exact declaration text including its line terminator, for verbatim replacement"""
    text = line[len(indent):]
    return text + "\n" if has_next_line else text


def _property_line(lines: List[str], start: int, end: int, key: str) -> str:
    """Exact text of the first 'key: value' line in lines[start:end], terminator included"""
    for index in range(start, end):
        line = lines[index]
        stripped = line.lstrip(" \t")
        if re.match(re.escape(key) + r"\s*:", stripped):
            return _declaration_text(line, line[:len(line) - len(stripped)], index + 1 < len(lines))
    return ""


def _assignment_text(line: str, indent: str) -> str:
    """Declaration text up to and including the '='"""
    return line[len(indent):line.index("=", len(indent)) + 1]


def _collect_expression(lines: List[str], start: int, end: int, rest: str) -> str:
    """
    Collect a DAX expression that starts after '=' on lines[start]

    Returns the expression exactly as it appears in the file, outer whitespace trimmed.
    """
    first = rest.strip()
    if first == "```":
        body = []
        for line in lines[start + 1:end]:
            if line.strip() == "```":
                break
            body.append(line)
        return "\n".join(body).strip()

    collected = [rest]
    for line in lines[start + 1:end]:
        if _EXPRESSION_TERMINATORS.match(line):
            break
        collected.append(line)
    return "\n".join(collected).strip()


def _block_properties(lines: List[str]) -> Dict[str, str]:
    props: Dict[str, str] = {}
    for line in lines:
        flag = _FLAG.match(line)
        if flag:
            props.setdefault(flag.group("key"), "true")
            continue
        match = _PROPERTY.match(line)
        if match:
            props.setdefault(match.group("key"), match.group("value"))
    return props


def _split_blocks(lines: List[str]) -> List[Dict[str, Any]]:
    """Split a table file into flat declaration blocks"""
    blocks: List[Dict[str, Any]] = []
    for index, line in enumerate(lines):
        match = _DECLARATION.match(line.rstrip("\r"))
        if not match:
            continue
        if blocks:
            blocks[-1]["end"] = index
        rest = match.group("rest") or ""
        if rest and line.endswith("\r"):
            # Continuation lines keep their CR, so the first line must too
            rest += "\r"
        blocks.append({
            "keyword": match.group("keyword"),
            "indent": match.group("indent"),
            "name_token": match.group("name"),
            "has_assign": match.group("assign") is not None,
            "rest": rest,
            "start": index,
            "end": len(lines),
        })
    return blocks


def parse_field_parameter_source(source: str, measure_table: str = DEFAULT_MEASURE_TABLE) -> List[FieldParameterEntry]:
    """
    Parse the tuple list of a field parameter partition

    Args:
        source: Partition source text, e.g. {("Sales", NAMEOF('Measure'[Sales]), 0), ...}
        measure_table: Name of the measure container

    Returns:
        One entry per NAMEOF reference, with label and ordinal when written as a tuple
    """
    entries: List[FieldParameterEntry] = []
    seen = set()
    for match in _FIELD_PARAMETER_TUPLE.finditer(source):
        refs = extract_references(match.group("nameof"), measure_table).parameter_refs
        if not refs:
            continue
        ref = refs[0]
        seen.add((ref.table.lower(), ref.property.lower()))
        entries.append(FieldParameterEntry(
            reference=ref,
            display_name=match.group("label").replace('""', '"'),
            ordinal=int(match.group("ordinal")),
        ))

    # NAMEOF calls that are not inside a (label, NAMEOF(...), ordinal) tuple
    for ref in extract_references(source, measure_table).parameter_refs:
        if (ref.table.lower(), ref.property.lower()) not in seen:
            entries.append(FieldParameterEntry(reference=ref))
    return entries


def parse_table_tmdl(content: str, file_path: str, measure_table: str = DEFAULT_MEASURE_TABLE) -> TableDef:
    """
    Parse one table file

    Args:
        content: Text of definition/tables/<name>.tmdl
        file_path: Project-relative path of the file
        measure_table: Name of the measure container, used for field parameter mappings

    Returns:
        TableDef with columns, measures, hierarchies, calculation items and parameter entries

    Raises:
        TMDLParseError: if the file has no table declaration
    """
    lines = content.split("\n")
    blocks = _split_blocks(lines)
    table_blocks = [b for b in blocks if b["keyword"] == "table" and b["name_token"]]
    if not table_blocks:
        raise TMDLParseError(f"No table declaration found in {file_path}")

    head = table_blocks[0]
    table_name = unquote_tmdl_name(head["name_token"])
    table = TableDef(
        name=table_name,
        file_path=file_path,
        declaration=_declaration_text(lines[head["start"]], head["indent"], head["start"] + 1 < len(lines)),
        name_token=head["name_token"],
    )
    table.is_hidden = _block_properties(lines[head["start"] + 1:head["end"]]).get("isHidden") == "true"

    current_hierarchy: Optional[HierarchyDef] = None
    for block in blocks:
        keyword = block["keyword"]
        body = lines[block["start"] + 1:block["end"]]
        line = lines[block["start"]]
        token = block["name_token"]
        name = unquote_tmdl_name(token) if token else None

        if keyword == "measure" and name:
            if not block["has_assign"]:
                raise TMDLParseError(f"Measure '{name}' in {file_path} has no expression")
            expression = _collect_expression(lines, block["start"], block["end"], block["rest"])
            props = _block_properties(body)
            table.measures.append(MeasureDef(
                name=name,
                expression=expression,
                table=table_name,
                file_path=file_path,
                declaration=_assignment_text(line, block["indent"]),
                name_token=token,
                format_string=props.get("formatString"),
                display_folder=props.get("displayFolder"),
                description=props.get("description"),
                is_hidden=props.get("isHidden") == "true",
            ))

        elif keyword == "column" and name:
            props = _block_properties(body)
            if block["has_assign"]:
                declaration = _assignment_text(line, block["indent"])
                expression = _collect_expression(lines, block["start"], block["end"], block["rest"])
            else:
                declaration = _declaration_text(line, block["indent"], block["start"] + 1 < len(lines))
                expression = None
            table.columns.append(ColumnDef(
                name=name,
                table=table_name,
                declaration=declaration,
                name_token=token,
                data_type=props.get("dataType"),
                is_hidden=props.get("isHidden") == "true",
                source_column=props.get("sourceColumn"),
                format_string=props.get("formatString"),
                summarize_by=props.get("summarizeBy"),
                display_folder=props.get("displayFolder"),
                expression=expression,
            ))

        elif keyword == "hierarchy" and name:
            current_hierarchy = HierarchyDef(name=name, table=table_name)
            table.hierarchies.append(current_hierarchy)

        elif keyword == "level" and name and current_hierarchy is not None:
            current_hierarchy.levels.append(name)

        elif keyword == "calculationGroup":
            table.is_calculation_group = True
            precedence = _block_properties(body).get("precedence")
            if precedence and precedence.isdigit():
                table.calculation_group_precedence = int(precedence)

        elif keyword == "calculationItem" and name:
            expression = ""
            if block["has_assign"]:
                expression = _collect_expression(lines, block["start"], block["end"], block["rest"])
            ordinal = _block_properties(body).get("ordinal")
            table.calculation_items.append(CalculationItemDef(
                name=name,
                expression=expression,
                ordinal=int(ordinal) if ordinal and ordinal.isdigit() else None,
                uses_selected_measure=extract_references(expression, measure_table).uses_selected_measure,
            ))

        elif keyword == "partition" and re.search(r"\bParameterMetadata\b", content):
            source = "\n".join(lines[block["start"]:block["end"]])
            table.field_parameter_entries.extend(parse_field_parameter_source(source, measure_table))

        if keyword not in ("hierarchy", "level"):
            current_hierarchy = None

    table.is_field_parameter = bool(re.search(r"\bParameterMetadata\b", content))
    logger.debug(f"Parsed table '{table_name}': {len(table.columns)} columns, {len(table.measures)} measures")
    return table


def _parse_column_endpoint(text: str) -> Optional[Tuple[str, str]]:
    match = _COLUMN_ENDPOINT.match(text.strip())
    if not match:
        return None
    table = match.group("qtable").replace("''", "'") if match.group("qtable") is not None else match.group("table")
    return table, unquote_tmdl_name(match.group("column").strip())


def parse_relationships_tmdl(content: str, file_path: str) -> Tuple[List[RelationshipDef], List[ParseSkip]]:
    """
    Parse every relationship block in a relationships file

    Returns:
        (relationships, skipped) where skipped lists blocks without usable endpoints
    """
    lines = content.split("\n")
    starts = [i for i, line in enumerate(lines) if _RELATIONSHIP.match(line.rstrip("\r"))]
    relationships: List[RelationshipDef] = []
    skipped: List[ParseSkip] = []

    for position, start in enumerate(starts):
        end = starts[position + 1] if position + 1 < len(starts) else len(lines)
        name = unquote_tmdl_name(_RELATIONSHIP.match(lines[start].rstrip("\r")).group("name"))
        props = _block_properties(lines[start + 1:end])
        from_ref = props.get("fromColumn", "")
        to_ref = props.get("toColumn", "")
        from_endpoint = _parse_column_endpoint(from_ref) if from_ref else None
        to_endpoint = _parse_column_endpoint(to_ref) if to_ref else None

        if not from_endpoint or not to_endpoint:
            reason = f"Relationship '{name}' has no parsable fromColumn/toColumn"
            logger.warning(f"{reason} in {file_path}")
            skipped.append(ParseSkip(kind="relationship", source=file_path, reason=reason))
            continue

        relationships.append(RelationshipDef(
            name=name,
            from_table=from_endpoint[0],
            from_column=from_endpoint[1],
            to_table=to_endpoint[0],
            to_column=to_endpoint[1],
            from_column_ref=from_ref,
            from_line=_property_line(lines, start + 1, end, "fromColumn"),
            to_column_ref=to_ref,
            to_line=_property_line(lines, start + 1, end, "toColumn"),
            file_path=file_path,
            from_cardinality=props.get("fromCardinality"),
            to_cardinality=props.get("toCardinality"),
            cross_filtering_behavior=props.get("crossFilteringBehavior"),
            is_active=props.get("isActive", "true").lower() != "false",
        ))

    return relationships, skipped


def parse_model_table_refs(content: str, file_path: str) -> List[ModelTableRef]:
    """Read the 'ref table' lines of model.tmdl"""
    lines = content.split("\n")
    refs = []
    for index, line in enumerate(lines):
        match = _MODEL_TABLE_REF.match(line.rstrip("\r"))
        if match:
            refs.append(ModelTableRef(
                table=unquote_tmdl_name(match.group("name")),
                line_text=_declaration_text(line, match.group("indent"), index + 1 < len(lines)),
                file_path=file_path,
            ))
    return refs


# ==================== PBIR VISUALS ====================

def _dig(obj: Any, *keys: Any) -> Any:
    """Follow a chain of dict keys / list indexes, returning None when any step is missing"""
    for key in keys:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
        elif not isinstance(obj, dict):
            return None
        obj = obj[key] if isinstance(key, int) else obj.get(key)
        if obj is None:
            return None
    return obj


def extract_visual_name(visual_data: Dict[str, Any]) -> Optional[str]:
    """Recover a visual's title literal from its container objects"""
    containers = _dig(visual_data, "visual", "visualContainerObjects")
    if not isinstance(containers, dict):
        return None

    for value in (
        _dig(containers, "title", 0, "properties", "text", "expr", "Literal", "Value"),
        _dig(containers, "general", 0, "properties", "title", "expr", "Literal", "Value"),
    ):
        if isinstance(value, str):
            return re.sub(r"^['\"]|['\"]$", "", value)
    return None


class _FieldCollector:
    """Collects visual fields, de-duplicated by kind|entity|property"""

    def __init__(self):
        self.fields: Dict[str, VisualField] = {}

    def add(self, kind: str, entity: Optional[str], prop: Optional[str], projection: str,
            location: str, query_ref: Optional[str] = None):
        if not entity or not prop:
            return
        key = f"{kind}|{entity}|{prop}"
        existing = self.fields.get(key)
        if existing:
            existing.locations.append((projection, location))
            return
        self.fields[key] = VisualField(kind=kind, entity=entity, property=prop, query_ref=query_ref,
                                       locations=[(projection, location)])

    def add_projection(self, proj: Dict[str, Any], projection: str, location: str):
        field_obj = proj.get("field") if isinstance(proj, dict) else None
        if not isinstance(field_obj, dict):
            return
        query_ref = proj.get("queryRef")
        if "Column" in field_obj:
            column = field_obj["Column"]
            self.add("column", _dig(column, "Expression", "SourceRef", "Entity"), column.get("Property"),
                     projection, location, query_ref)
        elif "Measure" in field_obj:
            measure = field_obj["Measure"]
            self.add("measure", _dig(measure, "Expression", "SourceRef", "Entity"), measure.get("Property"),
                     projection, location, query_ref)
        elif "Hierarchy" in field_obj:
            hierarchy = field_obj["Hierarchy"]
            self.add("hierarchy", _dig(hierarchy, "Expression", "SourceRef", "Entity"),
                     hierarchy.get("Hierarchy"), projection, location, query_ref)

    def scan_objects(self, obj: Any, depth: int = 0):
        if depth > VISUAL_OBJECT_SCAN_DEPTH:
            return
        if isinstance(obj, list):
            for item in obj:
                self.scan_objects(item, depth + 1)
            return
        if not isinstance(obj, dict):
            return
        if isinstance(obj.get("Column"), dict):
            column = obj["Column"]
            self.add("column", _dig(column, "Expression", "SourceRef", "Entity"), column.get("Property"),
                     "visualObjects", "object")
        elif isinstance(obj.get("Measure"), dict):
            measure = obj["Measure"]
            self.add("measure", _dig(measure, "Expression", "SourceRef", "Entity"), measure.get("Property"),
                     "visualObjects", "object")
        for value in obj.values():
            if isinstance(value, (dict, list)):
                self.scan_objects(value, depth + 1)


def extract_field_references(visual_data: Dict[str, Any]) -> List[VisualField]:
    """
    Extract fields from query projections, sort definition, filter config and visual objects
    """
    collector = _FieldCollector()

    query_state = _dig(visual_data, "visual", "query", "queryState") or _dig(visual_data, "query", "queryState")
    if isinstance(query_state, dict):
        for projection_name, projection in query_state.items():
            for proj in _dig(projection, "projections") or []:
                collector.add_projection(proj, projection_name, "queryState")

    sort_items = (_dig(visual_data, "visual", "query", "sortDefinition", "sort")
                  or _dig(visual_data, "query", "sortDefinition", "sort") or [])
    for item in sort_items:
        if isinstance(item, dict):
            collector.add_projection({"field": item.get("field")}, "sortDefinition", "sort")

    for item in _dig(visual_data, "filterConfig", "filters") or []:
        if isinstance(item, dict):
            collector.add_projection({"field": item.get("field")}, "filterConfig", "filter")

    objects = _dig(visual_data, "visual", "objects")
    if objects:
        collector.scan_objects(objects)

    return list(collector.fields.values())


def parse_visual_json(content: str, visual_id: str, page_id: str, file_path: str) -> VisualDef:
    """
    Parse one visual.json

    Raises:
        ValueError: if the content is not a JSON object
    """
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError(f"visual.json is not an object: {file_path}")

    visual_type = _dig(data, "visual", "visualType") or data.get("visualType") or "unknown"
    return VisualDef(
        id=visual_id,
        page_id=page_id,
        visual_type=visual_type,
        file_path=file_path,
        display_name=extract_visual_name(data),
        fields=extract_field_references(data),
    )


# ==================== PROJECT LOADER ====================

def _with_suffix(name: Optional[str], suffix: str) -> Optional[str]:
    """Accept "Sales" or "Sales.SemanticModel" for a root folder name"""
    if not name:
        return None
    name = name.strip().rstrip("/\\")
    return name if name.endswith(suffix) else name + suffix


class PBIPProjectLoader:
    """
    Reads a whole PBIP project through a PBIPFileStore

    Usage:
        loader = PBIPProjectLoader(LocalFileStore("C:/Projects/Sales"))
        model = await loader.load()
        for skip in model.skipped:
            print(skip.kind, skip.source, skip.reason)
    """

    def __init__(self, store: PBIPFileStore, measure_table: str = DEFAULT_MEASURE_TABLE,
                 semantic_model: Optional[str] = None, report: Optional[str] = None):
        self.store = store
        self.measure_table = measure_table
        self.semantic_model = _with_suffix(semantic_model, ".SemanticModel")
        self.report = _with_suffix(report, ".Report")

    async def _list_names(self, path: str, directories: bool) -> List[str]:
        try:
            entries = await self.store.list_directory(path)
        except FileNotFoundError:
            return []
        return sorted(e.name for e in entries if e.is_directory == directories)

    async def _exists(self, directory: str, name: str) -> bool:
        try:
            entries = await self.store.list_directory(directory)
        except FileNotFoundError:
            return False
        return any(e.name == name and not e.is_directory for e in entries)

    async def _bound_model(self, report: str) -> Optional[str]:
        """Folder name of the semantic model a report's definition.pbir points at"""
        if not await self._exists(report, "definition.pbir"):
            return None
        try:
            pbir = json.loads(await self.store.read_file(join_path(report, "definition.pbir")))
        except (ValueError, OSError) as e:
            logger.warning(f"Could not read {report}/definition.pbir: {e}")
            return None
        target = (_dig(pbir, "datasetReference", "byPath", "path") or "").replace("\\", "/").rstrip("/")
        return target.split("/")[-1] or None

    async def _pick_semantic_model(self, models: List[str], reports: List[str]) -> Tuple[str, Optional[str]]:
        """
        Choose the semantic model and the report bound to it

        A report is only loaded when its definition.pbir names the chosen model folder exactly.

        Raises:
            ProjectLayoutError: if a requested model or report is missing, or the requested
                report is bound to a different model
        """
        if self.semantic_model and self.semantic_model not in models:
            raise ProjectLayoutError(f"Semantic model '{self.semantic_model}' not found in project root")
        if self.report and self.report not in reports:
            raise ProjectLayoutError(f"Report '{self.report}' not found in project root")

        candidates = [self.semantic_model] if self.semantic_model else models
        for report in ([self.report] if self.report else reports):
            bound = await self._bound_model(report)
            if bound in candidates:
                return bound, report
            if self.report:
                raise ProjectLayoutError(f"Report '{report}' is bound to '{bound or '(unknown)'}', "
                                         f"not {' or '.join(candidates)}")

        if reports:
            logger.warning(f"No report is bound to {candidates[0]}; loading the semantic model only")
        return candidates[0], None

    async def load(self) -> ParsedModel:
        """
        Load and parse the project

        Returns:
            ParsedModel; anything that failed to parse is listed in model.skipped

        Raises:
            ProjectLayoutError: if no *.SemanticModel folder exists
        """
        root_dirs = await self._list_names("", directories=True)
        models = [d for d in root_dirs if d.endswith(".SemanticModel")]
        reports = [d for d in root_dirs if d.endswith(".Report")]
        if not models:
            raise ProjectLayoutError("No .SemanticModel folder found in project root")

        model_folder, report_folder = await self._pick_semantic_model(models, reports)
        model = ParsedModel(semantic_model_folder=model_folder, report_folder=report_folder,
                            measure_table=self.measure_table)

        await self._load_tables(model)
        await self._load_relationships(model)
        await self._load_model_refs(model)
        if report_folder:
            await self._load_report(model)

        logger.info(
            f"Loaded PBIP project: {len(model.tables)} tables, {len(model.measures)} measures, "
            f"{len(model.relationships)} relationships, {len(model.visuals)} visuals, "
            f"{len(model.skipped)} skipped"
        )
        return model

    async def _load_tables(self, model: ParsedModel):
        tables_dir = join_path(model.semantic_model_folder, "definition", "tables")
        try:
            entries = await self.store.list_directory(tables_dir)
        except FileNotFoundError:
            logger.warning(f"No tables folder at {tables_dir}")
            return

        for entry in sorted(entries, key=lambda e: e.name):
            if entry.is_directory or not entry.name.endswith(".tmdl"):
                continue
            path = join_path(tables_dir, entry.name)
            try:
                content = await self.store.read_file(path)
                model.tables.append(parse_table_tmdl(content, path, self.measure_table))
            except (TMDLParseError, OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping table file {path}: {e}")
                model.skipped.append(ParseSkip(kind="table", source=path, reason=str(e)))

    async def _load_relationships(self, model: ParsedModel):
        definition = join_path(model.semantic_model_folder, "definition")
        paths = []
        if await self._exists(definition, "relationships.tmdl"):
            paths.append(join_path(definition, "relationships.tmdl"))
        rel_dir = join_path(definition, "relationships")
        for name in await self._list_names(rel_dir, directories=False):
            if name.endswith(".tmdl"):
                paths.append(join_path(rel_dir, name))

        for path in paths:
            try:
                content = await self.store.read_file(path)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping relationships file {path}: {e}")
                model.skipped.append(ParseSkip(kind="relationship", source=path, reason=str(e)))
                continue
            relationships, skipped = parse_relationships_tmdl(content, path)
            model.relationships.extend(relationships)
            model.skipped.extend(skipped)

    async def _load_model_refs(self, model: ParsedModel):
        definition = join_path(model.semantic_model_folder, "definition")
        if not await self._exists(definition, "model.tmdl"):
            return
        path = join_path(definition, "model.tmdl")
        try:
            model.model_table_refs = parse_model_table_refs(await self.store.read_file(path), path)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}")
            model.skipped.append(ParseSkip(kind="model", source=path, reason=str(e)))

    async def _load_report(self, model: ParsedModel):
        pages_dir = join_path(model.report_folder, "definition", "pages")
        for page_id in await self._list_names(pages_dir, directories=True):
            page_dir = join_path(pages_dir, page_id)
            page = PageDef(id=page_id)

            if await self._exists(page_dir, "page.json"):
                page.file_path = join_path(page_dir, "page.json")
                try:
                    page_data = json.loads(await self.store.read_file(page.file_path))
                    if isinstance(page_data, dict):
                        page.display_name = page_data.get("displayName")
                except (ValueError, OSError) as e:
                    logger.warning(f"Could not read page {page.file_path}: {e}")
                    model.skipped.append(ParseSkip(kind="page", source=page.file_path, reason=str(e)))

            visuals_dir = join_path(page_dir, "visuals")
            for visual_id in await self._list_names(visuals_dir, directories=True):
                path = join_path(visuals_dir, visual_id, "visual.json")
                try:
                    content = await self.store.read_file(path)
                    visual = parse_visual_json(content, visual_id, page_id, path)
                except FileNotFoundError:
                    continue
                except (ValueError, OSError) as e:
                    logger.warning(f"Skipping visual {path}: {e}")
                    model.skipped.append(ParseSkip(kind="visual", source=path, reason=str(e)))
                    continue
                model.visuals.append(visual)
                page.visual_ids.append(visual_id)

            model.pages.append(page)
