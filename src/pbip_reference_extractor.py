"""
DAX Reference Extractor
Best-effort lexical scanner that finds the identifiers a DAX expression refers to.

It does not validate or evaluate DAX. Comments and string literals are blanked out first,
then four scans run over the cleaned text:

  [Total Sales]                 -> measure reference
  Sales[Amount] / 'Sales'[Amt]  -> column reference
  COUNTROWS(Sales)              -> table reference (only if no column ref uses that table)
  NAMEOF('Measure'[Total])      -> parameter reference (field parameter mapping)

TMDL Name Quoting Rules:
  - Names with spaces, special chars, or reserved words MUST be quoted with single quotes
  - Embedded single quotes are doubled: 'Customer''s Data'
"""
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

# Characters that require quoting in TMDL/DAX names
TMDL_SPECIAL_CHARS = set(' \t\n\r\'\"[]{}().,;:!@#$%^&*+-=<>?/\\|`~')
TMDL_RESERVED_WORDS = {'table', 'column', 'measure', 'relationship', 'partition', 'hierarchy', 'level',
                       'annotation', 'expression', 'from', 'to', 'true', 'false', 'null'}

DEFAULT_MEASURE_TABLE = "Measure"

# Functions whose first argument may be a bare table name
TABLE_FUNCTIONS = [
    'COUNTROWS', 'RELATEDTABLE', 'VALUES', 'ALL', 'ALLEXCEPT', 'ALLSELECTED', 'ALLNOBLANKROW',
    'REMOVEFILTERS', 'DISTINCT', 'SUMMARIZE', 'ADDCOLUMNS', 'SELECTCOLUMNS', 'FILTER',
    'CALCULATETABLE', 'SUMX', 'AVERAGEX', 'MINX', 'MAXX', 'COUNTX', 'COUNTAX', 'RANKX',
    'CONCATENATEX', 'TOPN', 'GENERATE', 'CROSSJOIN', 'ISEMPTY',
]

# A table name as written in DAX: 'Quoted Name' (with '' escapes) or a bare identifier
_TABLE_NAME = r"(?:'((?:[^']|'')+)'|([^\W\d]\w*))"

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"(?://|--)[^\n]*")
_STRING_LITERAL = re.compile(r'"(?:[^"]|"")*"')
# Spans a rename must not touch, in source order
_PROTECTED = re.compile(r'"(?:[^"]|"")*"|/\*.*?\*/|(?://|--)[^\n]*', re.DOTALL)
_PLACEHOLDER = re.compile(r"\x00(\d+)\x00")

_MEASURE_REF = re.compile(r"(?<![\w'\]])\[([^\[\]]+)\]")
_COLUMN_REF = re.compile(_TABLE_NAME + r"\[([^\[\]]+)\]")
_TABLE_FUNCTION_REF = re.compile(
    r"\b(?:" + "|".join(TABLE_FUNCTIONS) + r")\s*\(\s*" + _TABLE_NAME + r"\s*(?=[,)])",
    re.IGNORECASE,
)
_NAMEOF_REF = re.compile(
    r"\bNAMEOF\s*\(\s*(" + _TABLE_NAME + r")\s*\[([^\[\]]+)\]\s*\)",
    re.IGNORECASE,
)
_SELECTED_MEASURE = re.compile(r"\bSELECTEDMEASURE\s*\(\s*\)", re.IGNORECASE)


def needs_tmdl_quoting(name: str) -> bool:
    """
    Check if a TMDL name needs single quotes

    Rules:
    - Names with spaces or special characters need quotes
    - Names starting with digits need quotes
    - Reserved words need quotes
    """
    if not name:
        return False

    if any(c in TMDL_SPECIAL_CHARS for c in name):
        return True

    if name[0].isdigit():
        return True

    return name.lower() in TMDL_RESERVED_WORDS


def quote_tmdl_name(name: str, force: bool = False) -> str:
    """
    Quote a TMDL name if needed

    Args:
        name: The name to potentially quote
        force: Always quote, even when the name is a plain identifier

    Returns:
        Quoted name if needed, otherwise original name
    """
    if force or needs_tmdl_quoting(name):
        escaped = name.replace("'", "''")
        return f"'{escaped}'"
    return name


def unquote_tmdl_name(name: str) -> str:
    """Remove TMDL quotes from a name if present"""
    if len(name) >= 2 and name.startswith("'") and name.endswith("'"):
        return name[1:-1].replace("''", "'")
    return name


@dataclass(frozen=True)
class ColumnRef:
    """A Table[Column] reference"""
    table: str
    column: str


@dataclass(frozen=True)
class ParameterRef:
    """A NAMEOF('Table'[Property]) reference from a field parameter mapping"""
    table: str
    property: str
    is_measure: bool
    qualifier: str  # the table name exactly as written, quotes included


@dataclass
class DAXReferences:
    """All references found in one expression"""
    measure_refs: List[str] = field(default_factory=list)
    column_refs: List[ColumnRef] = field(default_factory=list)
    table_refs: List[str] = field(default_factory=list)
    parameter_refs: List[ParameterRef] = field(default_factory=list)
    uses_selected_measure: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.measure_refs or self.column_refs or self.table_refs or self.parameter_refs)


def clean_dax(expression: str) -> str:
    """Strip comments and blank out string literals so they cannot produce false matches"""
    if not expression:
        return ""
    text = _BLOCK_COMMENT.sub(" ", expression)
    text = _STRING_LITERAL.sub('""', text)
    text = _LINE_COMMENT.sub("", text)
    return text


def _table_from_match(quoted: Optional[str], bare: Optional[str]) -> str:
    if quoted is not None:
        return quoted.replace("''", "'")
    return bare


def extract_references(expression: str, measure_table: str = DEFAULT_MEASURE_TABLE) -> DAXReferences:
    """
    Extract measure, column, table and parameter references from a DAX expression

    Args:
        expression: Raw DAX text (comments and strings allowed)
        measure_table: Name of the table that holds measures; NAMEOF refs qualified
            with it are classified as measure references

    Returns:
        DAXReferences with de-duplicated lists in order of first appearance
    """
    refs = DAXReferences()
    text = clean_dax(expression)
    if not text.strip():
        return refs

    seen_measures: Set[str] = set()
    for match in _MEASURE_REF.finditer(text):
        name = match.group(1).strip()
        if name and name.lower() not in seen_measures:
            seen_measures.add(name.lower())
            refs.measure_refs.append(name)

    seen_columns: Set[ColumnRef] = set()
    column_tables: Set[str] = set()
    for match in _COLUMN_REF.finditer(text):
        table = _table_from_match(match.group(1), match.group(2))
        ref = ColumnRef(table=table, column=match.group(3).strip())
        key = ColumnRef(ref.table.lower(), ref.column.lower())
        column_tables.add(table.lower())
        if key not in seen_columns:
            seen_columns.add(key)
            refs.column_refs.append(ref)

    seen_tables: Set[str] = set()
    for match in _TABLE_FUNCTION_REF.finditer(text):
        table = _table_from_match(match.group(1), match.group(2))
        key = table.lower()
        if key in column_tables or key in seen_tables:
            continue
        seen_tables.add(key)
        refs.table_refs.append(table)

    seen_params: Set[str] = set()
    for match in _NAMEOF_REF.finditer(text):
        qualifier = match.group(1)
        table = _table_from_match(match.group(2), match.group(3))
        prop = match.group(4).strip()
        key = f"{table.lower()}|{prop.lower()}"
        if key in seen_params:
            continue
        seen_params.add(key)
        refs.parameter_refs.append(ParameterRef(
            table=table,
            property=prop,
            is_measure=table.lower() == measure_table.lower(),
            qualifier=qualifier,
        ))

    refs.uses_selected_measure = bool(_SELECTED_MEASURE.search(text))
    return refs


def _rewrite_code(expression: str, rewrite: Callable[[str], str]) -> str:
    """Apply rewrite to the DAX code only; comments and string literals come back unchanged"""
    protected: List[str] = []

    def stash(match):
        protected.append(match.group(0))
        return f"\x00{len(protected) - 1}\x00"

    masked = _PROTECTED.sub(stash, expression)
    return _PLACEHOLDER.sub(lambda m: protected[int(m.group(1))], rewrite(masked))


def _table_forms(table_name: str) -> str:
    """Regex alternation matching a table name written quoted or bare"""
    quoted = re.escape("'" + table_name.replace("'", "''") + "'")
    bare = r"(?<![\w'.])" + re.escape(table_name)
    return f"(?:{quoted}|{bare})"


def rename_measure_in_dax(expression: str, old_name: str, new_name: str,
                          home_table: Optional[str] = None) -> str:
    """
    Rewrite [Old] measure references to [New] (case-insensitive)

    Bracket references qualified by another table are column references and are left alone;
    references qualified by the measure's home table are rewritten too. Comments and string
    literals are never rewritten.
    """
    replacement = f"[{new_name}]"

    def rewrite(code: str) -> str:
        code = re.sub(r"(?<![\w'\]])\[" + re.escape(old_name) + r"\]",
                      lambda m: replacement, code, flags=re.IGNORECASE)
        if home_table:
            pattern = "(" + _table_forms(home_table) + r")\[" + re.escape(old_name) + r"\]"
            code = re.sub(pattern, lambda m: m.group(1) + replacement, code, flags=re.IGNORECASE)
        return code

    return _rewrite_code(expression, rewrite)


def rename_column_in_dax(expression: str, table_name: str, old_name: str, new_name: str) -> str:
    """Rewrite Table[Old] and 'Table'[Old] outside comments and strings (case-insensitive)"""
    pattern = "(" + _table_forms(table_name) + r")\s*\[" + re.escape(old_name) + r"\]"
    return _rewrite_code(expression, lambda code: re.sub(
        pattern, lambda m: f"{m.group(1)}[{new_name}]", code, flags=re.IGNORECASE))


def rename_table_in_dax(expression: str, old_name: str, new_name: str) -> str:
    """
    Rewrite every surface form of a table name in DAX

    Handles the four forms, skipping comments and string literals:
      Old[Col]        -> New[Col]  (New quoted when it needs quoting)
      'Old'[Col]      -> 'New'[Col]
      FUNC(Old, ...   -> FUNC(New, ...
      FUNC('Old', ... -> FUNC('New', ...
    """
    bare_new = quote_tmdl_name(new_name)
    quoted_old = re.escape("'" + old_name.replace("'", "''") + "'")
    quoted_new = quote_tmdl_name(new_name, force=True)
    bare_old = re.escape(old_name)
    functions = r"\b(?:" + "|".join(TABLE_FUNCTIONS) + r")\s*\(\s*"

    def rewrite(code: str) -> str:
        # Quoted column qualifier: 'Old'[
        code = re.sub(quoted_old + r"(?=\s*\[)", lambda m: quoted_new, code, flags=re.IGNORECASE)
        # Unquoted column qualifier: Old[
        code = re.sub(r"(?<![\w'.])" + bare_old + r"(?=\s*\[)", lambda m: bare_new, code,
                      flags=re.IGNORECASE)
        # Quoted table argument: FUNC('Old' , or )
        code = re.sub("(" + functions + ")" + quoted_old + r"(?=\s*[,)])",
                      lambda m: m.group(1) + quoted_new, code, flags=re.IGNORECASE)
        # Unquoted table argument: FUNC(Old , or )
        return re.sub("(" + functions + ")" + bare_old + r"(?=\s*[,)])",
                      lambda m: m.group(1) + bare_new, code, flags=re.IGNORECASE)

    return _rewrite_code(expression, rewrite)
