import logging
import re
from typing import Any, Dict, List, Optional

from .base import ToolError, format_record_lines, format_value, get_field_value, get_salesforce_conn, record_fields

# Configure logging
logger = logging.getLogger(__name__)

AGGREGATE_FUNCTION = re.compile(r"\b(COUNT_DISTINCT|COUNT|SUM|AVG|MIN|MAX)\s*\(", re.IGNORECASE)
SUBQUERY_FROM = re.compile(r"\bFROM\s+(\w+)", re.IGNORECASE)
ORDER_MODIFIERS = re.compile(r"\s+(ASC|DESC|NULLS\s+FIRST|NULLS\s+LAST)\b", re.IGNORECASE)

SEARCH_SCOPES = ("ALL FIELDS", "NAME FIELDS", "EMAIL FIELDS", "PHONE FIELDS", "SIDEBAR FIELDS")
WITH_CLAUSE_TYPES = (
    "DATA CATEGORY", "DIVISION", "METADATA", "NETWORK", "PRICEBOOKID", "SNIPPET", "SECURITY_ENFORCED",
)
SOSL_RESERVED = set('\\\'"{}[]()^~:+-&|!')


def _is_subquery(field: str) -> bool:
    return field.strip().startswith("(")


def validate_relationship_fields(fields: List[str]) -> None:
    for field in fields:
        if _is_subquery(field) or "." not in field:
            continue
        parts = field.split(".")
        if any(not part for part in parts):
            raise ToolError(f'Invalid relationship field format: "{field}"')
        for part in parts[:-1]:
            if part.endswith("__c"):
                suggestion = field.replace(f"{part}.", f"{part[:-3]}__r.", 1)
                raise ToolError(
                    f'Invalid relationship field "{field}": custom relationships use the "__r" suffix '
                    f'instead of "__c". Use "{suggestion}" instead.'
                )


def build_soql(object_name: str, fields: List[str], where_clause: Optional[str] = None,
               order_by: Optional[str] = None, limit: Optional[int] = None) -> str:
    soql = f"SELECT {', '.join(fields)} FROM {object_name}"
    if where_clause:
        soql += f" WHERE {where_clause}"
    if order_by:
        soql += f" ORDER BY {order_by}"
    if limit:
        soql += f" LIMIT {int(limit)}"
    return soql


def _format_subquery(field: str, record: Dict[str, Any]) -> str:
    match = SUBQUERY_FROM.search(field)
    relationship = match.group(1) if match else field
    related = record.get(relationship) or {}
    related_records = related.get("records", []) if isinstance(related, dict) else []

    lines = [f"    {relationship}: [{len(related_records)} records]"]
    for index, child in enumerate(related_records, start=1):
        lines.append(f"      Record {index}:")
        lines.append(format_record_lines(child, record_fields(child), indent="        "))
    return "\n".join(lines)


def format_query_records(records: List[Dict[str, Any]], fields: List[str]) -> str:
    blocks = []
    for index, record in enumerate(records, start=1):
        lines = []
        for field in fields:
            if _is_subquery(field):
                lines.append(_format_subquery(field, record))
            else:
                lines.append(f"    {field}: {format_value(get_field_value(record, field))}")
        blocks.append(f"Record {index}:\n" + "\n".join(lines))
    return "\n\n".join(blocks)


async def query_records(
    object_name: str,
    fields: List[str],
    where_clause: Optional[str] = None,
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
) -> str:
    """Query records of one object, including parent and child relationship fields."""
    logger.info(f"Executing tool: query_records with object_name: {object_name}, fields: {fields}")
    if not fields:
        raise ToolError("At least one field is required")
    validate_relationship_fields(fields)

    sf = get_salesforce_conn()
    soql = build_soql(object_name, fields, where_clause, order_by, limit)
    logger.debug(f"SOQL: {soql}")
    result = sf.query(soql)
    records = result.get("records", [])

    text = f"Query returned {len(records)} records:"
    if records:
        text += "\n\n" + format_query_records(records, fields)
    return text


def is_aggregate(expression: str) -> bool:
    return bool(AGGREGATE_FUNCTION.search(expression))


def _strip_alias(expression: str) -> str:
    # "CALENDAR_YEAR(CreatedDate) yr" -> "CALENDAR_YEAR(CreatedDate)"
    expression = expression.strip()
    if expression.endswith(")") or " " not in expression:
        return expression
    depth = 0
    for index, char in enumerate(expression):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char.isspace() and depth == 0:
            return expression[:index]
    return expression


def _normalise(expression: str) -> str:
    return re.sub(r"\s+", "", expression).lower()


def validate_aggregate_query(select_fields: List[str], group_by_fields: List[str],
                             where_clause: Optional[str] = None, order_by: Optional[str] = None) -> None:
    grouped = {_normalise(field) for field in group_by_fields}

    missing = [
        _strip_alias(field) for field in select_fields
        if not is_aggregate(field) and _normalise(_strip_alias(field)) not in grouped
    ]
    if missing:
        raise ToolError(
            f"Error: The following non-aggregate fields must be included in GROUP BY clause: {', '.join(missing)}\n\n"
            "All fields in SELECT that are not aggregate functions (COUNT, SUM, AVG, etc.) "
            "must be included in GROUP BY."
        )

    if where_clause and is_aggregate(where_clause):
        raise ToolError(
            "Error: WHERE clause cannot contain aggregate functions. "
            "Use HAVING clause instead for filtering aggregated results."
        )

    if order_by:
        invalid = []
        for term in order_by.split(","):
            expression = ORDER_MODIFIERS.sub("", term).strip()
            if expression and not is_aggregate(expression) and _normalise(expression) not in grouped:
                invalid.append(expression)
        if invalid:
            raise ToolError(
                "Error: ORDER BY fields must be either in GROUP BY clause or be aggregate functions: "
                + ", ".join(invalid)
            )


async def aggregate_query(
    object_name: str,
    select_fields: List[str],
    group_by_fields: List[str],
    where_clause: Optional[str] = None,
    having_clause: Optional[str] = None,
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
) -> str:
    """Run a GROUP BY query with aggregate functions."""
    logger.info(f"Executing tool: aggregate_query with object_name: {object_name}, group_by: {group_by_fields}")
    if not select_fields or not group_by_fields:
        raise ToolError("selectFields and groupByFields must not be empty")
    validate_aggregate_query(select_fields, group_by_fields, where_clause, order_by)

    soql = f"SELECT {', '.join(select_fields)} FROM {object_name}"
    if where_clause:
        soql += f" WHERE {where_clause}"
    soql += f" GROUP BY {', '.join(group_by_fields)}"
    if having_clause:
        soql += f" HAVING {having_clause}"
    if order_by:
        soql += f" ORDER BY {order_by}"
    if limit:
        soql += f" LIMIT {int(limit)}"

    sf = get_salesforce_conn()
    logger.debug(f"SOQL: {soql}")
    result = sf.query(soql)
    records = result.get("records", [])

    blocks = [
        f"Group {index}:\n" + format_record_lines(record, record_fields(record))
        for index, record in enumerate(records, start=1)
    ]
    text = f"Aggregate query returned {len(records)} grouped results:"
    if blocks:
        text += "\n\n" + "\n\n".join(blocks)
    return text


def escape_sosl(term: str) -> str:
    """Escape SOSL reserved characters, keeping the * and ? wildcards."""
    return "".join(f"\\{char}" if char in SOSL_RESERVED else char for char in term)


def _with_clause(clause: Dict[str, Any]) -> str:
    clause_type = clause.get("type", "").upper()
    value = clause.get("value")
    if clause_type not in WITH_CLAUSE_TYPES:
        raise ToolError(f"Unsupported WITH clause '{clause_type}'. Expected one of: {', '.join(WITH_CLAUSE_TYPES)}")

    if clause_type == "SECURITY_ENFORCED":
        return "WITH SECURITY_ENFORCED"
    if clause_type == "SNIPPET":
        return f"WITH SNIPPET (target_length={int(value)})" if value else "WITH SNIPPET"
    if clause_type == "DATA CATEGORY":
        if clause.get("fields"):
            return "WITH DATA CATEGORY " + " AND ".join(clause["fields"])
        if not value:
            raise ToolError("WITH DATA CATEGORY requires a value or fields")
        return f"WITH DATA CATEGORY {value}"
    if not value:
        raise ToolError(f"WITH {clause_type} requires a value")
    if clause_type == "METADATA":
        return f"WITH METADATA = '{value}'"
    return f"WITH {clause_type} = '{value}'"


def build_sosl(search_term: str, objects: List[Dict[str, Any]], search_in: Optional[str] = None,
               with_clauses: Optional[List[Dict[str, Any]]] = None, limit: Optional[int] = None) -> str:
    scope = (search_in or "ALL FIELDS").upper()
    if scope not in SEARCH_SCOPES:
        raise ToolError(f"Invalid searchIn '{search_in}'. Expected one of: {', '.join(SEARCH_SCOPES)}")

    returning = []
    for obj in objects:
        if not obj.get("name") or not obj.get("fields"):
            raise ToolError("Each object needs a name and at least one field")
        spec = f"{obj['name']}({', '.join(obj['fields'])}"
        if obj.get("where"):
            spec += f" WHERE {obj['where']}"
        if obj.get("orderBy"):
            spec += f" ORDER BY {obj['orderBy']}"
        if obj.get("limit"):
            spec += f" LIMIT {int(obj['limit'])}"
        returning.append(spec + ")")

    sosl = f"FIND {{{escape_sosl(search_term)}}} IN {scope} RETURNING {', '.join(returning)}"
    for clause in with_clauses or []:
        sosl += f" {_with_clause(clause)}"
    if limit:
        sosl += f" LIMIT {int(limit)}"
    return sosl


async def search_all(
    search_term: str,
    objects: List[Dict[str, Any]],
    search_in: Optional[str] = None,
    with_clauses: Optional[List[Dict[str, Any]]] = None,
    limit: Optional[int] = None,
) -> str:
    """Search across several objects at once with SOSL."""
    logger.info(f"Executing tool: search_all with search_term: {search_term}")
    if not objects:
        raise ToolError("At least one object must be specified in objects")
    sosl = build_sosl(search_term, objects, search_in, with_clauses, limit)

    sf = get_salesforce_conn()
    logger.debug(f"SOSL: {sosl}")
    result = sf.search(sosl)
    hits = result.get("searchRecords", []) if isinstance(result, dict) else result or []

    by_type: Dict[str, List[Dict[str, Any]]] = {}
    for record in hits:
        # sObject names are case-insensitive
        object_type = (record.get("attributes", {}).get("type") or "").lower()
        by_type.setdefault(object_type, []).append(record)

    sections = []
    for obj in objects:
        records = by_type.get(obj["name"].lower(), [])
        if not records:
            sections.append(f"{obj['name']}: No records found")
            continue
        blocks = [
            f"  Record {index}:\n" + format_record_lines(record, obj["fields"], indent="    ")
            for index, record in enumerate(records, start=1)
        ]
        sections.append(f"{obj['name']} ({len(records)} records found):\n" + "\n".join(blocks))

    return f'Search results for "{search_term}":\n\n' + "\n\n".join(sections)
