import logging
from typing import Any, Dict, List, Optional

from .base import ToolError, get_salesforce_conn

# Configure logging
logger = logging.getLogger(__name__)

OPERATIONS = ("insert", "update", "delete", "upsert")

# sObject Collections accept at most 200 records per request
MAX_RECORDS = 200


def _with_type(object_name: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"attributes": {"type": object_name}, **record} for record in records]


def format_dml_results(operation: str, results: List[Dict[str, Any]]) -> str:
    successes = sum(1 for result in results if result.get("success"))
    failures = len(results) - successes

    text = (
        f"{operation.upper()} operation completed.\n"
        f"Processed {len(results)} records:\n"
        f"- Successful: {successes}\n"
        f"- Failed: {failures}"
    )

    error_blocks = []
    for index, result in enumerate(results, start=1):
        if result.get("success"):
            continue
        lines = [f"Record {index}:"]
        for error in result.get("errors") or []:
            lines.append(f"  - [{error.get('statusCode')}] {error.get('message')}")
            if error.get("fields"):
                lines.append(f"    Fields: {', '.join(error['fields'])}")
        error_blocks.append("\n".join(lines))
    if error_blocks:
        text += "\n\nErrors:\n" + "\n".join(error_blocks)
    return text


async def dml_records(
    operation: str,
    object_name: str,
    records: List[Dict[str, Any]],
    external_id_field_name: Optional[str] = None,
) -> str:
    """Insert, update, delete or upsert records in a single sObject Collections call."""
    logger.info(f"Executing tool: dml_records with operation: {operation}, object_name: {object_name}, records: {len(records)}")
    if operation not in OPERATIONS:
        raise ToolError(f"Invalid operation '{operation}'. Expected one of: {', '.join(OPERATIONS)}")
    if not records:
        raise ToolError("records must contain at least one record")
    if len(records) > MAX_RECORDS:
        raise ToolError(f"At most {MAX_RECORDS} records can be processed per call, got {len(records)}")
    if operation in ("update", "delete") and any(not record.get("Id") for record in records):
        raise ToolError(f"Every record must include an Id for {operation}")
    if operation == "upsert" and not external_id_field_name:
        raise ToolError("externalIdFieldName is required for upsert operations")

    sf = get_salesforce_conn()

    if operation == "insert":
        results = sf.restful(
            "composite/sobjects", method="POST",
            json={"allOrNone": False, "records": _with_type(object_name, records)},
        )
    elif operation == "update":
        results = sf.restful(
            "composite/sobjects", method="PATCH",
            json={"allOrNone": False, "records": _with_type(object_name, records)},
        )
    elif operation == "delete":
        results = sf.restful(
            "composite/sobjects", method="DELETE",
            params={"ids": ",".join(record["Id"] for record in records), "allOrNone": "false"},
        )
    else:
        results = sf.restful(
            f"composite/sobjects/{object_name}/{external_id_field_name}", method="PATCH",
            json={"allOrNone": False, "records": _with_type(object_name, records)},
        )

    return format_dml_results(operation, results or [])
