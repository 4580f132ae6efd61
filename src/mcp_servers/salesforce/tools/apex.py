import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from simple_salesforce import Salesforce
from simple_salesforce.exceptions import SalesforceError
from simple_salesforce.format import format_soql

from .base import ToolError, current_user_id, error_message, get_salesforce_conn, wildcard_to_like

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "58.0"
LOG_LEVELS = ("NONE", "ERROR", "WARN", "INFO", "DEBUG", "FINE", "FINER", "FINEST")

# Per-kind query settings shared by the class and trigger tools
COMPONENTS = {
    "ApexClass": {
        "label": "Class",
        "plural": "Classes",
        "detail_fields": "Id, Name, Body, ApiVersion, LengthWithoutComments, Status, IsValid, "
                         "LastModifiedDate, LastModifiedBy.Name",
        "list_fields": "Id, Name, ApiVersion, LengthWithoutComments, Status, IsValid, LastModifiedDate",
    },
    "ApexTrigger": {
        "label": "Trigger",
        "plural": "Triggers",
        "detail_fields": "Id, Name, Body, ApiVersion, TableEnumOrId, Status, IsValid, "
                         "LastModifiedDate, LastModifiedBy.Name",
        "list_fields": "Id, Name, ApiVersion, TableEnumOrId, Status, IsValid, LastModifiedDate",
    },
}


def _find_component(sf: Salesforce, sobject: str, name: str, fields: str = "Id, Name") -> Optional[Dict[str, Any]]:
    result = sf.query(format_soql(f"SELECT {fields} FROM {sobject} WHERE Name = {{}}", name))
    records = result.get("records", [])
    return records[0] if records else None


def _format_metadata(record: Dict[str, Any]) -> str:
    lines = [f"**ID:** {record.get('Id')}", f"**API Version:** {record.get('ApiVersion')}"]
    if "TableEnumOrId" in record:
        lines.append(f"**Object:** {record.get('TableEnumOrId')}")
    if "LengthWithoutComments" in record:
        lines.append(f"**Length Without Comments:** {record.get('LengthWithoutComments')}")
    lines.append(f"**Status:** {record.get('Status')}")
    lines.append(f"**Is Valid:** {'Yes' if record.get('IsValid') else 'No'}")
    modified_by = (record.get("LastModifiedBy") or {}).get("Name")
    modified = f"**Last Modified:** {record.get('LastModifiedDate')}"
    if modified_by:
        modified += f" by {modified_by}"
    lines.append(modified)
    return "\n".join(lines)


def _read_component(sobject: str, name: Optional[str], name_pattern: Optional[str], include_metadata: bool) -> str:
    settings = COMPONENTS[sobject]
    sf = get_salesforce_conn()

    if name:
        record = _find_component(sf, sobject, name, settings["detail_fields"])
        if not record:
            raise ToolError(f"No Apex {settings['label'].lower()} found with name: {name}")
        text = f"# Apex {settings['label']}: {record['Name']}\n\n"
        if include_metadata:
            text += _format_metadata(record) + "\n\n"
        return text + f"```apex\n{record.get('Body') or ''}\n```"

    soql = f"SELECT {settings['list_fields']} FROM {sobject}"
    if name_pattern:
        soql += format_soql(" WHERE Name LIKE {}", wildcard_to_like(name_pattern))
    soql += " ORDER BY Name"
    records = sf.query(soql).get("records", [])

    if not records:
        suffix = f" matching '{name_pattern}'" if name_pattern else ""
        return f"No Apex {settings['plural'].lower()} found{suffix}."

    text = f"# Found {len(records)} Apex {settings['plural']}\n\n"
    if not include_metadata:
        return text + "\n".join(f"- {record['Name']}" for record in records)

    if sobject == "ApexTrigger":
        header = "| Name | Object | API Version | Status | Valid | Last Modified |\n|---|---|---|---|---|---|\n"
        rows = [
            f"| {r['Name']} | {r.get('TableEnumOrId')} | {r.get('ApiVersion')} | {r.get('Status')} | "
            f"{'Yes' if r.get('IsValid') else 'No'} | {r.get('LastModifiedDate')} |"
            for r in records
        ]
    else:
        header = "| Name | API Version | Length | Status | Valid | Last Modified |\n|---|---|---|---|---|---|\n"
        rows = [
            f"| {r['Name']} | {r.get('ApiVersion')} | {r.get('LengthWithoutComments')} | {r.get('Status')} | "
            f"{'Yes' if r.get('IsValid') else 'No'} | {r.get('LastModifiedDate')} |"
            for r in records
        ]
    return text + header + "\n".join(rows)


async def read_apex(class_name: Optional[str] = None, name_pattern: Optional[str] = None,
                    include_metadata: bool = False) -> str:
    """Read one Apex class's source, or list classes matching a pattern."""
    logger.info(f"Executing tool: read_apex with class_name: {class_name}, name_pattern: {name_pattern}")
    return _read_component("ApexClass", class_name, name_pattern, include_metadata)


async def read_apex_trigger(trigger_name: Optional[str] = None, name_pattern: Optional[str] = None,
                            include_metadata: bool = False) -> str:
    """Read one Apex trigger's source, or list triggers matching a pattern."""
    logger.info(f"Executing tool: read_apex_trigger with trigger_name: {trigger_name}, name_pattern: {name_pattern}")
    return _read_component("ApexTrigger", trigger_name, name_pattern, include_metadata)


def _check_tooling_result(result: Any, action: str) -> str:
    if isinstance(result, dict) and result.get("success"):
        return result.get("id")
    errors = result.get("errors") if isinstance(result, dict) else result
    raise ToolError(f"Failed to {action}: {errors}")


def _write_component(sobject: str, operation: str, name: str, body: str, api_version: Optional[str],
                     extra: Optional[Dict[str, Any]] = None) -> str:
    settings = COMPONENTS[sobject]
    label = f"Apex {settings['label'].lower()}"
    sf = get_salesforce_conn()
    existing = _find_component(sf, sobject, name, "Id, Name, ApiVersion, Status")

    if operation == "create":
        if existing:
            raise ToolError(f"{label} {name} already exists. Use operation 'update' to modify it.")
        version = api_version or DEFAULT_API_VERSION
        data = {"Name": name, "Body": body, "ApiVersion": float(version), **(extra or {})}
        record_id = _check_tooling_result(
            sf.toolingexecute(f"sobjects/{sobject}", method="POST", data=data),
            f"create {label} {name}",
        )
        return (
            f"Successfully created {label}: {name}\n\n"
            f"**ID:** {record_id}\n**API Version:** {version}"
        )

    if operation == "update":
        if not existing:
            raise ToolError(f"No {label} found with name: {name}")
        data: Dict[str, Any] = {"Body": body}
        if api_version:
            data["ApiVersion"] = float(api_version)
        sf.toolingexecute(f"sobjects/{sobject}/{existing['Id']}", method="PATCH", data=data)
        return (
            f"Successfully updated {label}: {name}\n\n"
            f"**ID:** {existing['Id']}\n**API Version:** {api_version or existing.get('ApiVersion')}"
        )

    raise ToolError(f"Invalid operation '{operation}'. Expected 'create' or 'update'")


async def write_apex(operation: str, class_name: str, body: str, api_version: Optional[str] = None) -> str:
    """Create or update an Apex class through the Tooling API."""
    logger.info(f"Executing tool: write_apex with operation: {operation}, class_name: {class_name}")
    if not re.search(rf"\bclass\s+{re.escape(class_name)}\b", body, re.IGNORECASE):
        raise ToolError(f"The class body must declare 'class {class_name}' to match className")
    return _write_component("ApexClass", operation, class_name, body, api_version)


async def write_apex_trigger(operation: str, trigger_name: str, body: str, object_name: Optional[str] = None,
                             api_version: Optional[str] = None) -> str:
    """Create or update an Apex trigger through the Tooling API."""
    logger.info(f"Executing tool: write_apex_trigger with operation: {operation}, trigger_name: {trigger_name}")
    declaration = re.search(rf"\btrigger\s+{re.escape(trigger_name)}\s+on\s+(\w+)", body, re.IGNORECASE)
    if not declaration:
        raise ToolError(f"The trigger body must declare 'trigger {trigger_name} on <Object>' to match triggerName")

    extra = None
    if operation == "create":
        if not object_name:
            raise ToolError("objectName is required when creating a trigger")
        if declaration.group(1).lower() != object_name.lower():
            raise ToolError(
                f"The trigger body targets {declaration.group(1)} but objectName is {object_name}"
            )
        extra = {"TableEnumOrId": object_name}
    return _write_component("ApexTrigger", operation, trigger_name, body, api_version, extra)


def filter_user_debug(log_body: str, log_level: str) -> List[str]:
    """Keep USER_DEBUG lines at ``log_level`` or more severe."""
    threshold = LOG_LEVELS.index(log_level)
    lines = []
    for line in log_body.splitlines():
        parts = line.split("|")
        if len(parts) >= 5 and parts[1] == "USER_DEBUG" and parts[3] in LOG_LEVELS:
            if 0 < LOG_LEVELS.index(parts[3]) <= threshold:
                lines.append("|".join(parts[4:]))
    return lines


def _latest_log(sf: Salesforce) -> Optional[str]:
    user_id = current_user_id(sf)
    result = sf.query(format_soql(
        "SELECT Id FROM ApexLog WHERE LogUserId = {} ORDER BY StartTime DESC LIMIT 1", user_id,
    ))
    records = result.get("records", [])
    if not records:
        return None
    body = sf.toolingexecute(f"sobjects/ApexLog/{records[0]['Id']}/Body")
    return body if isinstance(body, str) else str(body)


async def execute_anonymous(apex_code: str, log_level: Optional[str] = None) -> str:
    """Execute anonymous Apex and report the outcome with the resulting debug log."""
    logger.info("Executing tool: execute_anonymous")
    if log_level and log_level not in LOG_LEVELS:
        raise ToolError(f"Invalid logLevel '{log_level}'. Expected one of: {', '.join(LOG_LEVELS)}")

    sf = get_salesforce_conn()
    result = sf.toolingexecute(f"executeAnonymous/?anonymousBody={quote(apex_code)}")

    lines = [
        "## Execution Result",
        "",
        f"**Compiled:** {'Yes' if result.get('compiled') else 'No'}",
        f"**Success:** {'Yes' if result.get('success') else 'No'}",
    ]
    if not result.get("compiled"):
        lines.append(f"**Compile Problem:** {result.get('compileProblem')}")
        lines.append(f"**Line:** {result.get('line')}, **Column:** {result.get('column')}")
    if result.get("exceptionMessage"):
        lines.append(f"**Exception:** {result['exceptionMessage']}")
        if result.get("exceptionStackTrace"):
            lines.extend(["**Stack Trace:**", "```", result["exceptionStackTrace"], "```"])

    if result.get("compiled"):
        try:
            log_body = _latest_log(sf)
        except (SalesforceError, requests.RequestException) as e:
            logger.warning(f"Could not retrieve debug log: {e}")
            lines.extend(["", f"Debug log unavailable: {error_message(e)}"])
        else:
            if log_body is None:
                lines.extend(["", "No debug log was captured. Enable debug logs for the running user to see output."])
            else:
                if log_level and log_level != "NONE":
                    debug_lines = filter_user_debug(log_body, log_level)
                    lines.extend(["", f"## Debug Output ({log_level} and above)", ""])
                    lines.extend(debug_lines or ["(no USER_DEBUG output)"])
                lines.extend(["", "## Debug Log", "", "```", log_body, "```"])

    text = "\n".join(lines)
    if not result.get("compiled") or not result.get("success"):
        raise ToolError(text)
    return text
