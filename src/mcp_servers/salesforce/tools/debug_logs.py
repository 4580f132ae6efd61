import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from simple_salesforce import Salesforce
from simple_salesforce.format import format_soql

from .base import ToolError, get_salesforce_conn, sf_datetime, tooling_query

# Configure logging
logger = logging.getLogger(__name__)

TRACE_LOG_LEVELS = ("ERROR", "WARN", "INFO", "DEBUG", "FINE", "FINER", "FINEST")
MAX_EXPIRATION_MINUTES = 1440

LOG_FIELDS = "Id, Application, DurationMilliseconds, LogLength, Operation, Request, StartTime, Status"


def _find_user(sf: Salesforce, username: str) -> Dict[str, Any]:
    result = sf.query(format_soql("SELECT Id, Username, Name FROM User WHERE Username = {}", username))
    records = result.get("records", [])
    if not records:
        raise ToolError(f"User not found: {username}")
    return records[0]


def _active_trace_flags(sf: Salesforce, user_id: str, now: datetime):
    soql = format_soql(
        "SELECT Id, DebugLevelId, ExpirationDate FROM TraceFlag WHERE TracedEntityId = {} AND LogType = 'USER_DEBUG'",
        user_id,
    )
    soql += f" AND ExpirationDate > {now:%Y-%m-%dT%H:%M:%SZ}"
    return tooling_query(sf, soql).get("records", [])


def _debug_level_settings(log_level: str) -> Dict[str, str]:
    return {
        "ApexCode": log_level,
        "ApexProfiling": "INFO",
        "Callout": "INFO",
        "Database": "INFO",
        "System": "DEBUG",
        "Validation": "INFO",
        "Visualforce": log_level,
        "Workflow": "INFO",
    }


def _create_debug_level(sf: Salesforce, log_level: str, now: datetime) -> str:
    # DeveloperName must be unique across the org
    name = f"UserDebug_{now:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}"
    result = sf.toolingexecute("sobjects/DebugLevel", method="POST", data={
        "DeveloperName": name,
        "MasterLabel": name,
        **_debug_level_settings(log_level),
    })
    if not result.get("success"):
        raise ToolError(f"Failed to create debug level: {result.get('errors')}")
    return result["id"]


def _enable(sf: Salesforce, user: Dict[str, Any], log_level: Optional[str], expiration_time: int) -> str:
    if not log_level:
        raise ToolError("logLevel is required to enable debug logs")
    if log_level not in TRACE_LOG_LEVELS:
        raise ToolError(f"Invalid logLevel '{log_level}'. Expected one of: {', '.join(TRACE_LOG_LEVELS)}")
    if not 1 <= expiration_time <= MAX_EXPIRATION_MINUTES:
        raise ToolError(f"expirationTime must be between 1 and {MAX_EXPIRATION_MINUTES} minutes")

    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=expiration_time)
    dates = {"StartDate": sf_datetime(now), "ExpirationDate": sf_datetime(expires)}

    active = _active_trace_flags(sf, user["Id"], now)
    if active:
        trace_flag = active[0]
        trace_flag_id = trace_flag["Id"]
        if trace_flag.get("DebugLevelId"):
            sf.toolingexecute(f"sobjects/DebugLevel/{trace_flag['DebugLevelId']}", method="PATCH",
                              data=_debug_level_settings(log_level))
            data = dates
        else:
            data = {"DebugLevelId": _create_debug_level(sf, log_level, now), **dates}
        sf.toolingexecute(f"sobjects/TraceFlag/{trace_flag_id}", method="PATCH", data=data)
        action = "Updated existing trace flag"
    else:
        result = sf.toolingexecute("sobjects/TraceFlag", method="POST", data={
            "TracedEntityId": user["Id"],
            "DebugLevelId": _create_debug_level(sf, log_level, now),
            "LogType": "USER_DEBUG",
            **dates,
        })
        if not result.get("success"):
            raise ToolError(f"Failed to create trace flag: {result.get('errors')}")
        trace_flag_id = result["id"]
        action = "Created new trace flag"

    return (
        f"Successfully enabled debug logs for user {user['Username']}.\n\n"
        f"{action}.\n"
        f"**Trace Flag ID:** {trace_flag_id}\n"
        f"**Log Level:** {log_level}\n"
        f"**Expires:** {expires:%Y-%m-%d %H:%M:%S} UTC ({expiration_time} minutes)"
    )


def _disable(sf: Salesforce, user: Dict[str, Any]) -> str:
    soql = format_soql("SELECT Id FROM TraceFlag WHERE TracedEntityId = {}", user["Id"])
    trace_flags = tooling_query(sf, soql).get("records", [])
    if not trace_flags:
        return f"No debug log trace flags found for user {user['Username']}."

    for trace_flag in trace_flags:
        sf.toolingexecute(f"sobjects/TraceFlag/{trace_flag['Id']}", method="DELETE")
    return f"Successfully disabled debug logs for user {user['Username']}. Removed {len(trace_flags)} trace flag(s)."


def _format_log(log: Dict[str, Any], body: Optional[str] = None) -> str:
    lines = [
        f"**ID:** {log.get('Id')}",
        f"**Operation:** {log.get('Operation')}",
        f"**Application:** {log.get('Application')}",
        f"**Status:** {log.get('Status')}",
        f"**Start Time:** {log.get('StartTime')}",
        f"**Duration:** {log.get('DurationMilliseconds')} ms",
        f"**Size:** {log.get('LogLength')} bytes",
    ]
    if body is not None:
        lines.extend(["", "```", body, "```"])
    return "\n".join(lines)


def _log_body(sf: Salesforce, log_id: str) -> str:
    body = sf.toolingexecute(f"sobjects/ApexLog/{log_id}/Body")
    return body if isinstance(body, str) else str(body)


def _retrieve(sf: Salesforce, user: Dict[str, Any], limit: int, log_id: Optional[str], include_body: bool) -> str:
    if log_id:
        result = sf.query(format_soql(f"SELECT {LOG_FIELDS} FROM ApexLog WHERE Id = {{}}", log_id))
        records = result.get("records", [])
        if not records:
            raise ToolError(f"Debug log not found: {log_id}")
        body = _log_body(sf, log_id) if include_body else None
        return f"# Debug Log {log_id}\n\n" + _format_log(records[0], body)

    if limit < 1:
        raise ToolError("limit must be a positive number")
    result = sf.query(format_soql(
        f"SELECT {LOG_FIELDS} FROM ApexLog WHERE LogUserId = {{}} ORDER BY StartTime DESC LIMIT {int(limit)}",
        user["Id"],
    ))
    logs = result.get("records", [])
    if not logs:
        return f"No debug logs found for user {user['Username']}."

    blocks = [
        f"## Log {index}\n" + _format_log(log, _log_body(sf, log["Id"]) if include_body else None)
        for index, log in enumerate(logs, start=1)
    ]
    return f"# Debug Logs for {user['Username']}\n\nFound {len(logs)} logs:\n\n" + "\n\n".join(blocks)


async def manage_debug_logs(
    operation: str,
    username: str,
    log_level: Optional[str] = None,
    expiration_time: int = 30,
    limit: int = 10,
    log_id: Optional[str] = None,
    include_body: bool = False,
) -> str:
    """Enable, disable or retrieve debug logs for a user."""
    logger.info(f"Executing tool: manage_debug_logs with operation: {operation}, username: {username}")
    if operation not in ("enable", "disable", "retrieve"):
        raise ToolError(f"Invalid operation '{operation}'. Expected 'enable', 'disable' or 'retrieve'")

    sf = get_salesforce_conn()
    user = _find_user(sf, username)

    if operation == "enable":
        return _enable(sf, user, log_level, expiration_time)
    if operation == "disable":
        return _disable(sf, user)
    return _retrieve(sf, user, limit, log_id, include_body)
