import logging
from contextvars import ContextVar
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

from simple_salesforce import Salesforce
from simple_salesforce.exceptions import SalesforceError

# Configure logging
logger = logging.getLogger(__name__)

# Context variables to store the access token and instance URL for each request
access_token_context: ContextVar[str] = ContextVar('access_token')
instance_url_context: ContextVar[str] = ContextVar('instance_url')

# Connection established from the environment at start-up
_default_connection: Optional[Salesforce] = None


class ToolError(Exception):
    """A tool failure whose message is meant to be shown to the caller as-is."""


def set_default_connection(sf: Optional[Salesforce]) -> None:
    global _default_connection
    _default_connection = sf


def get_salesforce_connection(access_token: str, instance_url: str) -> Salesforce:
    """Create Salesforce connection with access token."""
    return Salesforce(instance_url=instance_url, session_id=access_token)


def get_salesforce_conn() -> Salesforce:
    """Get the Salesforce connection for the current call.

    Credentials carried by the request win over the process-wide connection.
    """
    access_token = access_token_context.get("")
    instance_url = instance_url_context.get("")
    if access_token and instance_url:
        return get_salesforce_connection(access_token, instance_url)

    if _default_connection is None:
        raise RuntimeError(
            "No Salesforce connection available. Configure SALESFORCE_CONNECTION_TYPE credentials "
            "or send x-auth-data with access_token and instance_url."
        )
    return _default_connection


def current_user_id(sf: Salesforce) -> str:
    """Look up the authenticated user's id from the OAuth userinfo endpoint."""
    response = sf.session.get(
        f"https://{sf.sf_instance}/services/oauth2/userinfo",
        headers=sf.headers,
        timeout=30,
    )
    response.raise_for_status()
    user_id = response.json().get("user_id")
    if not user_id:
        raise ToolError("The OAuth userinfo response did not include a user_id")
    return user_id


def tooling_query(sf: Salesforce, soql: str) -> Dict[str, Any]:
    """Execute a query against the Salesforce Tooling API."""
    return sf.toolingexecute(f"query/?q={quote(soql)}")


def sf_datetime(value) -> str:
    """Format a datetime the way Salesforce accepts it in API payloads."""
    return value.strftime("%Y-%m-%dT%H:%M:%S.000+0000")


def wildcard_to_like(pattern: str) -> str:
    """Turn a ``*``/``?`` wildcard pattern into a LIKE pattern.

    Without wildcards the pattern matches as a substring.
    """
    if "*" in pattern or "?" in pattern:
        return pattern.replace("*", "%").replace("?", "_")
    return f"%{pattern}%"


def ensure_custom_suffix(name: str) -> str:
    return name if name.endswith("__c") else f"{name}__c"


def format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def get_field_value(record: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted relationship path such as ``Account.Owner.Name``."""
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
        if value is None:
            return None
    return value


def record_fields(record: Dict[str, Any]) -> List[str]:
    return [key for key in record if key != "attributes"]


def format_record_lines(record: Dict[str, Any], fields: Iterable[str], indent: str = "    ") -> str:
    return "\n".join(f"{indent}{field}: {format_value(get_field_value(record, field))}" for field in fields)


# Hints appended to error messages, keyed by the loose error class
ERROR_HINTS = {
    "not_found": "The requested resource was not found. Check the object, record or endpoint name.",
    "forbidden": "Access denied. Check that the running user has the required permissions.",
    "unauthenticated": "Authentication failed. Check your Salesforce connection credentials.",
    "invalid_id": "The provided identifier is invalid. Check the ID format.",
    "invalid_field": (
        "The request references an invalid field. Check that:\n"
        "1. Field names are spelled correctly and exist on the object\n"
        "2. Relationship fields use dot notation (e.g. Account.Name)\n"
        "3. Custom relationships use the __r suffix (e.g. Custom_Object__r.Name)\n"
        "4. The running user has access to the fields"
    ),
}

_STATUS_CLASSES = {404: "not_found", 403: "forbidden", 401: "unauthenticated"}

_MESSAGE_MARKERS = (
    ("not_found", ("NOT_FOUND", "404")),
    ("forbidden", ("INSUFFICIENT_ACCESS", "403")),
    ("unauthenticated", ("INVALID_SESSION_ID", "401")),
    ("invalid_id", ("INVALID_USER_ID", "INVALID_ID", "MALFORMED_ID", "INVALID_CROSS_REFERENCE_KEY")),
    ("invalid_field", ("INVALID_FIELD", "No such column")),
)


def error_message(e: Exception) -> str:
    """Extract the most useful message from an exception."""
    if isinstance(e, SalesforceError) and e.content:
        content = e.content
        try:
            if isinstance(content, list):
                messages = [
                    f"{item.get('errorCode')}: {item.get('message')}" if item.get('errorCode') else item.get('message')
                    for item in content
                    if isinstance(item, dict) and item.get('message')
                ]
                if messages:
                    return "; ".join(messages)
            elif isinstance(content, dict) and content.get('message'):
                return content['message']
        except AttributeError:
            pass
    return str(e)


def classify_error(e: Exception) -> Optional[str]:
    """Loosely classify an error from its HTTP status and message text."""
    status = getattr(e, "status", None)
    if status in _STATUS_CLASSES:
        return _STATUS_CLASSES[status]
    text = f"{e} {getattr(e, 'content', '')}"
    for error_class, markers in _MESSAGE_MARKERS:
        if any(marker in text for marker in markers):
            return error_class
    return None


def format_tool_error(action: str, e: Exception, hints: Optional[Dict[str, str]] = None) -> str:
    """Render an exception as the plain-text explanation returned to the caller."""
    if isinstance(e, ToolError):
        return str(e)

    text = f"Error {action}: {error_message(e)}"
    error_class = classify_error(e)
    if error_class:
        hint = (hints or {}).get(error_class) or ERROR_HINTS.get(error_class)
        if hint:
            text += f"\n\n{hint}"
    return text
