# Salesforce MCP Server Tools
# This package contains all the tool implementations organized by area

from .objects import (
    search_objects, describe_object, manage_object
)
from .fields import (
    manage_field, manage_field_permissions
)
from .query import (
    query_records, aggregate_query, search_all
)
from .dml import dml_records
from .apex import (
    read_apex, write_apex, read_apex_trigger, write_apex_trigger, execute_anonymous
)
from .debug_logs import manage_debug_logs
from .customers import list_customers, LIST_CUSTOMERS_HINTS

from .base import (
    access_token_context, instance_url_context, set_default_connection, format_tool_error, ToolError
)

__all__ = [
    # Objects
    "search_objects",
    "describe_object",
    "manage_object",

    # Fields
    "manage_field",
    "manage_field_permissions",

    # Queries
    "query_records",
    "aggregate_query",
    "search_all",

    # Data
    "dml_records",

    # Apex
    "read_apex",
    "write_apex",
    "read_apex_trigger",
    "write_apex_trigger",
    "execute_anonymous",

    # Debug logs
    "manage_debug_logs",

    # Custom endpoints
    "list_customers",
    "LIST_CUSTOMERS_HINTS",

    # Base
    "access_token_context",
    "instance_url_context",
    "set_default_connection",
    "format_tool_error",
    "ToolError",
]
