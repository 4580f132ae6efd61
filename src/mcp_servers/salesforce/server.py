import asyncio
import base64
import contextlib
import json
import logging
import os
from collections.abc import AsyncIterator

import click
import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send
from dotenv import load_dotenv

from .connection import SalesforceConnectionError, create_salesforce_connection, has_connection_settings
from .tools import (
    access_token_context, instance_url_context, set_default_connection, format_tool_error, ToolError,
    # Objects
    search_objects, describe_object, manage_object,
    # Fields
    manage_field, manage_field_permissions,
    # Queries
    query_records, aggregate_query, search_all,
    # Data
    dml_records,
    # Apex
    read_apex, write_apex, read_apex_trigger, write_apex_trigger, execute_anonymous,
    # Debug logs
    manage_debug_logs,
    # Custom endpoints
    list_customers, LIST_CUSTOMERS_HINTS,
)

# Configure logging
logger = logging.getLogger(__name__)
load_dotenv()
SALESFORCE_MCP_SERVER_PORT = int(os.getenv("SALESFORCE_MCP_SERVER_PORT", "5000"))

LOG_LEVEL_ENUM = ["NONE", "ERROR", "WARN", "INFO", "DEBUG", "FINE", "FINER", "FINEST"]


def extract_auth_credentials(request_or_scope) -> tuple[str, str]:
    """Extract access token and instance URL from request headers.

    Returns:
        tuple: (access_token, instance_url)
    """
    auth_data = os.getenv("AUTH_DATA")

    if not auth_data:
        # Get headers based on input type
        if hasattr(request_or_scope, 'headers'):
            # SSE request object
            header_value = request_or_scope.headers.get('x-auth-data')
            if header_value:
                auth_data = base64.b64decode(header_value).decode('utf-8')
        elif isinstance(request_or_scope, dict) and 'headers' in request_or_scope:
            # StreamableHTTP scope object
            headers = dict(request_or_scope.get("headers", []))
            header_value = headers.get(b'x-auth-data')
            if header_value:
                auth_data = base64.b64decode(header_value).decode('utf-8')

    if not auth_data:
        return "", ""

    try:
        auth_json = json.loads(auth_data)
        return auth_json.get('access_token', ''), auth_json.get('instance_url', '')
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse auth data JSON: {e}")
        return "", ""


TOOLS = [
    # Object Tools
    types.Tool(
        name="salesforce_search_objects",
        description="Search for standard and custom objects in Salesforce by partial name match. Every word of the pattern must appear in the object's API name or label, e.g. 'Account Coverage' finds 'Account_Coverage__c'.",
        inputSchema={
            "type": "object",
            "required": ["searchPattern"],
            "properties": {
                "searchPattern": {"type": "string", "description": "Search pattern to find objects (e.g., 'Account Coverage' will find objects like 'AccountCoverage__c')"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_METADATA", "readOnlyHint": True})
    ),
    types.Tool(
        name="salesforce_describe_object",
        description="Get detailed schema metadata for a Salesforce object including all fields, their types, relationships and picklist values.",
        inputSchema={
            "type": "object",
            "required": ["objectName"],
            "properties": {
                "objectName": {"type": "string", "description": "API name of the object (e.g., 'Account', 'Contact', 'Custom_Object__c')"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_METADATA", "readOnlyHint": True})
    ),
    types.Tool(
        name="salesforce_manage_object",
        description="Create new custom objects or modify existing ones through the Metadata API. Supports setting labels, descriptions, the name field (Text or AutoNumber) and the sharing model.",
        inputSchema={
            "type": "object",
            "required": ["operation", "objectName"],
            "properties": {
                "operation": {"type": "string", "enum": ["create", "update"], "description": "Whether to create a new object or update an existing one"},
                "objectName": {"type": "string", "description": "API name for the object (without __c suffix)"},
                "label": {"type": "string", "description": "Label for the object"},
                "pluralLabel": {"type": "string", "description": "Plural label for the object"},
                "description": {"type": "string", "description": "Description of the object"},
                "nameFieldLabel": {"type": "string", "description": "Label for the name field (default: '<label> Name')"},
                "nameFieldType": {"type": "string", "enum": ["Text", "AutoNumber"], "description": "Type of the name field"},
                "nameFieldFormat": {"type": "string", "description": "Display format for AutoNumber name fields (e.g., 'A-{0000}')"},
                "sharingModel": {"type": "string", "enum": ["ReadWrite", "Read", "Private", "ControlledByParent"], "description": "Sharing model for the object (default: ReadWrite)"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_METADATA"})
    ),

    # Field Tools
    types.Tool(
        name="salesforce_manage_field",
        description="Create new custom fields or modify existing ones on any Salesforce object. Supports Text, Number, Currency, Percent, Checkbox, Date, DateTime, Email, Phone, Url, Picklist, MultiselectPicklist, LongTextArea, Lookup and MasterDetail fields. New fields are made visible to the System Administrator profile unless grantAccessTo names other profiles.",
        inputSchema={
            "type": "object",
            "required": ["operation", "objectName", "fieldName"],
            "properties": {
                "operation": {"type": "string", "enum": ["create", "update"], "description": "Whether to create a new field or update an existing one"},
                "objectName": {"type": "string", "description": "API name of the object to add or modify the field on"},
                "fieldName": {"type": "string", "description": "API name for the field (without __c suffix)"},
                "label": {"type": "string", "description": "Label for the field"},
                "type": {"type": "string", "enum": ["Text", "TextArea", "LongTextArea", "Html", "Number", "Currency", "Percent", "Checkbox", "Date", "DateTime", "Email", "Phone", "Url", "Picklist", "MultiselectPicklist", "Lookup", "MasterDetail"], "description": "Field type (required for create)"},
                "required": {"type": "boolean", "description": "Whether the field is required"},
                "unique": {"type": "boolean", "description": "Whether the field value must be unique"},
                "externalId": {"type": "boolean", "description": "Whether the field is an external ID"},
                "length": {"type": "integer", "description": "Length for text fields"},
                "precision": {"type": "integer", "description": "Precision for numeric fields"},
                "scale": {"type": "integer", "description": "Scale for numeric fields"},
                "referenceTo": {"type": "string", "description": "API name of the object to reference (Lookup/MasterDetail)"},
                "relationshipLabel": {"type": "string", "description": "Label for the relationship (Lookup/MasterDetail)"},
                "relationshipName": {"type": "string", "description": "API name for the relationship (Lookup/MasterDetail)"},
                "deleteConstraint": {"type": "string", "enum": ["Cascade", "Restrict", "SetNull"], "description": "Delete behaviour for Lookup fields (default: SetNull)"},
                "picklistValues": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["label"],
                        "properties": {
                            "label": {"type": "string"},
                            "isDefault": {"type": "boolean"}
                        }
                    },
                    "description": "Values for Picklist and MultiselectPicklist fields"
                },
                "description": {"type": "string", "description": "Description of the field"},
                "grantAccessTo": {"type": "array", "items": {"type": "string"}, "description": "Profile names to grant field access to (default: ['System Administrator'])"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_METADATA"})
    ),
    types.Tool(
        name="salesforce_manage_field_permissions",
        description="Manage field level security for a field: grant or revoke read/edit access for profiles, or view which profiles currently have access.",
        inputSchema={
            "type": "object",
            "required": ["operation", "objectName", "fieldName"],
            "properties": {
                "operation": {"type": "string", "enum": ["grant", "revoke", "view"], "description": "Operation to perform on field permissions"},
                "objectName": {"type": "string", "description": "API name of the object (e.g., 'Account', 'Custom_Object__c')"},
                "fieldName": {"type": "string", "description": "API name of the field (e.g., 'Custom_Field__c')"},
                "profileNames": {"type": "array", "items": {"type": "string"}, "description": "Profile names to grant or revoke access for (e.g., ['System Administrator', 'Sales User'])"},
                "readable": {"type": "boolean", "description": "Grant read access (default: true)", "default": True},
                "editable": {"type": "boolean", "description": "Grant edit access, implies read (default: true)", "default": True}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_SECURITY"})
    ),

    # Query Tools
    types.Tool(
        name="salesforce_query_records",
        description="Query records from any Salesforce object using SOQL, including parent relationship fields in dot notation (e.g. 'Account.Name', 'Custom_Object__r.Name') and child sub-queries (e.g. '(SELECT Id, Name FROM Contacts)'). Custom relationships use the __r suffix.",
        inputSchema={
            "type": "object",
            "required": ["objectName", "fields"],
            "properties": {
                "objectName": {"type": "string", "description": "API name of the object to query"},
                "fields": {"type": "array", "items": {"type": "string"}, "description": "List of fields to retrieve, including relationship fields"},
                "whereClause": {"type": "string", "description": "WHERE clause, can include conditions on related objects"},
                "orderBy": {"type": "string", "description": "ORDER BY clause, can include fields from related objects"},
                "limit": {"type": "integer", "description": "Maximum number of records to return"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_QUERY", "readOnlyHint": True})
    ),
    types.Tool(
        name="salesforce_aggregate_query",
        description="Execute SOQL queries with GROUP BY and aggregate functions (COUNT, COUNT_DISTINCT, SUM, AVG, MIN, MAX). Every non-aggregate field in selectFields must appear in groupByFields; use havingClause rather than whereClause to filter on aggregates.",
        inputSchema={
            "type": "object",
            "required": ["objectName", "selectFields", "groupByFields"],
            "properties": {
                "objectName": {"type": "string", "description": "API name of the object to query"},
                "selectFields": {"type": "array", "items": {"type": "string"}, "description": "Fields and aggregate expressions to select, e.g. ['StageName', 'COUNT(Id) OpportunityCount']"},
                "groupByFields": {"type": "array", "items": {"type": "string"}, "description": "Fields to group by, must include every non-aggregate select field"},
                "whereClause": {"type": "string", "description": "WHERE clause to filter rows before grouping (no aggregate functions)"},
                "havingClause": {"type": "string", "description": "HAVING clause to filter grouped results"},
                "orderBy": {"type": "string", "description": "ORDER BY clause using grouped fields or aggregate functions"},
                "limit": {"type": "integer", "description": "Maximum number of grouped results to return"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_QUERY", "readOnlyHint": True})
    ),
    types.Tool(
        name="salesforce_search_all",
        description="Search across multiple Salesforce objects using SOSL. Supports field scopes, per-object WHERE/ORDER BY/LIMIT, and WITH clauses (DATA CATEGORY, DIVISION, METADATA, NETWORK, PRICEBOOKID, SNIPPET, SECURITY_ENFORCED). '*' and '?' act as wildcards in the search term.",
        inputSchema={
            "type": "object",
            "required": ["searchTerm", "objects"],
            "properties": {
                "searchTerm": {"type": "string", "description": "Text to search for (supports wildcards * and ?)"},
                "searchIn": {"type": "string", "enum": ["ALL FIELDS", "NAME FIELDS", "EMAIL FIELDS", "PHONE FIELDS", "SIDEBAR FIELDS"], "description": "Which fields to search in (default: ALL FIELDS)"},
                "objects": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["name", "fields"],
                        "properties": {
                            "name": {"type": "string", "description": "API name of the object"},
                            "fields": {"type": "array", "items": {"type": "string"}, "description": "Fields to return for this object"},
                            "where": {"type": "string", "description": "WHERE clause for this object"},
                            "orderBy": {"type": "string", "description": "ORDER BY clause for this object"},
                            "limit": {"type": "integer", "description": "Maximum number of records to return for this object"}
                        }
                    },
                    "description": "Objects to search and fields to return"
                },
                "withClauses": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["type"],
                        "properties": {
                            "type": {"type": "string", "enum": ["DATA CATEGORY", "DIVISION", "METADATA", "NETWORK", "PRICEBOOKID", "SNIPPET", "SECURITY_ENFORCED"]},
                            "value": {"type": ["string", "integer"], "description": "Value for the WITH clause (snippet target length for SNIPPET)"},
                            "fields": {"type": "array", "items": {"type": "string"}, "description": "Data category conditions for DATA CATEGORY"}
                        }
                    },
                    "description": "Additional WITH clauses for the search"
                },
                "limit": {"type": "integer", "description": "Overall maximum number of records to return"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_QUERY", "readOnlyHint": True})
    ),

    # Data Tools
    types.Tool(
        name="salesforce_dml_records",
        description="Perform data manipulation on up to 200 records of one object: insert, update, delete or upsert (by external ID). Records are processed independently and failures are reported per record.",
        inputSchema={
            "type": "object",
            "required": ["operation", "objectName", "records"],
            "properties": {
                "operation": {"type": "string", "enum": ["insert", "update", "delete", "upsert"], "description": "Type of DML operation to perform"},
                "objectName": {"type": "string", "description": "API name of the object"},
                "records": {"type": "array", "items": {"type": "object"}, "description": "Records to process; update and delete need an Id on every record"},
                "externalIdFieldName": {"type": "string", "description": "External ID field name for upsert operations"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_DATA"})
    ),

    # Apex Tools
    types.Tool(
        name="salesforce_read_apex",
        description="Read Apex classes. With className returns the full source of that class; otherwise lists classes, optionally filtered by namePattern ('*' and '?' wildcards, or a plain substring).",
        inputSchema={
            "type": "object",
            "properties": {
                "className": {"type": "string", "description": "Name of a specific Apex class to read"},
                "namePattern": {"type": "string", "description": "Pattern to match Apex class names (e.g. 'Account*', '*Service')"},
                "includeMetadata": {"type": "boolean", "description": "Include API version, length, status and last modified information"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_APEX", "readOnlyHint": True})
    ),
    types.Tool(
        name="salesforce_write_apex",
        description="Create or update an Apex class through the Tooling API. The body must declare the class with the same name as className.",
        inputSchema={
            "type": "object",
            "required": ["operation", "className", "body"],
            "properties": {
                "operation": {"type": "string", "enum": ["create", "update"], "description": "Whether to create a new class or update an existing one"},
                "className": {"type": "string", "description": "Name of the Apex class"},
                "apiVersion": {"type": "string", "description": "API version for the class (default: 58.0)"},
                "body": {"type": "string", "description": "Full source code of the Apex class"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_APEX"})
    ),
    types.Tool(
        name="salesforce_read_apex_trigger",
        description="Read Apex triggers. With triggerName returns the full source of that trigger; otherwise lists triggers, optionally filtered by namePattern.",
        inputSchema={
            "type": "object",
            "properties": {
                "triggerName": {"type": "string", "description": "Name of a specific Apex trigger to read"},
                "namePattern": {"type": "string", "description": "Pattern to match trigger names (e.g. 'Account*')"},
                "includeMetadata": {"type": "boolean", "description": "Include object, API version, status and last modified information"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_APEX", "readOnlyHint": True})
    ),
    types.Tool(
        name="salesforce_write_apex_trigger",
        description="Create or update an Apex trigger through the Tooling API. The body must declare 'trigger <triggerName> on <Object>'; objectName is required when creating.",
        inputSchema={
            "type": "object",
            "required": ["operation", "triggerName", "body"],
            "properties": {
                "operation": {"type": "string", "enum": ["create", "update"], "description": "Whether to create a new trigger or update an existing one"},
                "triggerName": {"type": "string", "description": "Name of the Apex trigger"},
                "objectName": {"type": "string", "description": "API name of the object the trigger is on (required for create)"},
                "apiVersion": {"type": "string", "description": "API version for the trigger (default: 58.0)"},
                "body": {"type": "string", "description": "Full source code of the trigger"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_APEX"})
    ),
    types.Tool(
        name="salesforce_execute_anonymous",
        description="Execute anonymous Apex code and return the compile and execution result together with the latest debug log of the running user. With logLevel, USER_DEBUG output at that level and above is summarised.",
        inputSchema={
            "type": "object",
            "required": ["apexCode"],
            "properties": {
                "apexCode": {"type": "string", "description": "Apex code to execute"},
                "logLevel": {"type": "string", "enum": LOG_LEVEL_ENUM, "description": "Minimum USER_DEBUG level to summarise"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_APEX"})
    ),

    # Debug Log Tools
    types.Tool(
        name="salesforce_manage_debug_logs",
        description="Manage debug logs for a Salesforce user: enable logging at a level for a number of minutes, disable it, or retrieve recent logs (optionally a single log by id and with full bodies).",
        inputSchema={
            "type": "object",
            "required": ["operation", "username"],
            "properties": {
                "operation": {"type": "string", "enum": ["enable", "disable", "retrieve"], "description": "Operation to perform on debug logs"},
                "username": {"type": "string", "description": "Username of the Salesforce user"},
                "logLevel": {"type": "string", "enum": LOG_LEVEL_ENUM[1:], "description": "Apex log level (required for enable)"},
                "expirationTime": {"type": "integer", "description": "Minutes until the trace flag expires (default: 30, max: 1440)", "default": 30},
                "limit": {"type": "integer", "description": "Maximum number of logs to retrieve (default: 10)", "default": 10},
                "logId": {"type": "string", "description": "ID of a specific log to retrieve"},
                "includeBody": {"type": "boolean", "description": "Include the full log content (default: false)", "default": False}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_DEBUG"})
    ),

    # Custom Endpoint Tools
    types.Tool(
        name="salesforce_list_customers",
        description="Invoke the Vlocity CMT integration procedure REST endpoint (/services/apexrest/vlocity_cmt/v1/integrationprocedure/JW_ListMyCustomers) to list customer accounts for a user. Use 'current' as userId for the authenticated user.",
        inputSchema={
            "type": "object",
            "required": ["userId"],
            "properties": {
                "userId": {"type": "string", "description": "Salesforce user ID to list customers for, or 'current' for the authenticated user"}
            }
        },
        annotations=types.ToolAnnotations(**{"category": "SALESFORCE_CUSTOM", "readOnlyHint": True})
    ),
]

# Phrase completing "Error <action>: ..." for each tool
ERROR_ACTIONS = {
    "salesforce_search_objects": "searching objects",
    "salesforce_describe_object": "describing object",
    "salesforce_manage_object": "managing object",
    "salesforce_manage_field": "managing field",
    "salesforce_manage_field_permissions": "managing field permissions",
    "salesforce_query_records": "executing query",
    "salesforce_aggregate_query": "executing aggregate query",
    "salesforce_search_all": "executing search",
    "salesforce_dml_records": "performing DML operation",
    "salesforce_read_apex": "reading Apex class",
    "salesforce_write_apex": "writing Apex class",
    "salesforce_read_apex_trigger": "reading Apex trigger",
    "salesforce_write_apex_trigger": "writing Apex trigger",
    "salesforce_execute_anonymous": "executing anonymous Apex",
    "salesforce_manage_debug_logs": "managing debug logs",
    "salesforce_list_customers": "listing customers",
}

ERROR_HINTS = {
    "salesforce_list_customers": LIST_CUSTOMERS_HINTS,
}

REQUIRED_ARGUMENTS = {tool.name: tool.inputSchema.get("required", []) for tool in TOOLS}


async def call_tool_text(name: str, arguments: dict) -> str:
    """Run the handler for ``name`` and return its text."""
    # Object tools
    if name == "salesforce_search_objects":
        return await search_objects(arguments["searchPattern"])
    elif name == "salesforce_describe_object":
        return await describe_object(arguments["objectName"])
    elif name == "salesforce_manage_object":
        return await manage_object(
            operation=arguments["operation"],
            object_name=arguments["objectName"],
            label=arguments.get("label"),
            plural_label=arguments.get("pluralLabel"),
            description=arguments.get("description"),
            name_field_label=arguments.get("nameFieldLabel"),
            name_field_type=arguments.get("nameFieldType"),
            name_field_format=arguments.get("nameFieldFormat"),
            sharing_model=arguments.get("sharingModel")
        )

    # Field tools
    elif name == "salesforce_manage_field":
        return await manage_field(
            operation=arguments["operation"],
            object_name=arguments["objectName"],
            field_name=arguments["fieldName"],
            label=arguments.get("label"),
            field_type=arguments.get("type"),
            required=arguments.get("required"),
            unique=arguments.get("unique"),
            external_id=arguments.get("externalId"),
            length=arguments.get("length"),
            precision=arguments.get("precision"),
            scale=arguments.get("scale"),
            reference_to=arguments.get("referenceTo"),
            relationship_label=arguments.get("relationshipLabel"),
            relationship_name=arguments.get("relationshipName"),
            delete_constraint=arguments.get("deleteConstraint"),
            picklist_values=arguments.get("picklistValues"),
            description=arguments.get("description"),
            grant_access_to=arguments.get("grantAccessTo")
        )
    elif name == "salesforce_manage_field_permissions":
        return await manage_field_permissions(
            operation=arguments["operation"],
            object_name=arguments["objectName"],
            field_name=arguments["fieldName"],
            profile_names=arguments.get("profileNames"),
            readable=arguments.get("readable", True),
            editable=arguments.get("editable", True)
        )

    # Query tools
    elif name == "salesforce_query_records":
        return await query_records(
            object_name=arguments["objectName"],
            fields=arguments["fields"],
            where_clause=arguments.get("whereClause"),
            order_by=arguments.get("orderBy"),
            limit=arguments.get("limit")
        )
    elif name == "salesforce_aggregate_query":
        return await aggregate_query(
            object_name=arguments["objectName"],
            select_fields=arguments["selectFields"],
            group_by_fields=arguments["groupByFields"],
            where_clause=arguments.get("whereClause"),
            having_clause=arguments.get("havingClause"),
            order_by=arguments.get("orderBy"),
            limit=arguments.get("limit")
        )
    elif name == "salesforce_search_all":
        return await search_all(
            search_term=arguments["searchTerm"],
            objects=arguments["objects"],
            search_in=arguments.get("searchIn"),
            with_clauses=arguments.get("withClauses"),
            limit=arguments.get("limit")
        )

    # Data tools
    elif name == "salesforce_dml_records":
        return await dml_records(
            operation=arguments["operation"],
            object_name=arguments["objectName"],
            records=arguments["records"],
            external_id_field_name=arguments.get("externalIdFieldName")
        )

    # Apex tools
    elif name == "salesforce_read_apex":
        return await read_apex(
            class_name=arguments.get("className"),
            name_pattern=arguments.get("namePattern"),
            include_metadata=arguments.get("includeMetadata", False)
        )
    elif name == "salesforce_write_apex":
        return await write_apex(
            operation=arguments["operation"],
            class_name=arguments["className"],
            body=arguments["body"],
            api_version=arguments.get("apiVersion")
        )
    elif name == "salesforce_read_apex_trigger":
        return await read_apex_trigger(
            trigger_name=arguments.get("triggerName"),
            name_pattern=arguments.get("namePattern"),
            include_metadata=arguments.get("includeMetadata", False)
        )
    elif name == "salesforce_write_apex_trigger":
        return await write_apex_trigger(
            operation=arguments["operation"],
            trigger_name=arguments["triggerName"],
            body=arguments["body"],
            object_name=arguments.get("objectName"),
            api_version=arguments.get("apiVersion")
        )
    elif name == "salesforce_execute_anonymous":
        return await execute_anonymous(arguments["apexCode"], arguments.get("logLevel"))

    # Debug log tools
    elif name == "salesforce_manage_debug_logs":
        return await manage_debug_logs(
            operation=arguments["operation"],
            username=arguments["username"],
            log_level=arguments.get("logLevel"),
            expiration_time=arguments.get("expirationTime", 30),
            limit=arguments.get("limit", 10),
            log_id=arguments.get("logId"),
            include_body=arguments.get("includeBody", False)
        )

    # Custom endpoint tools
    elif name == "salesforce_list_customers":
        return await list_customers(arguments["userId"])

    raise ToolError(f"Unknown tool: {name}")


def _text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)], isError=is_error)


async def dispatch_tool(name: str, arguments: dict | None) -> types.CallToolResult:
    """Call a tool by name, turning any failure into an error result."""
    if name not in ERROR_ACTIONS:
        return _text_result(f"Unknown tool: {name}", is_error=True)

    arguments = arguments or {}
    missing = [key for key in REQUIRED_ARGUMENTS[name] if key not in arguments]
    if missing:
        logger.warning(f"Tool {name} called without {missing}")
        return _text_result(
            f"Error {ERROR_ACTIONS[name]}: Missing required argument: {', '.join(missing)}", is_error=True
        )

    try:
        text = await call_tool_text(name, arguments)
    except ToolError as e:
        logger.warning(f"Tool {name} failed: {e}")
        return _text_result(str(e), is_error=True)
    except Exception as e:
        logger.exception(f"Error executing tool {name}: {e}")
        return _text_result(format_tool_error(ERROR_ACTIONS[name], e, ERROR_HINTS.get(name)), is_error=True)

    return _text_result(text)


def create_app() -> Server:
    """Create the MCP server instance with the Salesforce tool catalog."""
    app = Server("salesforce-mcp-server")

    @app.list_tools()
    async def list_tools() -> list[types.Tool]:
        return TOOLS

    @app.call_tool()
    async def call_tool(name: str, arguments: dict) -> types.CallToolResult:
        return await dispatch_tool(name, arguments)

    return app


def init_default_connection(required: bool) -> None:
    """Connect with environment credentials, unless they are optional and absent."""
    if not required and not has_connection_settings():
        logger.info("No Salesforce credentials configured; requests must carry x-auth-data")
        return

    sf = create_salesforce_connection()
    set_default_connection(sf)
    logger.info(f"Connected to Salesforce instance {sf.sf_instance}")


async def run_stdio(app: Server) -> None:
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run_http(app: Server, port: int, json_response: bool) -> None:
    # Set up SSE transport
    sse = SseServerTransport("/messages/")

    async def handle_sse(request):
        logger.info("Handling SSE connection")

        # Extract auth credentials from headers
        access_token, instance_url = extract_auth_credentials(request)

        # Set the access token and instance URL in context for this request
        access_token_token = access_token_context.set(access_token or "")
        instance_url_token = instance_url_context.set(instance_url or "")
        try:
            async with sse.connect_sse(request.scope, request.receive, request._send) as streams:
                await app.run(streams[0], streams[1], app.create_initialization_options())
        finally:
            access_token_context.reset(access_token_token)
            instance_url_context.reset(instance_url_token)

        return Response()

    # Set up StreamableHTTP transport
    session_manager = StreamableHTTPSessionManager(
        app=app,
        event_store=None,
        json_response=json_response,
        stateless=True,
    )

    async def handle_streamable_http(scope: Scope, receive: Receive, send: Send) -> None:
        logger.info("Handling StreamableHTTP request")

        # Extract auth credentials from headers
        access_token, instance_url = extract_auth_credentials(scope)

        # Set the access token and instance URL in context for this request
        access_token_token = access_token_context.set(access_token or "")
        instance_url_token = instance_url_context.set(instance_url or "")
        try:
            await session_manager.handle_request(scope, receive, send)
        finally:
            access_token_context.reset(access_token_token)
            instance_url_context.reset(instance_url_token)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        """Context manager for session manager."""
        async with session_manager.run():
            logger.info("Application started with dual transports!")
            try:
                yield
            finally:
                logger.info("Application shutting down...")

    # Create an ASGI application with routes for both transports
    starlette_app = Starlette(
        routes=[
            Route("/sse", endpoint=handle_sse, methods=["GET"]),
            Mount("/messages/", app=sse.handle_post_message),
            Mount("/mcp", app=handle_streamable_http),
        ],
        lifespan=lifespan,
    )

    logger.info(f"Server starting on port {port} with dual transports:")
    logger.info(f"  - SSE endpoint: http://localhost:{port}/sse")
    logger.info(f"  - StreamableHTTP endpoint: http://localhost:{port}/mcp")

    import uvicorn
    uvicorn.run(starlette_app, host="0.0.0.0", port=port)


@click.command()
@click.option("--transport", type=click.Choice(["stdio", "http"]), default="stdio", help="Transport to serve: stdio, or HTTP with SSE and StreamableHTTP endpoints")
@click.option("--port", default=SALESFORCE_MCP_SERVER_PORT, help="Port to listen on for HTTP")
@click.option("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
@click.option("--json-response", is_flag=True, default=False, help="Enable JSON responses for StreamableHTTP instead of SSE streams")
def main(transport: str, port: int, log_level: str, json_response: bool) -> int:
    # Configure logging
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        init_default_connection(required=transport == "stdio")
    except SalesforceConnectionError as e:
        logger.error(f"Failed to connect to Salesforce: {e}")
        raise click.ClickException(str(e)) from e

    # Create the MCP server instance
    app = create_app()

    if transport == "stdio":
        logger.info("Salesforce MCP server running on stdio")
        asyncio.run(run_stdio(app))
    else:
        run_http(app, port, json_response)
    return 0


if __name__ == "__main__":
    main()
