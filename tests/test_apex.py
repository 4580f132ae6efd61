"""Tests for the Apex class, trigger and anonymous execution tools."""

from unittest.mock import MagicMock

import pytest
from simple_salesforce.exceptions import SalesforceError

from mcp_servers.salesforce.tools.apex import (
    execute_anonymous,
    filter_user_debug,
    read_apex,
    read_apex_trigger,
    write_apex,
    write_apex_trigger,
)
from mcp_servers.salesforce.tools.base import ToolError

CLASS_BODY = "public with sharing class InvoiceService {\n    public static void run() {}\n}"
TRIGGER_BODY = "trigger InvoiceTrigger on Invoice__c (before insert) {\n}"

DEBUG_LOG = "\n".join([
    "59.0 APEX_CODE,DEBUG",
    "12:00:00.1 (100)|USER_DEBUG|[1]|ERROR|something broke",
    "12:00:00.2 (200)|USER_DEBUG|[2]|DEBUG|total=3",
    "12:00:00.3 (300)|USER_DEBUG|[3]|FINE|details",
    "12:00:00.4 (400)|CODE_UNIT_FINISHED|execute_anonymous_apex",
])


def userinfo(sf, user_id="005000000000001"):
    response = MagicMock()
    response.json.return_value = {"user_id": user_id}
    sf.session.get.return_value = response
    return response


class TestReadApex:
    """Tests for read_apex and read_apex_trigger."""

    @pytest.mark.asyncio
    async def test_read_class_by_name(self, sf):
        sf.query.return_value = {"records": [{"Id": "01p000000000001", "Name": "InvoiceService", "Body": CLASS_BODY}]}

        text = await read_apex(class_name="InvoiceService")

        assert text == f"# Apex Class: InvoiceService\n\n```apex\n{CLASS_BODY}\n```"

    @pytest.mark.asyncio
    async def test_read_class_with_metadata(self, sf):
        sf.query.return_value = {"records": [{
            "Id": "01p000000000001", "Name": "InvoiceService", "Body": CLASS_BODY, "ApiVersion": 58.0,
            "LengthWithoutComments": 64, "Status": "Active", "IsValid": True,
            "LastModifiedDate": "2024-05-01T10:00:00.000+0000", "LastModifiedBy": {"Name": "Ann Lee"},
        }]}

        text = await read_apex(class_name="InvoiceService", include_metadata=True)

        assert "**ID:** 01p000000000001\n**API Version:** 58.0\n**Length Without Comments:** 64" in text
        assert "**Is Valid:** Yes" in text
        assert "**Last Modified:** 2024-05-01T10:00:00.000+0000 by Ann Lee" in text

    @pytest.mark.asyncio
    async def test_read_missing_class(self, sf):
        sf.query.return_value = {"records": []}

        with pytest.raises(ToolError, match="No Apex class found with name: Missing"):
            await read_apex(class_name="Missing")

    @pytest.mark.asyncio
    async def test_list_with_wildcard(self, sf):
        """Test that wildcard patterns become LIKE filters."""
        sf.query.return_value = {"records": [{"Name": "InvoiceService"}, {"Name": "InvoiceServiceTest"}]}

        text = await read_apex(name_pattern="Invoice*")

        assert "WHERE Name LIKE 'Invoice%'" in sf.query.call_args.args[0]
        assert text == "# Found 2 Apex Classes\n\n- InvoiceService\n- InvoiceServiceTest"

    @pytest.mark.asyncio
    async def test_list_plain_pattern_is_substring(self, sf):
        sf.query.return_value = {"records": []}

        text = await read_apex(name_pattern="Service")

        assert "WHERE Name LIKE '%Service%'" in sf.query.call_args.args[0]
        assert text == "No Apex classes found matching 'Service'."

    @pytest.mark.asyncio
    async def test_list_triggers_with_metadata(self, sf):
        sf.query.return_value = {"records": [{
            "Name": "InvoiceTrigger", "TableEnumOrId": "Invoice__c", "ApiVersion": 58.0,
            "Status": "Active", "IsValid": True, "LastModifiedDate": "2024-05-01",
        }]}

        text = await read_apex_trigger(include_metadata=True)

        assert text.startswith("# Found 1 Apex Triggers\n\n| Name | Object |")
        assert "| InvoiceTrigger | Invoice__c | 58.0 | Active | Yes | 2024-05-01 |" in text


class TestWriteApex:
    """Tests for write_apex and write_apex_trigger."""

    @pytest.mark.asyncio
    async def test_create_class(self, sf):
        sf.query.return_value = {"records": []}
        sf.toolingexecute.return_value = {"id": "01p000000000001", "success": True, "errors": []}

        text = await write_apex("create", "InvoiceService", CLASS_BODY)

        sf.toolingexecute.assert_called_once_with("sobjects/ApexClass", method="POST", data={
            "Name": "InvoiceService", "Body": CLASS_BODY, "ApiVersion": 58.0,
        })
        assert text == "Successfully created Apex class: InvoiceService\n\n**ID:** 01p000000000001\n**API Version:** 58.0"

    @pytest.mark.asyncio
    async def test_create_existing_class(self, sf):
        sf.query.return_value = {"records": [{"Id": "01p000000000001", "Name": "InvoiceService"}]}

        with pytest.raises(ToolError, match="already exists"):
            await write_apex("create", "InvoiceService", CLASS_BODY)
        sf.toolingexecute.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_class(self, sf):
        sf.query.return_value = {"records": [{"Id": "01p000000000001", "Name": "InvoiceService", "ApiVersion": 57.0}]}

        text = await write_apex("update", "InvoiceService", CLASS_BODY)

        sf.toolingexecute.assert_called_once_with(
            "sobjects/ApexClass/01p000000000001", method="PATCH", data={"Body": CLASS_BODY},
        )
        assert text.endswith("**API Version:** 57.0")

    @pytest.mark.asyncio
    async def test_update_missing_class(self, sf):
        sf.query.return_value = {"records": []}

        with pytest.raises(ToolError, match="No Apex class found with name: InvoiceService"):
            await write_apex("update", "InvoiceService", CLASS_BODY)

    @pytest.mark.asyncio
    async def test_body_must_declare_class(self, sf):
        with pytest.raises(ToolError, match="must declare 'class OtherService'"):
            await write_apex("create", "OtherService", CLASS_BODY)
        sf.query.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_trigger(self, sf):
        sf.query.return_value = {"records": []}
        sf.toolingexecute.return_value = {"id": "01q000000000001", "success": True, "errors": []}

        text = await write_apex_trigger("create", "InvoiceTrigger", TRIGGER_BODY, object_name="Invoice__c",
                                        api_version="59.0")

        data = sf.toolingexecute.call_args.kwargs["data"]
        assert data["TableEnumOrId"] == "Invoice__c"
        assert data["ApiVersion"] == 59.0
        assert text.startswith("Successfully created Apex trigger: InvoiceTrigger")

    @pytest.mark.asyncio
    async def test_create_trigger_requires_object(self, sf):
        with pytest.raises(ToolError, match="objectName is required"):
            await write_apex_trigger("create", "InvoiceTrigger", TRIGGER_BODY)

    @pytest.mark.asyncio
    async def test_create_trigger_object_mismatch(self, sf):
        with pytest.raises(ToolError, match="targets Invoice__c but objectName is Account"):
            await write_apex_trigger("create", "InvoiceTrigger", TRIGGER_BODY, object_name="Account")


class TestExecuteAnonymous:
    """Tests for execute_anonymous."""

    def test_filter_user_debug(self):
        assert filter_user_debug(DEBUG_LOG, "DEBUG") == ["something broke", "total=3"]
        assert filter_user_debug(DEBUG_LOG, "ERROR") == ["something broke"]
        assert filter_user_debug(DEBUG_LOG, "FINEST") == ["something broke", "total=3", "details"]

    @pytest.mark.asyncio
    async def test_success_with_log(self, sf):
        """Test the result, debug digest and full log sections."""
        userinfo(sf)
        sf.query.return_value = {"records": [{"Id": "07L000000000001"}]}
        sf.toolingexecute.side_effect = [
            {"compiled": True, "success": True, "line": -1, "column": -1},
            DEBUG_LOG,
        ]

        text = await execute_anonymous("System.debug('total=3');", log_level="DEBUG")

        assert sf.toolingexecute.call_args_list[0].args[0] == (
            "executeAnonymous/?anonymousBody=System.debug%28%27total%3D3%27%29%3B"
        )
        assert sf.toolingexecute.call_args_list[1].args[0] == "sobjects/ApexLog/07L000000000001/Body"
        assert text.startswith("## Execution Result\n\n**Compiled:** Yes\n**Success:** Yes")
        assert "## Debug Output (DEBUG and above)\n\nsomething broke\ntotal=3" in text
        assert text.endswith(f"## Debug Log\n\n```\n{DEBUG_LOG}\n```")

    @pytest.mark.asyncio
    async def test_compile_failure(self, sf):
        sf.toolingexecute.return_value = {
            "compiled": False, "success": False, "line": 1, "column": 5,
            "compileProblem": "Unexpected token 'x'.",
        }

        with pytest.raises(ToolError) as exc_info:
            await execute_anonymous("x x;")

        message = str(exc_info.value)
        assert "**Compiled:** No" in message
        assert "**Compile Problem:** Unexpected token 'x'." in message
        assert "**Line:** 1, **Column:** 5" in message
        sf.session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_runtime_exception(self, sf):
        userinfo(sf)
        sf.query.return_value = {"records": []}
        sf.toolingexecute.return_value = {
            "compiled": True, "success": False,
            "exceptionMessage": "System.NullPointerException: Attempt to de-reference a null object",
            "exceptionStackTrace": "AnonymousBlock: line 1, column 1",
        }

        with pytest.raises(ToolError) as exc_info:
            await execute_anonymous("String s; s.length();")

        message = str(exc_info.value)
        assert "**Exception:** System.NullPointerException" in message
        assert "AnonymousBlock: line 1, column 1" in message
        assert "No debug log was captured." in message

    @pytest.mark.asyncio
    async def test_log_retrieval_failure_is_not_fatal(self, sf):
        userinfo(sf)
        sf.query.side_effect = SalesforceError(
            "https://acme.my.salesforce.com/query", 403, "query",
            [{"errorCode": "INSUFFICIENT_ACCESS", "message": "no access to ApexLog"}],
        )
        sf.toolingexecute.return_value = {"compiled": True, "success": True}

        text = await execute_anonymous("Integer i = 1;")

        assert "Debug log unavailable: INSUFFICIENT_ACCESS: no access to ApexLog" in text

    @pytest.mark.asyncio
    async def test_invalid_log_level(self, sf):
        with pytest.raises(ToolError, match="Invalid logLevel 'TRACE'"):
            await execute_anonymous("Integer i = 1;", log_level="TRACE")
