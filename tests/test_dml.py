"""Tests for the DML tool."""

import pytest

from mcp_servers.salesforce.tools.base import ToolError
from mcp_servers.salesforce.tools.dml import MAX_RECORDS, dml_records, format_dml_results


class TestDmlRecords:
    """Tests for dml_records."""

    @pytest.mark.asyncio
    async def test_insert(self, sf):
        """Test that inserts go through sObject Collections with type attributes."""
        sf.restful.return_value = [
            {"id": "001000000000001", "success": True, "errors": []},
            {"id": "001000000000002", "success": True, "errors": []},
        ]

        text = await dml_records("insert", "Account", [{"Name": "Acme"}, {"Name": "Globex"}])

        sf.restful.assert_called_once_with("composite/sobjects", method="POST", json={
            "allOrNone": False,
            "records": [
                {"attributes": {"type": "Account"}, "Name": "Acme"},
                {"attributes": {"type": "Account"}, "Name": "Globex"},
            ],
        })
        assert text == (
            "INSERT operation completed.\n"
            "Processed 2 records:\n"
            "- Successful: 2\n"
            "- Failed: 0"
        )

    @pytest.mark.asyncio
    async def test_partial_failure(self, sf):
        """Test that per-record errors are listed with their fields."""
        sf.restful.return_value = [
            {"id": "001000000000001", "success": True, "errors": []},
            {"success": False, "errors": [
                {"statusCode": "REQUIRED_FIELD_MISSING", "message": "Required fields are missing: [Name]",
                 "fields": ["Name"]},
            ]},
        ]

        text = await dml_records("update", "Account", [
            {"Id": "001000000000001", "Name": "Acme"},
            {"Id": "001000000000002", "Name": None},
        ])

        assert sf.restful.call_args.kwargs["method"] == "PATCH"
        assert text == (
            "UPDATE operation completed.\n"
            "Processed 2 records:\n"
            "- Successful: 1\n"
            "- Failed: 1\n\n"
            "Errors:\n"
            "Record 2:\n"
            "  - [REQUIRED_FIELD_MISSING] Required fields are missing: [Name]\n"
            "    Fields: Name"
        )

    @pytest.mark.asyncio
    async def test_delete(self, sf):
        sf.restful.return_value = [{"id": "001000000000001", "success": True, "errors": []}]

        await dml_records("delete", "Account", [{"Id": "001000000000001"}])

        sf.restful.assert_called_once_with(
            "composite/sobjects", method="DELETE",
            params={"ids": "001000000000001", "allOrNone": "false"},
        )

    @pytest.mark.asyncio
    async def test_upsert(self, sf):
        sf.restful.return_value = [{"id": "001000000000001", "success": True, "created": True, "errors": []}]

        text = await dml_records("upsert", "Account", [{"External_Id__c": "A-1", "Name": "Acme"}],
                                 external_id_field_name="External_Id__c")

        assert sf.restful.call_args.args[0] == "composite/sobjects/Account/External_Id__c"
        assert text.startswith("UPSERT operation completed.")

    @pytest.mark.asyncio
    async def test_upsert_requires_external_id(self, sf):
        with pytest.raises(ToolError, match="externalIdFieldName is required"):
            await dml_records("upsert", "Account", [{"Name": "Acme"}])

    @pytest.mark.asyncio
    async def test_update_requires_ids(self, sf):
        with pytest.raises(ToolError, match="must include an Id for update"):
            await dml_records("update", "Account", [{"Name": "Acme"}])
        sf.restful.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_operation(self, sf):
        with pytest.raises(ToolError, match="Invalid operation 'merge'"):
            await dml_records("merge", "Account", [{"Id": "001"}])

    @pytest.mark.asyncio
    async def test_empty_records(self, sf):
        with pytest.raises(ToolError, match="at least one record"):
            await dml_records("insert", "Account", [])

    @pytest.mark.asyncio
    async def test_record_limit(self, sf):
        records = [{"Name": f"Account {i}"} for i in range(MAX_RECORDS + 1)]

        with pytest.raises(ToolError, match="At most 200 records"):
            await dml_records("insert", "Account", records)

    def test_format_without_results(self):
        assert format_dml_results("delete", []) == (
            "DELETE operation completed.\nProcessed 0 records:\n- Successful: 0\n- Failed: 0"
        )
