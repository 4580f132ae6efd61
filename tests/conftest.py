"""Shared fixtures for the Salesforce MCP server tests."""

from unittest.mock import MagicMock

import pytest

from mcp_servers.salesforce.tools.base import set_default_connection


@pytest.fixture
def sf():
    """A mocked Salesforce connection installed as the default connection."""
    connection = MagicMock()
    connection.sf_instance = "acme.my.salesforce.com"
    connection.headers = {"Authorization": "Bearer token"}
    connection.session = MagicMock()
    connection.mdapi = MagicMock()
    set_default_connection(connection)
    yield connection
    set_default_connection(None)
