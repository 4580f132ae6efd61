"""Tests for establishing the Salesforce connection."""

import json
import os
from unittest.mock import MagicMock, patch

import pytest
import requests
from simple_salesforce.exceptions import SalesforceAuthenticationFailed

from mcp_servers.salesforce.connection import (
    CLIENT_CREDENTIALS,
    SALESFORCE_CLI,
    ConnectionConfig,
    SalesforceConnectionError,
    create_salesforce_connection,
    has_connection_settings,
    load_connection_config,
    login_domain,
)

MODULE = "mcp_servers.salesforce.connection"


class TestConfig:
    """Tests for reading connection settings."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_connection_config()
            assert config.connection_type == "User_Password"
            assert config.instance_url is None
            assert config.login_url == "https://login.salesforce.com"
            assert has_connection_settings() is False

    def test_from_environment(self):
        env = {
            "SALESFORCE_CONNECTION_TYPE": CLIENT_CREDENTIALS,
            "SALESFORCE_CLIENT_ID": "client",
            "SALESFORCE_CLIENT_SECRET": "secret",
            "SALESFORCE_INSTANCE_URL": "https://acme.my.salesforce.com",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_connection_config()
            assert config.connection_type == CLIENT_CREDENTIALS
            assert config.client_id == "client"
            assert config.login_url == "https://acme.my.salesforce.com"
            assert has_connection_settings() is True

    def test_login_domain(self):
        assert login_domain("https://login.salesforce.com") == "login"
        assert login_domain("https://test.salesforce.com") == "test"
        assert login_domain("https://acme.my.salesforce.com") == "acme.my"
        assert login_domain("https://example.org") == "login"


class TestUserPassword:
    """Tests for username/password login."""

    def test_connects(self):
        config = ConnectionConfig(username="ann@acme.com", password="pw", security_token="tok",
                                  instance_url="https://test.salesforce.com")
        with patch(f"{MODULE}.Salesforce") as salesforce:
            sf = create_salesforce_connection(config)

        salesforce.assert_called_once_with(
            username="ann@acme.com", password="pw", security_token="tok", domain="test",
        )
        assert sf is salesforce.return_value

    def test_passes_api_version(self):
        config = ConnectionConfig(username="ann@acme.com", password="pw", api_version="59.0")
        with patch(f"{MODULE}.Salesforce") as salesforce:
            create_salesforce_connection(config)

        assert salesforce.call_args.kwargs["version"] == "59.0"
        assert salesforce.call_args.kwargs["domain"] == "login"

    def test_requires_credentials(self):
        with pytest.raises(SalesforceConnectionError, match="SALESFORCE_USERNAME and SALESFORCE_PASSWORD"):
            create_salesforce_connection(ConnectionConfig(username="ann@acme.com"))

    def test_login_failure(self):
        config = ConnectionConfig(username="ann@acme.com", password="wrong")
        failure = SalesforceAuthenticationFailed("INVALID_LOGIN", "Invalid username or password")
        with patch(f"{MODULE}.Salesforce", side_effect=failure):
            with pytest.raises(SalesforceConnectionError, match="Salesforce login failed"):
                create_salesforce_connection(config)


class TestClientCredentials:
    """Tests for the OAuth 2.0 client credentials flow."""

    def config(self, **overrides):
        values = {
            "connection_type": CLIENT_CREDENTIALS,
            "client_id": "client",
            "client_secret": "secret",
            "instance_url": "https://acme.my.salesforce.com/",
        }
        values.update(overrides)
        return ConnectionConfig(**values)

    def test_connects(self):
        response = MagicMock(status_code=200)
        response.json.return_value = {"access_token": "00Dtoken", "instance_url": "https://acme.my.salesforce.com"}
        with patch(f"{MODULE}.requests.post", return_value=response) as post, \
                patch(f"{MODULE}.Salesforce") as salesforce:
            create_salesforce_connection(self.config())

        post.assert_called_once_with(
            "https://acme.my.salesforce.com/services/oauth2/token",
            data={"grant_type": "client_credentials", "client_id": "client", "client_secret": "secret"},
            timeout=30,
        )
        salesforce.assert_called_once_with(instance_url="https://acme.my.salesforce.com", session_id="00Dtoken")

    def test_requires_instance_url(self):
        with pytest.raises(SalesforceConnectionError, match="SALESFORCE_INSTANCE_URL is required"):
            create_salesforce_connection(self.config(instance_url=None))

    def test_requires_client_secret(self):
        with pytest.raises(SalesforceConnectionError, match="SALESFORCE_CLIENT_SECRET"):
            create_salesforce_connection(self.config(client_secret=None))

    def test_token_rejected(self):
        response = MagicMock(status_code=400, text='{"error":"invalid_client"}')
        with patch(f"{MODULE}.requests.post", return_value=response):
            with pytest.raises(SalesforceConnectionError, match="status 400"):
                create_salesforce_connection(self.config())

    def test_network_error(self):
        with patch(f"{MODULE}.requests.post", side_effect=requests.ConnectionError("unreachable")):
            with pytest.raises(SalesforceConnectionError, match="OAuth token request failed"):
                create_salesforce_connection(self.config())


class TestSalesforceCli:
    """Tests for reusing a Salesforce CLI session."""

    def completed(self, payload, returncode=0):
        return MagicMock(returncode=returncode, stdout=json.dumps(payload), stderr="")

    def test_connects(self):
        payload = {"status": 0, "result": {"accessToken": "00Dcli", "instanceUrl": "https://acme.my.salesforce.com"}}
        config = ConnectionConfig(connection_type=SALESFORCE_CLI, cli_target_org="acme")
        with patch(f"{MODULE}.subprocess.run", return_value=self.completed(payload)) as run, \
                patch(f"{MODULE}.Salesforce") as salesforce:
            create_salesforce_connection(config)

        assert run.call_args.args[0] == ["sf", "org", "display", "--json", "--target-org", "acme"]
        salesforce.assert_called_once_with(instance_url="https://acme.my.salesforce.com", session_id="00Dcli")

    def test_cli_error(self):
        payload = {"status": 1, "message": "No authorization information found for acme."}
        config = ConnectionConfig(connection_type=SALESFORCE_CLI)
        with patch(f"{MODULE}.subprocess.run", return_value=self.completed(payload, returncode=1)):
            with pytest.raises(SalesforceConnectionError, match="No authorization information found"):
                create_salesforce_connection(config)

    def test_cli_missing(self):
        config = ConnectionConfig(connection_type=SALESFORCE_CLI)
        with patch(f"{MODULE}.subprocess.run", side_effect=FileNotFoundError("sf")):
            with pytest.raises(SalesforceConnectionError, match="Salesforce CLI \\('sf'\\) not found"):
                create_salesforce_connection(config)


def test_unknown_connection_type():
    with pytest.raises(SalesforceConnectionError, match="Unknown SALESFORCE_CONNECTION_TYPE 'JWT'"):
        create_salesforce_connection(ConnectionConfig(connection_type="JWT"))
