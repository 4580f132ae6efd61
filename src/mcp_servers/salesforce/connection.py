import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import requests
from simple_salesforce import Salesforce
from simple_salesforce.exceptions import SalesforceAuthenticationFailed

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_URL = "https://login.salesforce.com"

USER_PASSWORD = "User_Password"
CLIENT_CREDENTIALS = "OAuth_2.0_Client_Credentials"
SALESFORCE_CLI = "Salesforce_CLI"
CONNECTION_TYPES = (USER_PASSWORD, CLIENT_CREDENTIALS, SALESFORCE_CLI)


class SalesforceConnectionError(Exception):
    """Raised when a Salesforce connection cannot be configured or established."""


@dataclass
class ConnectionConfig:
    connection_type: str = USER_PASSWORD
    username: Optional[str] = None
    password: Optional[str] = None
    security_token: str = ""
    instance_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    cli_target_org: Optional[str] = None
    api_version: Optional[str] = None

    @property
    def login_url(self) -> str:
        return self.instance_url or DEFAULT_LOGIN_URL


def load_connection_config() -> ConnectionConfig:
    """Read connection settings from the environment."""
    return ConnectionConfig(
        connection_type=os.getenv("SALESFORCE_CONNECTION_TYPE", USER_PASSWORD),
        username=os.getenv("SALESFORCE_USERNAME"),
        password=os.getenv("SALESFORCE_PASSWORD"),
        security_token=os.getenv("SALESFORCE_TOKEN", ""),
        instance_url=os.getenv("SALESFORCE_INSTANCE_URL") or None,
        client_id=os.getenv("SALESFORCE_CLIENT_ID"),
        client_secret=os.getenv("SALESFORCE_CLIENT_SECRET"),
        cli_target_org=os.getenv("SALESFORCE_CLI_TARGET_ORG"),
        api_version=os.getenv("SALESFORCE_API_VERSION"),
    )


def has_connection_settings() -> bool:
    """Whether the environment names a way to connect at start-up."""
    return bool(
        os.getenv("SALESFORCE_CONNECTION_TYPE")
        or os.getenv("SALESFORCE_USERNAME")
        or os.getenv("SALESFORCE_CLIENT_ID")
    )


def login_domain(instance_url: str) -> str:
    """Map a login URL to the ``domain`` simple-salesforce expects.

    ``https://login.salesforce.com`` -> ``login``,
    ``https://acme.my.salesforce.com`` -> ``acme.my``.
    """
    host = urlparse(instance_url).hostname or ""
    suffix = ".salesforce.com"
    if host.endswith(suffix):
        return host[: -len(suffix)]
    return "login"


def _version_kwargs(config: ConnectionConfig) -> dict:
    return {"version": config.api_version} if config.api_version else {}


def _connect_user_password(config: ConnectionConfig) -> Salesforce:
    if not config.username or not config.password:
        raise SalesforceConnectionError(
            "SALESFORCE_USERNAME and SALESFORCE_PASSWORD are required for User_Password authentication"
        )
    domain = login_domain(config.login_url)
    logger.info(f"Connecting to Salesforce as {config.username} (domain: {domain})")
    try:
        return Salesforce(
            username=config.username,
            password=config.password,
            security_token=config.security_token,
            domain=domain,
            **_version_kwargs(config),
        )
    except SalesforceAuthenticationFailed as e:
        raise SalesforceConnectionError(f"Salesforce login failed: {e}") from e


def _connect_client_credentials(config: ConnectionConfig) -> Salesforce:
    if not config.client_id or not config.client_secret:
        raise SalesforceConnectionError(
            "SALESFORCE_CLIENT_ID and SALESFORCE_CLIENT_SECRET are required for OAuth 2.0 Client Credentials Flow"
        )
    if not config.instance_url:
        raise SalesforceConnectionError(
            "SALESFORCE_INSTANCE_URL is required for OAuth 2.0 Client Credentials Flow"
        )

    token_url = f"{config.instance_url.rstrip('/')}/services/oauth2/token"
    logger.info(f"Requesting client credentials token from {token_url}")
    try:
        response = requests.post(
            token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            },
            timeout=30,
        )
    except requests.RequestException as e:
        raise SalesforceConnectionError(f"OAuth token request failed: {e}") from e

    if response.status_code != 200:
        raise SalesforceConnectionError(
            f"OAuth token request failed with status {response.status_code}: {response.text}"
        )

    token = response.json()
    access_token = token.get("access_token")
    if not access_token:
        raise SalesforceConnectionError("OAuth token response did not include an access_token")

    return Salesforce(
        instance_url=token.get("instance_url") or config.instance_url,
        session_id=access_token,
        **_version_kwargs(config),
    )


def _connect_cli(config: ConnectionConfig) -> Salesforce:
    command = ["sf", "org", "display", "--json"]
    if config.cli_target_org:
        command.extend(["--target-org", config.cli_target_org])

    logger.info("Reading org credentials from the Salesforce CLI")
    try:
        completed = subprocess.run(command, capture_output=True, text=True, check=False)
    except FileNotFoundError as e:
        raise SalesforceConnectionError(
            "Salesforce CLI ('sf') not found. Install it or choose another SALESFORCE_CONNECTION_TYPE"
        ) from e

    try:
        payload = json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as e:
        raise SalesforceConnectionError(f"Could not parse 'sf org display' output: {e}") from e

    if completed.returncode != 0 or payload.get("status", 0) != 0:
        message = payload.get("message") or completed.stderr.strip() or "unknown error"
        raise SalesforceConnectionError(f"Salesforce CLI returned an error: {message}")

    result = payload.get("result") or {}
    access_token = result.get("accessToken")
    instance_url = result.get("instanceUrl")
    if not access_token or not instance_url:
        raise SalesforceConnectionError(
            "Salesforce CLI output is missing accessToken or instanceUrl. Run 'sf org login web' first"
        )

    return Salesforce(instance_url=instance_url, session_id=access_token, **_version_kwargs(config))


_CONNECTORS = {
    USER_PASSWORD: _connect_user_password,
    CLIENT_CREDENTIALS: _connect_client_credentials,
    SALESFORCE_CLI: _connect_cli,
}


def create_salesforce_connection(config: Optional[ConnectionConfig] = None) -> Salesforce:
    """Create an authenticated Salesforce connection.

    The connection type is taken from ``SALESFORCE_CONNECTION_TYPE``:

    - ``User_Password``: username, password and optional security token
    - ``OAuth_2.0_Client_Credentials``: connected app client id/secret against
      the My Domain URL in ``SALESFORCE_INSTANCE_URL``
    - ``Salesforce_CLI``: reuse the session of an org authorised with ``sf``

    Raises:
        SalesforceConnectionError: unknown type, missing settings or failed login
    """
    config = config or load_connection_config()
    connector = _CONNECTORS.get(config.connection_type)
    if connector is None:
        raise SalesforceConnectionError(
            f"Unknown SALESFORCE_CONNECTION_TYPE '{config.connection_type}'. "
            f"Expected one of: {', '.join(CONNECTION_TYPES)}"
        )
    return connector(config)
