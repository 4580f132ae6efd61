import json
import logging
from typing import Any, Dict

from .base import ToolError, current_user_id, get_salesforce_conn

# Configure logging
logger = logging.getLogger(__name__)

LIST_CUSTOMERS_ENDPOINT = "vlocity_cmt/v1/integrationprocedure/JW_ListMyCustomers"

STANDARD_FIELDS = ("Name", "Id", "Type", "Industry", "Phone", "Website", "BillingAddress")

# Error hints specific to the custom REST endpoint
LIST_CUSTOMERS_HINTS = {
    "not_found": "The REST endpoint was not found. Please verify that the Vlocity CMT integration procedure is properly deployed.",
    "forbidden": "Access denied. Please check that you have the necessary permissions to access this REST endpoint.",
    "unauthenticated": "Authentication failed. Please check your Salesforce connection credentials.",
    "invalid_id": "The provided user ID is invalid. Please check the user ID format.",
}


def _or_na(value: Any) -> Any:
    return value if value else "N/A"


def _billing_address(address: Any) -> str:
    if not address:
        return "N/A"
    return (
        f"{address.get('street') or ''}, {address.get('city') or ''}, "
        f"{address.get('state') or ''} {address.get('postalCode') or ''}"
    )


def _format_account(account: Dict[str, Any], additional: bool = True) -> str:
    lines = [
        f"- **Name:** {_or_na(account.get('Name'))}",
        f"- **Id:** {_or_na(account.get('Id'))}",
        f"- **Type:** {_or_na(account.get('Type'))}",
        f"- **Industry:** {_or_na(account.get('Industry'))}",
        f"- **Phone:** {_or_na(account.get('Phone'))}",
        f"- **Website:** {_or_na(account.get('Website'))}",
        f"- **Billing Address:** {_billing_address(account.get('BillingAddress'))}",
    ]
    extra = [key for key in account if key not in STANDARD_FIELDS]
    if additional and extra:
        lines.append("- **Additional Fields:**")
        lines.extend(f"  - {key}: {_or_na(account[key])}" for key in extra)
    return "\n".join(lines)


async def list_customers(user_id: str) -> str:
    """List customer accounts for a user through the Vlocity CMT integration procedure.

    ``user_id`` may be a Salesforce user id or ``current`` for the
    authenticated user.
    """
    logger.info(f"Executing tool: list_customers with user_id: {user_id}")
    sf = get_salesforce_conn()

    request_body = {"userId": current_user_id(sf) if user_id == "current" else user_id}
    response = sf.apexecute(LIST_CUSTOMERS_ENDPOINT, method="POST", data=request_body)

    if response is None:
        raise ToolError("No response received from the REST endpoint")

    text = f"# Customer Accounts for User: {user_id}\n\n"
    if isinstance(response, list):
        text += f"Found {len(response)} customer accounts:\n\n"
        for index, account in enumerate(response, start=1):
            text += f"## Account {index}\n{_format_account(account)}\n\n"
    elif isinstance(response, dict):
        text += "Found 1 customer account:\n\n"
        text += f"## Account Details\n{_format_account(response, additional=False)}\n"
    else:
        text += f"Response format: {type(response).__name__}\n"
        text += f"Raw response: {json.dumps(response, indent=2)}"
    return text
