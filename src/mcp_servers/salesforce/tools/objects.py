import logging
from typing import Any, Dict, List, Optional

from .base import ToolError, ensure_custom_suffix, get_salesforce_conn

# Configure logging
logger = logging.getLogger(__name__)

SHARING_MODELS = ("ReadWrite", "Read", "Private", "ControlledByParent")


async def search_objects(search_pattern: str) -> str:
    """Find standard and custom objects whose name or label matches every search term."""
    logger.info(f"Executing tool: search_objects with search_pattern: {search_pattern}")
    sf = get_salesforce_conn()
    result = sf.describe()

    terms = search_pattern.lower().split()
    matches = [
        obj for obj in result.get("sobjects", [])
        if all(term in obj["name"].lower() or term in (obj.get("label") or "").lower() for term in terms)
    ]

    if not matches:
        return f'No Salesforce objects found matching "{search_pattern}".'

    formatted = "\n\n".join(
        f"{obj['name']}{' (Custom)' if obj.get('custom') else ''}\n  Label: {obj.get('label')}"
        for obj in matches
    )
    return f"Found {len(matches)} matching objects:\n\n{formatted}"


def _format_field(field: Dict[str, Any]) -> str:
    lines = [f"  - {field['name']} ({field.get('label')})"]
    type_line = f"    Type: {field.get('type')}"
    if field.get("length"):
        type_line += f", Length: {field['length']}"
    lines.append(type_line)
    lines.append(f"    Required: {'true' if not field.get('nillable', True) else 'false'}")
    if field.get("referenceTo"):
        lines.append(f"    References: {', '.join(field['referenceTo'])}")
    picklist = [value["value"] for value in field.get("picklistValues") or [] if value.get("active", True)]
    if picklist:
        lines.append(f"    Picklist Values: {', '.join(picklist)}")
    return "\n".join(lines)


async def describe_object(object_name: str) -> str:
    """Get detailed schema and field information for a Salesforce object."""
    logger.info(f"Executing tool: describe_object with object_name: {object_name}")
    sf = get_salesforce_conn()
    sobject = getattr(sf, object_name)
    describe = sobject.describe()

    header = f"Object: {describe['name']} ({describe.get('label')})"
    if describe.get("custom"):
        header += " (Custom Object)"
    fields = "\n".join(_format_field(field) for field in describe.get("fields", []))
    return f"{header}\nFields:\n{fields}"


def _name_field(label: str, name_field_label: Optional[str], name_field_type: Optional[str],
                name_field_format: Optional[str]) -> Dict[str, Any]:
    name_field: Dict[str, Any] = {
        "label": name_field_label or f"{label} Name",
        "type": name_field_type or "Text",
    }
    if name_field["type"] == "AutoNumber":
        if not name_field_format:
            raise ToolError("nameFieldFormat is required when nameFieldType is AutoNumber (e.g. 'A-{0000}')")
        name_field["displayFormat"] = name_field_format
        name_field["startingNumber"] = 1
    return name_field


async def manage_object(
    operation: str,
    object_name: str,
    label: Optional[str] = None,
    plural_label: Optional[str] = None,
    description: Optional[str] = None,
    name_field_label: Optional[str] = None,
    name_field_type: Optional[str] = None,
    name_field_format: Optional[str] = None,
    sharing_model: Optional[str] = None,
) -> str:
    """Create or update a custom object through the Metadata API."""
    logger.info(f"Executing tool: manage_object with operation: {operation}, object_name: {object_name}")
    if sharing_model and sharing_model not in SHARING_MODELS:
        raise ToolError(f"Invalid sharingModel '{sharing_model}'. Expected one of: {', '.join(SHARING_MODELS)}")

    sf = get_salesforce_conn()
    md_api = sf.mdapi
    api_name = ensure_custom_suffix(object_name)

    if operation == "create":
        if not label or not plural_label:
            raise ToolError("label and pluralLabel are required for object creation")

        object_data = {
            "fullName": api_name,
            "label": label,
            "pluralLabel": plural_label,
            "nameField": _name_field(label, name_field_label, name_field_type, name_field_format),
            "deploymentStatus": md_api.DeploymentStatus("Deployed"),
            "sharingModel": md_api.SharingModel(sharing_model or "ReadWrite"),
        }
        if description:
            object_data["description"] = description

        md_api.CustomObject.create(md_api.CustomObject(**object_data))
        return f"Successfully created custom object {api_name}"

    if operation == "update":
        current = md_api.CustomObject.read(api_name)
        if not current or not getattr(current, "fullName", None):
            raise ToolError(f"Custom object {api_name} not found")

        updates: List[str] = []
        if label is not None:
            current.label = label
            updates.append(f"Label: {label}")
        if plural_label is not None:
            current.pluralLabel = plural_label
            updates.append(f"Plural Label: {plural_label}")
        if description is not None:
            current.description = description
            updates.append(f"Description: {description}")
        if sharing_model is not None:
            current.sharingModel = sharing_model
            updates.append(f"Sharing Model: {sharing_model}")
        if name_field_label is not None and getattr(current, "nameField", None):
            current.nameField.label = name_field_label
            updates.append(f"Name Field Label: {name_field_label}")

        if not updates:
            raise ToolError("No updates provided. Specify at least one attribute to change")

        md_api.CustomObject.update(current)
        changes = "\n".join(f"- {update}" for update in updates)
        return f"Successfully updated custom object {api_name}\n\nChanges:\n{changes}"

    raise ToolError(f"Invalid operation '{operation}'. Expected 'create' or 'update'")
