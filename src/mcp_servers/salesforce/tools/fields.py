import logging
from typing import Any, Dict, List, Optional, Tuple

from simple_salesforce import Salesforce
from simple_salesforce.exceptions import SalesforceError
from simple_salesforce.format import format_soql

from .base import ToolError, ensure_custom_suffix, error_message, get_salesforce_conn

# Configure logging
logger = logging.getLogger(__name__)

FIELD_TYPES = (
    "Text", "TextArea", "LongTextArea", "Html", "Number", "Currency", "Percent", "Checkbox",
    "Date", "DateTime", "Email", "Phone", "Url", "Picklist", "MultiselectPicklist",
    "Lookup", "MasterDetail",
)

DEFAULT_FLS_PROFILES = ["System Administrator"]


def _field_ref(object_name: str, field_name: str) -> str:
    # Fields already carrying a suffix (__c, __pc, ...) are used verbatim
    api_name = field_name if "__" in field_name else ensure_custom_suffix(field_name)
    return f"{object_name}.{api_name}"


def _value_set(picklist_values: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "valueSetDefinition": {
            "value": [
                {"fullName": value["label"], "label": value["label"], "default": bool(value.get("isDefault"))}
                for value in picklist_values
            ],
            "sorted": False,
        }
    }


def _field_metadata(
    full_name: str,
    label: str,
    field_type: str,
    *,
    required: bool = False,
    unique: bool = False,
    external_id: bool = False,
    length: Optional[int] = None,
    precision: Optional[int] = None,
    scale: Optional[int] = None,
    reference_to: Optional[str] = None,
    relationship_label: Optional[str] = None,
    relationship_name: Optional[str] = None,
    delete_constraint: Optional[str] = None,
    picklist_values: Optional[List[Dict[str, Any]]] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Build CustomField metadata with per-type defaults."""
    metadata: Dict[str, Any] = {"fullName": full_name, "label": label, "type": field_type}

    if field_type == "Text":
        metadata["length"] = length or 255
    elif field_type in ("LongTextArea", "Html"):
        metadata["length"] = length or 32768
        metadata["visibleLines"] = 3
    elif field_type in ("Number", "Currency", "Percent"):
        metadata["precision"] = precision or 18
        metadata["scale"] = scale if scale is not None else (0 if field_type == "Number" else 2)
    elif field_type == "Checkbox":
        metadata["defaultValue"] = "false"
    elif field_type in ("Lookup", "MasterDetail"):
        if not reference_to:
            raise ToolError(f"referenceTo is required for {field_type} fields")
        metadata["referenceTo"] = reference_to
        metadata["relationshipName"] = relationship_name or label.replace(" ", "")
        metadata["relationshipLabel"] = relationship_label or label
        if field_type == "Lookup":
            metadata["deleteConstraint"] = delete_constraint or "SetNull"
    elif field_type in ("Picklist", "MultiselectPicklist"):
        if not picklist_values:
            raise ToolError(f"picklistValues are required for {field_type} fields")
        metadata["valueSet"] = _value_set(picklist_values)
        if field_type == "MultiselectPicklist":
            metadata["visibleLines"] = 4

    # Checkbox and master-detail fields are implicitly required
    if required and field_type not in ("Checkbox", "MasterDetail"):
        metadata["required"] = True
    if unique:
        metadata["unique"] = True
    if external_id:
        metadata["externalId"] = True
    if description:
        metadata["description"] = description
    return metadata


def _profile_permission_sets(sf: Salesforce, profile_names: List[str]) -> Tuple[Dict[str, str], List[str]]:
    """Map profile names to their profile-owned permission set ids."""
    result = sf.query(format_soql(
        "SELECT Id, Profile.Name FROM PermissionSet WHERE IsOwnedByProfile = true AND Profile.Name IN {}",
        profile_names,
    ))
    found = {record["Profile"]["Name"]: record["Id"] for record in result.get("records", [])}
    missing = [name for name in profile_names if name not in found]
    return found, missing


def _existing_permission(sf: Salesforce, permission_set_id: str, object_name: str, field_ref: str) -> Optional[str]:
    result = sf.query(format_soql(
        "SELECT Id FROM FieldPermissions WHERE ParentId = {} AND SobjectType = {} AND Field = {}",
        permission_set_id, object_name, field_ref,
    ))
    records = result.get("records", [])
    return records[0]["Id"] if records else None


def apply_field_permissions(
    sf: Salesforce,
    operation: str,
    object_name: str,
    field_ref: str,
    profile_names: List[str],
    readable: bool = True,
    editable: bool = True,
) -> Tuple[List[Tuple[str, bool, str]], List[str]]:
    """Grant or revoke field access on each profile.

    Returns per-profile ``(profile, succeeded, detail)`` tuples and the profile
    names that do not exist.
    """
    permission_sets, missing = _profile_permission_sets(sf, profile_names)
    readable = readable or editable
    results: List[Tuple[str, bool, str]] = []

    for profile, permission_set_id in permission_sets.items():
        try:
            existing_id = _existing_permission(sf, permission_set_id, object_name, field_ref)
            if operation == "grant":
                values = {"PermissionsRead": readable, "PermissionsEdit": editable}
                if existing_id:
                    sf.FieldPermissions.update(existing_id, values)
                else:
                    sf.FieldPermissions.create({
                        "ParentId": permission_set_id,
                        "SobjectType": object_name,
                        "Field": field_ref,
                        **values,
                    })
                access = "Read/Edit" if editable else "Read"
                results.append((profile, True, f"{access} access granted"))
            elif existing_id:
                sf.FieldPermissions.delete(existing_id)
                results.append((profile, True, "access revoked"))
            else:
                results.append((profile, True, "no access to revoke"))
        except SalesforceError as e:
            logger.warning(f"Field permission {operation} failed for profile {profile}: {e}")
            results.append((profile, False, error_message(e)))

    return results, missing


def _format_permission_results(results: List[Tuple[str, bool, str]], missing: List[str]) -> str:
    lines = [f"- {profile}: {'Success' if ok else 'Failed'} ({detail})" for profile, ok, detail in results]
    lines.extend(f"- {profile}: Failed (profile not found)" for profile in missing)
    return "\n".join(lines)


async def manage_field(
    operation: str,
    object_name: str,
    field_name: str,
    label: Optional[str] = None,
    field_type: Optional[str] = None,
    required: Optional[bool] = None,
    unique: Optional[bool] = None,
    external_id: Optional[bool] = None,
    length: Optional[int] = None,
    precision: Optional[int] = None,
    scale: Optional[int] = None,
    reference_to: Optional[str] = None,
    relationship_label: Optional[str] = None,
    relationship_name: Optional[str] = None,
    delete_constraint: Optional[str] = None,
    picklist_values: Optional[List[Dict[str, Any]]] = None,
    description: Optional[str] = None,
    grant_access_to: Optional[List[str]] = None,
) -> str:
    """Create or update a custom field through the Metadata API.

    Newly created fields are made visible to ``grant_access_to`` profiles
    (System Administrator by default); failures there are reported as warnings
    because the field itself already exists.
    """
    logger.info(f"Executing tool: manage_field with operation: {operation}, field: {object_name}.{field_name}")
    sf = get_salesforce_conn()
    md_api = sf.mdapi
    field_api_name = ensure_custom_suffix(field_name)
    full_name = f"{object_name}.{field_api_name}"

    if operation == "create":
        if not label or not field_type:
            raise ToolError("label and type are required for field creation")
        if field_type not in FIELD_TYPES:
            raise ToolError(f"Unsupported field type '{field_type}'. Expected one of: {', '.join(FIELD_TYPES)}")

        metadata = _field_metadata(
            full_name, label, field_type,
            required=bool(required), unique=bool(unique), external_id=bool(external_id),
            length=length, precision=precision, scale=scale,
            reference_to=reference_to, relationship_label=relationship_label,
            relationship_name=relationship_name, delete_constraint=delete_constraint,
            picklist_values=picklist_values, description=description,
        )
        md_api.CustomField.create(md_api.CustomField(**metadata))
        text = f"Successfully created custom field {field_api_name} on {object_name}."

        profiles = grant_access_to or DEFAULT_FLS_PROFILES
        try:
            results, missing = apply_field_permissions(sf, "grant", object_name, full_name, profiles)
        except SalesforceError as e:
            logger.warning(f"Could not grant field level security for {full_name}: {e}")
            return f"{text}\n\nWarning: field level security could not be granted: {error_message(e)}"
        return f"{text}\n\nField level security:\n{_format_permission_results(results, missing)}"

    if operation == "update":
        current = md_api.CustomField.read(full_name)
        if not current or not getattr(current, "fullName", None):
            raise ToolError(f"Field {full_name} not found")

        changes = {
            "label": label,
            "required": required,
            "unique": unique,
            "externalId": external_id,
            "length": length,
            "precision": precision,
            "scale": scale,
            "relationshipLabel": relationship_label,
            "deleteConstraint": delete_constraint,
            "description": description,
        }
        applied = []
        for attribute, value in changes.items():
            if value is not None:
                setattr(current, attribute, value)
                applied.append(attribute)
        if picklist_values:
            current.valueSet = _value_set(picklist_values)
            applied.append("valueSet")

        if not applied:
            raise ToolError("No updates provided. Specify at least one attribute to change")

        md_api.CustomField.update(current)
        return f"Successfully updated custom field {field_api_name} on {object_name}.\nUpdated: {', '.join(applied)}"

    raise ToolError(f"Invalid operation '{operation}'. Expected 'create' or 'update'")


async def manage_field_permissions(
    operation: str,
    object_name: str,
    field_name: str,
    profile_names: Optional[List[str]] = None,
    readable: bool = True,
    editable: bool = True,
) -> str:
    """Grant, revoke or view field level security for a field."""
    logger.info(f"Executing tool: manage_field_permissions with operation: {operation}, field: {object_name}.{field_name}")
    sf = get_salesforce_conn()
    field_ref = _field_ref(object_name, field_name)

    if operation == "view":
        result = sf.query(format_soql(
            "SELECT Id, Parent.Profile.Name, Parent.Label, Parent.IsOwnedByProfile, PermissionsRead, PermissionsEdit "
            "FROM FieldPermissions WHERE SobjectType = {} AND Field = {}",
            object_name, field_ref,
        ))
        records = result.get("records", [])
        if not records:
            return f"No field permissions found for {field_ref}. The field may only be visible to profiles with 'View All Fields'."

        blocks = []
        for record in records:
            parent = record.get("Parent") or {}
            if parent.get("IsOwnedByProfile"):
                name = f"Profile: {(parent.get('Profile') or {}).get('Name')}"
            else:
                name = f"Permission Set: {parent.get('Label')}"
            blocks.append(
                f"{name}\n"
                f"  - Read Access: {'Yes' if record.get('PermissionsRead') else 'No'}\n"
                f"  - Edit Access: {'Yes' if record.get('PermissionsEdit') else 'No'}"
            )
        return f"Field Level Security for {field_ref}:\n\n" + "\n\n".join(blocks)

    if operation in ("grant", "revoke"):
        if not profile_names:
            raise ToolError(f"profileNames are required to {operation} field permissions")

        results, missing = apply_field_permissions(
            sf, operation, object_name, field_ref, profile_names, readable=readable, editable=editable,
        )
        verb = "granted" if operation == "grant" else "revoked"
        summary = _format_permission_results(results, missing)
        if not results:
            raise ToolError(f"Field permissions not {verb} for {field_ref}: no matching profiles.\n{summary}")
        return f"Field permissions {verb} for {field_ref}:\n{summary}"

    raise ToolError(f"Invalid operation '{operation}'. Expected 'grant', 'revoke' or 'view'")
