"""
Schema Validation - JSON Schema validation utilities.

Provides functions to validate attribute constraint fragments, attribute
values and resource schema documents.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

ATTRIBUTE_TYPES = ["string", "number", "bool", "list", "map", "any"]
MUTABILITY_CLASSES = ["forces_replacement", "updatable", "computed"]
PRESENCE_CLASSES = ["required", "optional", "computed", "optional_computed"]

# JSON Schema for resource schema documents (YAML/JSON)
RESOURCE_SCHEMA_DOCUMENT = {
    "type": "object",
    "required": ["type", "attributes"],
    "properties": {
        "type": {"type": "string", "pattern": "^[a-z][a-z0-9_]*$"},
        "version": {"type": ["string", "integer"]},
        "replace_policy": {
            "type": "string",
            "enum": ["destroy_before_create", "create_before_destroy"],
        },
        "timeouts": {
            "type": "object",
            "properties": {
                op: {"type": "number", "exclusiveMinimum": 0}
                for op in ("create", "read", "update", "delete")
            },
            "additionalProperties": False,
        },
        "ordering": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["before", "after"],
                "properties": {
                    "before": {"type": "string"},
                    "after": {"type": "string"},
                },
            },
        },
        "attributes": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ATTRIBUTE_TYPES},
                    "mutability": {"type": "string", "enum": MUTABILITY_CLASSES},
                    "presence": {"type": "string", "enum": PRESENCE_CLASSES},
                    "validation": {"type": "object"},
                    "conflicts_with": {"type": "array", "items": {"type": "string"}},
                    "deprecated": {"type": "string"},
                    "sensitive": {"type": "boolean"},
                },
            },
        },
    },
}


def validate_json_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate that a constraint fragment is a valid JSON Schema.

    Args:
        schema: The schema to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except Exception as e:
        return False, f"Invalid schema: {str(e)}"


def validate_against_schema(
    data: Any, schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate plain data against a JSON Schema.

    Args:
        data: The data to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = list(validator.iter_errors(data))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
    except Exception as e:
        logger.error(f"Unexpected error during validation: {e}")
        return False, f"Validation failed: {str(e)}"


def validate_schema_document(document: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Validate a resource schema document before it is parsed."""
    return validate_against_schema(document, RESOURCE_SCHEMA_DOCUMENT)
