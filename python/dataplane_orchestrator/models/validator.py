"""
dataplane_orchestrator/models/validator.py

Helpers for turning raw documents (parsed YAML or JSON) into typed records,
using pydantic's TypeAdapter.
"""

from typing import Any, Dict, Type, TypeVar

from pydantic import ValidationError, TypeAdapter

from dataplane_orchestrator.models.meta import Resource

T = TypeVar("T")
R = TypeVar("R", bound=Resource)


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validates that a given Python object conforms to the expected pydantic-based type.

    Args:
        obj (Any): The object to validate.
        expected_type (Type[T]): The type (pydantic or otherwise) to validate against.

    Returns:
        T: The validated object, cast to the expected type.

    Raises:
        ValueError: If validation fails.
    """
    try:
        adapter = TypeAdapter(expected_type)
        return adapter.validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Validation failed for type {expected_type}: {e}") from e


def validate_resource(doc: Dict[str, Any], expected_type: Type[R]) -> R:
    """
    Validate a manifest-style document (`kind`, `metadata`, `spec`) as a record.

    The `kind` key must match the record class; `apiVersion` and any other
    top-level keys the record does not model are ignored.

    Args:
        doc (Dict[str, Any]): Parsed manifest.
        expected_type (Type[R]): Record class to build.

    Returns:
        R: The validated record.

    Raises:
        ValueError: If the kind does not match or validation fails.
    """
    kind = doc.get("kind")
    if kind != expected_type.KIND:
        raise ValueError(f"expected kind {expected_type.KIND}, got {kind!r}")
    body = {k: v for k, v in doc.items() if k not in ("kind", "apiVersion")}
    return validate_type(body, expected_type)
