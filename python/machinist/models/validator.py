"""
machinist/models/validator.py

Validation helpers built on pydantic's TypeAdapter, used wherever we accept
untyped data from subprocess output, secret stores or HTTP responses.
"""

import json
from functools import lru_cache
from typing import Any, Type, TypeVar

from pydantic import TypeAdapter, ValidationError

T = TypeVar("T")


@lru_cache(maxsize=64)
def _adapter(expected_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(expected_type)


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validate `obj` against `expected_type` and return it typed.

    Raises:
        ValueError: If validation fails.
    """
    try:
        validated: T = _adapter(expected_type).validate_python(obj)
        return validated
    except ValidationError as e:
        raise ValueError(f"Validation failed for type {expected_type}: {e}") from e


def parse_json_as(text: str, expected_type: Type[T]) -> T:
    """Decode `text` as JSON and validate it against `expected_type`."""
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON for type {expected_type}: {e}") from e
    return validate_type(decoded, expected_type)
