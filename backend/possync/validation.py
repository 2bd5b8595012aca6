from __future__ import annotations

import enum
from dataclasses import dataclass
from numbers import Number
from typing import Any


# Largest price accepted for a product or a sale line
MAX_PRICE = 9_999_999.99

# Envelope keys owned by the store / conventions helper, never writable by clients
RESERVED_FIELDS = {"id", "_id", "_rev", "type", "created_at", "updated_at", "_deleted"}


class ErrorKind(str, enum.Enum):
    """Classification carried by every failed repository result."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    STORE_ERROR = "store_error"


class OfflineStoreError(Exception):
    """Base class for everything the local document store can raise."""
    kind = ErrorKind.STORE_ERROR


class ValidationError(OfflineStoreError, ValueError):
    """400-level input problem."""
    kind = ErrorKind.VALIDATION


class NotFoundError(OfflineStoreError):
    """Target document does not exist (or was deleted)."""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, doc_id: str):
        super().__init__(f"{entity_type.capitalize()} not found")
        self.entity_type = entity_type
        self.doc_id = doc_id


class ConflictError(OfflineStoreError):
    """409-level revision mismatch: the document changed since it was read."""
    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, *, doc_id: str | None = None, current_rev: str | None = None):
        super().__init__(message)
        self.doc_id = doc_id
        self.current_rev = current_rev


class StoreError(OfflineStoreError):
    """Underlying persistence failure (locked, corrupt or unavailable storage)."""
    kind = ErrorKind.STORE_ERROR


@dataclass(frozen=True)
class DocumentPolicy:
    """
    Central policy layer for schemaless documents:
    - required_on_create: fields required on create
    - field_types: expected type per known field ("string", "number", "integer", "list", "bool")
    - non_negative: numeric fields that must be >= 0
    Unknown fields are allowed and stored as-is.
    """
    required_on_create: frozenset[str] = frozenset()
    field_types: dict[str, str] | None = None
    non_negative: frozenset[str] = frozenset()


def _coerce_value(field: str, expected: str, value: Any):
    if value is None:
        return None

    if expected == "string":
        if isinstance(value, (dict, list)):
            raise ValidationError(f"{field} must be a string")
        return str(value).strip()

    if expected == "integer":
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            stripped = value.strip()
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{field} must be an integer")
        raise ValidationError(f"{field} must be an integer")

    if expected == "number":
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be a number")
        if isinstance(value, Number):
            return value
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                raise ValidationError(f"{field} must be a number")
        raise ValidationError(f"{field} must be a number")

    if expected == "list":
        if not isinstance(value, list):
            raise ValidationError(f"{field} must be a list")
        return value

    if expected == "bool":
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    return value


def validate_document(payload: Any, policy: DocumentPolicy, *, partial: bool) -> dict:
    """
    Validates + normalizes an incoming document body.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)

    Envelope fields (id, _rev, type, timestamps) are stripped: the store and the
    conventions helper own them.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    field_types = policy.field_types or {}
    cleaned: dict = {}

    for k, raw in payload.items():
        if k in RESERVED_FIELDS:
            continue

        expected = field_types.get(k)
        val = _coerce_value(k, expected, raw) if expected else raw

        if k in policy.required_on_create and val in (None, ""):
            raise ValidationError(f"{k} cannot be blank")

        if k in policy.non_negative and val is not None and val < 0:
            raise ValidationError(f"{k} must be >= 0")

        cleaned[k] = val

    return cleaned


def enforce_rules_price(cleaned: dict, *fields: str) -> None:
    for field in fields:
        value = cleaned.get(field)
        if value is not None and value > MAX_PRICE:
            raise ValidationError(f"{field} cannot exceed {MAX_PRICE:,.2f}")


STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND.value: 404,
    ErrorKind.CONFLICT.value: 409,
    ErrorKind.VALIDATION.value: 400,
    ErrorKind.STORE_ERROR.value: 500,
}


def result_status(result: dict, success_status: int = 200) -> int:
    """HTTP status for a repository result dict."""
    if result.get("success"):
        return success_status
    return STATUS_BY_KIND.get(result.get("error_kind"), 500)
