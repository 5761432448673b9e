"""Server-side validation of submitted form values against field definitions."""

from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, EmailStr, TypeAdapter, ValidationError

# Same check as ContactRecord.email
_email_adapter = TypeAdapter(EmailStr)


class FieldType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    SELECT = "select"
    CHECKBOX = "checkbox"


class FormField(BaseModel):
    name: str
    type: FieldType = FieldType.TEXT
    label: str = ""
    required: bool = False
    options: Optional[List[str]] = None


class FieldResult(BaseModel):
    valid: bool
    message: Optional[str] = None


DEFAULT_FIELDS = [FormField(name="email", type=FieldType.EMAIL, label="Email", required=True)]


def validate_email(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        _email_adapter.validate_python(value)
    except ValidationError:
        return False
    return True


def _empty(value: Any) -> bool:
    return value is None or value == ""


def validate_field(field: FormField, value: Any) -> FieldResult:
    label = field.label or field.name
    if field.required and _empty(value):
        return FieldResult(valid=False, message=f"{label} is required")
    if _empty(value):
        return FieldResult(valid=True)

    if field.type == FieldType.EMAIL and not validate_email(value):
        return FieldResult(valid=False, message="Please enter a valid email address")
    if field.type == FieldType.CHECKBOX and field.required and value is not True:
        return FieldResult(valid=False, message=f"{label} is required")
    if field.type == FieldType.SELECT and field.options and value not in field.options:
        return FieldResult(valid=False, message=f"Please choose a valid {label.lower()}")
    return FieldResult(valid=True)


def validate_form(fields: Iterable[FormField], values: Mapping[str, Any]) -> Dict[str, FieldResult]:
    return {field.name: validate_field(field, values.get(field.name)) for field in fields}


def is_form_valid(results: Mapping[str, FieldResult]) -> bool:
    return all(result.valid for result in results.values())


def first_error(results: Mapping[str, FieldResult]) -> Optional[str]:
    for result in results.values():
        if not result.valid:
            return result.message
    return None
