"""Contact record handed to the audience sink after a genuine accept.

The sink itself (mailing list, CRM, ...) is outside this package: it is any
async callable that takes a :class:`ContactRecord`.
"""

from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, EmailStr, Field


class ContactMapping(BaseModel):
    """Which form fields feed which contact attributes."""

    email: str = "email"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    metadata: List[str] = Field(default_factory=list)


class ContactRecord(BaseModel):
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    unsubscribed: bool = False
    metadata: Optional[Dict[str, Any]] = None


ContactSink = Callable[[ContactRecord], Awaitable[Any]]


def build_contact(values: Mapping[str, Any], mapping: Optional[ContactMapping] = None) -> ContactRecord:
    """Build a validated contact from form values.

    Raises:
        pydantic.ValidationError: The mapped email field is missing or invalid.
    """
    mapping = mapping or ContactMapping()
    record: Dict[str, Any] = {"email": values.get(mapping.email)}
    if mapping.first_name and values.get(mapping.first_name):
        record["first_name"] = str(values[mapping.first_name])
    if mapping.last_name and values.get(mapping.last_name):
        record["last_name"] = str(values[mapping.last_name])
    metadata = {name: values[name] for name in mapping.metadata if values.get(name) is not None}
    if metadata:
        record["metadata"] = metadata
    return ContactRecord.model_validate(record)
