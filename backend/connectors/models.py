"""
Canonical Pydantic models for the connector interface.

Connectors return these from list/introspection calls; the sync engine
persists ExternalRecord instances through the record store. Property
payloads are kept exactly as the provider returned them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


class ExternalRecord(BaseModel):
    """One object as returned by the provider."""

    external_id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    archived: bool = False


class ObjectPage(BaseModel):
    """One page of a paginated listing; ``next_cursor`` is None on the last page."""

    records: list[ExternalRecord] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class PropertyOption(BaseModel):
    label: str
    value: str


class PropertyDefinition(BaseModel):
    """A field in the provider's schema for an object type."""

    name: str
    label: str
    type: str = "string"
    field_type: Optional[str] = None
    group: str = "other"
    description: Optional[str] = None
    options: list[PropertyOption] = Field(default_factory=list)
    calculated: bool = False
    read_only: bool = False


class AssociationTypeDefinition(BaseModel):
    """A declared relationship type between two object types."""

    type_id: int
    label: Optional[str] = None
    category: str = "HUBSPOT_DEFINED"


class ConnectionTestResult(BaseModel):
    success: bool
    error: Optional[str] = None
    details: Optional[dict[str, Any]] = None


def group_properties(definitions: list[PropertyDefinition]) -> dict[str, list[PropertyDefinition]]:
    """Bucket property definitions by their group, preserving order."""
    grouped: dict[str, list[PropertyDefinition]] = {}
    for definition in definitions:
        grouped.setdefault(definition.group, []).append(definition)
    return grouped


def parse_provider_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 or epoch-millisecond timestamps into naive UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        parsed = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
