"""
Domain event record raised by the document platform.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityRefs(BaseModel):
    """Ids of the entities an event refers to."""
    document_id: Optional[str] = None
    folder_id: Optional[str] = None
    user_id: Optional[str] = None


class DomainEvent(BaseModel):
    """
    An event emitted by the CRUD layer ("document.updated", "comment.created", ...).

    `data` becomes the base of the outbound webhook payload.
    """
    type: str = Field(min_length=1)
    workspace_id: str
    entity_refs: EntityRefs = Field(default_factory=EntityRefs)
    tags: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)
