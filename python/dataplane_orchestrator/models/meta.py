"""
dataplane_orchestrator/models/meta.py

Shared record plumbing: the camelCase base model, object metadata, owner
references and the key used to address any record in the declarative store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware 'now', used for every timestamp the controllers write."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys but accepts field names too."""

    class Config:
        populate_by_name = True
        alias_generator = to_camel


class ObjectKey(BaseModel):
    """Identifies one record in the store."""

    kind: str
    namespace: str
    name: str

    class Config:
        frozen = True

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


class OwnerReference(CamelModel):
    """Points at the record that created (and therefore owns) another record."""

    kind: str
    name: str
    uid: str = ""


class ObjectMeta(CamelModel):
    """Metadata carried by every stored record."""

    name: str
    namespace: str = "default"
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    uid: str = ""
    resource_version: int = 0
    generation: int = 0
    creation_timestamp: Optional[datetime] = None
    owner_references: List[OwnerReference] = Field(default_factory=list)


class Resource(CamelModel):
    """
    Base class for every record kind held by the declarative store.

    Subclasses set KIND; the store uses it to key and filter records.
    """

    KIND: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(kind=self.KIND, namespace=self.namespace, name=self.name)

    def owner_reference(self) -> OwnerReference:
        """Reference to this record for use in a child's metadata."""
        return OwnerReference(kind=self.KIND, name=self.name, uid=self.metadata.uid)
