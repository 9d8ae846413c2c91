"""
dataplane_orchestrator/store/base.py

Defines the declarative state store interface consumed by every controller:

  - get / find / list (namespace + label-equality selectors)
  - create / create_or_patch (idempotent upsert that never touches status)
  - update_status (optimistic concurrency on the resource version token)
  - delete (cascades to everything the record owns)
  - subscribe (change notifications)

All methods are coroutines so a networked backend can be dropped in behind
the same interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from dataplane_orchestrator.errors import NotFoundError
from dataplane_orchestrator.models.meta import ObjectKey, Resource

R = TypeVar("R", bound=Resource)


class OperationResult(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class WatchEvent(BaseModel):
    """One change notification."""

    type: EventType
    key: ObjectKey
    obj: Resource

    class Config:
        frozen = True


WatchHandler = Callable[[WatchEvent], Awaitable[None]]


class StateStore(ABC):
    """Abstract base class for the shared declarative state store."""

    @abstractmethod
    async def find(self, cls: Type[R], namespace: str, name: str) -> Optional[R]:
        """
        Look up one record.

        Returns:
            Optional[R]: A private copy of the record, or None if it does not exist.
        """
        pass

    @abstractmethod
    async def list(
        self,
        cls: Type[R],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[R]:
        """
        List records of one kind, sorted by (namespace, name).

        Args:
            cls (Type[R]): Record class to list.
            namespace (Optional[str]): Restrict to one namespace; None means all.
            labels (Optional[Dict[str, str]]): Every pair must be present on a match.

        Returns:
            List[R]: Private copies of the matching records.
        """
        pass

    @abstractmethod
    async def create(self, obj: R) -> R:
        """Create a record; raises AlreadyExistsError if the key is taken."""
        pass

    @abstractmethod
    async def create_or_patch(self, obj: R) -> Tuple[R, OperationResult]:
        """
        Idempotent upsert of everything but status.

        Labels are merged, owner references are added, status is preserved.
        The resource version only moves when something actually changed.
        """
        pass

    @abstractmethod
    async def update_status(self, obj: R) -> R:
        """
        Replace the status of a record.

        Raises:
            NotFoundError: If the record was deleted.
            ConflictError: If `obj.metadata.resource_version` is stale.
        """
        pass

    @abstractmethod
    async def delete(self, cls: Type[R], namespace: str, name: str) -> List[ObjectKey]:
        """
        Delete a record and, recursively, everything it owns.

        Returns:
            List[ObjectKey]: Keys removed, children before their parent.
        """
        pass

    @abstractmethod
    def subscribe(self, handler: WatchHandler) -> None:
        """Register a coroutine called for every change."""
        pass

    async def get(self, cls: Type[R], namespace: str, name: str) -> R:
        """Like find, but raises NotFoundError when the record is absent."""
        found = await self.find(cls, namespace, name)
        if found is None:
            raise NotFoundError(cls.KIND, namespace, name)
        return found
