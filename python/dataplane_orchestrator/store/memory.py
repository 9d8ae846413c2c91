"""
dataplane_orchestrator/store/memory.py

In-memory implementation of the declarative state store.

Every read returns a deep copy and every write stores one, so callers never
share mutable state through the store. Each successful write bumps the
record's resource version; status writes carrying an older version are
rejected with ConflictError.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar

from dataplane_orchestrator.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
)
from dataplane_orchestrator.models.meta import ObjectKey, Resource, utcnow
from dataplane_orchestrator.store.base import (
    EventType,
    OperationResult,
    StateStore,
    WatchEvent,
    WatchHandler,
)
from dataplane_orchestrator.store.index import OwnerRegistry

R = TypeVar("R", bound=Resource)

logger = logging.getLogger(__name__)


def _has_status(obj: Resource) -> bool:
    return "status" in type(obj).model_fields


class InMemoryStore(StateStore):
    """Dictionary-backed store with owner cascade and change notifications."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._objects: Dict[ObjectKey, Resource] = {}
        self._handlers: List[WatchHandler] = []
        self._owners = OwnerRegistry()
        self._clock = clock
        self._version = 0

    @property
    def owners(self) -> OwnerRegistry:
        return self._owners

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _register_owners(self, obj: Resource) -> None:
        for ref in obj.metadata.owner_references:
            parent = ObjectKey(kind=ref.kind, namespace=obj.namespace, name=ref.name)
            self._owners.register(parent, obj.key)

    async def _notify(self, event_type: EventType, obj: Resource) -> None:
        event = WatchEvent(type=event_type, key=obj.key, obj=obj.model_copy(deep=True))
        for handler in list(self._handlers):
            await handler(event)

    async def find(self, cls: Type[R], namespace: str, name: str) -> Optional[R]:
        found = self._objects.get(ObjectKey(kind=cls.KIND, namespace=namespace, name=name))
        if found is None:
            return None
        return found.model_copy(deep=True)  # type: ignore[return-value]

    async def list(
        self,
        cls: Type[R],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[R]:
        selector = labels or {}
        matches = [
            obj
            for key, obj in self._objects.items()
            if key.kind == cls.KIND
            and (namespace is None or key.namespace == namespace)
            and all(obj.metadata.labels.get(k) == v for k, v in selector.items())
        ]
        matches.sort(key=lambda o: (o.namespace, o.name))
        return [m.model_copy(deep=True) for m in matches]  # type: ignore[misc]

    async def create(self, obj: R) -> R:
        key = obj.key
        if key in self._objects:
            raise AlreadyExistsError(f"{key} already exists")
        stored = obj.model_copy(deep=True)
        stored.metadata.uid = stored.metadata.uid or uuid.uuid4().hex
        stored.metadata.creation_timestamp = (
            stored.metadata.creation_timestamp or self._clock()
        )
        stored.metadata.resource_version = self._next_version()
        stored.metadata.generation = 1
        self._objects[key] = stored
        self._register_owners(stored)
        logger.debug("created %s", key)
        await self._notify(EventType.ADDED, stored)
        return stored.model_copy(deep=True)

    async def create_or_patch(self, obj: R) -> Tuple[R, OperationResult]:
        current = self._objects.get(obj.key)
        if current is None:
            return await self.create(obj), OperationResult.CREATED

        desired = obj.model_copy(deep=True)
        meta = current.metadata.model_copy(deep=True)
        meta.labels.update(desired.metadata.labels)
        meta.annotations.update(desired.metadata.annotations)
        for ref in desired.metadata.owner_references:
            if not any(r.kind == ref.kind and r.name == ref.name for r in meta.owner_references):
                meta.owner_references.append(ref)
        desired.metadata = meta
        if _has_status(current):
            setattr(desired, "status", getattr(current, "status").model_copy(deep=True))

        if desired.model_dump() == current.model_dump():
            return current.model_copy(deep=True), OperationResult.UNCHANGED  # type: ignore[return-value]

        desired.metadata.resource_version = self._next_version()
        desired.metadata.generation = current.metadata.generation + 1
        self._objects[obj.key] = desired
        self._register_owners(desired)
        logger.debug("patched %s", obj.key)
        await self._notify(EventType.MODIFIED, desired)
        return desired.model_copy(deep=True), OperationResult.UPDATED

    async def update_status(self, obj: R) -> R:
        key = obj.key
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(key.kind, key.namespace, key.name)
        if obj.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(
                f"{key} was modified; expected version "
                f"{obj.metadata.resource_version}, found {current.metadata.resource_version}",
                expected=obj.metadata.resource_version,
                actual=current.metadata.resource_version,
            )
        updated = current.model_copy(deep=True)
        setattr(updated, "status", getattr(obj, "status").model_copy(deep=True))
        if updated.model_dump() == current.model_dump():
            return updated  # type: ignore[return-value]
        updated.metadata.resource_version = self._next_version()
        self._objects[key] = updated
        await self._notify(EventType.MODIFIED, updated)
        return updated.model_copy(deep=True)  # type: ignore[return-value]

    async def delete(self, cls: Type[R], namespace: str, name: str) -> List[ObjectKey]:
        root = ObjectKey(kind=cls.KIND, namespace=namespace, name=name)
        if root not in self._objects:
            raise NotFoundError(cls.KIND, namespace, name)
        removed: List[ObjectKey] = []
        for key in self._owners.teardown_order(root):
            obj = self._objects.pop(key, None)
            self._owners.forget(key)
            if obj is None:
                continue
            removed.append(key)
            logger.debug("deleted %s", key)
            await self._notify(EventType.DELETED, obj)
        return removed

    def subscribe(self, handler: WatchHandler) -> None:
        self._handlers.append(handler)
