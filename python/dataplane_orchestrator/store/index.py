"""
dataplane_orchestrator/store/index.py

Two small bookkeeping structures used for cross-record fan-out:

  - ReverseIndex: referenced record key -> dependent record keys, maintained
    incrementally so a change to a shared secret or config map re-enqueues
    only the NodeSets that consume it.
  - OwnerRegistry: parent -> children in creation order, giving a
    deterministic teardown order for cascading deletes.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Set

from dataplane_orchestrator.models.meta import ObjectKey


class ReverseIndex:
    """Maps a referenced key to the set of keys that depend on it."""

    def __init__(self) -> None:
        self._dependents: Dict[ObjectKey, Set[ObjectKey]] = {}
        self._references: Dict[ObjectKey, Set[ObjectKey]] = {}

    def update(self, dependent: ObjectKey, referenced: Iterable[ObjectKey]) -> None:
        """Replace everything `dependent` references with `referenced`."""
        new_refs = set(referenced)
        old_refs = self._references.get(dependent, set())
        for ref in old_refs - new_refs:
            users = self._dependents.get(ref)
            if users is not None:
                users.discard(dependent)
                if not users:
                    del self._dependents[ref]
        for ref in new_refs - old_refs:
            self._dependents.setdefault(ref, set()).add(dependent)
        if new_refs:
            self._references[dependent] = new_refs
        else:
            self._references.pop(dependent, None)

    def remove(self, dependent: ObjectKey) -> None:
        self.update(dependent, ())

    def dependents(self, referenced: ObjectKey) -> List[ObjectKey]:
        """Dependents of one key, in a stable order."""
        return sorted(self._dependents.get(referenced, set()), key=str)

    def references(self, dependent: ObjectKey) -> List[ObjectKey]:
        return sorted(self._references.get(dependent, set()), key=str)


class OwnerRegistry:
    """Parent to children registry with deterministic teardown order."""

    def __init__(self) -> None:
        self._children: Dict[ObjectKey, List[ObjectKey]] = {}

    def register(self, parent: ObjectKey, child: ObjectKey) -> None:
        children = self._children.setdefault(parent, [])
        if child not in children:
            children.append(child)

    def forget(self, key: ObjectKey) -> None:
        """Drop `key` as a parent and as a child."""
        self._children.pop(key, None)
        for children in self._children.values():
            if key in children:
                children.remove(key)

    def children(self, parent: ObjectKey) -> List[ObjectKey]:
        return list(self._children.get(parent, []))

    def teardown_order(self, root: ObjectKey) -> List[ObjectKey]:
        """
        Everything owned by `root`, transitively, followed by `root` itself.

        Children are visited newest first and each child's own subtree is
        torn down before the child, so nothing outlives its owner.
        """
        order: List[ObjectKey] = []
        seen: Set[ObjectKey] = set()

        def visit(key: ObjectKey) -> None:
            if key in seen:
                return
            seen.add(key)
            for child in reversed(self._children.get(key, [])):
                visit(child)
            order.append(key)

        visit(root)
        return order
