from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Value-typed identity of a Kubernetes object used for dependency tracking."""

    kind: str
    namespace: str
    name: str

    @classmethod
    def of(cls, obj: Any, kind: str) -> ObjectKey:
        """Build a key from a Kubernetes model object's metadata."""
        metadata = getattr(obj, "metadata", None)
        return cls(
            kind=kind,
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
        )

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}:{self.namespace}/{self.name}"
        return f"{self.kind}:{self.name}"


class DependencyRegistry:
    """Symmetric adjacency map recording which objects depend on which.

    Adding an edge ``(x, y)`` records both ``x -> y`` and ``y -> x``.  Keys
    whose adjacency set becomes empty are removed so the map never holds
    dangling entries.  ``delete_cascade`` removes only the direct edges of a
    node; it does not walk further through the graph.

    A single lock guards the map.  Contention scales with the number of
    concurrent reconciliations, not with the number of tracked objects.
    """

    def __init__(self) -> None:
        self._edges: dict[ObjectKey, set[ObjectKey]] = {}
        self._lock = threading.Lock()

    def add(self, x: ObjectKey, y: ObjectKey) -> None:
        with self._lock:
            self._edges.setdefault(x, set()).add(y)
            self._edges.setdefault(y, set()).add(x)

    def deps(self, x: ObjectKey) -> list[ObjectKey]:
        with self._lock:
            return sorted(self._edges.get(x, ()))

    def deps_of_kind(self, x: ObjectKey, kind: str) -> list[ObjectKey]:
        """Return the neighbours of ``x`` with the given kind.

        Used to translate "this Secret changed" into "these Ingresses must be
        requeued".
        """
        with self._lock:
            return sorted(key for key in self._edges.get(x, ()) if key.kind == kind)

    def delete_cascade(self, x: ObjectKey) -> None:
        with self._lock:
            for neighbour in list(self._edges.get(x, ())):
                self._unlink(x, neighbour)
                self._unlink(neighbour, x)

    def _unlink(self, x: ObjectKey, y: ObjectKey) -> None:
        adjacent = self._edges.get(x)
        if adjacent is None:
            return
        adjacent.discard(y)
        if not adjacent:
            del self._edges[x]

    def __len__(self) -> int:
        with self._lock:
            return len(self._edges)
