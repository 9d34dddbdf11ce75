"""API group identity, object metadata and an in-memory object store."""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping


@dataclass(frozen=True)
class GroupVersion:
    """An API group and version pair."""

    group: str
    version: str

    def __str__(self) -> str:
        return f"{self.group}/{self.version}"


GROUP_VERSION = GroupVersion(group="actions.summerwind.dev", version="v1alpha1")


@dataclass
class ObjectMeta:
    """Metadata shared by every stored resource."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    deletion_timestamp: datetime | None = None
    creation_timestamp: datetime | None = None

    def is_deleting(self) -> bool:
        """True once the object has been marked for deletion."""
        return self.deletion_timestamp is not None


@dataclass(frozen=True)
class NamespacedName:
    """The namespace and name that identify an object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" not found in namespace "{namespace}"')
        self.kind = kind
        self.namespace = namespace
        self.name = name


Extractor = Callable[[Any], Iterable[str] | None]


class ObjectStore:
    """Thread-safe in-memory store of resources keyed by kind, namespace and name.

    Objects must carry a ``metadata`` attribute holding an :class:`ObjectMeta`.
    Stored and returned objects are copies, so callers never share state with
    the store.
    """

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str, str], Any] = {}
        self._indexers: dict[tuple[str, str], Extractor] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(kind: str, obj: Any) -> tuple[str, str, str]:
        meta = obj.metadata
        if not meta.name:
            raise ValueError(f"{kind} object has no name")
        return kind, meta.namespace, meta.name

    def add(self, kind: str, obj: Any) -> None:
        """Store a new object; raise ValueError if it already exists."""
        key = self._key(kind, obj)
        with self._lock:
            if key in self._objects:
                raise ValueError(f'{kind} "{key[2]}" already exists')
            self._objects[key] = copy.deepcopy(obj)

    def get(self, kind: str, namespace: str, name: str) -> Any:
        """Return a copy of the named object or raise NotFoundError."""
        with self._lock:
            try:
                obj = self._objects[(kind, namespace, name)]
            except KeyError:
                raise NotFoundError(kind, namespace, name) from None
            return copy.deepcopy(obj)

    def list(
        self,
        kind: str,
        namespace: str = "",
        fields: Mapping[str, str] | None = None,
    ) -> list[Any]:
        """List objects of a kind, optionally within a namespace and matching indexed fields."""
        with self._lock:
            extractors = []
            for name, value in (fields or {}).items():
                extract = self._indexers.get((kind, name))
                if extract is None:
                    raise ValueError(f"no index with name {name} has been registered for {kind}")
                extractors.append((extract, value))

            candidates = [
                copy.deepcopy(obj)
                for (k, ns, _), obj in sorted(self._objects.items())
                if k == kind and (not namespace or ns == namespace)
            ]

        matched = []
        for obj in candidates:
            if all(value in (extract(obj) or ()) for extract, value in extractors):
                matched.append(obj)
        return matched

    def update(self, kind: str, obj: Any) -> None:
        """Replace an existing object; raise NotFoundError if it is absent."""
        key = self._key(kind, obj)
        with self._lock:
            if key not in self._objects:
                raise NotFoundError(*key)
            self._objects[key] = copy.deepcopy(obj)

    def index_field(self, kind: str, field: str, extract: Extractor) -> None:
        """Register a function that yields the index values of an object for a field."""
        with self._lock:
            self._indexers[(kind, field)] = extract