"""In-memory state of the mock REST API."""

from __future__ import annotations

import copy
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import httpx


@dataclass
class NestedSpec:
    """A nested collection stored on each resource of a collection.

    Attributes:
        hidden_fields: Item fields accepted but never returned.
        separate: When True the detail response omits the items; they are
            listed from ``<resource>/<key>`` instead.
    """

    hidden_fields: frozenset[str] = frozenset()
    separate: bool = False


@dataclass
class CollectionSpec:
    """A REST collection served by the mock.

    Attributes:
        path: Collection path.
        hidden_fields: Attributes accepted but never returned.
        nested: Nested collections by key.
        detail: When False there is no ``GET <path>/<id>`` route; the
            resources can only be listed.
    """

    path: str
    hidden_fields: frozenset[str] = frozenset()
    nested: dict[str, NestedSpec] = field(default_factory=dict)
    detail: bool = True


@dataclass
class MockResource:
    """One stored resource."""

    resource_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    nested: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


@dataclass
class RecordedRequest:
    """A request as seen by the mock."""

    method: str
    path: str
    params: dict[str, str]
    headers: dict[str, str]
    body: Any = None


class MockAPIState:
    """Resources, request log and scripted responses."""

    def __init__(self) -> None:
        self._collections: dict[str, CollectionSpec] = {}
        self._resources: dict[str, dict[str, MockResource]] = {}
        self._next_id = 100
        self._scripted: dict[tuple[str, str], deque[httpx.Response | Exception]] = {}
        self.requests: list[RecordedRequest] = []

    def register(self, spec: CollectionSpec) -> None:
        self._collections[spec.path] = spec
        self._resources.setdefault(spec.path, {})

    def collection(self, path: str) -> CollectionSpec | None:
        return self._collections.get(path)

    def collection_paths(self) -> list[str]:
        # Longest first so nested collection paths win over their parents
        return sorted(self._collections, key=len, reverse=True)

    def new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def put(self, path: str, resource: MockResource) -> None:
        self._resources.setdefault(path, {})[resource.resource_id] = resource

    def get(self, path: str, resource_id: str) -> MockResource | None:
        return self._resources.get(path, {}).get(resource_id)

    def remove(self, path: str, resource_id: str) -> bool:
        return self._resources.get(path, {}).pop(resource_id, None) is not None

    def list(self, path: str) -> list[MockResource]:
        return list(self._resources.get(path, {}).values())

    def seed(
        self,
        path: str,
        attributes: dict[str, Any],
        resource_id: str | None = None,
        nested: dict[str, list[dict[str, Any]]] | None = None,
    ) -> MockResource:
        """Store a resource directly, bypassing the HTTP layer."""
        resource = MockResource(
            resource_id=resource_id or self.new_id(),
            attributes=copy.deepcopy(attributes),
            nested=copy.deepcopy(nested or {}),
        )
        for items in resource.nested.values():
            for item in items:
                item.setdefault("id", int(self.new_id()))
        self.put(path, resource)
        return resource

    def script(self, method: str, path: str, *outcomes: httpx.Response | Exception) -> None:
        """Queue canned responses (or network errors) for a method and path."""
        self._scripted.setdefault((method.upper(), path), deque()).extend(outcomes)

    def pop_scripted(self, method: str, path: str) -> httpx.Response | Exception | None:
        queue = self._scripted.get((method, path))
        if queue:
            return queue.popleft()
        return None

    def requests_for(self, method: str | None = None, path: str | None = None) -> list[RecordedRequest]:
        return [
            r
            for r in self.requests
            if (method is None or r.method == method) and (path is None or r.path == path)
        ]

    @property
    def request_count(self) -> int:
        return len(self.requests)
