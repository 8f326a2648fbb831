"""Resource operations and the per-instance state machine.

A ResourceType describes one kind of remote resource (where it lives, its
record type, its policy and its nested collections). The Reconciler drives
one instance of it through:

    ABSENT -> CREATING -> PRESENT <-> READING/UPDATING -> DELETING -> ABSENT

Every operation follows the same sequence, strictly in order:

1. Validate (policy) before anything is sent
2. load(): tree -> typed record
3. Transport round trip
4. copy(): typed response -> tree, filtered by the policy

FAILURE SEMANTICS:
- A create that fails never leaves an identity in the tree, so the next
  attempt is a fresh create.
- A read that gets 404 clears the identity: the resource is gone and will
  be recreated.
- Validation failures abort before any request, so nothing remote changes.
- Tree write failures during copy are collected on the result; they do not
  abort the operation.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import quote

from .bindings import copy, load
from .config import BaseKey
from .errors import (
    AttributeWriteError,
    DecodeError,
    ProviderError,
    ResourceLookupError,
    ResourceValidationError,
)
from .nested import delta, items_from_blocks
from .pagination import collect_all, find_first, lookup_unique, page_fetcher
from .policy import ReconciliationPolicy
from .records import (
    CollectionItem,
    ResourceData,
    TypedRecord,
    decode_single,
    encode_single,
    format_composite_id,
    parse_composite_id,
)
from .transport import Transport, raise_for_status
from .tree import StateTree

logger = logging.getLogger(__name__)


class ResourceState(str, Enum):
    """Lifecycle state of one resource instance."""

    ABSENT = "absent"
    CREATING = "creating"
    PRESENT = "present"
    READING = "reading"
    UPDATING = "updating"
    DELETING = "deleting"


@dataclass(frozen=True)
class NestedCollection:
    """Server-owned sub-list of a resource whose items carry their own identity.

    Attributes:
        key: Tree key (and record field) holding the blocks.
        item_cls: CollectionItem subclass for one element.
        sensitive: Item fields the server never returns.
        fetch_suffix: When set, items are not part of the detail response and
            are listed from ``<resource path>/<fetch_suffix>`` instead.
    """

    key: str
    item_cls: type[CollectionItem]
    sensitive: tuple[str, ...] = ()
    fetch_suffix: str | None = None


@dataclass(frozen=True)
class ResourceType:
    """Static description of one kind of managed resource.

    Attributes:
        name: Singular resource name used in messages ("collector").
        collection_path: List/create path; may contain ``{parent}``.
        record_cls: TypedRecord subclass for the resource attributes.
        base_key: Logical endpoint serving the resource.
        policy: Field rules applied during validate and copy.
        nested: Nested collections reconciled with delta().
        parent_key: Tree key holding the parent identity of a sub-resource;
            when set, identities are composite ``<parent>/<child>``.
        lookup_key: Record field used by lookup().
        read_via_list: The resource has no detail endpoint; read() walks the
            collection listing until the item with the tree's identity.
    """

    name: str
    collection_path: str
    record_cls: type[TypedRecord]
    base_key: BaseKey = BaseKey.TELEMETRY
    policy: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    nested: tuple[NestedCollection, ...] = ()
    parent_key: str | None = None
    lookup_key: str = "name"
    read_via_list: bool = False

    def effective_policy(self) -> ReconciliationPolicy:
        """Policy with the nested collections' secrets folded into block_secrets."""
        secrets = {nc.key: nc.sensitive for nc in self.nested if nc.sensitive}
        if not secrets:
            return self.policy
        return dataclasses.replace(
            self.policy, block_secrets={**self.policy.block_secrets, **secrets}
        )

    def collection_url(self, tree: StateTree) -> str:
        if "{parent}" not in self.collection_path:
            return self.collection_path
        parent = tree.value_of(self.parent_key) if self.parent_key else None
        if not parent:
            raise ResourceValidationError(
                self.name, self.parent_key or "parent", f"{self.name} requires a parent ID"
            )
        return self.collection_path.format(parent=quote(str(parent), safe=""))

    def child_id(self, tree: StateTree) -> str:
        if self.parent_key:
            return parse_composite_id(tree.id)[1]
        return tree.id

    def resource_url(self, tree: StateTree) -> str:
        return f"{self.collection_url(tree)}/{quote(self.child_id(tree), safe='')}"


@dataclass
class ReconcileResult:
    """Result of one resource operation."""

    resource: str
    operation: str
    state: ResourceState = ResourceState.ABSENT
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: ProviderError | None = None
    write_errors: list[AttributeWriteError] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the operation succeeded."""
        return self.error is None

    @property
    def errors(self) -> list[ProviderError]:
        """Fatal error (if any) followed by collected write errors."""
        errors: list[ProviderError] = [self.error] if self.error is not None else []
        return errors + list(self.write_errors)


class Reconciler:
    """Drives create/read/update/delete/lookup/import for any ResourceType.

    Holds no per-resource state; the tree passed to each call is the only
    thing mutated. One Reconciler (and its Transport) may be shared by many
    concurrent reconciliations.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    @property
    def transport(self) -> Transport:
        return self._transport

    def _finish(self, result: ReconcileResult, tree: StateTree) -> ReconcileResult:
        result.end_time = datetime.now(UTC)
        extra: dict[str, Any] = {
            "resource": result.resource,
            "operation": result.operation,
            "id": tree.id or None,
            "state": result.state.value,
            "duration_seconds": result.duration_seconds,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Resource operation failed", extra=extra)
        elif result.write_errors:
            extra["write_errors"] = [str(e) for e in result.write_errors]
            logger.warning("Resource operation completed with write errors", extra=extra)
        else:
            logger.info("Resource operation completed", extra=extra)
        return result

    async def _fetch_nested(
        self, rtype: ResourceType, tree: StateTree, nc: NestedCollection, resource_id: str
    ) -> list[CollectionItem]:
        path = f"{rtype.collection_url(tree)}/{quote(resource_id, safe='')}/{nc.fetch_suffix}"
        fetch = page_fetcher(self._transport, rtype.base_key, path, nc.item_cls)
        rows = await collect_all(fetch, lambda _: True)
        items = []
        for row in rows:
            item = row.attributes or nc.item_cls()
            if row.id is not None:
                item.id = row.id
            items.append(item)
        return items

    async def _apply_response(
        self,
        rtype: ResourceType,
        tree: StateTree,
        data: ResourceData[Any],
        resource_id: str,
    ) -> list[AttributeWriteError]:
        attributes = data.attributes or rtype.record_cls()
        for nc in rtype.nested:
            if nc.fetch_suffix:
                items = await self._fetch_nested(rtype, tree, nc, resource_id)
                setattr(attributes, nc.key, items)
        return copy(tree, attributes.refs(), rtype.effective_policy())

    def _outbound_nested(
        self, rtype: ResourceType, tree: StateTree, record: TypedRecord, *, update: bool
    ) -> None:
        policy = rtype.effective_policy()
        for nc in rtype.nested:
            if update:
                if not policy.has_meaningful_change(tree, nc.key):
                    continue
                old_blocks, new_blocks = tree.get_change(nc.key)
                old_items = items_from_blocks(old_blocks, nc.item_cls, nc.key)
                new_items = items_from_blocks(new_blocks, nc.item_cls, nc.key)
                setattr(record, nc.key, delta(old_items, new_items, sensitive=nc.sensitive))
            else:
                blocks, ok = tree.get_ok_exists(nc.key)
                if ok:
                    setattr(record, nc.key, items_from_blocks(blocks, nc.item_cls, nc.key))

    async def create(self, rtype: ResourceType, tree: StateTree) -> ReconcileResult:
        """Create the remote resource from the tree.

        The tree identity is only set once every step has succeeded.
        """
        result = ReconcileResult(rtype.name, "create", state=ResourceState.CREATING)
        try:
            record = rtype.record_cls()
            load(tree, record.refs())
            self._outbound_nested(rtype, tree, record, update=False)

            response = await self._transport.send(
                "POST", rtype.base_key, rtype.collection_url(tree), encode_single(record)
            )
            raise_for_status(response)
            data = decode_single(response, rtype.record_cls)
            if not data.id:
                raise DecodeError(f"{rtype.name} create response carries no ID")

            result.write_errors = await self._apply_response(rtype, tree, data, data.id)
            if rtype.parent_key:
                tree.id = format_composite_id(str(tree.value_of(rtype.parent_key)), data.id)
            else:
                tree.id = data.id
            tree.commit()
            result.state = ResourceState.PRESENT
        except ProviderError as e:
            tree.id = ""
            result.error = e
            result.state = ResourceState.ABSENT
        return self._finish(result, tree)

    async def _fetch_current(
        self, rtype: ResourceType, tree: StateTree
    ) -> ResourceData[Any] | None:
        """Current server representation, or None once the resource is gone."""
        if rtype.read_via_list:
            child_id = rtype.child_id(tree)
            fetch = page_fetcher(
                self._transport, rtype.base_key, rtype.collection_url(tree), rtype.record_cls
            )
            return await find_first(fetch, lambda row: row.id == child_id)

        response = await self._transport.send("GET", rtype.base_key, rtype.resource_url(tree))
        if response.status_code == 404:
            return None
        raise_for_status(response)
        return decode_single(response, rtype.record_cls)

    async def read(self, rtype: ResourceType, tree: StateTree) -> ReconcileResult:
        """Refresh the tree from the remote resource.

        A resource that is gone (404, or missing from the listing of a
        list-only type) clears the identity and reports ABSENT without an
        error.
        """
        result = ReconcileResult(rtype.name, "read", state=ResourceState.READING)
        if tree.is_new:
            result.state = ResourceState.ABSENT
            return self._finish(result, tree)

        try:
            data = await self._fetch_current(rtype, tree)
            if data is None:
                logger.warning(
                    "Resource not found, removing from state",
                    extra={"resource": rtype.name, "id": tree.id},
                )
                tree.id = ""
                result.state = ResourceState.ABSENT
                return self._finish(result, tree)

            result.write_errors = await self._apply_response(
                rtype, tree, data, rtype.child_id(tree)
            )
            tree.commit()
            result.state = ResourceState.PRESENT
        except ProviderError as e:
            result.error = e
            result.state = ResourceState.PRESENT
        return self._finish(result, tree)

    async def update(self, rtype: ResourceType, tree: StateTree) -> ReconcileResult:
        """Send the changed fields of the tree.

        Policy validation runs first; a violation means no request is sent.
        """
        result = ReconcileResult(rtype.name, "update", state=ResourceState.UPDATING)
        try:
            if tree.is_new:
                raise ResourceValidationError(
                    rtype.name, "id", f"cannot update {rtype.name} without an ID"
                )
            policy = rtype.effective_policy()
            policy.validate_update(tree)

            record = rtype.record_cls()
            load(tree, record.refs(), only_changed=True, policy=policy)
            self._outbound_nested(rtype, tree, record, update=True)

            response = await self._transport.send(
                "PATCH", rtype.base_key, rtype.resource_url(tree), encode_single(record)
            )
            raise_for_status(response)
            if response.content:
                data = decode_single(response, rtype.record_cls)
                result.write_errors = await self._apply_response(
                    rtype, tree, data, rtype.child_id(tree)
                )
            tree.commit()
        except ProviderError as e:
            result.error = e
        result.state = ResourceState.PRESENT
        return self._finish(result, tree)

    async def delete(self, rtype: ResourceType, tree: StateTree) -> ReconcileResult:
        """Delete the remote resource. A 404 counts as already deleted."""
        result = ReconcileResult(rtype.name, "delete", state=ResourceState.DELETING)
        if tree.is_new:
            result.state = ResourceState.ABSENT
            return self._finish(result, tree)

        try:
            response = await self._transport.send(
                "DELETE", rtype.base_key, rtype.resource_url(tree)
            )
            if response.status_code != 404:
                raise_for_status(response)
            tree.clear()
            result.state = ResourceState.ABSENT
        except ProviderError as e:
            result.error = e
            result.state = ResourceState.PRESENT
        return self._finish(result, tree)

    async def lookup(self, rtype: ResourceType, tree: StateTree, key: str) -> ReconcileResult:
        """Find a resource by its lookup key and populate the tree from it.

        Ambiguous keys fail with MultipleMatchesError listing the IDs.
        """
        result = ReconcileResult(rtype.name, "lookup", state=ResourceState.READING)
        try:
            fetch = page_fetcher(
                self._transport, rtype.base_key, rtype.collection_url(tree), rtype.record_cls
            )
            data = await lookup_unique(
                fetch,
                lambda row: getattr(row.attributes, rtype.lookup_key, None)
                if row.attributes is not None
                else None,
                key,
                rtype.name,
                id_of=lambda row: row.id,
            )
            if not data.id:
                raise DecodeError(f"{rtype.name} list entry carries no ID")
            result.write_errors = await self._apply_response(rtype, tree, data, data.id)
            if rtype.parent_key:
                tree.id = format_composite_id(str(tree.value_of(rtype.parent_key)), data.id)
            else:
                tree.id = data.id
            tree.commit()
            result.state = ResourceState.PRESENT
        except ProviderError as e:
            result.error = e
            result.state = ResourceState.ABSENT
        return self._finish(result, tree)

    async def import_state(
        self, rtype: ResourceType, tree: StateTree, identity: str
    ) -> ReconcileResult:
        """Adopt an existing resource by identity, then read it.

        Sub-resources take a composite ``<parent>/<child>`` identity.
        """
        try:
            if rtype.parent_key:
                parent_id, _ = parse_composite_id(identity)
                tree.set(rtype.parent_key, parent_id)
            elif not identity:
                raise DecodeError(f"cannot import {rtype.name} with an empty ID")
        except ProviderError as e:
            result = ReconcileResult(rtype.name, "import", error=e)
            return self._finish(result, tree)

        tree.id = identity
        result = await self.read(rtype, tree)
        result.operation = "import"
        if result.success and result.state is ResourceState.ABSENT:
            result.error = ResourceLookupError(
                f"cannot import non-existent {rtype.name} with ID {identity!r}"
            )
        return result
