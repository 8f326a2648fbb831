"""Field bindings and the load/copy synchronizer.

A record's refs() returns an ordered list of FieldBinding closures, one per
field. The same list drives both directions:

- load(): desired-state tree -> typed record (outbound payload)
- copy(): typed record -> desired-state tree (inbound response)

so no field can be writable without also being readable.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from .errors import AttributeWriteError
from .nested import restore_sensitive
from .tree import StateTree

if TYPE_CHECKING:
    from .policy import ReconciliationPolicy

logger = logging.getLogger(__name__)


class Shape(str, Enum):
    """Value shapes a binding converts between tree and record."""

    SCALAR = "scalar"
    SCALAR_LIST = "scalar_list"
    MAP_LIST = "map_list"


@dataclass(frozen=True)
class FieldBinding:
    """Tree key bound to one field of one record instance."""

    key: str
    shape: Shape
    getter: Callable[[], Any]
    setter: Callable[[Any], None]


def _attr_binding(record: BaseModel, attr: str, key: str | None, shape: Shape) -> FieldBinding:
    def getter() -> Any:
        return getattr(record, attr)

    def setter(value: Any) -> None:
        setattr(record, attr, value)

    return FieldBinding(key or attr, shape, getter, setter)


def scalar(record: BaseModel, attr: str, key: str | None = None) -> FieldBinding:
    return _attr_binding(record, attr, key, Shape.SCALAR)


def scalar_list(record: BaseModel, attr: str, key: str | None = None) -> FieldBinding:
    return _attr_binding(record, attr, key, Shape.SCALAR_LIST)


def map_list(record: BaseModel, attr: str, key: str | None = None) -> FieldBinding:
    return _attr_binding(record, attr, key, Shape.MAP_LIST)


def _to_record(binding: FieldBinding, value: Any) -> Any:
    """Convert a tree value into what the record field expects for its shape."""
    match binding.shape:
        case Shape.SCALAR:
            if isinstance(value, (list, dict)):
                raise AttributeWriteError(binding.key, "expected a scalar value")
            return value
        case Shape.SCALAR_LIST:
            if not isinstance(value, list):
                raise AttributeWriteError(binding.key, "expected a list")
            return list(value)
        case Shape.MAP_LIST:
            if not isinstance(value, list) or not all(isinstance(m, dict) for m in value):
                raise AttributeWriteError(binding.key, "expected a list of blocks")
            return [{k: v for k, v in m.items() if v is not None} for m in value]


def _to_tree(binding: FieldBinding, value: Any) -> Any:
    """Convert a record field value into its tree representation."""
    match binding.shape:
        case Shape.SCALAR:
            return value
        case Shape.SCALAR_LIST:
            return list(value)
        case Shape.MAP_LIST:
            blocks = []
            for item in value:
                if isinstance(item, BaseModel):
                    item = item.model_dump(exclude_none=True, exclude={"destroy"})
                blocks.append(dict(item))
            return blocks


def load(
    tree: StateTree,
    bindings: Iterable[FieldBinding],
    *,
    only_changed: bool = False,
    policy: ReconciliationPolicy | None = None,
) -> None:
    """Populate a record from the values explicitly present in the tree.

    Args:
        tree: Desired state.
        bindings: The record's refs().
        only_changed: Load only keys whose value changed since the last
            persisted snapshot (update payloads).
        policy: When given with only_changed, changes the policy deems
            equivalent after normalization are not loaded.

    Raises:
        AttributeWriteError: If a tree value does not fit the record field.
    """
    for binding in bindings:
        if only_changed:
            if policy is not None:
                if not policy.has_meaningful_change(tree, binding.key):
                    continue
            elif not tree.has_change(binding.key):
                continue

        value, ok = tree.get_ok_exists(binding.key)
        if not ok:
            continue

        try:
            binding.setter(_to_record(binding, value))
        except ValidationError as e:
            raise AttributeWriteError(binding.key, str(e)) from e


def copy(
    tree: StateTree,
    bindings: Iterable[FieldBinding],
    policy: ReconciliationPolicy | None = None,
) -> list[AttributeWriteError]:
    """Write every present record field back into the tree.

    Fields the policy suppresses for this tree are skipped. A failed write is
    collected and the remaining bindings are still processed.

    Returns:
        Write failures, in bindings order.
    """
    errors: list[AttributeWriteError] = []

    for binding in bindings:
        value = binding.getter()
        if value is None:
            continue

        tree_value = _to_tree(binding, value)
        if policy is not None:
            if policy.suppresses(tree, binding.key, tree_value):
                continue
            secrets = policy.block_secrets.get(binding.key)
            if secrets and binding.shape is Shape.MAP_LIST:
                prior_blocks = tree.value_of(binding.key) or []
                tree_value = restore_sensitive(tree_value, prior_blocks, secrets)

        try:
            tree.set(binding.key, tree_value)
        except AttributeWriteError as e:
            logger.debug(
                "Attribute write failed",
                extra={"key": binding.key, "error": str(e)},
            )
            errors.append(e)

    return errors
