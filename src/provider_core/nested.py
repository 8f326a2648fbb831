"""Delta computation for server-owned nested collections.

Items of a nested collection (e.g. the databases a collector scrapes) get an
identity from the server when first created. An update must send that
identity back for every item it keeps and an explicit removal entry for every
item it drops, otherwise the server cannot tell an edit from a replacement.

MATCHING:
Old and new items are matched by position. New item *i* inherits the
identity of old item *i*; declaration order is trusted and content is not
compared. Reordering blocks therefore edits items in place instead of moving
them. Identity is only used as a fallback for recovering sensitive values.

SENSITIVE FIELDS:
Secrets such as passwords are accepted by the server but never returned.
They are carried forward from the old item so an update or a read never
blanks them out.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError

from .errors import ResourceValidationError

if TYPE_CHECKING:
    from .records import CollectionItem

I = TypeVar("I", bound="CollectionItem")

logger = logging.getLogger(__name__)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def delta(
    old_items: Sequence[CollectionItem],
    new_items: Sequence[CollectionItem],
    *,
    sensitive: Iterable[str] = (),
) -> list[CollectionItem]:
    """Compute the outbound representation of a nested collection update.

    Args:
        old_items: Items as last persisted (with server identities).
        new_items: Items as now declared.
        sensitive: Field names never echoed by the server.

    Returns:
        Kept/new items in new-list order, followed by one removal entry per
        old identity that was not carried forward (in old-list order).
    """
    sensitive = tuple(sensitive)
    old_by_id = {item.id: item for item in old_items if item.id}
    carried: set[str] = set()
    result: list[CollectionItem] = []

    for i, new in enumerate(new_items):
        own_id = new.id
        item = new.model_copy(update={"id": None, "destroy": None}, deep=True)

        positional = old_items[i] if i < len(old_items) else None
        if positional is not None and positional.id:
            item.id = positional.id
            carried.add(positional.id)

        for name in sensitive:
            if not _is_empty(getattr(item, name)):
                continue
            candidates = [positional]
            if own_id and own_id in old_by_id:
                candidates.append(old_by_id[own_id])
            for source in candidates:
                if source is not None and not _is_empty(getattr(source, name)):
                    setattr(item, name, getattr(source, name))
                    break

        result.append(item)

    removed: list[str] = []
    for old in old_items:
        if old.id and old.id not in carried and old.id not in removed:
            removed.append(old.id)
            result.append(type(old).removal(old.id))

    if removed:
        logger.debug(
            "Nested items marked for removal",
            extra={"removed_ids": removed, "kept": len(new_items)},
        )

    return result


def restore_sensitive(
    inbound: Sequence[dict[str, Any]],
    prior_blocks: Sequence[dict[str, Any]],
    sensitive: Iterable[str],
) -> list[dict[str, Any]]:
    """Re-attach secrets the server never echoes to freshly read blocks.

    A secret is looked up on the prior block with the same identity first,
    then on the prior block at the same index.
    """
    sensitive = tuple(sensitive)
    by_id: dict[str, dict[str, Any]] = {}
    for block in prior_blocks:
        block_id = block.get("id")
        if block_id not in (None, "", 0):
            by_id[str(block_id)] = block

    restored: list[dict[str, Any]] = []
    for i, block in enumerate(inbound):
        block = dict(block)
        block_id = block.get("id")
        for name in sensitive:
            if not _is_empty(block.get(name)):
                continue
            same_id = by_id.get(str(block_id)) if block_id is not None else None
            if same_id is not None and not _is_empty(same_id.get(name)):
                block[name] = same_id[name]
            elif i < len(prior_blocks) and not _is_empty(prior_blocks[i].get(name)):
                block[name] = prior_blocks[i][name]
        restored.append(block)
    return restored


def _block_value_set(value: Any) -> bool:
    # Empty strings and zero integers are how an unset nested attribute reads back
    if value is None or value == "":
        return False
    if isinstance(value, int) and not isinstance(value, bool) and value == 0:
        return False
    return True


def items_from_blocks(
    blocks: Sequence[dict[str, Any]] | None,
    item_cls: type[I],
    key: str = "",
) -> list[I]:
    """Build typed items from tree blocks, treating empty values as absent.

    Raises:
        ResourceValidationError: If a block does not fit the item type.
    """
    items = []
    for block in blocks or ():
        present = {k: v for k, v in block.items() if _block_value_set(v)}
        try:
            items.append(item_cls.model_validate(present))
        except ValidationError as e:
            raise ResourceValidationError(item_cls.__name__, key, f"invalid {key} block: {e}") from e
    return items


def items_to_blocks(items: Iterable[CollectionItem]) -> list[dict[str, Any]]:
    """Tree blocks for typed items (removal entries are skipped)."""
    return [
        item.model_dump(exclude_none=True, exclude={"destroy"})
        for item in items
        if not item.destroy
    ]
