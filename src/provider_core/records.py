"""Typed API records, wire envelopes and resource identities.

Every record field is optional and ``None`` means *absent*: outbound JSON
omits it and inbound JSON that omits it decodes to ``None`` (never to a zero
value). That distinction is what lets an explicit ``false``/``0``/``""``
travel to the server while an attribute the user never mentioned does not.
"""

from __future__ import annotations

import re
from abc import abstractmethod
from typing import Annotated, Any, Generic, TypeVar

import httpx
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
)

from .bindings import FieldBinding, scalar
from .errors import DecodeError


def _coerce_string_or_int(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("expected a string or an integer, got a boolean")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return value


# Base-10 ASCII integers that fit a signed 64-bit value go out as numbers
_INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def _serialize_string_or_int(value: str) -> str | int:
    if not _INTEGER_PATTERN.fullmatch(value):
        return value
    number = int(value)
    if INT64_MIN <= number <= INT64_MAX:
        return number
    return value


# Accepts a JSON string or number, stores str, emits int64-range integers as numbers
StringOrInt = Annotated[
    str,
    BeforeValidator(_coerce_string_or_int),
    PlainSerializer(_serialize_string_or_int, when_used="json"),
]


class TypedRecord(BaseModel):
    """Base class for the attributes of one API resource.

    Subclasses declare every field as ``X | None = None`` and must implement
    refs(), the ordered binding list shared by load and copy. pydantic's model
    metaclass is an ABCMeta, so a record type without refs() cannot be
    instantiated.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        validate_assignment=True,
        extra="ignore",
    )

    @abstractmethod
    def refs(self) -> list[FieldBinding]:
        """Ordered field bindings for this record instance."""

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready payload with absent fields omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CollectionItem(TypedRecord):
    """Element of a server-owned nested collection.

    ``id`` is assigned by the server on first creation; ``destroy`` travels as
    ``_destroy`` and asks the server to remove exactly that item.
    """

    id: StringOrInt | None = None
    destroy: bool | None = Field(default=None, alias="_destroy")

    @classmethod
    def removal(cls, item_id: str) -> CollectionItem:
        """Stand-alone removal entry carrying only identity and marker."""
        return cls(id=item_id, destroy=True)

    def refs(self) -> list[FieldBinding]:
        return [scalar(self, "id")]


R = TypeVar("R", bound=TypedRecord)


class ResourceData(BaseModel, Generic[R]):
    """``{"id": ..., "attributes": {...}}`` part of an envelope."""

    id: StringOrInt | None = None
    type: str | None = None
    attributes: R | None = None


class SingleEnvelope(BaseModel, Generic[R]):
    data: ResourceData[R]


class PaginationLinks(BaseModel):
    first: str | None = None
    last: str | None = None
    prev: str | None = None
    next: str | None = None


class PageEnvelope(BaseModel, Generic[R]):
    data: list[ResourceData[R]] = Field(default_factory=list)
    pagination: PaginationLinks | None = None


def encode_single(record: TypedRecord) -> dict[str, Any]:
    """Outbound request body for create/update (the bare attribute object)."""
    return record.to_wire()


def _content(source: httpx.Response | bytes | str) -> bytes | str:
    if isinstance(source, httpx.Response):
        return source.content
    return source


def decode_single(source: httpx.Response | bytes | str, record_cls: type[R]) -> ResourceData[R]:
    """Decode a single-resource envelope.

    Raises:
        DecodeError: If the body is not JSON or does not match the envelope.
    """
    try:
        envelope = SingleEnvelope[record_cls].model_validate_json(_content(source))
    except ValidationError as e:
        raise DecodeError(f"malformed {record_cls.__name__} response: {e}") from e
    return envelope.data


def decode_page(source: httpx.Response | bytes | str, record_cls: type[R]) -> PageEnvelope[R]:
    """Decode a list envelope.

    Raises:
        DecodeError: If the body is not JSON or does not match the envelope.
    """
    try:
        return PageEnvelope[record_cls].model_validate_json(_content(source))
    except ValidationError as e:
        raise DecodeError(f"malformed {record_cls.__name__} list response: {e}") from e


def parse_composite_id(identity: str) -> tuple[str, str]:
    """Split ``"<parent>/<child>"`` into its two parts.

    Raises:
        DecodeError: Unless there are exactly two non-empty parts.
    """
    parts = identity.split("/")
    if len(parts) != 2 or not all(parts):
        raise DecodeError(
            f"invalid composite ID {identity!r}: expected format <parent_id>/<child_id>"
        )
    return parts[0], parts[1]


def format_composite_id(parent_id: str, child_id: str) -> str:
    return f"{parent_id}/{child_id}"
