"""Desired-state tree built from tagged variants.

The caller's configuration for one resource instance is a mapping from field
name to Value. Each Value is one of NULL, BOOL, NUMBER, STRING, LIST or MAP
and carries a ``known`` flag: an unknown value is one the caller has not
computed yet (it depends on something that does not exist), which is
different from a value that is simply absent.

The tree also holds the resource identity and a snapshot of the previously
persisted values, which is what ``get_change``/``has_change`` compare
against.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import AttributeWriteError


class Kind(str, Enum):
    """Variant tag of a tree value."""

    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    LIST = "list"
    MAP = "map"


@dataclass(frozen=True)
class Value:
    """One tagged tree value.

    ``data`` holds a bool, int/float, str, tuple of Values or dict of Values
    depending on ``kind``. Unknown values carry no data.
    """

    kind: Kind
    data: Any = None
    known: bool = True

    @classmethod
    def null(cls) -> Value:
        return cls(Kind.NULL)

    @classmethod
    def unknown(cls, kind: Kind = Kind.NULL) -> Value:
        return cls(kind, None, known=False)

    @classmethod
    def of(cls, obj: Any) -> Value:
        """Build a Value from a plain Python object (Values pass through)."""
        if isinstance(obj, Value):
            return obj
        if obj is None:
            return cls(Kind.NULL)
        if isinstance(obj, bool):
            return cls(Kind.BOOL, obj)
        if isinstance(obj, (int, float)):
            return cls(Kind.NUMBER, obj)
        if isinstance(obj, str):
            return cls(Kind.STRING, obj)
        if isinstance(obj, Mapping):
            return cls(Kind.MAP, {str(k): cls.of(v) for k, v in obj.items()})
        if isinstance(obj, (list, tuple)):
            return cls(Kind.LIST, tuple(cls.of(v) for v in obj))
        raise TypeError(f"unsupported value type: {type(obj).__name__}")

    @property
    def is_null(self) -> bool:
        return self.known and self.kind == Kind.NULL

    def to_python(self) -> Any:
        """Convert back to plain Python; unknown and null both become None."""
        if not self.known or self.kind == Kind.NULL:
            return None
        if self.kind == Kind.LIST:
            return [v.to_python() for v in self.data]
        if self.kind == Kind.MAP:
            return {k: v.to_python() for k, v in self.data.items()}
        return self.data

    def is_fully_known(self) -> bool:
        if not self.known:
            return False
        if self.kind == Kind.LIST:
            return all(v.is_fully_known() for v in self.data)
        if self.kind == Kind.MAP:
            return all(v.is_fully_known() for v in self.data.values())
        return True


@dataclass
class StateTree:
    """Desired state of one resource instance.

    Args:
        values: Current (planned) values; plain objects are wrapped in Value.
        id: Resource identity, empty until create succeeds.
        prior: Previously persisted values, the "old" side of a change.
        schema: Optional field -> Kind table; writes of another kind fail.
    """

    values: dict[str, Value] = field(default_factory=dict)
    id: str = ""
    prior: dict[str, Value] = field(default_factory=dict)
    schema: Mapping[str, Kind] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.values = {k: Value.of(v) for k, v in self.values.items()}
        self.prior = {k: Value.of(v) for k, v in self.prior.items()}

    def __contains__(self, key: object) -> bool:
        return key in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    @property
    def is_new(self) -> bool:
        """True while the resource has no server identity."""
        return not self.id

    def get(self, key: str) -> Value | None:
        return self.values.get(key)

    def get_ok_exists(self, key: str) -> tuple[Any, bool]:
        """Return (python value, ok).

        ``ok`` is True only when the key is explicitly present, fully known
        and not null; an explicit False, 0, "" or [] is ok.
        """
        value = self.values.get(key)
        if value is None or value.is_null or not value.is_fully_known():
            return None, False
        return value.to_python(), True

    def value_of(self, key: str) -> Any:
        """Python value of a key, None when absent or unknown."""
        value = self.values.get(key)
        return value.to_python() if value is not None else None

    def set(self, key: str, obj: Any) -> None:
        """Write one value.

        Raises:
            AttributeWriteError: If the value cannot be represented or its kind
                does not match the schema for the key.
        """
        try:
            value = Value.of(obj)
        except TypeError as e:
            raise AttributeWriteError(key, str(e)) from e
        expected = self.schema.get(key)
        if expected is not None and value.kind not in (expected, Kind.NULL):
            raise AttributeWriteError(
                key, f"expected {expected.value}, got {value.kind.value}"
            )
        self.values[key] = value

    def unset(self, key: str) -> None:
        self.values.pop(key, None)

    def get_change(self, key: str) -> tuple[Any, Any]:
        """Return (old, new) python values for a key."""
        old = self.prior.get(key)
        new = self.values.get(key)
        return (
            old.to_python() if old is not None else None,
            new.to_python() if new is not None else None,
        )

    def has_change(self, key: str) -> bool:
        """True when the planned value differs from the persisted one.

        An unknown planned value always counts as a change.
        """
        new = self.values.get(key)
        if new is not None and not new.is_fully_known():
            return True
        old, current = self.get_change(key)
        return old != current

    def commit(self) -> None:
        """Make the current values the persisted snapshot."""
        self.prior = dict(self.values)

    def clear(self) -> None:
        """Forget identity and values (resource is gone)."""
        self.id = ""
        self.values = {}
        self.prior = {}

    def to_dict(self) -> dict[str, Any]:
        return {k: v.to_python() for k, v in self.values.items()}
