"""Per-resource reconciliation policy.

A policy is an immutable table of field rules handed to the core at call
time. It is consulted in two places:

- Before an update is sent: validate_update() rejects changes the server
  would refuse (immutable fields, removal or modification of create-only
  blocks). Nothing is sent when validation fails.
- During copy: suppresses() keeps the tree's own value for write-only
  secrets, server-derived fields that already hold a value, and normalized
  fields whose inbound value only differs cosmetically.

NORMALIZATION:
Servers often canonicalize what they are sent (e.g. appending a newline and a
terminating "." to a transformation script). Comparing normalized values
keeps those rewrites from showing up as perpetual changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

from .errors import ConfigurationError, ImmutableFieldError, RemovalForbiddenError
from .tree import StateTree

logger = logging.getLogger(__name__)


class PolicyError(ConfigurationError):
    """Raised when a policy document is invalid."""

    pass


class NormalizationType(str, Enum):
    """How a field is canonicalized before old and new values are compared."""

    # Per-line trim, one trailing "." dropped, blank lines dropped
    SCRIPT = "script"

    # Unset and an empty string, list or map compare equal
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Enum-like strings the server may re-case
    CASE_INSENSITIVE = "case_insensitive"

    # Runs of spaces collapsed, line endings unified
    WHITESPACE_NORMALIZE = "whitespace_normalize"

    # Tree booleans compare equal to the API's "true"/"1"/"on" spellings
    BOOLEAN_NORMALIZE = "boolean_normalize"


def normalize_script(script: str) -> str:
    """Normalize a transformation script for comparison.

    Each line is stripped, loses one trailing ".", and is stripped again;
    lines left empty are dropped.
    """
    lines = []
    for line in script.split("\n"):
        line = line.strip()
        line = line.removesuffix(".")
        line = line.strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


# Spellings the API uses for booleans stored in string-typed settings
_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off"})


def _empty_as_absent(value: Any) -> Any:
    # "", [] and {} are what the server reads back for a setting it never stored
    if isinstance(value, (str, list, dict)) and not value:
        return None
    return value


def _as_bool(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    elif isinstance(value, int) and not isinstance(value, bool) and value in (0, 1):
        return bool(value)
    return value


def _collapse_whitespace(text: str) -> str:
    return "\n".join(" ".join(line.split()) for line in text.splitlines()).strip()


_TEXT_NORMALIZERS: dict[NormalizationType, Callable[[str], str]] = {
    NormalizationType.SCRIPT: normalize_script,
    NormalizationType.CASE_INSENSITIVE: str.casefold,
    NormalizationType.WHITESPACE_NORMALIZE: _collapse_whitespace,
}


def normalize(value: Any, normalization: NormalizationType) -> Any:
    """Apply one normalization to a tree value.

    EMPTY_EQUIVALENCE and BOOLEAN_NORMALIZE apply to any kind of value; the
    text normalizations leave non-strings untouched.
    """
    if normalization is NormalizationType.EMPTY_EQUIVALENCE:
        return _empty_as_absent(value)
    if normalization is NormalizationType.BOOLEAN_NORMALIZE:
        return _as_bool(value)
    if isinstance(value, str):
        return _TEXT_NORMALIZERS[normalization](value)
    return value


def _is_set(value: Any) -> bool:
    return _empty_as_absent(value) is not None


@dataclass(frozen=True)
class ReconciliationPolicy:
    """Field rules for one resource type.

    Attributes:
        resource: Resource name used in error messages.
        immutable_fields: Settable at creation only.
        write_only_fields: Sent to the server, never returned; copy skips them.
        server_derived_fields: Copy skips them once the tree holds a value.
        normalized_fields: Field -> normalization applied before comparing.
        retained_blocks: Blocks that cannot be removed once set.
        frozen_blocks: Blocks that cannot be modified once set.
        block_secrets: Block key -> nested write-only keys kept from prior state.
    """

    resource: str = "resource"
    immutable_fields: frozenset[str] = frozenset()
    write_only_fields: frozenset[str] = frozenset()
    server_derived_fields: frozenset[str] = frozenset()
    normalized_fields: Mapping[str, NormalizationType] = field(default_factory=dict)
    retained_blocks: frozenset[str] = frozenset()
    frozen_blocks: frozenset[str] = frozenset()
    block_secrets: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def are_equivalent(self, key: str, old: Any, new: Any) -> bool:
        """Compare two values of a field after its normalization (if any)."""
        normalization = self.normalized_fields.get(key)
        if normalization is None:
            return old == new
        return normalize(old, normalization) == normalize(new, normalization)

    def has_meaningful_change(self, tree: StateTree, key: str) -> bool:
        """True when a key changed in a way normalization does not explain."""
        if not tree.has_change(key):
            return False
        if key not in self.normalized_fields:
            return True
        old, new = tree.get_change(key)
        if self.are_equivalent(key, old, new):
            logger.debug(
                "Change suppressed by normalization",
                extra={
                    "resource": self.resource,
                    "key": key,
                    "normalization": self.normalized_fields[key].value,
                },
            )
            return False
        return True

    def suppresses(self, tree: StateTree, key: str, incoming: Any = None) -> bool:
        """Check whether copy must leave the tree's value for ``key`` alone."""
        if key in self.write_only_fields:
            return True
        current = tree.value_of(key)
        if key in self.server_derived_fields and _is_set(current):
            return True
        if key in self.normalized_fields and incoming is not None:
            held = tree.get(key)
            # An unknown value must be resolved by the server's answer
            if held is not None and not held.is_fully_known():
                return False
            return self.are_equivalent(key, current, incoming)
        return False

    def validate_update(self, tree: StateTree) -> None:
        """Reject changes the server does not allow on an existing resource.

        Raises:
            ImmutableFieldError: An immutable field changed.
            RemovalForbiddenError: A retained block was removed or a frozen
                block was modified.
        """
        if tree.is_new:
            return

        for key in sorted(self.immutable_fields):
            old, new = tree.get_change(key)
            if old is None or not tree.has_change(key):
                continue
            if not self.are_equivalent(key, old, new):
                raise ImmutableFieldError(self.resource, key)

        for key in sorted(self.retained_blocks | self.frozen_blocks):
            if not tree.has_change(key):
                continue
            old, new = tree.get_change(key)
            if not _is_set(old):
                continue
            if not _is_set(new):
                raise RemovalForbiddenError(
                    self.resource,
                    key,
                    f"{key} cannot be removed once set - it is a create-only field",
                )
            if key in self.frozen_blocks:
                raise RemovalForbiddenError(
                    self.resource,
                    key,
                    f"{key} fields cannot be modified after creation - "
                    f"the {key} configuration is immutable once set",
                )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> ReconciliationPolicy:
        """Parse a policy from YAML content.

        Expected format:
        ```yaml
        resource: collector
        immutableFields: [data_region, platform]
        writeOnlyFields: [ingesting_paused_password]
        serverDerivedFields: [data_region]
        normalizedFields:
          vrl_transformation: script
        retainedBlocks: [custom_bucket]
        frozenBlocks: [custom_bucket]
        blockSecrets:
          databases: [password]
        ```

        Raises:
            PolicyError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise PolicyError(f"Invalid YAML in policy: {e}") from e

        if data is None:
            return cls()

        if not isinstance(data, dict):
            raise PolicyError("Policy must be a YAML object")

        def get_names(name: str) -> frozenset[str]:
            raw = data.get(name, [])
            if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
                raise PolicyError(f"'{name}' must be a list of strings")
            return frozenset(raw)

        raw_normalized = data.get("normalizedFields", {})
        if not isinstance(raw_normalized, dict):
            raise PolicyError("'normalizedFields' must be a mapping")
        normalized: dict[str, NormalizationType] = {}
        for key, value in raw_normalized.items():
            try:
                normalized[str(key)] = NormalizationType(str(value).lower())
            except ValueError as e:
                valid = ", ".join(t.value for t in NormalizationType)
                raise PolicyError(
                    f"normalizedFields.{key}: unknown normalization {value!r} (valid: {valid})"
                ) from e

        raw_secrets = data.get("blockSecrets", {})
        if not isinstance(raw_secrets, dict):
            raise PolicyError("'blockSecrets' must be a mapping")
        block_secrets: dict[str, tuple[str, ...]] = {}
        for key, value in raw_secrets.items():
            if not isinstance(value, list) or not value:
                raise PolicyError(f"blockSecrets.{key} must be a non-empty list")
            block_secrets[str(key)] = tuple(str(v) for v in value)

        return cls(
            resource=str(data.get("resource", "resource")),
            immutable_fields=get_names("immutableFields"),
            write_only_fields=get_names("writeOnlyFields"),
            server_derived_fields=get_names("serverDerivedFields"),
            normalized_fields=normalized,
            retained_blocks=get_names("retainedBlocks"),
            frozen_blocks=get_names("frozenBlocks"),
            block_secrets=block_secrets,
        )

    @classmethod
    def from_file(cls, path: str) -> ReconciliationPolicy:
        """Load a policy from a YAML file.

        Raises:
            PolicyError: If file cannot be read or parsed.
        """
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise PolicyError(f"Cannot read policy file: {e}") from e

        return cls.from_yaml(content)
