"""Error taxonomy for the reconciliation core.

Every failure raised by the core derives from ProviderError so callers can
aggregate diagnostics with a single except clause. Errors carry enough
context (method, url, status, body) to be actionable without re-running
with verbose logging.

ERROR KINDS:
- Transport: network/timeout failures surfaced after retries
- Protocol: non-2xx responses not eligible for retry
- Decode: malformed JSON, unexpected shape, malformed identity
- Validation: policy violations detected before any request is sent
- Partial write: a single tree write that failed during copy
"""

from __future__ import annotations


class ProviderError(Exception):
    """Base class for all reconciliation core errors."""

    pass


class ConfigurationError(ProviderError):
    """Raised when client configuration validation fails."""

    pass


class TransportError(ProviderError):
    """Raised when a request fails at the network level after all retries."""

    def __init__(self, method: str, url: str, message: str, attempts: int = 1) -> None:
        self.method = method
        self.url = url
        self.attempts = attempts
        super().__init__(f"{method} {url} failed after {attempts} attempt(s): {message}")


class APIError(ProviderError):
    """Raised for a non-2xx response the caller cannot interpret as success."""

    def __init__(self, method: str, url: str, status_code: int, body: str) -> None:
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body
        super().__init__(f"{method} {url} returned {status_code}: {body}")


class NotFoundError(APIError):
    """Raised when a 404 is fatal for the operation (e.g. lookup by ID)."""

    pass


class DecodeError(ProviderError):
    """Raised when a response body or identity cannot be decoded."""

    pass


class ResourceValidationError(ProviderError):
    """Raised when a reconciliation violates a policy rule.

    Always raised before the request is sent, so no remote mutation is
    attempted.
    """

    def __init__(self, resource: str, field: str, message: str) -> None:
        self.resource = resource
        self.field = field
        super().__init__(message)


class ImmutableFieldError(ResourceValidationError):
    """Raised when an immutable-once-set field changes after creation."""

    def __init__(self, resource: str, field: str) -> None:
        super().__init__(
            resource,
            field,
            f"{field} cannot be changed after {resource} is created",
        )


class RemovalForbiddenError(ResourceValidationError):
    """Raised when a retained or frozen block is removed or modified."""

    pass


class AttributeWriteError(ProviderError):
    """Raised when a single value cannot be written into the state tree."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"cannot set {key!r}: {message}")


class ResourceLookupError(ProviderError):
    """Base class for lookup-by-key failures."""

    pass


class MultipleMatchesError(ResourceLookupError):
    """Raised when a lookup by human-readable key is ambiguous."""

    def __init__(self, kind: str, key: str, ids: list[str]) -> None:
        self.kind = kind
        self.key = key
        self.ids = ids
        super().__init__(
            f'multiple {kind}s found with the name "{key}" - use ID lookup instead, '
            f"available {kind} IDs: {', '.join(ids)}"
        )


class LookupNotFoundError(ResourceLookupError):
    """Raised when a lookup by human-readable key has no match."""

    def __init__(self, kind: str, key: str, available: str) -> None:
        self.kind = kind
        self.key = key
        message = f'no {kind} found with name "{key}"'
        if available:
            message += f" - available {kind}s: {available}"
        super().__init__(message)


class PaginationError(ProviderError):
    """Raised when a pagination walk exceeds its page limit."""

    pass
