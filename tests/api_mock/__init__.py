"""Mock REST API for integration testing.

Serves the provider's envelope, pagination and nested-collection conventions
from memory through httpx.MockTransport, so the real Transport (headers,
retry, rate limiting) is exercised end to end without network access.

Key Features:
- In-memory collections with server-assigned IDs
- Paginated listings (``?page=N``, fixed page size)
- Nested collections updated via ``id``/``_destroy`` entries
- Write-only fields that are accepted but never echoed
- Scripted responses and network errors for retry scenarios
- Request log for asserting what was (or was not) sent
"""

from .context import TEST_BASE_URL, TEST_TOKEN, MockAPIContext, make_config
from .server import MockAPI
from .state import CollectionSpec, MockAPIState, MockResource, NestedSpec, RecordedRequest

__all__ = [
    "TEST_BASE_URL",
    "TEST_TOKEN",
    "CollectionSpec",
    "MockAPI",
    "MockAPIContext",
    "MockAPIState",
    "MockResource",
    "NestedSpec",
    "RecordedRequest",
    "make_config",
]
