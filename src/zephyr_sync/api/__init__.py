"""Chat REST API transport."""

from zephyr_sync.api.client import (
    ChatApiClient,
    ChatApiError,
    ForbiddenError,
    TransientError,
    UnauthorizedError,
)

__all__ = [
    "ChatApiClient",
    "ChatApiError",
    "ForbiddenError",
    "TransientError",
    "UnauthorizedError",
]
