"""fetchqueue: async HTTP client that serialises credential refreshes and queues calls behind them."""

from fetchqueue.auth import CredentialConfig, CredentialRecord, PendingMode
from fetchqueue.client import Fetch
from fetchqueue.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    CredentialUnavailableError,
    FetchQueueError,
    HttpError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    ValidationError,
    error_for_status,
)
from fetchqueue.queue import FetchQueue
from fetchqueue.types import ErrorContext, HttpResponse, RequestOptions, TokenGrant

__all__ = [
    # Clients
    "Fetch",
    "FetchQueue",
    # Credentials
    "CredentialConfig",
    "CredentialRecord",
    "PendingMode",
    # Types
    "RequestOptions",
    "ErrorContext",
    "HttpResponse",
    "TokenGrant",
    # Exceptions
    "FetchQueueError",
    "HttpError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "ServerError",
    "NetworkError",
    "CredentialUnavailableError",
    "error_for_status",
]
