"""Core module exports."""

from codeindex.core.cancellation import NONE, CancellationToken, ensure_token
from codeindex.core.errors import (
    CancellationError,
    CodeIndexError,
    ConfigurationError,
    EmbeddingProviderError,
    ErrorCode,
    InternalError,
    ModelInstallError,
    StorageError,
)
from codeindex.core.events import Emitter
from codeindex.core.logging import (
    clear_request_id,
    configure_logging,
    get_logger,
    get_request_id,
    set_request_id,
)

__all__ = [
    # Errors
    "CancellationError",
    "CodeIndexError",
    "ConfigurationError",
    "EmbeddingProviderError",
    "ErrorCode",
    "InternalError",
    "ModelInstallError",
    "StorageError",
    # Cancellation
    "NONE",
    "CancellationToken",
    "ensure_token",
    # Events
    "Emitter",
    # Logging
    "clear_request_id",
    "configure_logging",
    "get_logger",
    "get_request_id",
    "set_request_id",
]
