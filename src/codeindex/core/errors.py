"""codeindex error types with typed error codes.

Error code ranges:
- 2xxx: Configuration
- 3xxx: Storage
- 4xxx: Embedding (remote providers, vector stores, local models)
- 5xxx: Cancellation
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Configuration (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_MISSING_REQUIRED = 2003
    FEATURE_DISABLED = 2010

    # Storage (3xxx)
    STORAGE_UNAVAILABLE = 3001
    STORAGE_WRITE_FAILED = 3002
    STORAGE_QUERY_FAILED = 3003

    # Embedding (4xxx)
    EMBEDDING_AUTH_FAILED = 4001
    EMBEDDING_RATE_LIMITED = 4002
    EMBEDDING_REQUEST_FAILED = 4003
    EMBEDDING_BAD_RESPONSE = 4004
    EMBEDDING_NOT_CONFIGURED = 4005
    VECTOR_STORE_FAILED = 4010
    MODEL_DOWNLOAD_FAILED = 4020
    MODEL_NOT_INSTALLED = 4021

    # Cancellation (5xxx)
    OPERATION_CANCELLED = 5001

    # Internal (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_TIMEOUT = 9002


@dataclass(frozen=True, slots=True)
class CodeIndexError(Exception):
    """Base error with structured context for status and diagnostics surfaces."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'STORAGE_WRITE_FAILED')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON responses."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigurationError(CodeIndexError):
    """Configuration errors, including invoking a disabled feature.

    Public index operations never let ``feature_disabled`` escape; they turn it
    into a disabled-response sentinel instead.
    """

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def missing_required(cls, field: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_MISSING_REQUIRED,
            message=f"Missing required config field: {field}",
            details={"field": field},
        )

    @classmethod
    def feature_disabled(cls, feature: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.FEATURE_DISABLED,
            message=f"Feature disabled: {feature}",
            details={"feature": feature},
        )


class StorageError(CodeIndexError):
    """Local database unavailable, corrupt, or failing writes."""

    @classmethod
    def unavailable(cls, path: str, reason: str) -> "StorageError":
        return cls(
            code=ErrorCode.STORAGE_UNAVAILABLE,
            message=f"Index database unavailable at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def write_failed(cls, operation: str, reason: str, **details: Any) -> "StorageError":
        return cls(
            code=ErrorCode.STORAGE_WRITE_FAILED,
            message=f"Storage write '{operation}' failed: {reason}",
            retryable=True,
            details={"operation": operation, "reason": reason, **details},
        )

    @classmethod
    def query_failed(cls, operation: str, reason: str) -> "StorageError":
        return cls(
            code=ErrorCode.STORAGE_QUERY_FAILED,
            message=f"Storage query '{operation}' failed: {reason}",
            details={"operation": operation, "reason": reason},
        )


class EmbeddingProviderError(CodeIndexError):
    """Network, auth, or quota failure from a remote embedding or vector service."""

    @classmethod
    def auth_failed(cls, provider: str) -> "EmbeddingProviderError":
        return cls(
            code=ErrorCode.EMBEDDING_AUTH_FAILED,
            message=f"{provider} rejected the configured API key",
            details={"provider": provider},
        )

    @classmethod
    def rate_limited(cls, provider: str, attempts: int) -> "EmbeddingProviderError":
        return cls(
            code=ErrorCode.EMBEDDING_RATE_LIMITED,
            message=f"{provider} rate limit exceeded after {attempts} attempts",
            retryable=True,
            details={"provider": provider, "attempts": attempts},
        )

    @classmethod
    def request_failed(
        cls, provider: str, reason: str, status_code: int | None = None
    ) -> "EmbeddingProviderError":
        return cls(
            code=ErrorCode.EMBEDDING_REQUEST_FAILED,
            message=f"{provider} request failed: {reason}",
            retryable=status_code is None or status_code >= 500,
            details={"provider": provider, "reason": reason, "status_code": status_code},
        )

    @classmethod
    def bad_response(cls, provider: str, reason: str) -> "EmbeddingProviderError":
        return cls(
            code=ErrorCode.EMBEDDING_BAD_RESPONSE,
            message=f"Unexpected response from {provider}: {reason}",
            details={"provider": provider, "reason": reason},
        )

    @classmethod
    def not_configured(cls, provider: str, setting: str) -> "EmbeddingProviderError":
        return cls(
            code=ErrorCode.EMBEDDING_NOT_CONFIGURED,
            message=f"{provider} is not configured (missing {setting})",
            details={"provider": provider, "setting": setting},
        )

    @classmethod
    def vector_store_failed(
        cls, operation: str, reason: str, status_code: int | None = None
    ) -> "EmbeddingProviderError":
        return cls(
            code=ErrorCode.VECTOR_STORE_FAILED,
            message=f"Vector store '{operation}' failed: {reason}",
            retryable=status_code is None or status_code >= 500,
            details={"operation": operation, "reason": reason, "status_code": status_code},
        )


class ModelInstallError(CodeIndexError):
    """Local model artifact missing or corrupt. Non-fatal: callers fall back to hashing."""

    @classmethod
    def download_failed(cls, model_id: str, reason: str) -> "ModelInstallError":
        return cls(
            code=ErrorCode.MODEL_DOWNLOAD_FAILED,
            message=f"Failed to install model {model_id}: {reason}",
            retryable=True,
            details={"model_id": model_id, "reason": reason},
        )

    @classmethod
    def not_installed(cls, model_id: str) -> "ModelInstallError":
        return cls(
            code=ErrorCode.MODEL_NOT_INSTALLED,
            message=f"Model {model_id} is not installed",
            details={"model_id": model_id},
        )


class CancellationError(CodeIndexError):
    """Operation was cancelled. Not a failure; never recorded as last_error."""

    @classmethod
    def requested(cls, operation: str) -> "CancellationError":
        return cls(
            code=ErrorCode.OPERATION_CANCELLED,
            message=f"Operation cancelled: {operation}",
            details={"operation": operation},
        )


class InternalError(CodeIndexError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )
