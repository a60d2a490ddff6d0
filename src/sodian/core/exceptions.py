"""
Sodian Domain-Specific Exceptions
=================================

This module defines a hierarchy of exceptions for consistent error handling
across the knowledge core.

Exception Hierarchy:
    SodianError (base)
    ├── RecoverableError (transient, retry possible)
    │   ├── StorageConnectionError
    │   └── StorageTimeoutError
    ├── IrrecoverableError (permanent, requires intervention)
    │   ├── ConfigurationError
    │   ├── ValidationError
    │   ├── UnsupportedOperationError
    │   └── DataCorruptionError
    └── Domain Errors (mixed recoverability)
        ├── StorageError
        ├── VectorError
        │   └── EmbeddingError
        ├── UpdateApplicationError
        └── ConsolidationError

Usage Guidelines:
    - Unknown ids in idempotent operations (link increment, link removal,
      document deletion) are silent no-ops, not errors
    - Raise exceptions for actual errors (backend failures, malformed input)
    - Always include context in error messages
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(Enum):
    """Categories for error classification."""
    STORAGE = "STORAGE"
    VECTOR = "VECTOR"
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    GRAPH = "GRAPH"
    CONSOLIDATION = "CONSOLIDATION"
    SYSTEM = "SYSTEM"


class SodianError(Exception):
    """
    Base exception for all knowledge core errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context about the error
        recoverable: Whether the error is potentially recoverable
    """

    error_code: str = "SODIAN_ERROR"
    recoverable: bool = True
    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(
        self,
        message: str,
        context: Optional[dict] = None,
        error_code: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if error_code is not None:
            self.error_code = error_code
        if recoverable is not None:
            self.recoverable = recoverable

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to a dictionary for reporting."""
        result = {
            "error": self.message,
            "code": self.error_code,
            "recoverable": self.recoverable,
        }
        if self.context:
            result["context"] = self.context
        return result


# =============================================================================
# Base Categories: Recoverable vs Irrecoverable
# =============================================================================

class RecoverableError(SodianError):
    """
    Base class for recoverable errors.

    These are transient errors that may succeed on retry:
    - Connection failures
    - Timeouts
    """
    recoverable = True


class IrrecoverableError(SodianError):
    """
    Base class for irrecoverable errors.

    These are permanent errors that require intervention:
    - Invalid configuration
    - Malformed input
    - Unsupported operations
    """
    recoverable = False


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(SodianError):
    """Base exception for storage-related errors."""
    error_code = "STORAGE_ERROR"
    category = ErrorCategory.STORAGE


class StorageConnectionError(RecoverableError, StorageError):
    """Raised when connection to a storage backend fails."""
    error_code = "STORAGE_CONNECTION_ERROR"

    def __init__(self, backend: str, message: str = "Connection failed", context: Optional[dict] = None):
        ctx = {"backend": backend}
        if context:
            ctx.update(context)
        super().__init__(f"[{backend}] {message}", ctx)
        self.backend = backend


class StorageTimeoutError(RecoverableError, StorageError):
    """Raised when a storage operation times out."""
    error_code = "STORAGE_TIMEOUT_ERROR"

    def __init__(self, backend: str, operation: str, context: Optional[dict] = None):
        ctx = {"backend": backend, "operation": operation}
        if context:
            ctx.update(context)
        super().__init__(f"[{backend}] Operation '{operation}' timed out", ctx)
        self.backend = backend
        self.operation = operation


class DataCorruptionError(IrrecoverableError, StorageError):
    """Raised when persisted data cannot be deserialized."""
    error_code = "DATA_CORRUPTION_ERROR"

    def __init__(self, resource_id: str, reason: str = "Data corruption detected", context: Optional[dict] = None):
        ctx = {"resource_id": resource_id}
        if context:
            ctx.update(context)
        super().__init__(f"{reason} for resource '{resource_id}'", ctx)
        self.resource_id = resource_id


# =============================================================================
# Vector Errors
# =============================================================================

class VectorError(SodianError):
    """Base exception for vector index operations."""
    error_code = "VECTOR_ERROR"
    category = ErrorCategory.VECTOR


class EmbeddingError(RecoverableError, VectorError):
    """Raised when an external embedding backend fails to produce a vector."""
    error_code = "EMBEDDING_ERROR"

    def __init__(self, provider: str, reason: str, context: Optional[dict] = None):
        ctx = {"provider": provider}
        if context:
            ctx.update(context)
        super().__init__(f"Embedding via '{provider}' failed: {reason}", ctx)
        self.provider = provider


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(IrrecoverableError):
    """Raised when configuration is invalid or missing."""
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIG

    def __init__(self, config_key: str, reason: str, context: Optional[dict] = None):
        ctx = {"config_key": config_key}
        if context:
            ctx.update(context)
        super().__init__(f"Configuration error for '{config_key}': {reason}", ctx)
        self.config_key = config_key


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(IrrecoverableError):
    """Raised when input validation fails."""
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(self, field: str, reason: str, value: Any = None, context: Optional[dict] = None):
        ctx = {"field": field}
        if value is not None:
            # Truncate large values
            value_str = str(value)
            if len(value_str) > 100:
                value_str = value_str[:100] + "..."
            ctx["value"] = value_str
        if context:
            ctx.update(context)
        super().__init__(f"Validation error for '{field}': {reason}", ctx)
        self.field = field
        self.reason = reason


class UnsupportedOperationError(IrrecoverableError):
    """Raised when an update (type, action) pair has no defined semantics."""
    error_code = "UNSUPPORTED_OPERATION_ERROR"
    category = ErrorCategory.GRAPH

    def __init__(self, update_type: str, action: str, context: Optional[dict] = None):
        ctx = {"update_type": update_type, "action": action}
        if context:
            ctx.update(context)
        super().__init__(f"Action '{action}' is not supported for '{update_type}' updates", ctx)
        self.update_type = update_type
        self.action = action


# =============================================================================
# Graph / Consolidation Errors
# =============================================================================

class UpdateApplicationError(SodianError):
    """
    Raised when a batch of knowledge graph updates fails part-way.

    Updates before ``index`` were applied and are NOT rolled back; callers must
    treat the batch as possibly partially applied. The failing cause is
    available as ``__cause__``.
    """
    error_code = "UPDATE_APPLICATION_ERROR"
    category = ErrorCategory.GRAPH

    def __init__(self, index: int, applied: int, total: int, reason: str, context: Optional[dict] = None):
        ctx = {"index": index, "applied": applied, "total": total}
        if context:
            ctx.update(context)
        super().__init__(
            f"Update {index} of {total} failed after {applied} applied: {reason}",
            ctx,
        )
        self.index = index
        self.applied = applied
        self.total = total

    @property
    def recoverable(self) -> bool:  # type: ignore[override]
        cause = self.__cause__
        if isinstance(cause, SodianError):
            return cause.recoverable
        return False


class ConsolidationError(SodianError):
    """Raised when a consolidation step fails; no partial result is returned."""
    error_code = "CONSOLIDATION_ERROR"
    category = ErrorCategory.CONSOLIDATION

    def __init__(self, step: str, reason: str, context: Optional[dict] = None):
        ctx = {"step": step}
        if context:
            ctx.update(context)
        super().__init__(f"Consolidation step '{step}' failed: {reason}", ctx)
        self.step = step


# =============================================================================
# Utility Functions
# =============================================================================

def wrap_storage_exception(backend: str, operation: str, exc: Exception) -> StorageError:
    """
    Wrap a generic exception into an appropriate StorageError.

    Args:
        backend: Name of the storage backend (e.g., 'neo4j', 'qdrant')
        operation: Name of the operation that failed
        exc: The original exception

    Returns:
        An appropriate StorageError subclass
    """
    if isinstance(exc, StorageError):
        return exc

    exc_name = type(exc).__name__
    exc_msg = str(exc)

    # Timeout detection
    if "timeout" in exc_msg.lower() or "Timeout" in exc_name:
        return StorageTimeoutError(backend, operation)

    # Connection error detection
    if any(x in exc_name.lower() for x in ["connection", "connect", "network", "unavailable"]):
        return StorageConnectionError(backend, exc_msg)

    return StorageError(
        f"[{backend}] {operation} failed: {exc_msg}",
        {"backend": backend, "operation": operation, "original_exception": exc_name},
    )


__all__ = [
    "ErrorCategory",
    "SodianError",
    "RecoverableError",
    "IrrecoverableError",
    "StorageError",
    "StorageConnectionError",
    "StorageTimeoutError",
    "DataCorruptionError",
    "VectorError",
    "EmbeddingError",
    "ConfigurationError",
    "ValidationError",
    "UnsupportedOperationError",
    "UpdateApplicationError",
    "ConsolidationError",
    "wrap_storage_exception",
]
