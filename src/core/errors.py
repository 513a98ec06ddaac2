# core/errors.py
"""
Consistent error hierarchy and handling system for the analysis pipeline.

Every failure inside the pipeline is expressed as a PipelineError subclass so
that callers can decide, from the category alone, whether the failure is local
to one record (analysis), local to one partition run (storage) or fatal for the
process (configuration, programming bugs).
"""

import traceback
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, List
import logging
import sys
import asyncio
import json
import uuid

import aiohttp
from pydantic import ValidationError as PydanticValidationError

# =============================================================================
# Error Categories and Types
# =============================================================================

class ErrorCategory(Enum):
    """High-level error categories for classification"""
    NETWORK = "network"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    PROCESSING = "processing"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SYSTEM = "system"
    FATAL_BUG = "fatal_bug"

class ErrorSeverity(Enum):
    """Error severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorType(Enum):
    """Specific error types for detailed classification"""
    # Network errors (external analysis service)
    NETWORK_CONNECTION_FAILED = "network_connection_failed"
    NETWORK_TIMEOUT = "network_timeout"
    NETWORK_HTTP_STATUS = "network_http_status"

    # Analysis contract errors
    ANALYSIS_RESPONSE_INVALID = "analysis_response_invalid"
    ANALYSIS_RESULT_MISSING = "analysis_result_missing"

    # Storage errors
    STORAGE_READ_FAILED = "storage_read_failed"
    STORAGE_WRITE_FAILED = "storage_write_failed"
    STORAGE_PARTITION_CORRUPTED = "storage_partition_corrupted"

    # Configuration errors
    CONFIGURATION_MISSING = "configuration_missing"
    CONFIGURATION_INVALID = "configuration_invalid"
    CONFIGURATION_DEPENDENCY_MISSING = "configuration_dependency_missing"

    # Processing errors
    PROCESSING_LOGIC_ERROR = "processing_logic_error"
    PROCESSING_CANCELLED = "processing_cancelled"

    # Validation errors
    VALIDATION_SCHEMA_ERROR = "validation_schema_error"
    VALIDATION_EMPTY_INPUT = "validation_empty_input"
    VALIDATION_CONSTRAINT_VIOLATION = "validation_constraint_violation"
    VALIDATION_TYPE_ERROR = "validation_type_error"

    # Not-found
    RECORD_NOT_FOUND = "record_not_found"

    PROGRAMMING_ERROR = "programming_error"

    # System errors
    SYSTEM_INTERNAL_ERROR = "system_internal_error"
    SYSTEM_SHUTDOWN_REQUESTED = "system_shutdown_requested"


# =============================================================================
# Base Error Classes
# =============================================================================

class PipelineError(Exception):
    """
    Base exception for all analysis pipeline errors.
    Provides structured error information with context.
    """

    def __init__(self,
                 message: str,
                 error_type: ErrorType,
                 error_category: ErrorCategory = None,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 retryable: bool = False,
                 context: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):

        super().__init__(message)

        self.message = message
        self.error_type = error_type
        self.error_category = error_category or self._infer_category(error_type)
        self.severity = severity
        self.retryable = retryable

        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        self.error_id = f"err_{int(self.timestamp.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"

        self.stack_trace = traceback.format_exc() if sys.exc_info()[0] else None

        if cause:
            self.context['caused_by'] = {
                'type': type(cause).__name__,
                'message': str(cause),
                'error_id': getattr(cause, 'error_id', None)
            }

    def _infer_category(self, error_type: ErrorType) -> ErrorCategory:
        """Infer error category from error type"""
        type_to_category = {
            ErrorType.NETWORK_CONNECTION_FAILED: ErrorCategory.NETWORK,
            ErrorType.NETWORK_TIMEOUT: ErrorCategory.NETWORK,
            ErrorType.NETWORK_HTTP_STATUS: ErrorCategory.NETWORK,

            ErrorType.ANALYSIS_RESPONSE_INVALID: ErrorCategory.VALIDATION,
            ErrorType.ANALYSIS_RESULT_MISSING: ErrorCategory.VALIDATION,

            ErrorType.STORAGE_READ_FAILED: ErrorCategory.STORAGE,
            ErrorType.STORAGE_WRITE_FAILED: ErrorCategory.STORAGE,
            ErrorType.STORAGE_PARTITION_CORRUPTED: ErrorCategory.STORAGE,

            ErrorType.CONFIGURATION_MISSING: ErrorCategory.CONFIGURATION,
            ErrorType.CONFIGURATION_INVALID: ErrorCategory.CONFIGURATION,
            ErrorType.CONFIGURATION_DEPENDENCY_MISSING: ErrorCategory.CONFIGURATION,

            ErrorType.PROCESSING_LOGIC_ERROR: ErrorCategory.PROCESSING,
            ErrorType.PROCESSING_CANCELLED: ErrorCategory.PROCESSING,

            ErrorType.VALIDATION_SCHEMA_ERROR: ErrorCategory.VALIDATION,
            ErrorType.VALIDATION_EMPTY_INPUT: ErrorCategory.VALIDATION,
            ErrorType.VALIDATION_CONSTRAINT_VIOLATION: ErrorCategory.VALIDATION,
            ErrorType.VALIDATION_TYPE_ERROR: ErrorCategory.VALIDATION,

            ErrorType.RECORD_NOT_FOUND: ErrorCategory.NOT_FOUND,
            ErrorType.PROGRAMMING_ERROR: ErrorCategory.FATAL_BUG,

            ErrorType.SYSTEM_INTERNAL_ERROR: ErrorCategory.SYSTEM,
            ErrorType.SYSTEM_SHUTDOWN_REQUESTED: ErrorCategory.SYSTEM,
        }

        return type_to_category.get(error_type, ErrorCategory.SYSTEM)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization"""
        return {
            'error_id': self.error_id,
            'error_type': self.error_type.value,
            'error_category': self.error_category.value,
            'severity': self.severity.value,
            'message': self.message,
            'retryable': self.retryable,
            'timestamp': self.timestamp.isoformat(),
            'context': self.context,
            'stack_trace': self.stack_trace,
            'class_name': self.__class__.__name__
        }

    def add_context(self, key: str, value: Any) -> 'PipelineError':
        """Add context information to error (fluent interface)"""
        self.context[key] = value
        return self

    def __str__(self) -> str:
        context_str = ""
        if self.context:
            key_contexts = [f"{k}={v}" for k, v in self.context.items()
                          if k not in ['caused_by', 'stack_trace']]
            if key_contexts:
                context_str = f" [{', '.join(key_contexts)}]"

        return f"[{self.error_id}] {self.message}{context_str}"


# =============================================================================
# Specific Error Classes
# =============================================================================

class NetworkError(PipelineError):
    """Transient failures talking to the external analysis service."""

    def __init__(self, message: str,
                 error_type: ErrorType = ErrorType.NETWORK_CONNECTION_FAILED,
                 endpoint: Optional[str] = None,
                 status_code: Optional[int] = None,
                 **kwargs):

        kwargs.setdefault('retryable', True)
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)

        super().__init__(message, error_type, ErrorCategory.NETWORK, **kwargs)

        if endpoint:
            self.add_context('endpoint', endpoint)
        if status_code is not None:
            self.add_context('status_code', status_code)


class AnalysisResponseError(PipelineError):
    """The analysis service answered, but not with a usable classification."""

    def __init__(self, message: str,
                 error_type: ErrorType = ErrorType.ANALYSIS_RESPONSE_INVALID,
                 log_id: Optional[str] = None,
                 field_name: Optional[str] = None,
                 **kwargs):

        # Re-sending the same payload will not fix a malformed answer
        kwargs.setdefault('retryable', False)
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)

        super().__init__(message, error_type, ErrorCategory.VALIDATION, **kwargs)

        if log_id:
            self.add_context('log_id', log_id)
        if field_name:
            self.add_context('field_name', field_name)


class StorageError(PipelineError):
    """Partition unreadable or unwritable. Fatal for the current run only."""

    def __init__(self, message: str,
                 error_type: ErrorType = ErrorType.STORAGE_READ_FAILED,
                 partition: Optional[str] = None,
                 file_path: Optional[str] = None,
                 **kwargs):

        kwargs.setdefault('retryable', False)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)

        super().__init__(message, error_type, ErrorCategory.STORAGE, **kwargs)

        if partition:
            self.add_context('partition', partition)
        if file_path:
            self.add_context('file_path', file_path)


class ProcessingError(PipelineError):
    """Processing and orchestration errors"""

    def __init__(self, message: str,
                 error_type: ErrorType = ErrorType.PROCESSING_LOGIC_ERROR,
                 operation: Optional[str] = None,
                 **kwargs):

        kwargs.setdefault('retryable', False)
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)

        super().__init__(message, error_type, ErrorCategory.PROCESSING, **kwargs)

        if operation:
            self.add_context('operation', operation)


class ConfigurationError(PipelineError):
    """Configuration and setup errors"""

    def __init__(self, message: str,
                 error_type: ErrorType = ErrorType.CONFIGURATION_INVALID,
                 config_section: Optional[str] = None,
                 config_key: Optional[str] = None,
                 **kwargs):

        kwargs.setdefault('retryable', False)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)

        super().__init__(message, error_type, ErrorCategory.CONFIGURATION, **kwargs)

        if config_section:
            self.add_context('config_section', config_section)
        if config_key:
            self.add_context('config_key', config_key)


class ValidationError(PipelineError):
    """Rejected input to the collector or the resolution boundary."""

    def __init__(self, message: str,
                 error_type: ErrorType = ErrorType.VALIDATION_SCHEMA_ERROR,
                 field_name: Optional[str] = None,
                 field_value: Optional[Any] = None,
                 **kwargs):

        kwargs.setdefault('retryable', False)
        kwargs.setdefault('severity', ErrorSeverity.LOW)

        super().__init__(message, error_type, ErrorCategory.VALIDATION, **kwargs)

        if field_name:
            self.add_context('field_name', field_name)
        if field_value is not None:
            self.add_context('field_value', str(field_value))


# =============================================================================
# Error Handling Utilities
# =============================================================================

class ErrorHandler:
    """Centralized error handling and logging with thread safety"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

        self._registry_lock = threading.Lock()
        self.error_registry: Dict[str, PipelineError] = {}
        self._max_registry_size = 1000

    def handle_error(self,
                    error: Exception,
                    context: str,
                    operation: Optional[str] = None,
                    **additional_context) -> PipelineError:
        """
        Convert any exception to PipelineError, log it and register it.
        The caller decides whether to re-raise.
        """
        if not isinstance(error, Exception):
            self.logger.error(f"ERROR HANDLER BUG: Received non-Exception object: {type(error)}")
            error = RuntimeError(f"Invalid error object passed to handler: {str(error)}")

        if not context:
            self.logger.warning("ERROR HANDLER: Empty context provided, using fallback")
            context = "unknown_context"

        self.logger.debug(f"Handling {type(error).__name__} in {context} (operation={operation})")

        if isinstance(error, PipelineError):
            pipeline_error = error
            if operation:
                pipeline_error.add_context('operation', operation)
            pipeline_error.add_context('context', context)
            for key, value in additional_context.items():
                pipeline_error.add_context(key, value)
        else:
            pipeline_error = self._convert_exception(error, context, operation, **additional_context)

        self._log_error(pipeline_error)

        with self._registry_lock:
            if len(self.error_registry) >= self._max_registry_size:
                try:
                    oldest_id = min(self.error_registry.keys(),
                                  key=lambda k: self.error_registry[k].timestamp)
                    del self.error_registry[oldest_id]
                except (ValueError, KeyError):
                    pass

            self.error_registry[pipeline_error.error_id] = pipeline_error

        return pipeline_error

    def _convert_exception(self,
                          error: Exception,
                          context: str,
                          operation: Optional[str] = None,
                          **additional_context) -> PipelineError:
        """Convert generic exception to appropriate PipelineError"""

        error_message = str(error)
        error_class = type(error).__name__
        base_context = {'original_context': context, 'operation': operation, **additional_context}

        if isinstance(error, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return NetworkError(
                f"Timed out: {error_class}: {error_message}",
                ErrorType.NETWORK_TIMEOUT,
                cause=error,
                context=base_context
            )

        elif isinstance(error, aiohttp.ClientError):
            return NetworkError(
                f"{error_class}: {error_message}",
                ErrorType.NETWORK_CONNECTION_FAILED,
                cause=error,
                context=base_context
            )

        elif isinstance(error, asyncio.CancelledError):
            return ProcessingError(
                f"Operation cancelled: {error_message}",
                ErrorType.PROCESSING_CANCELLED,
                cause=error,
                context=base_context
            )

        elif isinstance(error, (json.JSONDecodeError, PydanticValidationError)):
            return ValidationError(
                f"{error_class}: {error_message}",
                ErrorType.VALIDATION_SCHEMA_ERROR,
                cause=error,
                context=base_context
            )

        elif isinstance(error, PermissionError):
            return StorageError(
                f"{error_class}: {error_message}",
                ErrorType.STORAGE_WRITE_FAILED,
                cause=error,
                context=base_context
            )

        elif isinstance(error, OSError):
            return StorageError(
                f"{error_class}: {error_message}",
                ErrorType.STORAGE_READ_FAILED,
                cause=error,
                context=base_context
            )

        elif isinstance(error, (ValueError, TypeError)):
            return ValidationError(
                f"{error_class}: {error_message}",
                ErrorType.VALIDATION_TYPE_ERROR,
                cause=error,
                context=base_context
            )

        elif isinstance(error, (ImportError, ModuleNotFoundError)):
            return ConfigurationError(
                f"Module/import error: {error_class}: {error_message}",
                ErrorType.CONFIGURATION_DEPENDENCY_MISSING,
                cause=error,
                context=base_context
            )

        elif isinstance(error, (NameError, AttributeError, KeyError)):
            return PipelineError(
                f"FATAL BUG: {error_class}: {error_message}",
                ErrorType.PROGRAMMING_ERROR,
                ErrorCategory.FATAL_BUG,
                ErrorSeverity.CRITICAL,
                retryable=False,
                cause=error,
                context=base_context
            )

        return PipelineError(
            f"{error_class}: {error_message}",
            ErrorType.SYSTEM_INTERNAL_ERROR,
            ErrorCategory.SYSTEM,
            ErrorSeverity.HIGH,
            cause=error,
            context=base_context
        )

    def _log_error(self, error: PipelineError):
        """Log error with appropriate level based on severity"""
        error_dict = error.to_dict()

        if error.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(f"Critical error occurred: {error}", extra={'error_data': error_dict})
        elif error.severity == ErrorSeverity.HIGH:
            self.logger.error(f"High severity error occurred: {error}", extra={'error_data': error_dict})
        elif error.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(f"Medium severity error occurred: {error}", extra={'error_data': error_dict})
        else:
            self.logger.info(f"Low severity error occurred: {error}", extra={'error_data': error_dict})

    def get_error_by_id(self, error_id: str) -> Optional[PipelineError]:
        """Retrieve error by ID from registry (thread-safe)"""
        with self._registry_lock:
            return self.error_registry.get(error_id)

    def get_recent_errors(self,
                         count: int = 10,
                         severity_filter: Optional[ErrorSeverity] = None,
                         category_filter: Optional[ErrorCategory] = None) -> List[PipelineError]:
        """Get recent errors with optional filtering (thread-safe)"""

        with self._registry_lock:
            errors = list(self.error_registry.values())

        if severity_filter:
            errors = [e for e in errors if e.severity == severity_filter]
        if category_filter:
            errors = [e for e in errors if e.error_category == category_filter]

        errors.sort(key=lambda e: e.timestamp, reverse=True)
        return errors[:count]

    def clear_old_errors(self, max_age_hours: int = 24):
        """Clear errors older than specified hours (thread-safe)"""
        cutoff_time = datetime.now(timezone.utc).timestamp() - (max_age_hours * 3600)

        with self._registry_lock:
            old_error_ids = [
                error_id for error_id, error in self.error_registry.items()
                if error.timestamp.timestamp() < cutoff_time
            ]

            for error_id in old_error_ids:
                del self.error_registry[error_id]
