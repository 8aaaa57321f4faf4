"""
Base service class and utilities for all services.
Provides common functionality like logging and error handling.
"""
import logging
from typing import Any, Dict, Optional


class BaseService:
    """
    Base service class that all other services should inherit from.
    Provides common functionality for structured logging.
    """

    def __init__(self):
        """Initialize the service with a logger."""
        self.logger = logging.getLogger(self.__class__.__name__)

    def log_info(self, message: str, **kwargs) -> None:
        """
        Log an info message with optional context.

        Args:
            message: The message to log
            **kwargs: Additional context to include in the log
        """
        self.logger.info(message, extra={'context': kwargs})

    def log_error(self, message: str, exception: Optional[Exception] = None, **kwargs) -> None:
        """
        Log an error message with optional exception and context.

        Args:
            message: The error message to log
            exception: Optional exception that caused the error
            **kwargs: Additional context to include in the log
        """
        self.logger.error(
            message,
            exc_info=exception,
            extra={'context': kwargs}
        )

    def log_warning(self, message: str, **kwargs) -> None:
        """
        Log a warning message with optional context.

        Args:
            message: The warning message to log
            **kwargs: Additional context to include in the log
        """
        self.logger.warning(message, extra={'context': kwargs})

    def log_critical(self, message: str, exception: Optional[Exception] = None, **kwargs) -> None:
        """
        Log a condition that needs manual intervention.

        Args:
            message: The message to log
            exception: Optional exception that caused the condition
            **kwargs: Additional context to include in the log
        """
        self.logger.critical(
            message,
            exc_info=exception,
            extra={'context': kwargs}
        )


class ServiceException(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict] = None):
        """
        Initialize service exception.

        Args:
            message: Error message
            code: Optional error code for categorization
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.code = code
        self.details = details or {}


class ExternalServiceError(ServiceException):
    """Raised when a peer service (payment, warehouse, order, wallet) fails."""
    pass


class ErrorKind:
    """Categories of failure carried by a failed ServiceResult."""
    VALIDATION = 'validation'
    NOT_FOUND = 'not_found'
    CONFLICT = 'conflict'
    TRANSIENT = 'transient'
    FATAL = 'fatal'


class ServiceResult:
    """
    A wrapper for service method results that includes success/failure status.
    Business rejections are returned as failed results instead of raised,
    with an error kind that tells callers whether a retry can help.
    """

    def __init__(self, success: bool, data: Optional[Any] = None,
                 error: Optional[str] = None, error_code: Optional[str] = None,
                 error_kind: Optional[str] = None, details: Optional[Dict] = None):
        """
        Initialize service result.

        Args:
            success: Whether the operation succeeded
            data: The result data if successful
            error: Error message if failed
            error_code: Optional error code for categorization
            error_kind: One of the ErrorKind values if failed
            details: Optional extra context for the failure
        """
        self.success = success
        self.data = data
        self.error = error
        self.error_code = error_code
        self.error_kind = error_kind
        self.details = details or {}

    @classmethod
    def ok(cls, data: Any = None) -> 'ServiceResult':
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            A successful ServiceResult instance
        """
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: Optional[str] = None,
             error_kind: str = ErrorKind.VALIDATION,
             details: Optional[Dict] = None) -> 'ServiceResult':
        """
        Create a failed result.

        Args:
            error: Error message
            error_code: Optional error code
            error_kind: Failure category (defaults to validation)
            details: Optional extra context

        Returns:
            A failed ServiceResult instance
        """
        return cls(success=False, error=error, error_code=error_code,
                   error_kind=error_kind, details=details)

    @property
    def is_retryable(self) -> bool:
        """Whether the failure came from a peer service and may succeed later."""
        return not self.success and self.error_kind == ErrorKind.TRANSIENT

    def __bool__(self) -> bool:
        """Allow ServiceResult to be used in boolean context."""
        return self.success

    def __repr__(self) -> str:
        """String representation of the result."""
        if self.success:
            return f"<ServiceResult: Success, data={self.data}>"
        return (
            f"<ServiceResult: Failure, error={self.error}, "
            f"code={self.error_code}, kind={self.error_kind}>"
        )
