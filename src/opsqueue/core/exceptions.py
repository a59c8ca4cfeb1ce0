"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Any, Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class PolicyNotFoundException(ResourceNotFoundException):
    """No SLA policy is configured for a service type."""

    def __init__(self, service_type: str):
        self.service_type = service_type
        super().__init__("SLA policy", service_type, {"service_type": service_type})


class InvalidStateException(DomainException):
    """
    Operation not allowed in the timer's current state.

    Order lifecycle hooks treat this as an idempotent-retry signal.
    """

    def __init__(self, timer_id: str, current_status: str, operation: str):
        self.timer_id = timer_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} timer {timer_id} while {current_status}",
            {"timer_id": timer_id, "current_status": current_status, "operation": operation}
        )


class DuplicateActiveTimerException(DomainException):
    """An open timer already exists for the trackable unit."""

    def __init__(self, existing: Any):
        self.existing = existing
        super().__init__(
            f"Active timer already exists for service order "
            f"{existing.service_order_id} (task {existing.task_id})",
            {
                "timer_id": existing.id,
                "service_order_id": existing.service_order_id,
                "task_id": existing.task_id,
            }
        )


class ConcurrencyConflictException(RepositoryException):
    """A timer was modified by another writer since it was read."""

    def __init__(self, timer_id: str, expected_version: int):
        self.timer_id = timer_id
        self.expected_version = expected_version
        super().__init__(
            f"Timer {timer_id} changed concurrently (expected version {expected_version})",
            {"timer_id": timer_id, "expected_version": expected_version}
        )


class NotificationDeliveryException(ExternalServiceException):
    """Escalation notification could not be delivered."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Service", message, details)
