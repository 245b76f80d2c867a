"""
Core exception classes for the clickstream stack orchestrator.
"""
from typing import Optional


class ClickstreamError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str, details: str = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AuthenticationError(ClickstreamError):
    """Raised when assuming the deployment role fails."""
    pass


class ConfigurationError(ClickstreamError):
    """Raised when configuration is invalid or missing."""
    pass


class ServiceError(ClickstreamError):
    """Raised when a read against an AWS service fails."""
    pass


class StackCommandError(ClickstreamError):
    """Raised when a stack command is malformed or cannot be dispatched."""
    pass


class StackNotFoundError(StackCommandError):
    """Raised when a stack that is expected to exist cannot be described."""

    def __init__(self, stack_name: str):
        super().__init__(f"Describe stack failed: stack {stack_name} not found.")
        self.stack_name = stack_name


class CallbackError(ClickstreamError):
    """Raised when a stack result cannot be handed off to the callback bucket."""
    pass


class StackDeploymentFailed(ClickstreamError):
    """Raised when a stack reaches a failed terminal status.

    Distinct from provider faults: the provider answered, and the answer is
    that the deployment itself failed.
    """

    def __init__(self, stack_name: str, status: str, reason: Optional[str] = None):
        super().__init__(reason or "Stack failed.", details=status)
        self.stack_name = stack_name
        self.status = status
        self.reason = reason


class ValidationError(ClickstreamError):
    """Raised when a pipeline configuration is rejected by the admission gate."""

    def __init__(self, message: str, details: str = None):
        if not message.startswith("Validation error"):
            message = f"Validation error: {message}"
        super().__init__(message, details=details)
