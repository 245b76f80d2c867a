"""
Base class for AWS service wrappers.
"""
from abc import ABC, abstractmethod
from typing import Optional

import boto3

from ..core.exceptions import ServiceError


class BaseAwsService(ABC):
    """Abstract base class for every wrapper around a boto3 client.

    Clients are owned by the instance and created lazily from the injected
    session, so tests can hand in a moto-backed session or a mock.
    """

    def __init__(self, session: boto3.Session, region: Optional[str] = None):
        """Initialize the service wrapper with AWS session and region.

        Args:
            session: Authenticated boto3 session
            region: AWS region to operate in (None for global services)
        """
        self.session = session
        self.region = region
        self._client = None

    @property
    def client(self):
        """Lazy-loaded AWS service client."""
        if self._client is None:
            self._client = self.session.client(self.service_name, region_name=self.region)
        return self._client

    @property
    @abstractmethod
    def service_name(self) -> str:
        """AWS service name (e.g., 'ec2', 's3', 'cloudformation')."""
        pass

    def _handle_aws_error(self, error: Exception, operation: str, resource_id: str = None) -> None:
        """Convert an AWS API error into a ServiceError.

        Args:
            error: The original AWS error
            operation: Operation that failed
            resource_id: ID of resource being operated on (if applicable)

        Raises:
            ServiceError: Wrapped error with context, chained to the original
        """
        resource_context = f" for resource {resource_id}" if resource_id else ""
        error_message = f"AWS {self.service_name} {operation} failed{resource_context}: {str(error)}"
        raise ServiceError(error_message, details=str(error)) from error
