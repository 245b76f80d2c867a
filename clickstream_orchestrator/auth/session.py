"""Session construction, optionally through STS assume role."""

import boto3
from botocore.exceptions import ClientError, NoCredentialsError, BotoCoreError
from typing import Dict, Optional, Any
import logging
from datetime import datetime, timedelta, timezone

from clickstream_orchestrator.core.config import OrchestratorConfig
from clickstream_orchestrator.core.exceptions import AuthenticationError


logger = logging.getLogger(__name__)

SESSION_NAME = 'clickstream-orchestrator'


class SessionProvider:
    """Builds the boto3 sessions handed to every service wrapper.

    Without a configured role the ambient credentials are used as-is.
    """

    def __init__(self, config: Optional[OrchestratorConfig] = None, base_session: Optional[boto3.Session] = None):
        """Initialize the session provider.

        Args:
            config: Orchestrator configuration; defaults are used when None.
            base_session: Session whose credentials assume the role.
        """
        self.config = config or OrchestratorConfig()
        self.base_session = base_session
        self._cached_credentials: Optional[Dict[str, Any]] = None
        self._credentials_expiry: Optional[datetime] = None

    def get_session(self, region: Optional[str] = None) -> boto3.Session:
        """Get a session for the given region (configured default otherwise).

        Raises:
            AuthenticationError: If role assumption fails.
        """
        session_region = region or self.config.default_region

        if not self.config.role_arn:
            return boto3.Session(region_name=session_region)

        credentials = self._get_credentials(self.config.role_arn)
        return boto3.Session(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
            region_name=session_region
        )

    def _get_credentials(self, role_arn: str) -> Dict[str, Any]:
        if self._cached_credentials and self._credentials_expiry:
            if datetime.now(timezone.utc) < (self._credentials_expiry - timedelta(minutes=5)):
                logger.debug("Using cached AWS credentials")
                return self._cached_credentials

        try:
            logger.info(f"Assuming IAM role: {role_arn}")
            base = self.base_session or boto3.Session()
            sts_client = base.client('sts', region_name=self.config.default_region)
            response = sts_client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=SESSION_NAME,
                DurationSeconds=3600
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))
            raise AuthenticationError(
                f"Failed to assume IAM role {role_arn}: {error_code} - {error_message}"
            ) from e
        except NoCredentialsError as e:
            raise AuthenticationError(
                "No AWS credentials found to assume the deployment role."
            ) from e
        except BotoCoreError as e:
            raise AuthenticationError(f"AWS configuration error: {e}") from e

        credentials = response['Credentials']
        expiry = credentials['Expiration']
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)

        self._cached_credentials = credentials
        self._credentials_expiry = expiry
        logger.info("Successfully assumed IAM role")
        return credentials

    def clear_cached_credentials(self) -> None:
        """Clear any cached credentials to force fresh authentication."""
        self._cached_credentials = None
        self._credentials_expiry = None
