"""
Durable hand-off of stack results to the execution's callback bucket.
"""
import json
import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from ..services.base import BaseAwsService
from ..services.models import StackCommand, StackSnapshot
from ..core.exceptions import CallbackError, StackDeploymentFailed

logger = logging.getLogger(__name__)


def output_key(bucket_prefix: str, stack_name: str) -> str:
    """Object key of a stack's persisted result."""
    return f"{bucket_prefix}/{stack_name}/output.json"


class ResultCallbackSink(BaseAwsService):
    """Persists the terminal snapshot of each stack action to S3.

    The written object is the system of record for what happened to a stack;
    a failed status is only raised after the write has succeeded.
    """

    @property
    def service_name(self) -> str:
        return 's3'

    def save(self, command: StackCommand) -> str:
        """Write the command's result under its execution-scoped prefix.

        Args:
            command: A Callback command carrying the terminal snapshot

        Returns:
            Object key that was written

        Raises:
            CallbackError: If the callback location or result is missing
            StackDeploymentFailed: If the persisted status is a failure
            ClientError: If the write fails (re-raised unchanged)
        """
        callback = command.callback
        if not callback or not callback.bucket_name or not callback.bucket_prefix or not command.result:
            logger.error(f"Save runtime to S3 failed, parameter error: {json.dumps(command.to_event())}")
            raise CallbackError("Save runtime to S3 failed, Parameter error.")

        stack_name = command.input.stack_name
        key = output_key(callback.bucket_prefix, stack_name)
        body = json.dumps({stack_name: command.result.to_dict()}, default=str)

        try:
            self.client.put_object(
                Bucket=callback.bucket_name,
                Key=key,
                Body=body,
                ContentType='application/json',
            )
        except Exception as e:
            logger.error(f"Failed to save result of {stack_name} to s3://{callback.bucket_name}/{key}: {e}")
            raise

        logger.info(f"Saved result of {stack_name} to s3://{callback.bucket_name}/{key}")

        result = command.result
        if result.is_failed:
            reason = result.status_reason or 'Stack failed.'
            logger.error(f"Stack {stack_name} ended in {result.status}: {reason}")
            raise StackDeploymentFailed(stack_name, result.status, reason)

        return key

    def load(self, bucket_name: str, bucket_prefix: str, stack_name: str) -> Optional[StackSnapshot]:
        """Read back a persisted result.

        Returns:
            The stored snapshot, or None if nothing was written for the stack
        """
        key = output_key(bucket_prefix, stack_name)
        try:
            response = self.client.get_object(Bucket=bucket_name, Key=key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('NoSuchKey', '404'):
                return None
            self._handle_aws_error(e, 'get object', key)

        try:
            data: Dict[str, Any] = json.loads(response['Body'].read())
            return StackSnapshot.from_dict(data[stack_name])
        except (json.JSONDecodeError, KeyError) as e:
            raise CallbackError(f"Stored result for {stack_name} is corrupted: {e}")
