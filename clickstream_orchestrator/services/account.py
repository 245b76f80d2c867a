"""
Account-level reads used by admission checks: bucket policies, IAM policy
simulation and the QuickSight subscription.
"""
from typing import Any, Dict, List, Optional
import logging

import boto3
from botocore.exceptions import ClientError

from .base import BaseAwsService


logger = logging.getLogger(__name__)


class BucketPolicyReader(BaseAwsService):

    @property
    def service_name(self) -> str:
        return 's3'

    def get_bucket_policy(self, bucket: str) -> Optional[str]:
        """Return the bucket policy document, or None when the bucket has none."""
        try:
            response = self.client.get_bucket_policy(Bucket=bucket)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'NoSuchBucketPolicy':
                return None
            self._handle_aws_error(e, 'get bucket policy', bucket)
        except Exception as e:
            self._handle_aws_error(e, 'get bucket policy', bucket)
        return response.get('Policy')


class PolicySimulator(BaseAwsService):

    @property
    def service_name(self) -> str:
        return 'iam'

    def simulate_custom_policy(self, policies: List[str], actions: List[str], resources: List[str]) -> bool:
        """Simulate policy documents and report whether every action is allowed.

        Args:
            policies: JSON policy documents
            actions: Action names, e.g. 's3:PutObject'
            resources: Resource ARNs the actions are evaluated against

        Returns:
            True only if the provider returns at least one evaluation and all
            of them are 'allowed'
        """
        try:
            paginator = self.client.get_paginator('simulate_custom_policy')
            results: List[Dict[str, Any]] = []
            for page in paginator.paginate(
                PolicyInputList=policies,
                ActionNames=actions,
                ResourceArns=resources,
            ):
                results.extend(page.get('EvaluationResults', []))
        except Exception as e:
            self._handle_aws_error(e, 'simulate custom policy')

        if not results:
            return False
        return all(r.get('EvalDecision') == 'allowed' for r in results)


class QuickSightAccount(BaseAwsService):

    @property
    def service_name(self) -> str:
        return 'quicksight'

    def get_account_id(self) -> str:
        try:
            sts = self.session.client('sts', region_name=self.region)
            return sts.get_caller_identity()['Account']
        except Exception as e:
            self._handle_aws_error(e, 'get caller identity')

    def describe_account_subscription(self) -> Dict[str, Any]:
        """Return the AccountInfo of the QuickSight subscription."""
        account_id = self.get_account_id()
        try:
            response = self.client.describe_account_subscription(AwsAccountId=account_id)
        except Exception as e:
            self._handle_aws_error(e, 'describe account subscription', account_id)
        return response.get('AccountInfo', {})

    def edition(self) -> str:
        return self.describe_account_subscription().get('Edition', '')


class AccountInspector:
    """Groups the account-level readers for one region."""

    def __init__(self, session: boto3.Session, region: str):
        self.region = region
        self.buckets = BucketPolicyReader(session, region)
        self.iam = PolicySimulator(session, region)
        self.quicksight = QuickSightAccount(session, region)
