"""
Pytest configuration and shared fixtures for clickstream orchestrator tests.
"""

import tempfile
from pathlib import Path

import pytest
from moto import mock_aws


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so no test can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for config files during tests."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def mock_aws_services():
    """Mock all AWS services used by the application."""
    with mock_aws():
        yield


@pytest.fixture
def stack_input():
    """Wire form of a stack input."""
    return {
        "Region": "us-east-1",
        "StackName": "Clickstream-Ingestion-kafka-6a9c",
        "TemplateURL": "https://example-bucket.s3.amazonaws.com/templates/ingestion-server-kafka-stack.template.json",
        "Parameters": [
            {"ParameterKey": "VpcId", "ParameterValue": "vpc-0123456789abcdef0"},
            {"ParameterKey": "PublicSubnetIds", "ParameterValue": "subnet-1,subnet-2"},
        ],
        "Tags": [
            {"Key": "clickstream-project", "Value": "project_abc"},
        ],
    }


@pytest.fixture
def callback():
    return {"BucketName": "clickstream-callback", "BucketPrefix": "clickstream/workflow/main-3c8d"}
