"""
Clickstream Orchestrator - stack deployment and pre-flight validation.

Drives CloudFormation stack operations one step at a time for a workflow
engine, and checks pipeline configurations against the target VPC before
any stack is deployed.
"""

__version__ = "1.0.0"

from clickstream_orchestrator.core.exceptions import ClickstreamError

__all__ = ["ClickstreamError"]
