"""Pre-flight checks run before a pipeline's stacks are deployed."""

from .admission import AdmissionGate
from .network import PipelineNetworkValidator
from .pipeline import PipelineConfig, PipelineResources
from .schedule import validate_interval

__all__ = [
    'AdmissionGate',
    'PipelineNetworkValidator',
    'PipelineConfig',
    'PipelineResources',
    'validate_interval'
]
