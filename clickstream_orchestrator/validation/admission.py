"""Admission gate run before any stack command is issued for a pipeline."""

import logging
from typing import Optional

import boto3

from ..core.config import OrchestratorConfig
from .network import PipelineNetworkValidator
from .params import (
    validate_ingestion_server_num, validate_network_ids, validate_serverless_rpu, validate_sink_batch
)
from .pipeline import PipelineConfig, PipelineResources
from .schedule import validate_interval


logger = logging.getLogger(__name__)


class AdmissionGate:
    """Schedule, parameter and network checks, in that order."""

    def __init__(self, network_validator: PipelineNetworkValidator, config: Optional[OrchestratorConfig] = None):
        self.network_validator = network_validator
        self.config = config or OrchestratorConfig()

    @classmethod
    def for_pipeline(cls, session: boto3.Session, pipeline: PipelineConfig,
                     config: Optional[OrchestratorConfig] = None) -> 'AdmissionGate':
        """Build a gate whose inspectors target the pipeline's region."""
        return cls(PipelineNetworkValidator.for_region(session, pipeline.region, config), config)

    def admit(self, pipeline: PipelineConfig, resources: Optional[PipelineResources] = None) -> PipelineResources:
        """Validate a pipeline, raising on the first rejected check.

        Args:
            pipeline: Submitted pipeline configuration
            resources: Existing resources the pipeline depends on

        Returns:
            The resources, with QuickSight candidate subnets filled in

        Raises:
            ValidationError: If any check rejects the pipeline
            ServiceError: If a network or account read fails
        """
        resources = resources if resources is not None else PipelineResources()

        if pipeline.data_processing:
            validate_interval(
                pipeline.data_processing.schedule_expression,
                min_interval_ms=self.config.cron_min_interval_ms,
                occurrences=self.config.cron_occurrences,
                min_rate_minutes=self.config.min_rate_minutes,
            )

        validate_network_ids(pipeline.network)
        ingestion = pipeline.ingestion_server
        if ingestion:
            validate_sink_batch(ingestion.sink_type, ingestion.sink_batch)
            validate_ingestion_server_num(ingestion.size)

        redshift = pipeline.data_modeling.redshift if pipeline.data_modeling else None
        if redshift and redshift.new_serverless:
            validate_serverless_rpu(redshift.new_serverless.base_capacity)

        self.network_validator.validate(pipeline, resources)
        logger.info(f"Pipeline in {pipeline.region} admitted")
        return resources
