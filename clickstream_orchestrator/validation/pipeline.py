"""Pipeline configuration models checked by the admission gate."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_REDSHIFT_PORT = 5439


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SinkType(str, Enum):
    S3 = 's3'
    KAFKA = 'kafka'
    KINESIS = 'kinesis'


class NetworkProps(_Model):
    vpc_id: str = Field(..., alias='vpcId')
    public_subnet_ids: List[str] = Field(default_factory=list, alias='publicSubnetIds')
    private_subnet_ids: List[str] = Field(default_factory=list, alias='privateSubnetIds')


class BucketProps(_Model):
    name: str
    prefix: str = ''


class LoadBalancerProps(_Model):
    enable_access_log: bool = Field(default=False, alias='enableApplicationLoadBalancerAccessLog')


class SinkBatchProps(_Model):
    size: int
    interval_seconds: int = Field(..., alias='intervalSeconds')


class ServerSizeProps(_Model):
    server_min: int = Field(..., alias='serverMin')
    server_max: int = Field(..., alias='serverMax')


class IngestionServerProps(_Model):
    sink_type: SinkType = Field(default=SinkType.S3, alias='sinkType')
    load_balancer: LoadBalancerProps = Field(default_factory=LoadBalancerProps, alias='loadBalancer')
    sink_batch: Optional[SinkBatchProps] = Field(default=None, alias='sinkBatch')
    size: Optional[ServerSizeProps] = None


class DataProcessingProps(_Model):
    schedule_expression: str = Field(..., alias='scheduleExpression')


class RedshiftNetworkProps(_Model):
    vpc_id: str = Field(..., alias='vpcId')
    subnet_ids: List[str] = Field(default_factory=list, alias='subnetIds')
    security_groups: List[str] = Field(default_factory=list, alias='securityGroups')


class NewServerlessProps(_Model):
    network: RedshiftNetworkProps
    base_capacity: Optional[int] = Field(default=None, alias='baseCapacity')


class ProvisionedProps(_Model):
    cluster_identifier: str = Field(default='', alias='clusterIdentifier')


class RedshiftProps(_Model):
    new_serverless: Optional[NewServerlessProps] = Field(default=None, alias='newServerless')
    provisioned: Optional[ProvisionedProps] = None


class DataModelingProps(_Model):
    redshift: Optional[RedshiftProps] = None


class ReportingProps(_Model):
    account_name: str = Field(default='', alias='accountName')


class PipelineConfig(_Model):
    """The part of a submitted pipeline that admission depends on."""
    region: str
    network: NetworkProps
    bucket: Optional[BucketProps] = None
    ingestion_server: Optional[IngestionServerProps] = Field(default=None, alias='ingestionServer')
    data_processing: Optional[DataProcessingProps] = Field(default=None, alias='dataProcessing')
    data_modeling: Optional[DataModelingProps] = Field(default=None, alias='dataModeling')
    reporting: Optional[ReportingProps] = None


class RedshiftEndpoint(_Model):
    address: str = ''
    port: int = DEFAULT_REDSHIFT_PORT


class ExistingRedshift(_Model):
    network: RedshiftNetworkProps
    endpoint: RedshiftEndpoint = Field(default_factory=RedshiftEndpoint)


class PipelineResources(_Model):
    """Resources discovered for the pipeline outside of its own config."""
    redshift: Optional[ExistingRedshift] = None
    quick_sight_subnet_ids: List[str] = Field(default_factory=list, alias='quickSightSubnetIds')
