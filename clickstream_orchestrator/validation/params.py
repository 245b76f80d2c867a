"""Parameter checks applied to a pipeline before its network is inspected."""

import re
from typing import Dict, Optional, Tuple

from ..core.exceptions import ValidationError
from .pipeline import NetworkProps, ServerSizeProps, SinkBatchProps, SinkType


VPC_ID_PATTERN = r'vpc-[a-f0-9]{8,17}'
SUBNET_ID_PATTERN = r'subnet-[a-f0-9]{8,17}'

# (min interval, max interval, min size, max size) per sink
SINK_BATCH_LIMITS: Dict[SinkType, Tuple[int, int, int, int]] = {
    SinkType.KAFKA: (0, 3000, 1, 50000),
    SinkType.KINESIS: (0, 300, 1, 10000),
}

# Base capacity range of Redshift Serverless workgroups, in RPUs
SERVERLESS_RPU_RANGE = (8, 512)
SERVERLESS_RPU_INCREMENT = 8


def validate_pattern(name: str, pattern: str, value: str) -> str:
    """Require the whole value to match a pattern.

    Raises:
        ValidationError: If the value is empty or does not match
    """
    if not value or re.fullmatch(pattern, value) is None:
        raise ValidationError(f"{name} ({value}) does not match the pattern {pattern}.")
    return value


def validate_network_ids(network: NetworkProps) -> None:
    """Check the format of the VPC and subnet ids of a pipeline network."""
    validate_pattern('VpcId', VPC_ID_PATTERN, network.vpc_id)
    for subnet_id in network.public_subnet_ids:
        validate_pattern('PublicSubnetIds', SUBNET_ID_PATTERN, subnet_id)
    for subnet_id in network.private_subnet_ids:
        validate_pattern('PrivateSubnetIds', SUBNET_ID_PATTERN, subnet_id)


def validate_sink_batch(sink_type: SinkType, batch: Optional[SinkBatchProps]) -> None:
    """Check batch size and interval bounds of a Kafka or Kinesis sink.

    S3 sinks and pipelines without batch settings are not checked.
    """
    limits = SINK_BATCH_LIMITS.get(sink_type)
    if limits is None or batch is None:
        return

    min_interval, max_interval, min_size, max_size = limits
    if not min_interval <= batch.interval_seconds <= max_interval:
        raise ValidationError(
            f"the sink batch interval of {sink_type.value} must be between "
            f"{min_interval} and {max_interval} seconds."
        )
    if not min_size <= batch.size <= max_size:
        raise ValidationError(
            f"the sink batch size of {sink_type.value} must be between {min_size} and {max_size}."
        )


def validate_ingestion_server_num(size: Optional[ServerSizeProps]) -> None:
    if size is None:
        return
    if size.server_min > size.server_max:
        raise ValidationError('the minimum number of ingestion servers can not exceed the maximum.')
    if size.server_min == 1 and size.server_max == 1:
        raise ValidationError('this will cause ingestion server downtime, please change the max ingestion servers.')


def validate_serverless_rpu(rpu: Optional[int], rpu_range: Tuple[int, int] = SERVERLESS_RPU_RANGE) -> None:
    """Base capacity must be a multiple of 8 inside the supported range."""
    if rpu is None:
        return
    low, high = rpu_range
    if rpu % SERVERLESS_RPU_INCREMENT != 0 or not low <= rpu <= high:
        raise ValidationError(f"RPU range must be {low}-{high} in increments of {SERVERLESS_RPU_INCREMENT}.")
