"""
Pre-flight validation of a pipeline against live VPC topology.

Checks run in a fixed order and the first violation raises ValidationError;
there is no aggregated report.
"""
import ipaddress
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import boto3

from ..core.config import OrchestratorConfig
from ..core.exceptions import ValidationError
from ..services.account import AccountInspector
from ..services.models import ClickStreamSubnet, SecurityGroupRule, SubnetType, VpcEndpoint
from ..services.network import NetworkInspector
from .pipeline import DEFAULT_REDSHIFT_PORT, PipelineConfig, PipelineResources, SinkType


logger = logging.getLogger(__name__)

HTTPS_PORT = 443
GATEWAY_ENDPOINT = 'Gateway'
INTERFACE_ENDPOINT = 'Interface'

NEW_SERVERLESS = 'New_Serverless'
PROVISIONED = 'Provisioned'

BASE_ENDPOINT_SERVICES = ['s3', 'logs']
INGESTION_ENDPOINT_SERVICES = ['ecr.dkr', 'ecr.api', 'ecs', 'ecs-agent', 'ecs-telemetry']
KINESIS_ENDPOINT_SERVICE = 'kinesis-streams'
DATA_PROCESSING_ENDPOINT_SERVICES = ['emr-serverless', 'glue']
DATA_MODELING_ENDPOINT_SERVICES = ['redshift-data', 'states', 'sts', 'dynamodb']

ELB_LOG_DELIVERY_SERVICE = 'logdelivery.elasticloadbalancing.amazonaws.com'

# Regional Elastic Load Balancing accounts that deliver access logs. Regions
# missing here deliver through the log delivery service principal.
ELB_LOG_ACCOUNTS = {
    'us-east-1': '127311923021',
    'us-east-2': '033677994240',
    'us-west-1': '027434742980',
    'us-west-2': '797873946194',
    'af-south-1': '098369216593',
    'ap-east-1': '754344448648',
    'ap-southeast-3': '589379963580',
    'ap-south-1': '718504428378',
    'ap-northeast-3': '383597477331',
    'ap-northeast-2': '600734575887',
    'ap-southeast-1': '114774131450',
    'ap-southeast-2': '783225319266',
    'ap-northeast-1': '582318560864',
    'ca-central-1': '985666609251',
    'eu-central-1': '054676820928',
    'eu-west-1': '156460612806',
    'eu-west-2': '652711504416',
    'eu-south-1': '635631232127',
    'eu-west-3': '009996457667',
    'eu-north-1': '897822967062',
    'me-south-1': '076674570225',
    'sa-east-1': '507241528517',
    'us-gov-west-1': '048591011584',
    'us-gov-east-1': '190560391635',
    'cn-north-1': '638102146993',
    'cn-northwest-1': '037604701340',
}

_PROTOCOL_NAMES = {'6': 'tcp', '17': 'udp', '1': 'icmp'}


def partition_of(region: str) -> str:
    if region.startswith('cn-'):
        return 'aws-cn'
    if region.startswith('us-gov-'):
        return 'aws-us-gov'
    return 'aws'


def subnets_az(subnets: Iterable[ClickStreamSubnet]) -> List[str]:
    """Distinct availability zones of the subnets, in first-seen order."""
    azs: List[str] = []
    for subnet in subnets:
        if subnet.availability_zone not in azs:
            azs.append(subnet.availability_zone)
    return azs


def endpoint_service_names(region: str, services: Iterable[str]) -> List[str]:
    prefix = f"cn.com.amazonaws.{region}" if region.startswith('cn-') else f"com.amazonaws.{region}"
    return [f"{prefix}.{service}" for service in services]


def _cidr_contains(outer: str, inner: str) -> bool:
    try:
        return ipaddress.ip_network(inner, strict=False).subnet_of(ipaddress.ip_network(outer, strict=False))
    except (ValueError, TypeError):
        return False


def _ports_cover(rule: SecurityGroupRule, wanted: SecurityGroupRule) -> bool:
    if rule.from_port == -1 and rule.to_port == -1:
        return True
    return rule.from_port <= wanted.from_port and rule.to_port >= wanted.to_port


def rule_allows(group_ids: Iterable[str], rules: Iterable[SecurityGroupRule], wanted: SecurityGroupRule) -> bool:
    """Whether any rule of the given groups permits the wanted traffic.

    A rule matches when direction agrees, its protocol is the same or all
    (-1), its port range covers the wanted range, and either its CIDR
    contains the wanted CIDR or it references one of the given groups.
    """
    groups = set(group_ids)
    for rule in rules:
        if rule.group_id and rule.group_id not in groups:
            continue
        if rule.is_egress != wanted.is_egress:
            continue
        protocol = _PROTOCOL_NAMES.get(rule.protocol, rule.protocol)
        if protocol != '-1' and protocol != wanted.protocol:
            continue
        if protocol != '-1' and not _ports_cover(rule, wanted):
            continue
        if rule.cidr_ipv4 and wanted.cidr_ipv4 and _cidr_contains(rule.cidr_ipv4, wanted.cidr_ipv4):
            return True
        if rule.referenced_group_id and rule.referenced_group_id in groups:
            return True
    return False


def check_vpc_endpoints(all_subnets: List[ClickStreamSubnet],
                        isolated_azs: List[str],
                        subnet: ClickStreamSubnet,
                        endpoints: List[VpcEndpoint],
                        rules: List[SecurityGroupRule],
                        services: List[str]) -> List[Dict[str, str]]:
    """Find the services an isolated subnet cannot reach privately.

    Args:
        all_subnets: Every subnet of the VPC, used to locate endpoint AZs
        isolated_azs: AZs of all isolated subnets of the pipeline
        subnet: The isolated subnet being checked
        endpoints: VPC endpoints of the VPC
        rules: Rules of every endpoint security group
        services: Fully qualified service names required

    Returns:
        ``{'service', 'reason'}`` entries, empty when everything is reachable
    """
    by_service = {endpoint.service_name: endpoint for endpoint in endpoints}
    az_of = {s.id: s.availability_zone for s in all_subnets}
    invalid = []

    for service in services:
        endpoint = by_service.get(service)
        if endpoint is None:
            invalid.append({'service': service, 'reason': 'Miss vpc endpoint'})
            continue

        if endpoint.endpoint_type == GATEWAY_ENDPOINT:
            if subnet.route_table is None or not subnet.route_table.has_gateway(endpoint.id):
                invalid.append({
                    'service': service,
                    'reason': 'The route of vpc endpoint need attached in the route table',
                })
        elif endpoint.endpoint_type == INTERFACE_ENDPOINT:
            endpoint_azs = {az_of[s] for s in endpoint.subnet_ids if s in az_of}
            if not set(isolated_azs).issubset(endpoint_azs):
                invalid.append({
                    'service': service,
                    'reason': f'The Availability Zones (AZ) of VPC Endpoint ({service}) subnets must '
                              'contain Availability Zones (AZ) of isolated subnets.',
                })
            https_from_subnet = SecurityGroupRule(
                is_egress=False,
                protocol='tcp',
                from_port=HTTPS_PORT,
                to_port=HTTPS_PORT,
                cidr_ipv4=subnet.cidr,
            )
            if not rule_allows(endpoint.security_group_ids, rules, https_from_subnet):
                invalid.append({
                    'service': service,
                    'reason': 'The traffic is not allowed by security group rules',
                })
    return invalid


class PipelineNetworkValidator:
    """Admission checks of a pipeline against the network it will run in."""

    def __init__(self, inspector: NetworkInspector, accounts: AccountInspector,
                 config: Optional[OrchestratorConfig] = None):
        """Initialize the validator.

        Args:
            inspector: Network inspector for the pipeline's region
            accounts: Account-level readers for the pipeline's region
            config: Orchestrator configuration (access log prefix)
        """
        self.inspector = inspector
        self.accounts = accounts
        self.config = config or OrchestratorConfig()

    @classmethod
    def for_region(cls, session: boto3.Session, region: str,
                   config: Optional[OrchestratorConfig] = None) -> 'PipelineNetworkValidator':
        return cls(NetworkInspector(session, region), AccountInspector(session, region), config)

    def validate(self, pipeline: PipelineConfig, resources: Optional[PipelineResources] = None) -> None:
        """Run every network check for the pipeline.

        Args:
            pipeline: Submitted pipeline configuration
            resources: Existing resources (provisioned Redshift); receives
                the QuickSight candidate subnet ids

        Raises:
            ValidationError: On the first violated check
        """
        resources = resources if resources is not None else PipelineResources()

        all_subnets, private_subnets = self.check_subnets(pipeline)
        self.check_isolated_subnet_endpoints(pipeline, private_subnets, all_subnets)
        self.check_data_modeling_and_reporting(pipeline, all_subnets, resources)

        ingestion = pipeline.ingestion_server
        if ingestion and ingestion.load_balancer.enable_access_log:
            if not self.check_access_log_policy(pipeline):
                raise ValidationError(
                    'your S3 bucket must have a bucket policy that grants Elastic Load Balancing '
                    'permission to write the access logs to the bucket.'
                )
        logger.info(f"Network validation passed for pipeline in {pipeline.network.vpc_id}")

    def check_subnets(self, pipeline: PipelineConfig) -> Tuple[List[ClickStreamSubnet], List[ClickStreamSubnet]]:
        """Subnet count and AZ coverage of the ingestion endpoint.

        Returns:
            (all subnets of the VPC, the pipeline's private subnets)
        """
        network = pipeline.network
        if not network.private_subnet_ids:
            raise ValidationError('you must select at least two private subnets for the ingestion endpoint.')
        if len(network.public_subnet_ids) < 2 or len(network.private_subnet_ids) < 2:
            raise ValidationError(
                'you must select at least two public subnets and at least two private subnets '
                'for the ingestion endpoint.'
            )

        all_subnets = self.inspector.describe_subnets(network.vpc_id, SubnetType.ALL)
        private_subnets = [s for s in all_subnets if s.id in network.private_subnet_ids]
        public_subnets = [s for s in all_subnets if s.id in network.public_subnet_ids]
        private_azs = subnets_az(private_subnets)
        public_azs = subnets_az(public_subnets)

        if len(public_azs) < 2 or len(private_azs) < 2:
            raise ValidationError(
                'the public and private subnets for the ingestion endpoint must locate in at least '
                'two Availability Zones (AZ).'
            )
        if not set(private_azs).issubset(public_azs):
            raise ValidationError(
                'the public subnets and private subnets for ingestion endpoint must be in the same '
                'Availability Zones (AZ). For example, you can not select public subnets in AZ (a, b), '
                'while select private subnets in AZ (b, c).'
            )
        return all_subnets, private_subnets

    def required_endpoint_services(self, pipeline: PipelineConfig) -> List[str]:
        """Endpoint services an isolated subnet needs for the enabled modules."""
        services = list(BASE_ENDPOINT_SERVICES)
        if pipeline.ingestion_server:
            services.extend(INGESTION_ENDPOINT_SERVICES)
            if pipeline.ingestion_server.sink_type == SinkType.KINESIS:
                services.append(KINESIS_ENDPOINT_SERVICE)
        if pipeline.data_processing:
            services.extend(DATA_PROCESSING_ENDPOINT_SERVICES)
        if pipeline.data_modeling:
            services.extend(DATA_MODELING_ENDPOINT_SERVICES)
        return endpoint_service_names(pipeline.region, services)

    def check_isolated_subnet_endpoints(self, pipeline: PipelineConfig,
                                        private_subnets: List[ClickStreamSubnet],
                                        all_subnets: List[ClickStreamSubnet]) -> None:
        isolated = [s for s in private_subnets if s.type == SubnetType.ISOLATED]
        if not isolated:
            return

        isolated_azs = subnets_az(isolated)
        endpoints = self.inspector.describe_vpc_endpoints(pipeline.network.vpc_id)
        endpoint_groups = [group for endpoint in endpoints for group in endpoint.security_group_ids]
        rules = self.inspector.describe_security_group_rules(endpoint_groups)
        services = self.required_endpoint_services(pipeline)

        for subnet in isolated:
            invalid = check_vpc_endpoints(all_subnets, isolated_azs, subnet, endpoints, rules, services)
            if invalid:
                raise ValidationError(
                    f'vpc endpoint error in subnet: {subnet.id}, detail: {json.dumps(invalid)}.'
                )

    def check_data_modeling_and_reporting(self, pipeline: PipelineConfig,
                                          all_subnets: List[ClickStreamSubnet],
                                          resources: PipelineResources) -> None:
        redshift = pipeline.data_modeling.redshift if pipeline.data_modeling else None
        if redshift is None:
            return

        if redshift.new_serverless:
            redshift_type = NEW_SERVERLESS
            subnets, groups, rules, port = self._serverless_network(pipeline, all_subnets)
        elif redshift.provisioned:
            redshift_type = PROVISIONED
            subnets, groups, rules, port = self._provisioned_network(pipeline, all_subnets, resources)
        else:
            return

        azs: Set[str] = set()
        candidates: List[ClickStreamSubnet] = []
        for subnet in subnets:
            if subnet.availability_zone not in azs:
                candidates.append(subnet)
                azs.add(subnet.availability_zone)
        resources.quick_sight_subnet_ids = [s.id for s in candidates]

        if redshift_type == NEW_SERVERLESS:
            self.check_redshift_az_spread(pipeline.region, azs, subnets)
        self.check_reporting(pipeline, candidates, port, groups, rules, redshift_type)

    def _subnets_of(self, pipeline: PipelineConfig, vpc_id: str, subnet_ids: List[str],
                    all_subnets: List[ClickStreamSubnet]) -> List[ClickStreamSubnet]:
        vpc_subnets = all_subnets
        if vpc_id != pipeline.network.vpc_id:
            vpc_subnets = self.inspector.describe_subnets(vpc_id, SubnetType.ALL)
        return [s for s in vpc_subnets if s.id in subnet_ids]

    def _serverless_network(self, pipeline: PipelineConfig, all_subnets: List[ClickStreamSubnet]):
        network = pipeline.data_modeling.redshift.new_serverless.network
        subnets = self._subnets_of(pipeline, network.vpc_id, network.subnet_ids, all_subnets)
        groups = list(network.security_groups)
        rules = self.inspector.describe_security_group_rules(groups)
        return subnets, groups, rules, DEFAULT_REDSHIFT_PORT

    def _provisioned_network(self, pipeline: PipelineConfig, all_subnets: List[ClickStreamSubnet],
                             resources: PipelineResources):
        existing = resources.redshift
        if existing is None:
            raise ValidationError('the network of the provisioned Redshift cluster could not be resolved.')
        network = existing.network
        subnets = self._subnets_of(pipeline, network.vpc_id, network.subnet_ids, all_subnets)
        groups = list(network.security_groups)
        rules = self.inspector.describe_security_group_rules(groups)
        return subnets, groups, rules, existing.endpoint.port or DEFAULT_REDSHIFT_PORT

    def check_redshift_az_spread(self, region: str, azs: Set[str], subnets: List[ClickStreamSubnet]) -> None:
        """Subnet spread required by a new Redshift Serverless workgroup.

        Two-AZ regions need three subnets over both AZs; larger regions need
        subnets in three AZs.
        """
        region_azs = self.inspector.list_availability_zones()
        if len(region_azs) < 2:
            raise ValidationError(
                f'error in obtaining {region} availability zones information. Please check and try again.'
            )
        if len(region_azs) == 2:
            if len(azs) < 2 or len(subnets) < 3:
                raise ValidationError(
                    f'the network for deploying {NEW_SERVERLESS} Redshift at least three subnets that cross '
                    'two AZs. Please check and try again.'
                )
        elif len(azs) < 3:
            raise ValidationError(
                f'the network for deploying {NEW_SERVERLESS} Redshift at least three subnets that cross '
                'three AZs. Please check and try again.'
            )

    def check_reporting(self, pipeline: PipelineConfig, candidates: List[ClickStreamSubnet], port: int,
                        groups: List[str], rules: List[SecurityGroupRule], redshift_type: str) -> None:
        if pipeline.reporting is None:
            return

        edition = self.accounts.quicksight.edition()
        if 'ENTERPRISE' not in edition:
            raise ValidationError('QuickSight edition is not enterprise in your account.')

        for subnet in candidates:
            redshift_from_subnet = SecurityGroupRule(
                is_egress=False,
                protocol='tcp',
                from_port=port,
                to_port=port,
                cidr_ipv4=subnet.cidr,
            )
            if rule_allows(groups, rules, redshift_from_subnet):
                logger.debug(f"QuickSight can reach {redshift_type} Redshift from {subnet.id}")
                return
        raise ValidationError(f'{redshift_type} Redshift security groups missing rule for QuickSight access.')

    def check_access_log_policy(self, pipeline: PipelineConfig) -> bool:
        """Whether the bucket policy lets ELB deliver access logs.

        Statements granted to the regional ELB account (or log delivery
        service) are stripped of their principal and simulated for
        s3:PutObject on the log prefix.
        """
        if pipeline.bucket is None:
            raise ValidationError('a bucket is required to enable load balancer access logs.')

        region = pipeline.region
        bucket = pipeline.bucket.name
        policy_str = self.accounts.buckets.get_bucket_policy(bucket)
        if not policy_str:
            return False

        partition = partition_of(region)
        account_id = ELB_LOG_ACCOUNTS.get(region)
        if account_id:
            principal_key, principal_value = 'AWS', f'arn:{partition}:iam::{account_id}:root'
        else:
            principal_key, principal_value = 'Service', ELB_LOG_DELIVERY_SERVICE

        try:
            policy = json.loads(policy_str)
        except json.JSONDecodeError:
            logger.warning(f"Bucket policy of {bucket} is not valid JSON")
            return False

        statements = policy.get('Statement', [])
        if isinstance(statements, dict):
            statements = [statements]

        granted: List[Dict[str, Any]] = []
        for statement in statements:
            if _principal_matches(statement.get('Principal'), principal_key, principal_value):
                stripped = {
                    'Effect': statement.get('Effect'),
                    'Action': statement.get('Action'),
                    'Resource': statement.get('Resource'),
                }
                if statement.get('Condition'):
                    stripped['Condition'] = statement['Condition']
                granted.append(stripped)

        if not granted:
            return False

        prefix = (pipeline.bucket.prefix or self.config.access_log_prefix).strip('/')
        return self.accounts.iam.simulate_custom_policy(
            [json.dumps({'Version': '2012-10-17', 'Statement': granted})],
            ['s3:PutObject'],
            [f'arn:{partition}:s3:::{bucket}/{prefix}/*'],
        )


def _principal_matches(principal: Any, key: str, value: str) -> bool:
    if not isinstance(principal, dict):
        return False
    granted = principal.get(key)
    if isinstance(granted, str):
        return granted == value
    if isinstance(granted, list):
        return value in granted
    return False
