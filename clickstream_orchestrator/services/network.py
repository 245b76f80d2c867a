"""
Read-only inspection of VPC network topology.
"""
from typing import Any, Dict, Iterable, List, Optional
import logging

from .base import BaseAwsService
from .models import (
    ClickStreamSubnet,
    Route,
    RouteTable,
    SecurityGroupRule,
    SubnetType,
    VpcEndpoint,
)


logger = logging.getLogger(__name__)

DEFAULT_ROUTE_CIDR = '0.0.0.0/0'


def classify_route_table(route_table: Optional[RouteTable]) -> SubnetType:
    """Derive a subnet type from the routes of its route table.

    The first route that targets an internet gateway makes the subnet public;
    the first default route with any other target makes it private. With
    neither, the subnet is isolated.
    """
    if route_table is None:
        return SubnetType.ISOLATED
    for route in route_table.routes:
        if route.gateway_id and route.gateway_id.startswith('igw-'):
            return SubnetType.PUBLIC
        if route.destination_cidr == DEFAULT_ROUTE_CIDR:
            return SubnetType.PRIVATE
    return SubnetType.ISOLATED


def _matches_type(subnet_type: SubnetType, wanted: SubnetType) -> bool:
    if wanted == SubnetType.ALL or wanted == subnet_type:
        return True
    # private selections also cover isolated subnets
    return wanted == SubnetType.PRIVATE and subnet_type == SubnetType.ISOLATED


class NetworkInspector(BaseAwsService):
    """Queries subnets, routes, security group rules, endpoints and AZs."""

    @property
    def service_name(self) -> str:
        return 'ec2'

    def _paginate(self, operation: str, key: str, **kwargs) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        paginator = self.client.get_paginator(operation)
        for page in paginator.paginate(**kwargs):
            records.extend(page.get(key, []))
        return records

    def describe_vpcs(self) -> List[Dict[str, Any]]:
        """List VPCs in the region as id/name/cidr/is_default mappings."""
        try:
            records = self._paginate('describe_vpcs', 'Vpcs')
        except Exception as e:
            self._handle_aws_error(e, 'describe vpcs')

        vpcs = []
        for vpc in records:
            vpcs.append({
                'id': vpc['VpcId'],
                'name': _tag_value(vpc.get('Tags', []), 'Name'),
                'cidr': vpc.get('CidrBlock', ''),
                'is_default': vpc.get('IsDefault', False),
            })
        return vpcs

    def describe_route_tables(self, vpc_id: str) -> List[Dict[str, Any]]:
        try:
            return self._paginate(
                'describe_route_tables', 'RouteTables',
                Filters=[{'Name': 'vpc-id', 'Values': [vpc_id]}],
            )
        except Exception as e:
            self._handle_aws_error(e, 'describe route tables', vpc_id)

    def describe_subnets(self, vpc_id: str, subnet_type: SubnetType = SubnetType.ALL) -> List[ClickStreamSubnet]:
        """List the subnets of a VPC classified by their routing.

        Args:
            vpc_id: VPC to inspect
            subnet_type: Selector; PRIVATE also returns isolated subnets

        Returns:
            Subnets with their effective route table attached

        Raises:
            ServiceError: If the subnets or route tables cannot be read
        """
        try:
            records = self._paginate(
                'describe_subnets', 'Subnets',
                Filters=[{'Name': 'vpc-id', 'Values': [vpc_id]}],
            )
        except Exception as e:
            self._handle_aws_error(e, 'describe subnets', vpc_id)

        route_tables = self.describe_route_tables(vpc_id)

        subnets = []
        for record in records:
            subnet_id = record.get('SubnetId')
            if not subnet_id:
                continue
            route_table = self._effective_route_table(route_tables, subnet_id)
            subnet = ClickStreamSubnet(
                id=subnet_id,
                name=_tag_value(record.get('Tags', []), 'Name'),
                cidr=record.get('CidrBlock', ''),
                availability_zone=record.get('AvailabilityZone', ''),
                type=classify_route_table(route_table),
                route_table=route_table,
            )
            if _matches_type(subnet.type, subnet_type):
                subnets.append(subnet)

        logger.debug(f"Found {len(subnets)} {subnet_type.value} subnets in {vpc_id}")
        return subnets

    def _effective_route_table(self, route_tables: List[Dict[str, Any]], subnet_id: str) -> Optional[RouteTable]:
        """Explicitly associated route table, else the VPC main route table."""
        main_table = None
        for table in route_tables:
            for association in table.get('Associations', []):
                if association.get('SubnetId') == subnet_id:
                    return _to_route_table(table)
                if association.get('Main'):
                    main_table = table
        return _to_route_table(main_table) if main_table else None

    def describe_security_group_rules(self, group_ids: Iterable[str]) -> List[SecurityGroupRule]:
        """List the rules of the given security groups.

        An empty group list returns no rules without calling the provider.
        """
        group_ids = sorted(set(group_ids))
        if not group_ids:
            return []
        try:
            records = self._paginate(
                'describe_security_group_rules', 'SecurityGroupRules',
                Filters=[{'Name': 'group-id', 'Values': group_ids}],
            )
        except Exception as e:
            self._handle_aws_error(e, 'describe security group rules', ','.join(group_ids))

        rules = []
        for record in records:
            referenced = record.get('ReferencedGroupInfo') or {}
            rules.append(SecurityGroupRule(
                is_egress=record.get('IsEgress', False),
                protocol=record.get('IpProtocol', '-1'),
                from_port=record.get('FromPort', -1),
                to_port=record.get('ToPort', -1),
                cidr_ipv4=record.get('CidrIpv4'),
                referenced_group_id=referenced.get('GroupId'),
                group_id=record.get('GroupId'),
            ))
        return rules

    def describe_vpc_endpoints(self, vpc_id: str) -> List[VpcEndpoint]:
        try:
            records = self._paginate(
                'describe_vpc_endpoints', 'VpcEndpoints',
                Filters=[{'Name': 'vpc-id', 'Values': [vpc_id]}],
            )
        except Exception as e:
            self._handle_aws_error(e, 'describe vpc endpoints', vpc_id)

        return [
            VpcEndpoint(
                id=record['VpcEndpointId'],
                service_name=record['ServiceName'],
                endpoint_type=record.get('VpcEndpointType', 'Interface'),
                subnet_ids=list(record.get('SubnetIds', [])),
                security_group_ids=[g['GroupId'] for g in record.get('Groups', [])],
            )
            for record in records
        ]

    def list_availability_zones(self) -> List[str]:
        """Names of the available availability zones in the region."""
        try:
            response = self.client.describe_availability_zones()
        except Exception as e:
            self._handle_aws_error(e, 'describe availability zones')

        return [
            zone['ZoneName']
            for zone in response.get('AvailabilityZones', [])
            if zone.get('State', 'available') == 'available'
            and zone.get('ZoneType', 'availability-zone') == 'availability-zone'
        ]


def _to_route_table(table: Dict[str, Any]) -> RouteTable:
    return RouteTable(
        route_table_id=table.get('RouteTableId', ''),
        routes=[
            Route(
                destination_cidr=route.get('DestinationCidrBlock'),
                gateway_id=route.get('GatewayId'),
                nat_gateway_id=route.get('NatGatewayId'),
            )
            for route in table.get('Routes', [])
        ],
    )


def _tag_value(tags: List[Dict[str, str]], key: str) -> str:
    for tag in tags:
        if tag.get('Key') == key:
            return tag.get('Value', '')
    return ''
