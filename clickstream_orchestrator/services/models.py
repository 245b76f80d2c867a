"""
Data models for stack commands and network topology.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from botocore.utils import parse_timestamp

from ..core.exceptions import StackCommandError


class StackAction(str, Enum):
    """Action literals exchanged with the workflow engine."""
    CREATE = 'Create'
    UPDATE = 'Update'
    UPGRADE = 'Upgrade'
    DELETE = 'Delete'
    DESCRIBE = 'Describe'
    CALLBACK = 'Callback'
    END = 'End'


IN_PROGRESS_SUFFIX = '_IN_PROGRESS'


@dataclass(frozen=True)
class StackSnapshot:
    """Last known description of a stack, as reported by CloudFormation."""
    stack_id: Optional[str]
    stack_name: str
    status: str                          # e.g. CREATE_COMPLETE, UPDATE_ROLLBACK_FAILED
    status_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    outputs: Tuple[Dict[str, Any], ...] = ()

    @property
    def is_in_progress(self) -> bool:
        return self.status.endswith(IN_PROGRESS_SUFFIX)

    @property
    def is_failed(self) -> bool:
        """Terminal failure: *_FAILED or a completed rollback."""
        if self.is_in_progress:
            return False
        return self.status.endswith('FAILED') or self.status.endswith('ROLLBACK_COMPLETE')

    @classmethod
    def from_stack(cls, stack: Dict[str, Any]) -> 'StackSnapshot':
        """Build a snapshot from a describe_stacks entry."""
        return cls(
            stack_id=stack.get('StackId'),
            stack_name=stack['StackName'],
            status=stack['StackStatus'],
            status_reason=stack.get('StackStatusReason'),
            created_at=stack.get('CreationTime'),
            outputs=tuple(stack.get('Outputs', [])),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StackSnapshot':
        created_at = data.get('CreationTime')
        if isinstance(created_at, str):
            created_at = parse_timestamp(created_at)
        return cls(
            stack_id=data.get('StackId'),
            stack_name=data.get('StackName', ''),
            status=data['StackStatus'],
            status_reason=data.get('StackStatusReason'),
            created_at=created_at,
            outputs=tuple(data.get('Outputs', [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'StackId': self.stack_id,
            'StackName': self.stack_name,
            'StackStatus': self.status,
        }
        if self.status_reason:
            data['StackStatusReason'] = self.status_reason
        if self.created_at:
            data['CreationTime'] = self.created_at.isoformat()
        if self.outputs:
            data['Outputs'] = [dict(o) for o in self.outputs]
        return data


@dataclass(frozen=True)
class StackInput:
    """Target stack of a command."""
    region: str
    stack_name: str
    template_url: str = ''
    parameters: Tuple[Dict[str, str], ...] = ()   # ordered ParameterKey/ParameterValue pairs
    tags: Tuple[Dict[str, str], ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StackInput':
        try:
            return cls(
                region=data['Region'],
                stack_name=data['StackName'],
                template_url=data.get('TemplateURL', ''),
                parameters=tuple(dict(p) for p in data.get('Parameters') or []),
                tags=tuple(dict(t) for t in data.get('Tags') or []),
            )
        except KeyError as e:
            raise StackCommandError(f"Stack input missing field {e.args[0]}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'Region': self.region,
            'StackName': self.stack_name,
            'TemplateURL': self.template_url,
            'Parameters': [dict(p) for p in self.parameters],
            'Tags': [dict(t) for t in self.tags],
        }


@dataclass(frozen=True)
class StackCallback:
    """Bucket location the stack result is handed off to."""
    bucket_name: str
    bucket_prefix: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StackCallback':
        return cls(bucket_name=data.get('BucketName', ''), bucket_prefix=data.get('BucketPrefix', ''))

    def to_dict(self) -> Dict[str, str]:
        return {'BucketName': self.bucket_name, 'BucketPrefix': self.bucket_prefix}


@dataclass(frozen=True)
class StackCommand:
    """One step of a stack operation, threaded through the workflow engine."""
    action: StackAction
    input: StackInput
    callback: Optional[StackCallback] = None
    result: Optional[StackSnapshot] = None

    def advance(self, action: StackAction, result: Optional[StackSnapshot] = None) -> 'StackCommand':
        """Return the follow-up command; the current one is left untouched."""
        return replace(self, action=action, result=result)

    @property
    def target(self) -> str:
        """Stack identifier to describe: the known stack id, else the name."""
        if self.result and self.result.stack_id:
            return self.result.stack_id
        return self.input.stack_name

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> 'StackCommand':
        """Parse the workflow engine's wire shape."""
        try:
            action = StackAction(event['Action'])
        except KeyError:
            raise StackCommandError("Stack command missing Action")
        except ValueError:
            raise StackCommandError(f"Action type error: {event['Action']}")

        if 'Input' not in event:
            raise StackCommandError("Stack command missing Input")

        callback = event.get('Callback')
        result = event.get('Result')
        return cls(
            action=action,
            input=StackInput.from_dict(event['Input']),
            callback=StackCallback.from_dict(callback) if callback else None,
            result=StackSnapshot.from_dict(result) if result else None,
        )

    def to_event(self) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            'Action': self.action.value,
            'Input': self.input.to_dict(),
        }
        if self.callback:
            event['Callback'] = self.callback.to_dict()
        if self.result:
            event['Result'] = self.result.to_dict()
        return event


class SubnetType(str, Enum):
    PUBLIC = 'public'
    PRIVATE = 'private'
    ISOLATED = 'isolated'
    ALL = 'all'


@dataclass
class Route:
    destination_cidr: Optional[str] = None
    gateway_id: Optional[str] = None
    nat_gateway_id: Optional[str] = None


@dataclass
class RouteTable:
    route_table_id: str
    routes: List[Route] = field(default_factory=list)

    def has_gateway(self, gateway_id: str) -> bool:
        return any(route.gateway_id == gateway_id for route in self.routes)


@dataclass
class ClickStreamSubnet:
    """A VPC subnet classified by its routing."""
    id: str
    cidr: str
    availability_zone: str
    type: SubnetType
    name: str = ''
    route_table: Optional[RouteTable] = None


@dataclass
class SecurityGroupRule:
    """A single security group rule, or a rule being looked for."""
    is_egress: bool
    protocol: str                        # 'tcp', 'udp', '-1' for all
    from_port: int                       # -1 for all ports
    to_port: int
    cidr_ipv4: Optional[str] = None
    referenced_group_id: Optional[str] = None
    group_id: Optional[str] = None


@dataclass
class VpcEndpoint:
    id: str
    service_name: str
    endpoint_type: str                   # 'Gateway' or 'Interface'
    subnet_ids: List[str] = field(default_factory=list)
    security_group_ids: List[str] = field(default_factory=list)
