"""AWS service wrappers used by the dispatcher and the validators."""

from .base import BaseAwsService
from .models import StackAction, StackCommand, StackInput, StackSnapshot, SubnetType
from .network import NetworkInspector
from .account import AccountInspector

__all__ = [
    'BaseAwsService',
    'StackAction',
    'StackCommand',
    'StackInput',
    'StackSnapshot',
    'SubnetType',
    'NetworkInspector',
    'AccountInspector'
]
