"""
Stack action dispatcher driven one step at a time by the workflow engine.

Every invocation takes a command, issues at most a couple of CloudFormation
calls and returns the next command. Waiting between Describe polls is the
workflow engine's job; nothing here sleeps or keeps state between calls.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import json
import logging

import boto3
from botocore.exceptions import ClientError

from .base import BaseAwsService
from .models import StackAction, StackCommand, StackSnapshot
from ..auth.session import SessionProvider
from ..core.config import OrchestratorConfig
from ..core.exceptions import StackCommandError, StackNotFoundError
from ..state.callback_sink import ResultCallbackSink


logger = logging.getLogger(__name__)

# One retry, only for the disable-rollback rejection.
MAX_UPDATE_ATTEMPTS = 2
DISABLE_ROLLBACK_MARKER = 'disable-rollback'


def requires_disable_rollback(error: Exception) -> bool:
    """True if an update was rejected until rollback is disabled.

    CloudFormation reports this as a ValidationError asking for the
    disable-rollback parameter on update-stack.
    """
    if not isinstance(error, ClientError):
        return False
    err = error.response.get('Error', {})
    return err.get('Code') == 'ValidationError' and DISABLE_ROLLBACK_MARKER in err.get('Message', '')


def is_stack_missing(error: Exception) -> bool:
    if not isinstance(error, ClientError):
        return False
    err = error.response.get('Error', {})
    return err.get('Code') == 'ValidationError' and 'does not exist' in err.get('Message', '')


class CloudFormationStacks(BaseAwsService):
    """Thin wrapper over the CloudFormation stack lifecycle calls."""

    @property
    def service_name(self) -> str:
        return 'cloudformation'

    def create_stack(self, **params) -> Dict[str, Any]:
        return self.client.create_stack(**params)

    def update_stack(self, **params) -> Dict[str, Any]:
        """Update a stack, retrying once with rollback disabled if required.

        Raises:
            ClientError: Any provider fault, including a second rejection
        """
        params = dict(params)
        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            try:
                return self.client.update_stack(**params)
            except ClientError as e:
                if attempt < MAX_UPDATE_ATTEMPTS and requires_disable_rollback(e):
                    logger.warning(f"Update of {params.get('StackName')} requires disable-rollback, retrying")
                    params['DisableRollback'] = True
                    continue
                raise

    def describe_stack(self, stack_name: str) -> Optional[Dict[str, Any]]:
        """Describe a stack by name or id; None if it does not exist."""
        try:
            response = self.client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if is_stack_missing(e):
                logger.info(f"Stack {stack_name} does not exist")
                return None
            raise
        stacks = response.get('Stacks', [])
        return stacks[0] if stacks else None

    def disable_termination_protection(self, stack_id: str) -> None:
        self.client.update_termination_protection(
            EnableTerminationProtection=False,
            StackName=stack_id,
        )

    def delete_stack(self, stack_id: str) -> None:
        self.client.delete_stack(StackName=stack_id)


# Handler method per action; checked for completeness below.
_HANDLERS: Dict[StackAction, str] = {
    StackAction.CREATE: '_create',
    StackAction.UPDATE: '_update',
    StackAction.UPGRADE: '_upgrade',
    StackAction.DELETE: '_delete',
    StackAction.DESCRIBE: '_describe',
    StackAction.CALLBACK: '_callback',
    StackAction.END: '_end',
}

_unhandled = set(StackAction) - set(_HANDLERS)
if _unhandled:
    raise ImportError(f"Stack actions without a handler: {sorted(a.value for a in _unhandled)}")


class StackActionDispatcher:
    """Runs one step of a stack operation and returns the follow-up command."""

    def __init__(self, session: boto3.Session, config: Optional[OrchestratorConfig] = None,
                 callback_sink: Optional[ResultCallbackSink] = None):
        """Initialize the dispatcher.

        Args:
            session: Session used to build per-region CloudFormation clients
            config: Orchestrator configuration (stack capabilities)
            callback_sink: Sink for terminal results; built from the session if None
        """
        self.session = session
        self.config = config or OrchestratorConfig()
        self.callback_sink = callback_sink or ResultCallbackSink(session)
        self._stacks_cache: Dict[str, CloudFormationStacks] = {}

    def stacks(self, region: str) -> CloudFormationStacks:
        if region not in self._stacks_cache:
            self._stacks_cache[region] = CloudFormationStacks(self.session, region)
        return self._stacks_cache[region]

    def dispatch(self, command: StackCommand) -> StackCommand:
        """Run the step named by the command's action.

        Returns:
            The next command: Describe while the stack is moving, Callback
            once it is terminal, End after the result has been handed off

        Raises:
            ClientError: Provider fault, re-raised unchanged
            StackNotFoundError: Describe found no stack
            StackDeploymentFailed: The stack ended in a failed status
        """
        logger.info(f"Dispatching {command.action.value} for stack {command.input.stack_name}")
        handler: Callable[[StackCommand], StackCommand] = getattr(self, _HANDLERS[command.action])
        return handler(command)

    def _interim(self, command: StackCommand, stack_id: Optional[str], status: str) -> StackCommand:
        snapshot = StackSnapshot(
            stack_id=stack_id,
            stack_name=command.input.stack_name,
            status=status,
            created_at=datetime.now(timezone.utc),
        )
        return command.advance(StackAction.DESCRIBE, snapshot)

    def _log_fault(self, command: StackCommand, error: Exception) -> None:
        logger.error(f"{command.action.value} of stack {command.input.stack_name} failed: {error}; "
                     f"command: {json.dumps(command.to_event(), default=str)}")

    def _create(self, command: StackCommand) -> StackCommand:
        stack_input = command.input
        params: Dict[str, Any] = {
            'StackName': stack_input.stack_name,
            'TemplateURL': stack_input.template_url,
            'Parameters': [dict(p) for p in stack_input.parameters],
            'DisableRollback': True,
            'EnableTerminationProtection': True,
            'Capabilities': list(self.config.stack_capabilities),
        }
        if stack_input.tags:
            params['Tags'] = [dict(t) for t in stack_input.tags]
        try:
            response = self.stacks(stack_input.region).create_stack(**params)
        except Exception as e:
            self._log_fault(command, e)
            raise
        return self._interim(command, response.get('StackId'), 'CREATE_IN_PROGRESS')

    def _update_params(self, command: StackCommand, upgrade: bool) -> Dict[str, Any]:
        stack_input = command.input
        params: Dict[str, Any] = {
            'StackName': stack_input.stack_name,
            'Parameters': [dict(p) for p in stack_input.parameters],
            'DisableRollback': False,
            'UsePreviousTemplate': not upgrade,
            'Capabilities': list(self.config.stack_capabilities),
        }
        if upgrade:
            params['TemplateURL'] = stack_input.template_url
        if stack_input.tags:
            params['Tags'] = [dict(t) for t in stack_input.tags]
        return params

    def _run_update(self, command: StackCommand, upgrade: bool) -> StackCommand:
        try:
            response = self.stacks(command.input.region).update_stack(**self._update_params(command, upgrade))
        except Exception as e:
            self._log_fault(command, e)
            raise
        return self._interim(command, response.get('StackId'), 'UPDATE_IN_PROGRESS')

    def _update(self, command: StackCommand) -> StackCommand:
        return self._run_update(command, upgrade=False)

    def _upgrade(self, command: StackCommand) -> StackCommand:
        if not command.input.template_url:
            raise StackCommandError(f"Upgrade of {command.input.stack_name} requires a TemplateURL")
        return self._run_update(command, upgrade=True)

    def _delete(self, command: StackCommand) -> StackCommand:
        stacks = self.stacks(command.input.region)
        try:
            stack = stacks.describe_stack(command.target)
            if stack is None or stack.get('StackStatus') == 'DELETE_COMPLETE':
                logger.info(f"Stack {command.input.stack_name} already deleted")
                return StackCommand(action=StackAction.END, input=command.input)

            stack_id = stack['StackId']
            stacks.disable_termination_protection(stack_id)
            stacks.delete_stack(stack_id)
        except Exception as e:
            self._log_fault(command, e)
            raise
        return self._interim(command, stack_id, 'DELETE_IN_PROGRESS')

    def _describe(self, command: StackCommand) -> StackCommand:
        stack = self.stacks(command.input.region).describe_stack(command.target)
        if stack is None:
            logger.error(f"Describe stack failed: {command.input.stack_name} not found")
            raise StackNotFoundError(command.input.stack_name)

        snapshot = StackSnapshot.from_stack(stack)
        if snapshot.is_in_progress:
            return command.advance(StackAction.DESCRIBE, snapshot)
        logger.info(f"Stack {snapshot.stack_name} reached {snapshot.status}")
        return command.advance(StackAction.CALLBACK, snapshot)

    def _callback(self, command: StackCommand) -> StackCommand:
        self.callback_sink.save(command)
        return command.advance(StackAction.END, command.result)

    def _end(self, command: StackCommand) -> StackCommand:
        return command


def handler(event: Dict[str, Any], context: Any = None,
            dispatcher: Optional[StackActionDispatcher] = None) -> Dict[str, Any]:
    """Function-style entry point for the workflow engine.

    Args:
        event: Command in wire form
        context: Invocation context (unused)
        dispatcher: Pre-built dispatcher; a default-session one otherwise

    Returns:
        The next command in wire form
    """
    logger.info(f"Stack action invoked: {json.dumps(event, default=str)}")
    if dispatcher is None:
        dispatcher = StackActionDispatcher(SessionProvider().get_session())
    command = StackCommand.from_event(event)
    return dispatcher.dispatch(command).to_event()
