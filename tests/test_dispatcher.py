"""Tests for the stack action dispatcher."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError
from hypothesis import given, settings, strategies as st

from clickstream_orchestrator.core.config import DEFAULT_CAPABILITIES, OrchestratorConfig
from clickstream_orchestrator.core.exceptions import (
    StackCommandError, StackDeploymentFailed, StackNotFoundError
)
from clickstream_orchestrator.services.dispatcher import (
    StackActionDispatcher, handler, requires_disable_rollback
)
from clickstream_orchestrator.services.models import StackAction, StackCommand, StackSnapshot


STACK_ID = "arn:aws:cloudformation:us-east-1:123456789012:stack/Clickstream-Ingestion-kafka-6a9c/1b2c3d4e"

DISABLE_ROLLBACK_MESSAGE = (
    "Stack is in UPDATE_FAILED state and can not be updated. To continue updating, "
    "please use the disable-rollback parameter with update-stack API."
)

IN_PROGRESS_STATUSES = [
    'CREATE_IN_PROGRESS', 'UPDATE_IN_PROGRESS', 'DELETE_IN_PROGRESS',
    'ROLLBACK_IN_PROGRESS', 'UPDATE_ROLLBACK_IN_PROGRESS',
    'UPDATE_COMPLETE_CLEANUP_IN_PROGRESS', 'UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS',
]
TERMINAL_STATUSES = [
    'CREATE_COMPLETE', 'CREATE_FAILED', 'UPDATE_COMPLETE', 'UPDATE_FAILED',
    'UPDATE_ROLLBACK_COMPLETE', 'UPDATE_ROLLBACK_FAILED', 'ROLLBACK_COMPLETE',
    'ROLLBACK_FAILED', 'DELETE_COMPLETE', 'DELETE_FAILED',
]


def validation_error(message, operation='UpdateStack'):
    return ClientError({'Error': {'Code': 'ValidationError', 'Message': message}}, operation)


def build_dispatcher(callback_sink=None):
    """Dispatcher over a Mock CloudFormation client."""
    cfn = Mock(name='cloudformation-client')
    session = Mock()
    session.client.return_value = cfn
    dispatcher = StackActionDispatcher(session, OrchestratorConfig(), callback_sink=callback_sink or Mock())
    return dispatcher, cfn


def stack_description(status, reason=None):
    stack = {
        'StackId': STACK_ID,
        'StackName': 'Clickstream-Ingestion-kafka-6a9c',
        'StackStatus': status,
        'CreationTime': datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc),
        'Outputs': [{'OutputKey': 'IngestionServerURL', 'OutputValue': 'http://alb.example.com'}],
    }
    if reason:
        stack['StackStatusReason'] = reason
    return stack


def command_for(action, stack_input, callback=None, result=None):
    event = {'Action': action, 'Input': stack_input}
    if callback:
        event['Callback'] = callback
    if result:
        event['Result'] = result
    return StackCommand.from_event(event)


class TestCreate:
    """Create issues one create call and hands back a Describe."""

    def test_create_issues_stack_with_protection(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.create_stack.return_value = {'StackId': STACK_ID}

        next_command = dispatcher.dispatch(command_for('Create', stack_input))

        cfn.create_stack.assert_called_once_with(
            StackName=stack_input['StackName'],
            TemplateURL=stack_input['TemplateURL'],
            Parameters=stack_input['Parameters'],
            DisableRollback=True,
            EnableTerminationProtection=True,
            Capabilities=DEFAULT_CAPABILITIES,
            Tags=stack_input['Tags'],
        )
        assert next_command.action == StackAction.DESCRIBE
        assert next_command.result.stack_id == STACK_ID
        assert next_command.result.status == 'CREATE_IN_PROGRESS'
        assert next_command.result.created_at is not None

    def test_create_without_tags_omits_tags(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.create_stack.return_value = {'StackId': STACK_ID}
        stack_input['Tags'] = []

        dispatcher.dispatch(command_for('Create', stack_input))

        assert 'Tags' not in cfn.create_stack.call_args.kwargs

    def test_create_fault_reraised_unchanged(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        error = ClientError({'Error': {'Code': 'AlreadyExistsException', 'Message': 'exists'}}, 'CreateStack')
        cfn.create_stack.side_effect = error

        with pytest.raises(ClientError) as exc_info:
            dispatcher.dispatch(command_for('Create', stack_input))

        assert exc_info.value is error


class TestUpdate:
    """Update and Upgrade, including the single disable-rollback retry."""

    def test_update_reuses_previous_template(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.update_stack.return_value = {'StackId': STACK_ID}

        next_command = dispatcher.dispatch(command_for('Update', stack_input))

        kwargs = cfn.update_stack.call_args.kwargs
        assert kwargs['UsePreviousTemplate'] is True
        assert kwargs['DisableRollback'] is False
        assert 'TemplateURL' not in kwargs
        assert kwargs['Capabilities'] == DEFAULT_CAPABILITIES
        assert next_command.action == StackAction.DESCRIBE
        assert next_command.result.status == 'UPDATE_IN_PROGRESS'

    def test_upgrade_switches_template(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.update_stack.return_value = {'StackId': STACK_ID}

        dispatcher.dispatch(command_for('Upgrade', stack_input))

        kwargs = cfn.update_stack.call_args.kwargs
        assert kwargs['UsePreviousTemplate'] is False
        assert kwargs['TemplateURL'] == stack_input['TemplateURL']

    def test_upgrade_requires_template_url(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        stack_input['TemplateURL'] = ''

        with pytest.raises(StackCommandError):
            dispatcher.dispatch(command_for('Upgrade', stack_input))
        cfn.update_stack.assert_not_called()

    def test_retry_once_with_rollback_disabled(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.update_stack.side_effect = [validation_error(DISABLE_ROLLBACK_MESSAGE), {'StackId': STACK_ID}]

        next_command = dispatcher.dispatch(command_for('Update', stack_input))

        assert cfn.update_stack.call_count == 2
        first, second = cfn.update_stack.call_args_list
        assert first.kwargs['DisableRollback'] is False
        assert second.kwargs['DisableRollback'] is True
        assert next_command.action == StackAction.DESCRIBE

    def test_second_rejection_is_raised(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.update_stack.side_effect = [
            validation_error(DISABLE_ROLLBACK_MESSAGE),
            validation_error(DISABLE_ROLLBACK_MESSAGE),
        ]

        with pytest.raises(ClientError):
            dispatcher.dispatch(command_for('Update', stack_input))
        assert cfn.update_stack.call_count == 2

    def test_other_update_errors_not_retried(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.update_stack.side_effect = validation_error('No updates are to be performed.')

        with pytest.raises(ClientError):
            dispatcher.dispatch(command_for('Update', stack_input))
        assert cfn.update_stack.call_count == 1

    def test_rollback_classification(self):
        assert requires_disable_rollback(validation_error(DISABLE_ROLLBACK_MESSAGE))
        assert not requires_disable_rollback(validation_error('Template format error'))
        assert not requires_disable_rollback(ValueError(DISABLE_ROLLBACK_MESSAGE))


class TestDelete:
    """Delete is idempotent on absent stacks."""

    def test_absent_stack_ends_without_result(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.describe_stacks.side_effect = validation_error(
            f"Stack with id {stack_input['StackName']} does not exist", 'DescribeStacks'
        )

        next_command = dispatcher.dispatch(command_for('Delete', stack_input))

        assert next_command.action == StackAction.END
        assert next_command.result is None
        assert next_command.to_event() == {'Action': 'End', 'Input': stack_input}
        cfn.delete_stack.assert_not_called()

    def test_already_deleted_stack_ends(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.describe_stacks.return_value = {'Stacks': [stack_description('DELETE_COMPLETE')]}

        next_command = dispatcher.dispatch(command_for('Delete', stack_input))

        assert next_command.action == StackAction.END
        cfn.delete_stack.assert_not_called()

    def test_delete_lifts_termination_protection_first(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.describe_stacks.return_value = {'Stacks': [stack_description('UPDATE_COMPLETE')]}
        calls = []
        cfn.update_termination_protection.side_effect = lambda **kw: calls.append('protection')
        cfn.delete_stack.side_effect = lambda **kw: calls.append('delete')

        next_command = dispatcher.dispatch(command_for('Delete', stack_input))

        assert calls == ['protection', 'delete']
        cfn.update_termination_protection.assert_called_once_with(
            EnableTerminationProtection=False, StackName=STACK_ID
        )
        cfn.delete_stack.assert_called_once_with(StackName=STACK_ID)
        assert next_command.action == StackAction.DESCRIBE
        assert next_command.result.status == 'DELETE_IN_PROGRESS'
        assert next_command.result.stack_id == STACK_ID

    def test_delete_targets_known_stack_id(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.describe_stacks.return_value = {'Stacks': [stack_description('DELETE_COMPLETE')]}
        result = {'StackId': STACK_ID, 'StackName': stack_input['StackName'], 'StackStatus': 'CREATE_COMPLETE'}

        dispatcher.dispatch(command_for('Delete', stack_input, result=result))

        cfn.describe_stacks.assert_called_once_with(StackName=STACK_ID)


class TestDescribe:
    """Describe routes to another poll or to the callback."""

    @settings(max_examples=30, deadline=None)
    @given(status=st.sampled_from(IN_PROGRESS_STATUSES + TERMINAL_STATUSES))
    def test_next_action_follows_status(self, status):
        """In-progress statuses poll again; every other status goes to Callback."""
        dispatcher, cfn = build_dispatcher()
        cfn.describe_stacks.return_value = {'Stacks': [stack_description(status)]}
        stack_input = {'Region': 'us-east-1', 'StackName': 'Clickstream-Ingestion-kafka-6a9c'}

        next_command = dispatcher.dispatch(command_for('Describe', stack_input))

        expected = StackAction.DESCRIBE if status.endswith('_IN_PROGRESS') else StackAction.CALLBACK
        assert next_command.action == expected
        assert next_command.result.status == status
        assert next_command.result.stack_id == STACK_ID

    def test_missing_stack_raises(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.describe_stacks.return_value = {'Stacks': []}

        with pytest.raises(StackNotFoundError):
            dispatcher.dispatch(command_for('Describe', stack_input))

    def test_describe_fault_propagates(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        cfn.describe_stacks.side_effect = ClientError(
            {'Error': {'Code': 'Throttling', 'Message': 'Rate exceeded'}}, 'DescribeStacks'
        )

        with pytest.raises(ClientError):
            dispatcher.dispatch(command_for('Describe', stack_input))


class TestCallbackAndEnd:

    def test_callback_saves_then_ends(self, stack_input, callback):
        sink = Mock()
        dispatcher, _ = build_dispatcher(callback_sink=sink)
        result = {'StackId': STACK_ID, 'StackName': stack_input['StackName'], 'StackStatus': 'CREATE_COMPLETE'}
        command = command_for('Callback', stack_input, callback=callback, result=result)

        next_command = dispatcher.dispatch(command)

        sink.save.assert_called_once_with(command)
        assert next_command.action == StackAction.END
        assert next_command.result == command.result

    def test_callback_failure_propagates(self, stack_input, callback):
        sink = Mock()
        sink.save.side_effect = StackDeploymentFailed(stack_input['StackName'], 'CREATE_FAILED', 'Quota exceeded')
        dispatcher, _ = build_dispatcher(callback_sink=sink)
        result = {'StackId': STACK_ID, 'StackName': stack_input['StackName'], 'StackStatus': 'CREATE_FAILED'}

        with pytest.raises(StackDeploymentFailed):
            dispatcher.dispatch(command_for('Callback', stack_input, callback=callback, result=result))

    def test_end_is_a_no_op(self, stack_input):
        dispatcher, cfn = build_dispatcher()
        command = command_for('End', stack_input)

        assert dispatcher.dispatch(command) is command
        assert cfn.method_calls == []


class TestWireShape:
    """The function entry point speaks the workflow engine's wire shape."""

    def test_handler_round_trip(self, stack_input, callback):
        dispatcher, cfn = build_dispatcher()
        cfn.describe_stacks.return_value = {'Stacks': [stack_description('CREATE_COMPLETE')]}
        event = {'Action': 'Describe', 'Input': stack_input, 'Callback': callback}

        response = handler(event, None, dispatcher=dispatcher)

        assert response['Action'] == 'Callback'
        assert response['Input'] == stack_input
        assert response['Callback'] == callback
        assert response['Result']['StackId'] == STACK_ID
        assert response['Result']['StackStatus'] == 'CREATE_COMPLETE'
        assert response['Result']['CreationTime'] == '2024-03-01T08:30:00+00:00'

        # the emitted event parses back to an equivalent command
        parsed = StackCommand.from_event(response)
        assert parsed.action == StackAction.CALLBACK
        assert parsed.result.created_at == datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)

    def test_millisecond_creation_time_parsed(self):
        snapshot = StackSnapshot.from_dict({
            'StackName': 'Clickstream-Ingestion-kafka-6a9c',
            'StackStatus': 'CREATE_COMPLETE',
            'CreationTime': '2024-01-01T00:00:00.123Z',
        })

        assert snapshot.created_at == datetime(2024, 1, 1, 0, 0, 0, 123000, tzinfo=timezone.utc)

    def test_unknown_action_rejected(self, stack_input):
        with pytest.raises(StackCommandError, match="Action type error: Rollback"):
            StackCommand.from_event({'Action': 'Rollback', 'Input': stack_input})

    def test_missing_input_rejected(self):
        with pytest.raises(StackCommandError):
            StackCommand.from_event({'Action': 'Create'})

    def test_missing_stack_name_rejected(self):
        with pytest.raises(StackCommandError):
            StackCommand.from_event({'Action': 'Create', 'Input': {'Region': 'us-east-1'}})


class TestSnapshotStatus:

    @given(status=st.sampled_from(IN_PROGRESS_STATUSES))
    def test_in_progress_is_never_failed(self, status):
        snapshot = StackSnapshot(stack_id=STACK_ID, stack_name='s', status=status)
        assert snapshot.is_in_progress
        assert not snapshot.is_failed

    @pytest.mark.parametrize("status,failed", [
        ('CREATE_COMPLETE', False),
        ('UPDATE_COMPLETE', False),
        ('DELETE_COMPLETE', False),
        ('CREATE_FAILED', True),
        ('UPDATE_ROLLBACK_FAILED', True),
        ('ROLLBACK_COMPLETE', True),
        ('UPDATE_ROLLBACK_COMPLETE', True),
    ])
    def test_failed_statuses(self, status, failed):
        assert StackSnapshot(stack_id=STACK_ID, stack_name='s', status=status).is_failed is failed
