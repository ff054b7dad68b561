"""Unit tests for quarantine policy wiring."""

import json
import pytest
from unittest.mock import Mock, patch
from botocore.exceptions import ClientError

from lza_orchestrator.core.aws_client import AWSClientManager
from lza_orchestrator.core.config import AcceleratorSettings
from lza_orchestrator.core.partition import EnvironmentPartition
from lza_orchestrator.policies.quarantine import (
    QuarantineError,
    QuarantineHandler,
    QuarantineRuleInstaller,
    lambda_handler,
    quarantine_event_patterns,
)


def create_account_event(state='SUCCEEDED', account_id='222222222222'):
    return {'detail': {
        'eventName': 'CreateAccountResult',
        'serviceEventDetails': {'createAccountStatus': {'state': state, 'accountId': account_id}},
    }}


class TestQuarantineEventPatterns:
    """Test cases for quarantine_event_patterns."""

    def test_commercial_only(self):
        patterns = quarantine_event_patterns(False)

        assert list(patterns) == ['CreateAccount']
        assert patterns['CreateAccount']['detail'] == {'eventName': ['CreateAccountResult']}

    def test_with_govcloud(self):
        patterns = quarantine_event_patterns(True)

        assert patterns['CreateGovCloudAccount']['detail-type'] == ['AWS API Call via CloudTrail']


class TestQuarantineRuleInstaller:
    """Test cases for QuarantineRuleInstaller class."""

    def setup_method(self):
        self.mock_aws_client = Mock(spec=AWSClientManager)
        self.mock_events = Mock()
        self.mock_aws_client.get_client.return_value = self.mock_events

    def test_install_rules(self):
        installer = QuarantineRuleInstaller(
            self.mock_aws_client, AcceleratorSettings(quarantine_policy_name='Quarantine')
        )

        rules = installer.install('arn:aws:lambda:us-east-1:111111111111:function:quarantine', True)

        assert rules == ['AWSAccelerator-QuarantineCreateAccount', 'AWSAccelerator-QuarantineCreateGovCloudAccount']
        pattern = json.loads(self.mock_events.put_rule.call_args_list[0].kwargs['EventPattern'])
        assert pattern['source'] == ['aws.organizations']
        assert self.mock_events.put_targets.call_count == 2

    def test_not_installed_outside_commercial_partition(self):
        installer = QuarantineRuleInstaller(
            self.mock_aws_client,
            AcceleratorSettings(partition=EnvironmentPartition.GOVCLOUD, quarantine_policy_name='Quarantine'),
        )

        assert installer.install('arn', False) == []
        self.mock_events.put_rule.assert_not_called()

    def test_not_installed_without_policy(self):
        installer = QuarantineRuleInstaller(self.mock_aws_client, AcceleratorSettings())

        assert installer.install('arn', False) == []


class TestQuarantineHandler:
    """Test cases for QuarantineHandler class."""

    def setup_method(self):
        self.mock_aws_client = Mock(spec=AWSClientManager)
        self.mock_org_client = Mock()
        self.mock_aws_client.get_client.return_value = self.mock_org_client
        self.mock_org_client.list_policies.return_value = {
            'Policies': [{'Name': 'Quarantine', 'Id': 'p-quarantine'}]
        }
        self.sleep = Mock()
        self.handler = QuarantineHandler(
            self.mock_aws_client, AcceleratorSettings(), 'Quarantine', sleep=self.sleep
        )

    def test_attaches_policy_to_new_account(self):
        result = self.handler.handle(create_account_event())

        assert result == '222222222222'
        self.mock_org_client.attach_policy.assert_called_once_with(
            PolicyId='p-quarantine', TargetId='222222222222'
        )

    def test_failed_creation_ignored(self):
        assert self.handler.handle(create_account_event(state='FAILED')) is None
        self.mock_org_client.attach_policy.assert_not_called()

    def test_policy_found_on_later_page(self):
        self.mock_org_client.list_policies.side_effect = [
            {'Policies': [{'Name': 'Other', 'Id': 'p-other'}], 'NextToken': 'next'},
            {'Policies': [{'Name': 'Quarantine', 'Id': 'p-quarantine'}]},
        ]

        self.handler.handle(create_account_event())

        self.mock_org_client.attach_policy.assert_called_once_with(
            PolicyId='p-quarantine', TargetId='222222222222'
        )

    def test_missing_policy_raises(self):
        self.mock_org_client.list_policies.return_value = {'Policies': []}

        with pytest.raises(QuarantineError, match="not found"):
            self.handler.handle(create_account_event())

    def test_already_attached_is_success(self):
        self.mock_org_client.attach_policy.side_effect = ClientError(
            {'Error': {'Code': 'DuplicatePolicyAttachmentException', 'Message': 'attached'}}, 'AttachPolicy'
        )

        assert self.handler.handle(create_account_event()) == '222222222222'

    def test_govcloud_event_waits_for_creation(self):
        self.mock_org_client.describe_create_account_status.side_effect = [
            {'CreateAccountStatus': {'State': 'IN_PROGRESS'}},
            {'CreateAccountStatus': {'State': 'SUCCEEDED', 'AccountId': '444444444444'}},
        ]
        event = {'detail': {
            'eventName': 'CreateGovCloudAccount',
            'responseElements': {'createAccountStatus': {'id': 'car-1'}},
        }}

        assert self.handler.handle(event) == '444444444444'
        self.sleep.assert_called_once_with(5)


class TestLambdaHandler:
    """Test cases for the function entry point."""

    @patch.dict('os.environ', {'SCP_POLICY_NAME': 'Quarantine'})
    @patch('lza_orchestrator.policies.quarantine.AWSClientManager')
    def test_handles_event(self, mock_manager_class):
        mock_org_client = Mock()
        mock_org_client.list_policies.return_value = {
            'Policies': [{'Name': 'Quarantine', 'Id': 'p-quarantine'}]
        }
        mock_manager_class.return_value.get_client.return_value = mock_org_client

        result = lambda_handler(create_account_event(), None)

        assert result == {'accountId': '222222222222'}
