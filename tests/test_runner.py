"""Unit tests for pipeline execution."""

import pytest
from unittest.mock import Mock, patch

from lza_orchestrator.core.aws_client import AWSClientManager
from lza_orchestrator.core.config import (
    AccountConfig,
    AcceleratorSettings,
    Configuration,
    MANDATORY_ACCOUNT,
    WORKLOAD_ACCOUNT,
)
from lza_orchestrator.core.results import Failure, StageOutcome
from lza_orchestrator.organizations.models import AccountRecord
from lza_orchestrator.policies.replacements import PolicyValidationError
from lza_orchestrator.policies.scp import ScpEngine, ScpItem, ScpResult
from lza_orchestrator.pipeline.runner import PipelineOrchestrator
from lza_orchestrator.pipeline.stages import Stage


MANAGEMENT = '111111111111'
TEMPLATE = {'Resources': {'Handle': {'Type': 'AWS::CloudFormation::WaitConditionHandle'}}}


def prepare_outcome(succeeded=True, account_ids=None):
    outcome = StageOutcome(stage='prepare', succeeded=succeeded)
    outcome.outputs["account_ids"] = account_ids if account_ids is not None else {
        "Audit": "333333333333", "Workload": "444444444444",
    }
    outcome.outputs["ou_ids"] = {"Security": "ou-sec", "Workloads": "ou-work"}
    if not succeeded:
        outcome.add_failures([Failure('workload@example.com', 'create-account', 'EMAIL_ALREADY_EXISTS')])
    return outcome


class TestPipelineOrchestrator:
    """Test cases for PipelineOrchestrator class."""

    def setup_method(self):
        self.values = {}
        self.config = Mock(spec=Configuration)
        self.config.to_settings.return_value = AcceleratorSettings()
        self.config.get.side_effect = lambda key, default=None: self.values.get(key, default)
        self.config.get_accounts.return_value = [
            AccountConfig("Audit", "audit@example.com", "Security", MANDATORY_ACCOUNT),
            AccountConfig("Workload", "workload@example.com", "Workloads"),
        ]
        self.config.get_organizational_units.return_value = ["Security", "Workloads"]
        self.config.get_policies.return_value = []
        self.config.get_vpcs.return_value = None

        self.mock_aws_client = Mock(spec=AWSClientManager)
        self.mock_aws_client.get_account_id.return_value = MANAGEMENT
        self.synthesize = Mock(return_value=TEMPLATE)
        self.deploy = Mock(return_value=True)

    def make_orchestrator(self):
        orchestrator = PipelineOrchestrator(
            self.config, self.mock_aws_client, execution_id='exec-1',
            synthesize=self.synthesize, deploy=self.deploy, sleep=Mock(),
        )
        orchestrator.scp_engine = Mock(spec=ScpEngine)
        orchestrator.scp_engine.create_and_attach_scps.return_value = ScpResult(
            items=[ScpItem('AcceleratorGuardrails', 'p-guard')]
        )
        return orchestrator

    @patch('lza_orchestrator.pipeline.runner.PrepareStage')
    def test_run_success(self, mock_prepare):
        mock_prepare.return_value.run.return_value = prepare_outcome()
        orchestrator = self.make_orchestrator()

        results = orchestrator.run([Stage.ACCOUNTS, Stage.LOGGING])

        assert results['status'] == 'SUCCESS'
        assert results['execution_id'] == 'exec-1'
        assert results['steps_completed'] == ['prepare', 'accounts']
        assert results['failures'] == []
        assert len(results['units']) == 4
        assert set(results['units'].values()) == {'succeeded'}
        assert results['outputs']['/accelerator/organization/policies/AcceleratorGuardrails/id'] == 'p-guard'
        assert results['outputs']['/accelerator/organization/accounts/Audit/id'] == '333333333333'
        assert self.deploy.call_count == 4
        orchestrator.scp_engine.create_and_attach_scps.assert_called_once()
        self.mock_aws_client.get_client.assert_not_called()

    @patch('lza_orchestrator.pipeline.runner.PrepareStage')
    def test_prepare_failure_stops_run(self, mock_prepare):
        mock_prepare.return_value.run.return_value = prepare_outcome(succeeded=False)
        orchestrator = self.make_orchestrator()

        results = orchestrator.run()

        assert results['status'] == 'FAILED'
        assert results['steps_completed'] == []
        assert results['failures'][0]['operation'] == 'create-account'
        self.synthesize.assert_not_called()
        orchestrator.scp_engine.create_and_attach_scps.assert_not_called()

    @patch('lza_orchestrator.pipeline.runner.PrepareStage')
    def test_missing_audit_account(self, mock_prepare):
        mock_prepare.return_value.run.return_value = prepare_outcome(account_ids={"Workload": "444444444444"})
        orchestrator = self.make_orchestrator()

        results = orchestrator.run()

        assert results['status'] == 'FAILED'
        assert results['failures'][0]['entity'] == 'deployment-plan'
        self.deploy.assert_not_called()

    @patch('lza_orchestrator.pipeline.runner.PrepareStage')
    def test_policy_validation_aborts(self, mock_prepare):
        mock_prepare.return_value.run.return_value = prepare_outcome()
        orchestrator = self.make_orchestrator()
        orchestrator.scp_engine.create_and_attach_scps.side_effect = PolicyValidationError(
            "Target ou-sec would have 21 SERVICE_CONTROL_POLICY policies attached"
        )

        results = orchestrator.run([Stage.ACCOUNTS, Stage.LOGGING])

        assert results['status'] == 'FAILED'
        assert results['failures'][0]['operation'] == 'validate-policies'
        assert set(results['units'].values()) == {'skipped'}
        self.deploy.assert_not_called()

    @patch('lza_orchestrator.pipeline.runner.PrepareStage')
    def test_stack_failure_recorded(self, mock_prepare):
        mock_prepare.return_value.run.return_value = prepare_outcome()
        self.deploy.side_effect = lambda unit, template: unit.account_id != '444444444444'
        orchestrator = self.make_orchestrator()

        results = orchestrator.run([Stage.LOGGING])

        assert results['status'] == 'FAILED'
        assert results['units']['AWSAccelerator-LoggingStack-444444444444-us-east-1'] == 'failed'
        assert results['units']['AWSAccelerator-LoggingStack-333333333333-us-east-1'] == 'succeeded'

    @patch('lza_orchestrator.pipeline.runner.QuarantineRuleInstaller')
    @patch('lza_orchestrator.pipeline.runner.PrepareStage')
    def test_quarantine_rules_installed(self, mock_prepare, mock_installer):
        mock_prepare.return_value.run.return_value = prepare_outcome()
        mock_installer.return_value.install.return_value = ['AWSAccelerator-Quarantine-CreateAccount']
        self.values["quarantine.function_arn"] = 'arn:aws:lambda:us-east-1:111111111111:function:quarantine'
        orchestrator = self.make_orchestrator()

        results = orchestrator.run([Stage.ACCOUNTS])

        assert results['status'] == 'SUCCESS'
        mock_installer.return_value.install.assert_called_once_with(
            'arn:aws:lambda:us-east-1:111111111111:function:quarantine', False
        )

    @patch('lza_orchestrator.pipeline.runner.PrepareStage')
    def test_publish_outputs(self, mock_prepare):
        mock_prepare.return_value.run.return_value = prepare_outcome()
        mock_ssm = Mock()
        self.mock_aws_client.get_client.return_value = mock_ssm
        orchestrator = self.make_orchestrator()

        orchestrator.run([Stage.ACCOUNTS], publish_outputs=True)

        # two accounts, two units and one policy
        assert mock_ssm.put_parameter.call_count == 5

    def test_plan_only(self):
        orchestrator = self.make_orchestrator()
        orchestrator.table = Mock()
        orchestrator.table.list_records.side_effect = lambda data_type: {
            MANDATORY_ACCOUNT: [AccountRecord("Audit", "audit@example.com", "Security",
                                              MANDATORY_ACCOUNT, account_id="333333333333")],
            WORKLOAD_ACCOUNT: [AccountRecord("Workload", "workload@example.com", "Workloads",
                                             WORKLOAD_ACCOUNT)],
        }[data_type]

        stacks = orchestrator.plan_only([Stage.PREPARE, Stage.KEY])

        assert stacks == [
            'AWSAccelerator-PrepareStack-111111111111-us-east-1',
            'AWSAccelerator-KeyStack-111111111111-us-east-1',
            'AWSAccelerator-KeyStack-333333333333-us-east-1',
        ]
        self.deploy.assert_not_called()
