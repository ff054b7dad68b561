"""Unit tests for the prepare stage."""

import pytest
from unittest.mock import Mock

from lza_orchestrator.core.aws_client import AWSClientManager
from lza_orchestrator.core.config import AccountConfig, AcceleratorSettings, MANDATORY_ACCOUNT
from lza_orchestrator.core.results import Failure
from lza_orchestrator.organizations.models import AccountRecord, ProvisioningState
from lza_orchestrator.organizations.moves import AccountMoveOrchestrator, MoveReport
from lza_orchestrator.organizations.provisioning import AccountProvisioner, ProvisioningReport
from lza_orchestrator.organizations.table import ProvisioningTable
from lza_orchestrator.organizations.topology import OrganizationTopology, TopologyError
from lza_orchestrator.pipeline.prepare import PrepareStage


def make_record(name, ou, account_id=None, state=ProvisioningState.SUCCEEDED):
    return AccountRecord(
        name=name, email=f"{name.lower()}@example.com", organizational_unit=ou,
        data_type=MANDATORY_ACCOUNT, state=state, account_id=account_id,
    )


class TestPrepareStage:
    """Test cases for PrepareStage class."""

    def setup_method(self):
        self.accounts = [
            AccountConfig("Audit", "audit@example.com", "Security", MANDATORY_ACCOUNT),
            AccountConfig("Workload", "workload@example.com", "Workloads"),
        ]
        self.records = [
            make_record("Audit", "Security", "333333333333"),
            make_record("Workload", "Workloads", "444444444444"),
        ]
        self.ou_ids = {"Security": "ou-sec", "Workloads": "ou-work"}

        self.table = Mock(spec=ProvisioningTable)
        self.topology = Mock(spec=OrganizationTopology)
        self.topology.create_missing.return_value = self.ou_ids
        self.topology.load_all.return_value = []
        self.topology.list_account_parents.return_value = {}
        self.provisioner = Mock(spec=AccountProvisioner)
        self.provisioner.reconcile.return_value = self.records
        self.provisioner.provision.return_value = ProvisioningReport(records=self.records)
        self.mover = Mock(spec=AccountMoveOrchestrator)
        self.mover.move_accounts.return_value = MoveReport()

    def make_stage(self, settings=None):
        return PrepareStage(
            settings or AcceleratorSettings(), self.accounts, ["Security", "Workloads"],
            self.table, self.topology, self.provisioner, self.mover,
        )

    def test_step_order(self):
        assert self.make_stage().step_order() == [
            'config-table', 'organizational-units', 'account-moves', 'validation', 'create-accounts',
        ]

    def test_run_success(self):
        outcome = self.make_stage().run()

        assert outcome.succeeded
        assert outcome.stage == 'prepare'
        assert outcome.outputs["account_ids"] == {"Audit": "333333333333", "Workload": "444444444444"}
        assert outcome.outputs["ou_ids"] == self.ou_ids
        self.topology.create_missing.assert_called_once_with(["Security", "Workloads"], self.table)
        self.mover.move_accounts.assert_called_once_with(self.records, self.ou_ids, {})
        self.provisioner.provision.assert_called_once_with(
            self.accounts, self.ou_ids, max_polls=None, records=self.records
        )

    def test_unconfigured_units_left_out_of_outputs(self):
        org_client = Mock()
        org_client.list_roots.return_value = {'Roots': [{'Id': 'r-root'}]}
        children = {'r-root': [
            {'Id': ou_id, 'Name': name, 'Arn': f"arn:aws:organizations::111111111111:ou/o-abc/{ou_id}"}
            for ou_id, name in [("ou-sec", "Security"), ("ou-work", "Workloads"), ("ou-sbx", "Sandbox")]
        ]}
        org_client.list_organizational_units_for_parent.side_effect = (
            lambda ParentId, **kwargs: {'OrganizationalUnits': children.get(ParentId, [])}
        )
        org_client.list_accounts_for_parent.return_value = {'Accounts': []}
        aws_client = Mock(spec=AWSClientManager)
        aws_client.get_client.return_value = org_client
        self.topology = OrganizationTopology(aws_client, AcceleratorSettings())

        outcome = self.make_stage().run()

        assert outcome.outputs["ou_ids"] == {"Root": "r-root", "Security": "ou-sec", "Workloads": "ou-work"}
        org_client.create_organizational_unit.assert_not_called()

    def test_move_failures_collected(self):
        self.mover.move_accounts.return_value = MoveReport(
            failures=[Failure('workload@example.com (444444444444)', 'move-account', 'denied')]
        )

        outcome = self.make_stage().run()

        # isolated move failures do not stop account creation
        self.provisioner.provision.assert_called_once()
        assert [f.operation for f in outcome.failures] == ['move-account']

    def test_unit_without_id_fails_validation(self):
        self.topology.create_missing.return_value = {"Security": "ou-sec"}

        outcome = self.make_stage().run()

        assert not outcome.succeeded
        assert outcome.failures[0].entity == 'validation'
        assert 'Workloads' in outcome.failures[0].reason
        self.provisioner.provision.assert_not_called()

    def test_control_tower_pending_under_root(self):
        self.records.append(make_record("Sandbox", "Root", state=ProvisioningState.NOT_REQUESTED))
        self.topology.create_missing.return_value = dict(self.ou_ids, Root="r-root")

        outcome = self.make_stage(AcceleratorSettings(control_tower_enabled=True)).run()

        assert not outcome.succeeded
        assert 'Control Tower' in outcome.failures[0].reason

    def test_topology_error_stops_chain(self):
        self.topology.create_missing.side_effect = TopologyError("Parent organizational unit 'Security' not found")

        outcome = self.make_stage().run()

        assert not outcome.succeeded
        assert outcome.failures[0].entity == 'organizational-units'
        self.mover.move_accounts.assert_not_called()
        self.provisioner.provision.assert_not_called()

    def test_incomplete_provisioning_fails(self):
        pending = make_record("Workload", "Workloads", state=ProvisioningState.CREATING)
        self.provisioner.provision.return_value = ProvisioningReport(records=[self.records[0], pending])

        outcome = self.make_stage().run()

        assert not outcome.succeeded

    def test_tolerated_account_failure(self):
        failed = make_record("Workload", "Workloads", state=ProvisioningState.FAILED)
        self.provisioner.provision.return_value = ProvisioningReport(
            records=[self.records[0], failed],
            failures=[Failure('workload@example.com', 'create-account', 'EMAIL_ALREADY_EXISTS')],
            tolerated_failures=1,
        )

        outcome = self.make_stage().run()

        assert outcome.succeeded
        assert len(outcome.failures) == 1
