"""Pipeline execution orchestration.

This module provides the PipelineOrchestrator class which runs one
pipeline execution end to end: the prepare chain, organization policy
deployment in the accounts stage, then every planned stack in
dependency order.
"""

import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..core.aws_client import AWSClientManager
from ..core.config import MANDATORY_ACCOUNT, WORKLOAD_ACCOUNT, Configuration
from ..core.log import execution_logger
from ..core.results import Failure, StageOutcome
from ..organizations.moves import AccountMoveOrchestrator
from ..organizations.provisioning import AccountProvisioner
from ..organizations.table import GovCloudMappingTable, ProvisioningTable
from ..organizations.topology import OrganizationTopology
from ..policies.replacements import AccountDirectory, NetworkDirectory, PolicyValidationError
from ..policies.quarantine import QuarantineRuleInstaller
from ..policies.scp import ScpEngine, ScpResult
from .deployer import StackDeployer, TemplateSynthesizer
from .outputs import OutputParameters
from .planner import (
    Deployer,
    DeploymentPlan,
    DeploymentPlanner,
    PlanExecutor,
    PlanningError,
    Synthesizer,
)
from .prepare import PrepareStage
from .stages import STAGE_ORDER, Stage


class PipelineOrchestrator:
    """Runs a complete pipeline execution.

    Every collaborator is built fresh per execution from the loaded
    configuration so no state survives between runs.
    """

    def __init__(self, config: Configuration, aws_client: AWSClientManager,
                 execution_id: Optional[str] = None,
                 synthesize: Optional[Synthesizer] = None,
                 deploy: Optional[Deployer] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        """Initialize the pipeline orchestrator.

        Args:
            config: Loaded configuration
            aws_client: AWS client manager for the management account
            execution_id: Identifier used to tag log lines
            synthesize: Template source; templates are read from
                ``accelerator.template_dir`` when omitted
            deploy: Stack deployer; CloudFormation when omitted
            sleep: Wait function handed to polling components
        """
        self.config = config
        self.aws_client = aws_client
        self.execution_id = execution_id or uuid.uuid4().hex[:12]
        self.settings = config.to_settings()
        self.logger = execution_logger(self.execution_id)

        self.accounts = config.get_accounts()
        self.organizational_units = config.get_organizational_units()
        self.policies = config.get_policies()
        self.vpcs = config.get_vpcs()

        self.table = ProvisioningTable(
            aws_client, self.settings.provisioning_table, self.settings.home_region,
            self.settings.retry, self.logger,
        )
        mapping_table = None
        if self.settings.enable_govcloud:
            mapping_table = GovCloudMappingTable(
                aws_client, self.settings.govcloud_mapping_table, self.settings.home_region,
                self.settings.retry, self.logger,
            )
        self.topology = OrganizationTopology(aws_client, self.settings, self.logger)
        self.provisioner = AccountProvisioner(
            aws_client, self.settings, self.table, self.topology, mapping_table, sleep, self.logger
        )
        self.mover = AccountMoveOrchestrator(aws_client, self.settings, sleep, self.logger)
        self.scp_engine = ScpEngine(aws_client, self.settings, sleep, self.logger)

        self.synthesize = synthesize or TemplateSynthesizer(
            config.get("accelerator.template_dir", "cdk.out")
        )
        self.deploy = deploy or StackDeployer(aws_client, self.settings, sleep=sleep, logger=self.logger)

        self.account_ids: Dict[str, str] = {}
        self.ou_ids: Dict[str, str] = {}
        self.scp_result: Optional[ScpResult] = None

    def _deploy_policies(self) -> StageOutcome:
        """Accounts stage work: organization policies."""
        outcome = StageOutcome(stage=Stage.ACCOUNTS.value)
        directory = AccountDirectory(self.accounts, self.account_ids)
        network = NetworkDirectory(self.vpcs, directory) if self.vpcs is not None else None
        try:
            self.scp_result = self.scp_engine.create_and_attach_scps(
                self.policies, self.ou_ids, directory, network
            )
        except PolicyValidationError as e:
            self.logger.error("Policy validation failed: %s", e)
            outcome.succeeded = False
            outcome.add_failures([Failure('organization-policies', 'validate-policies', str(e))])
            return outcome
        outcome.add_failures(self.scp_result.failures)
        outcome.outputs["policy_ids"] = self.scp_result.policy_ids()

        function_arn = self.config.get("quarantine.function_arn")
        if function_arn:
            outcome.outputs["quarantine_rules"] = QuarantineRuleInstaller(
                self.aws_client, self.settings, self.logger
            ).install(function_arn, self.settings.enable_govcloud)
        return outcome

    def build_plan(self, stages: Optional[List[Stage]] = None) -> DeploymentPlan:
        """Build the deployment plan from the account ids prepare resolved.

        Raises:
            PlanningError: When the audit account has no id yet
        """
        audit_name = self.config.get("accelerator.audit_account_name", "Audit")
        audit_account_id = self.account_ids.get(audit_name)
        if audit_account_id is None:
            raise PlanningError(f"Audit account '{audit_name}' has no account id")
        return DeploymentPlanner(self.settings).build(
            self.aws_client.get_account_id(), audit_account_id,
            self.account_ids.values(), stages,
        )

    def run(self, stages: Optional[List[Stage]] = None, max_polls: Optional[int] = None,
            publish_outputs: bool = False) -> Dict[str, Any]:
        """Run one pipeline execution.

        Args:
            stages: Stages whose stacks deploy; every stage when omitted
            max_polls: Poll budget for account creation
            publish_outputs: Write output parameters to SSM

        Returns:
            Dictionary with status, completed steps, failures and outputs
        """
        results: Dict[str, Any] = {
            'execution_id': self.execution_id,
            'status': 'FAILED',
            'steps_completed': [],
            'failures': [],
            'outputs': {},
            'units': {},
        }
        failures: List[Failure] = []

        print(f"🚀 Starting pipeline execution {self.execution_id}...")

        print("\n📋 Prepare: organizational units and accounts...")
        prepare = PrepareStage(
            self.settings, self.accounts, self.organizational_units, self.table,
            self.topology, self.provisioner, self.mover, max_polls, self.logger,
        ).run()
        failures.extend(prepare.failures)
        self.account_ids = prepare.outputs.get("account_ids", {})
        self.ou_ids = prepare.outputs.get("ou_ids", {})
        if not prepare.succeeded:
            print("❌ Prepare stage failed")
            results['failures'] = [f.to_dict() for f in failures]
            return results
        results['steps_completed'].append(Stage.PREPARE.value)
        print("✅ Prepare stage completed")

        try:
            plan = self.build_plan(stages)
        except PlanningError as e:
            self.logger.error("Planning failed: %s", e)
            failures.append(Failure('deployment-plan', 'plan', str(e)))
            results['failures'] = [f.to_dict() for f in failures]
            return results

        print(f"\n🏗️  Deploying {len(plan.units)} stack(s)...")
        for stage in STAGE_ORDER:
            units = plan.for_stage(stage)
            if units:
                self.logger.info("Stage %s: %d stack(s)", stage.value, len(units))
        executor = PlanExecutor(
            self.settings, self.synthesize, self.deploy,
            hooks={Stage.ACCOUNTS: self._deploy_policies}, logger=self.logger,
        )
        execution = executor.execute(plan)
        failures.extend(execution.failures)
        for outcome in execution.stage_outcomes:
            if outcome.succeeded:
                results['steps_completed'].append(outcome.stage)

        outputs = OutputParameters()
        outputs.add_accounts(self.account_ids)
        outputs.add_organizational_units(self.ou_ids)
        if self.scp_result is not None:
            outputs.add_policies(self.scp_result.policy_ids())
        if publish_outputs:
            outputs.publish(self.aws_client, self.settings, self.logger)
        results['outputs'] = outputs.values

        results['units'] = {
            unit.stack_name: execution.statuses[unit.key].value for unit in plan.units
        }
        results['failures'] = [f.to_dict() for f in failures]
        if not failures and execution.succeeded:
            results['status'] = 'SUCCESS'
            print("\n🎉 Pipeline execution completed successfully")
        else:
            print(f"\n❌ Pipeline execution finished with {len(failures)} failure(s)")
        return results

    def plan_only(self, stages: Optional[List[Stage]] = None) -> List[str]:
        """Resolve ids from existing records and list the stacks a run would deploy.

        Nothing is created or moved.
        """
        records = (
            self.table.list_records(MANDATORY_ACCOUNT) + self.table.list_records(WORKLOAD_ACCOUNT)
        )
        self.account_ids = {r.name: r.account_id for r in records if r.account_id}
        return [unit.stack_name for unit in self.build_plan(stages).ordered()]
