"""The prepare stage construct chain.

Steps and their dependency edges::

    config-table -> organizational-units -> account-moves -> validation
        -> create-accounts

Each step runs only after the step it depends on completed. Isolated
failures (one account move, one account creation) are collected; a
validation failure or an account failure count above the tolerance
fails the stage.
"""

import logging
from dataclasses import dataclass, field
from graphlib import TopologicalSorter
from typing import Callable, Dict, List, Optional

from ..core.config import AccountConfig, AcceleratorSettings
from ..core.results import Failure, StageOutcome
from ..organizations.models import AccountRecord
from ..organizations.moves import AccountMoveOrchestrator
from ..organizations.provisioning import (
    AccountProvisioner,
    AccountProvisioningError,
    ProvisioningReport,
)
from ..organizations.table import ProvisioningTable, ProvisioningTableError
from ..organizations.topology import OrganizationTopology, TopologyError
from .stages import Stage


class PrepareError(Exception):
    """Raised when the prepare stage cannot continue."""
    pass


@dataclass
class PrepareContext:
    """State handed from one prepare step to the next."""

    records: List[AccountRecord] = field(default_factory=list)
    ou_ids: Dict[str, str] = field(default_factory=dict)
    provisioning: Optional[ProvisioningReport] = None
    failures: List[Failure] = field(default_factory=list)


class PrepareStage:
    """Runs the prepare construct chain in dependency order."""

    STEPS: Dict[str, List[str]] = {
        'config-table': [],
        'organizational-units': ['config-table'],
        'account-moves': ['organizational-units'],
        'validation': ['account-moves'],
        'create-accounts': ['validation'],
    }

    def __init__(self, settings: AcceleratorSettings, accounts: List[AccountConfig],
                 organizational_units: List[str], table: ProvisioningTable,
                 topology: OrganizationTopology, provisioner: AccountProvisioner,
                 mover: AccountMoveOrchestrator, max_polls: Optional[int] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self.settings = settings
        self.accounts = accounts
        self.organizational_units = organizational_units
        self.table = table
        self.topology = topology
        self.provisioner = provisioner
        self.mover = mover
        self.max_polls = max_polls
        self.logger = logger or logging.getLogger(__name__)

    def step_order(self) -> List[str]:
        return list(TopologicalSorter(self.STEPS).static_order())

    def run(self) -> StageOutcome:
        """Execute every step.

        Returns:
            StageOutcome with resolved account and unit ids as outputs
        """
        context = PrepareContext()
        outcome = StageOutcome(stage=Stage.PREPARE.value)
        handlers: Dict[str, Callable[[PrepareContext], None]] = {
            'config-table': self._load_config_table,
            'organizational-units': self._create_organizational_units,
            'account-moves': self._move_accounts,
            'validation': self._validate,
            'create-accounts': self._create_accounts,
        }

        for step in self.step_order():
            self.logger.info("Prepare step: %s", step)
            try:
                handlers[step](context)
            except (PrepareError, TopologyError, ProvisioningTableError, AccountProvisioningError) as e:
                self.logger.error("Prepare step %s failed: %s", step, e)
                context.failures.append(Failure(step, 'prepare', str(e)))
                outcome.succeeded = False
                break

        outcome.add_failures(context.failures)
        if context.provisioning is not None and not context.provisioning.succeeded:
            outcome.succeeded = False
        outcome.outputs["account_ids"] = {r.name: r.account_id for r in context.records if r.account_id}
        outcome.outputs["ou_ids"] = context.ou_ids
        return outcome

    def _load_config_table(self, context: PrepareContext) -> None:
        context.records = self.provisioner.reconcile(self.accounts)

    def _create_organizational_units(self, context: PrepareContext) -> None:
        context.ou_ids = self.topology.create_missing(self.organizational_units, self.table)

    def _move_accounts(self, context: PrepareContext) -> None:
        parents = self.topology.list_account_parents(self.topology.load_all())
        report = self.mover.move_accounts(context.records, context.ou_ids, parents)
        context.failures.extend(report.failures)

    def _validate(self, context: PrepareContext) -> None:
        missing = sorted({
            r.organizational_unit for r in context.records
            if r.organizational_unit not in context.ou_ids
        })
        if missing:
            raise PrepareError(f"Organizational units without ids: {', '.join(missing)}")
        pending_under_root = [
            r for r in context.records if r.account_id is None and r.organizational_unit == "Root"
        ]
        if self.settings.control_tower_enabled and pending_under_root:
            raise PrepareError("Control Tower cannot create accounts directly under the root")

    def _create_accounts(self, context: PrepareContext) -> None:
        context.provisioning = self.provisioner.provision(
            self.accounts, context.ou_ids, max_polls=self.max_polls, records=context.records
        )
        context.failures.extend(context.provisioning.failures)
