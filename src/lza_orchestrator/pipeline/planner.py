"""Stack deployment planning and execution.

A :class:`DeploymentPlan` is built fresh for every pipeline execution
from configuration and the account ids the prepare stage resolved. Each
unit depends on the previous stage's unit for the same account and
region, and on the gating stages declared in
:mod:`lza_orchestrator.pipeline.stages`. Units run one at a time in
dependency order; a failed unit only causes the units that depend on it
to be skipped, except a role that cannot be assumed, which aborts the run.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from graphlib import TopologicalSorter
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..aspects import ConstructTree, apply_aspects
from ..core.config import AcceleratorSettings
from ..core.credentials import CredentialResolutionError
from ..core.partition import get_global_region
from ..core.results import Failure, StageOutcome
from .stages import STAGE_DEFINITIONS, STAGE_ORDER, Stage, StageScope, get_stack_name


class PlanningError(Exception):
    """Raised when a deployment plan cannot be built."""
    pass


@dataclass(frozen=True, eq=False)
class StackDeploymentUnit:
    """One stack for one stage in one account and region.

    Units are immutable once built; identity is the (stage, account,
    region) key.
    """

    stage: Stage
    account_id: str
    region: str
    stack_name: str
    dependencies: Tuple["StackDeploymentUnit", ...] = ()

    @property
    def key(self) -> Tuple[Stage, str, str]:
        return (self.stage, self.account_id, self.region)


class UnitStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DeploymentPlan:
    units: List[StackDeploymentUnit] = field(default_factory=list)

    def for_stage(self, stage: Stage) -> List[StackDeploymentUnit]:
        return [u for u in self.units if u.stage == stage]

    def ordered(self) -> List[StackDeploymentUnit]:
        """Units in a dependency-respecting order, earlier stages first."""
        sorter = TopologicalSorter({u: u.dependencies for u in self.units})
        sorter.prepare()
        rank = {s: i for i, s in enumerate(STAGE_ORDER)}
        ordered: List[StackDeploymentUnit] = []
        while sorter.is_active():
            ready = sorted(
                sorter.get_ready(),
                key=lambda u: (rank[u.stage], u.account_id, u.region),
            )
            ordered.extend(ready)
            sorter.done(*ready)
        return ordered


class DeploymentPlanner:
    """Builds the stage x account x region deployment graph."""

    def __init__(self, settings: AcceleratorSettings) -> None:
        self.settings = settings

    def _targets(self, scope: StageScope, management_account_id: str, audit_account_id: str,
                 account_ids: List[str]) -> List[Tuple[str, str]]:
        regions = list(self.settings.enabled_regions)
        if scope == StageScope.MANAGEMENT_HOME:
            return [(management_account_id, self.settings.home_region)]
        if scope == StageScope.MANAGEMENT_GLOBAL:
            return [(management_account_id, get_global_region(self.settings.partition))]
        if scope == StageScope.MANAGEMENT_ALL_REGIONS:
            return [(management_account_id, r) for r in regions]
        if scope == StageScope.AUDIT_ALL_REGIONS:
            return [(audit_account_id, r) for r in regions]
        return [(a, r) for a in account_ids for r in regions]

    def build(self, management_account_id: str, audit_account_id: str,
              account_ids: Iterable[str], stages: Optional[List[Stage]] = None) -> DeploymentPlan:
        """Build the plan for the requested stages.

        Args:
            management_account_id: Organization management account id
            audit_account_id: Security audit account id
            account_ids: Every account receiving ``all``-scoped stacks
            stages: Stages to include; all stages when omitted

        Returns:
            DeploymentPlan with dependency edges resolved

        Raises:
            PlanningError: When an account id is missing
        """
        if not management_account_id or not audit_account_id:
            raise PlanningError("Management and audit account ids are required to plan deployment")
        accounts = list(dict.fromkeys([management_account_id] + list(account_ids)))
        selected = [s for s in STAGE_ORDER if stages is None or s in stages]

        plan = DeploymentPlan()
        latest: Dict[Tuple[str, str], StackDeploymentUnit] = {}
        gates_all: List[StackDeploymentUnit] = []
        gates_region: Dict[str, List[StackDeploymentUnit]] = {}

        for stage in selected:
            definition = STAGE_DEFINITIONS[stage]
            built = []
            for account_id, region in self._targets(
                definition.scope, management_account_id, audit_account_id, accounts
            ):
                deps: List[StackDeploymentUnit] = []
                previous = latest.get((account_id, region))
                if previous is not None:
                    deps.append(previous)
                for gate in gates_all + gates_region.get(region, []):
                    if gate not in deps:
                        deps.append(gate)
                unit = StackDeploymentUnit(
                    stage=stage,
                    account_id=account_id,
                    region=region,
                    stack_name=get_stack_name(self.settings.prefix, stage, account_id, region),
                    dependencies=tuple(deps),
                )
                built.append(unit)

            for unit in built:
                latest[(unit.account_id, unit.region)] = unit
                if definition.gate == "all":
                    gates_all.append(unit)
                elif definition.gate == "region":
                    gates_region.setdefault(unit.region, []).append(unit)
            plan.units.extend(built)

        return plan


Synthesizer = Callable[[StackDeploymentUnit], Dict[str, Any]]
Deployer = Callable[[StackDeploymentUnit, Dict[str, Any]], bool]
StageHook = Callable[[], StageOutcome]


@dataclass
class ExecutionResult:
    statuses: Dict[Tuple[Stage, str, str], UnitStatus] = field(default_factory=dict)
    failures: List[Failure] = field(default_factory=list)
    stage_outcomes: List[StageOutcome] = field(default_factory=list)
    aborted_at: Optional[Stage] = None

    @property
    def succeeded(self) -> bool:
        return not self.failures and self.aborted_at is None


class PlanExecutor:
    """Runs a plan: stage hooks, then synthesis, aspects and deployment.

    Args:
        settings: Accelerator runtime settings (partition for aspects)
        synthesize: Produces a unit's template
        deploy: Deploys a unit's template, returning success
        hooks: In-process work run before a stage's first stack
        logger: Execution-scoped logger
    """

    def __init__(self, settings: AcceleratorSettings, synthesize: Synthesizer, deploy: Deployer,
                 hooks: Optional[Dict[Stage, StageHook]] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self.settings = settings
        self.synthesize = synthesize
        self.deploy = deploy
        self.hooks = hooks or {}
        self.logger = logger or logging.getLogger(__name__)

    def _run_hook(self, stage: Stage, result: ExecutionResult) -> bool:
        hook = self.hooks.get(stage)
        if hook is None:
            return True
        outcome = hook()
        result.stage_outcomes.append(outcome)
        result.failures.extend(outcome.failures)
        if not outcome.succeeded:
            self.logger.error("Stage %s failed, aborting remaining stages", stage.value)
            result.aborted_at = stage
        return outcome.succeeded

    def _deploy_unit(self, unit: StackDeploymentUnit) -> Optional[str]:
        """Deploy one unit; returns an error message on failure."""
        try:
            tree = ConstructTree.from_template(unit.stack_name, self.synthesize(unit))
            apply_aspects(tree, self.settings, self.logger)
            if self.deploy(unit, tree.to_template()):
                return None
            return "deployment reported failure"
        except CredentialResolutionError:
            raise
        except Exception as e:
            # One unit's failure must not stop independent units
            self.logger.exception("Stack %s raised during deployment", unit.stack_name)
            return str(e)

    def execute(self, plan: DeploymentPlan) -> ExecutionResult:
        """Deploy every unit in dependency order.

        Returns:
            ExecutionResult with per-unit statuses and failures
        """
        result = ExecutionResult()
        stages_started = set()

        for unit in plan.ordered():
            if unit.stage not in stages_started:
                stages_started.add(unit.stage)
                if not self._run_hook(unit.stage, result):
                    break

            blocked = [d for d in unit.dependencies if result.statuses.get(d.key) != UnitStatus.SUCCEEDED]
            if blocked:
                result.statuses[unit.key] = UnitStatus.SKIPPED
                self.logger.warning("Skipping %s: dependency %s did not succeed",
                                    unit.stack_name, blocked[0].stack_name)
                continue

            self.logger.info("Deploying %s", unit.stack_name)
            try:
                error = self._deploy_unit(unit)
            except CredentialResolutionError as e:
                # An unassumable role halts the whole execution
                result.statuses[unit.key] = UnitStatus.FAILED
                result.failures.append(Failure(unit.stack_name, 'assume-role', str(e)))
                result.aborted_at = unit.stage
                self.logger.error("Unable to assume role for %s, aborting: %s", unit.stack_name, e)
                break
            if error is None:
                result.statuses[unit.key] = UnitStatus.SUCCEEDED
            else:
                result.statuses[unit.key] = UnitStatus.FAILED
                result.failures.append(Failure(unit.stack_name, 'deploy-stack', error))
                self.logger.error("Stack %s failed: %s", unit.stack_name, error)

        if result.aborted_at is not None:
            for unit in plan.units:
                result.statuses.setdefault(unit.key, UnitStatus.SKIPPED)
        return result
