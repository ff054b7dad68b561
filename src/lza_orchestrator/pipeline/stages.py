"""Pipeline stages, their fixed order and where their stacks deploy."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List


class Stage(Enum):
    PREPARE = "prepare"
    ACCOUNTS = "accounts"
    KEY = "key"
    LOGGING = "logging"
    ORGANIZATIONS = "organizations"
    SECURITY_AUDIT = "security-audit"
    SECURITY = "security"
    SECURITY_RESOURCES = "security-resources"
    OPERATIONS = "operations"
    NETWORK_PREP = "network-prep"
    NETWORK_VPC = "network-vpc"
    NETWORK_ASSOCIATIONS = "network-associations"
    CUSTOMIZATIONS = "customizations"


class StageScope(Enum):
    """Which (account, region) pairs receive a stage's stack."""

    MANAGEMENT_HOME = "management-home"
    MANAGEMENT_GLOBAL = "management-global"
    MANAGEMENT_ALL_REGIONS = "management-all-regions"
    AUDIT_ALL_REGIONS = "audit-all-regions"
    ALL = "all"


@dataclass(frozen=True)
class StageDefinition:
    """Static description of a stage.

    Attributes:
        stack_name: Stack name stem (``PrepareStack``)
        scope: Deployment targets
        gate: Later stacks wait for this stage's stacks. ``all`` gates
            every later stack, ``region`` only those in the same region.
    """

    stack_name: str
    scope: StageScope
    gate: str = ""


STAGE_ORDER: List[Stage] = list(Stage)

STAGE_DEFINITIONS: Dict[Stage, StageDefinition] = {
    Stage.PREPARE: StageDefinition("PrepareStack", StageScope.MANAGEMENT_HOME, gate="all"),
    Stage.ACCOUNTS: StageDefinition("AccountsStack", StageScope.MANAGEMENT_GLOBAL, gate="all"),
    Stage.KEY: StageDefinition("KeyStack", StageScope.ALL),
    Stage.LOGGING: StageDefinition("LoggingStack", StageScope.ALL),
    Stage.ORGANIZATIONS: StageDefinition(
        "OrganizationsStack", StageScope.MANAGEMENT_ALL_REGIONS, gate="region"
    ),
    Stage.SECURITY_AUDIT: StageDefinition(
        "SecurityAuditStack", StageScope.AUDIT_ALL_REGIONS, gate="region"
    ),
    Stage.SECURITY: StageDefinition("SecurityStack", StageScope.ALL),
    Stage.SECURITY_RESOURCES: StageDefinition("SecurityResourcesStack", StageScope.ALL),
    Stage.OPERATIONS: StageDefinition("OperationsStack", StageScope.ALL),
    Stage.NETWORK_PREP: StageDefinition("NetworkPrepStack", StageScope.ALL),
    Stage.NETWORK_VPC: StageDefinition("NetworkVpcStack", StageScope.ALL),
    Stage.NETWORK_ASSOCIATIONS: StageDefinition("NetworkAssociationsStack", StageScope.ALL),
    Stage.CUSTOMIZATIONS: StageDefinition("CustomizationsStack", StageScope.ALL),
}


def get_stack_name(prefix: str, stage: Stage, account_id: str, region: str) -> str:
    return f"{prefix}-{STAGE_DEFINITIONS[stage].stack_name}-{account_id}-{region}"


def parse_stages(names: List[str]) -> List[Stage]:
    """Resolve stage names, returning them in pipeline order.

    Raises:
        ValueError: When a name is not a stage
    """
    requested = set()
    for name in names:
        try:
            requested.add(Stage(name))
        except ValueError:
            raise ValueError(
                f"Unknown stage '{name}'. Valid stages: {[s.value for s in STAGE_ORDER]}"
            )
    return [stage for stage in STAGE_ORDER if stage in requested]
