"""Resource transformation rules keyed by partition and resource type.

Each rule is a pure function ``(resource, settings) -> resource | None``.
A rule never mutates its input; returning None prunes the resource.
"""

import copy
import json
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Mapping, Optional, Tuple

from ..core.config import AcceleratorSettings
from ..core.partition import EnvironmentPartition, get_saml_audience
from .graph import Resource


Transform = Callable[[Resource, AcceleratorSettings], Optional[Resource]]

LAMBDA_DEFAULT_MEMORY = 128
STANDARD_SIGNIN_HOST = "signin.aws.amazon.com"

LOG_GROUP = "AWS::Logs::LogGroup"
FLOW_LOG = "AWS::EC2::FlowLog"
BUCKET = "AWS::S3::Bucket"
TRAIL = "AWS::CloudTrail::Trail"
VPC_ENDPOINT = "AWS::EC2::VPCEndpoint"
IAM_ROLE = "AWS::IAM::Role"
IAM_POLICY = "AWS::IAM::Policy"
IAM_MANAGED_POLICY = "AWS::IAM::ManagedPolicy"
IAM_INSTANCE_PROFILE = "AWS::IAM::InstanceProfile"
SERVICE_LINKED_ROLE = "AWS::IAM::ServiceLinkedRole"
LAMBDA_FUNCTION = "AWS::Lambda::Function"
EC2_INSTANCE = "AWS::EC2::Instance"


@dataclass(frozen=True)
class PartitionRules:
    """The rule set installed for one partition."""

    partition: EnvironmentPartition
    rules: Mapping[str, Tuple[Transform, ...]] = field(default_factory=dict)

    def for_type(self, resource_type: str) -> Tuple[Transform, ...]:
        return tuple(self.rules.get(resource_type, ()))


def delete_properties(*names: str) -> Transform:
    """Rule removing the named top-level properties."""
    def transform(resource: Resource, settings: AcceleratorSettings) -> Resource:
        properties = {k: v for k, v in resource.properties.items() if k not in names}
        return replace(resource, properties=properties)
    transform.__name__ = f"delete_{'_'.join(names)}"
    return transform


def rewrite_service_name(old: str, new: str) -> Transform:
    """Rule rewriting a substring of a VPC endpoint service name."""
    def transform(resource: Resource, settings: AcceleratorSettings) -> Resource:
        service_name = resource.properties.get("ServiceName")
        if not isinstance(service_name, str) or old not in service_name:
            return resource
        properties = dict(resource.properties)
        properties["ServiceName"] = service_name.replace(old, new)
        return replace(resource, properties=properties)
    return transform


def rewrite_saml_audience(resource: Resource, settings: AcceleratorSettings) -> Resource:
    """Point a SAML federation trust at the partition's sign-in endpoint."""
    document = resource.properties.get("AssumeRolePolicyDocument")
    if not document or STANDARD_SIGNIN_HOST not in json.dumps(document):
        return resource
    properties = copy.deepcopy(resource.properties)
    statements = properties["AssumeRolePolicyDocument"].setdefault("Statement", [{}])
    if not statements:
        statements.append({})
    condition = statements[0].setdefault("Condition", {})
    condition.setdefault("StringEquals", {})["SAML:aud"] = get_saml_audience(settings.partition)
    return replace(resource, properties=properties)


def enforce_lambda_memory_floor(resource: Resource, settings: AcceleratorSettings) -> Resource:
    """Raise function memory to the configured floor.

    Only a missing or literal integer size is raised; references and
    strings are left for CloudFormation to resolve.
    """
    declared = resource.properties.get("MemorySize", LAMBDA_DEFAULT_MEMORY)
    if isinstance(declared, bool) or not isinstance(declared, int):
        return resource
    if declared >= settings.lambda_memory_floor:
        return resource
    properties = dict(resource.properties)
    properties["MemorySize"] = settings.lambda_memory_floor
    return replace(resource, properties=properties)


def set_solution_id(resource: Resource, settings: AcceleratorSettings) -> Resource:
    """Tag every function's environment with the solution id."""
    environment = resource.properties.get("Environment", {})
    variables = environment.get("Variables", {}) if isinstance(environment, dict) else None
    if not isinstance(variables, dict):
        return resource
    if variables.get("SOLUTION_ID") == settings.solution_id:
        return resource
    properties = copy.deepcopy(resource.properties)
    properties.setdefault("Environment", {}).setdefault("Variables", {})["SOLUTION_ID"] = settings.solution_id
    return replace(resource, properties=properties)


def retain_service_linked_role(resource: Resource, settings: AcceleratorSettings) -> Resource:
    return replace(resource, deletion_policy="Retain", update_replace_policy="Retain")


def prune(resource: Resource, settings: AcceleratorSettings) -> None:
    return None


def _existing_role_arn(settings: AcceleratorSettings, key: str, default_suffix: str) -> Dict[str, str]:
    name = settings.existing_roles.get(key, f"{settings.prefix}-{default_suffix}")
    return {"Fn::Sub": f"arn:${{AWS::Partition}}:iam::${{AWS::AccountId}}:role/{name}"}


def use_existing_lambda_role(resource: Resource, settings: AcceleratorSettings) -> Resource:
    properties = dict(resource.properties)
    properties["Role"] = _existing_role_arn(settings, "lambda", "LambdaRole")
    return replace(resource, properties=properties)


def use_existing_cloudtrail_role(resource: Resource, settings: AcceleratorSettings) -> Resource:
    if "CloudWatchLogsRoleArn" not in resource.properties:
        return resource
    properties = dict(resource.properties)
    properties["CloudWatchLogsRoleArn"] = _existing_role_arn(settings, "cloudtrail", "CloudTrailRole")
    return replace(resource, properties=properties)


def use_existing_instance_profile(resource: Resource, settings: AcceleratorSettings) -> Resource:
    if "IamInstanceProfile" not in resource.properties:
        return resource
    properties = dict(resource.properties)
    properties["IamInstanceProfile"] = settings.existing_roles.get(
        "instance_profile", f"{settings.prefix}-InstanceProfile"
    )
    return replace(resource, properties=properties)


def _iso_rules(partition: EnvironmentPartition, service_prefix: str) -> PartitionRules:
    return PartitionRules(partition, {
        FLOW_LOG: (delete_properties("LogFormat", "Tags", "MaxAggregationInterval"),),
        LOG_GROUP: (delete_properties("KmsKeyId", "Tags"),),
        BUCKET: (delete_properties("PublicAccessBlockConfiguration", "OwnershipControls"),),
        TRAIL: (delete_properties("InsightSelectors", "IsOrganizationTrail"),),
        VPC_ENDPOINT: (rewrite_service_name("com.amazonaws.us", service_prefix),),
        IAM_ROLE: (rewrite_saml_audience,),
    })


PARTITION_RULES: Dict[EnvironmentPartition, PartitionRules] = {
    EnvironmentPartition.STANDARD: PartitionRules(EnvironmentPartition.STANDARD),
    EnvironmentPartition.GOVCLOUD: PartitionRules(EnvironmentPartition.GOVCLOUD, {
        LOG_GROUP: (delete_properties("KmsKeyId", "Tags"),),
        IAM_ROLE: (rewrite_saml_audience,),
    }),
    EnvironmentPartition.ISO: _iso_rules(EnvironmentPartition.ISO, "gov.ic.c2s.us"),
    EnvironmentPartition.ISO_B: _iso_rules(EnvironmentPartition.ISO_B, "gov.sgov.sc2s.us"),
    EnvironmentPartition.ISO_E: PartitionRules(EnvironmentPartition.ISO_E),
    EnvironmentPartition.ISO_F: PartitionRules(EnvironmentPartition.ISO_F),
    EnvironmentPartition.CHINA: PartitionRules(EnvironmentPartition.CHINA, {
        LOG_GROUP: (delete_properties("Tags"),),
        TRAIL: (delete_properties("IsOrganizationTrail"),),
        IAM_ROLE: (rewrite_saml_audience,),
    }),
}

GLOBAL_RULES: Mapping[str, Tuple[Transform, ...]] = {
    LAMBDA_FUNCTION: (enforce_lambda_memory_floor, set_solution_id),
    SERVICE_LINKED_ROLE: (retain_service_linked_role,),
}

EXISTING_ROLE_RULES: Mapping[str, Tuple[Transform, ...]] = {
    IAM_ROLE: (prune,),
    IAM_POLICY: (prune,),
    IAM_MANAGED_POLICY: (prune,),
    IAM_INSTANCE_PROFILE: (prune,),
    LAMBDA_FUNCTION: (use_existing_lambda_role,),
    TRAIL: (use_existing_cloudtrail_role,),
    EC2_INSTANCE: (use_existing_instance_profile,),
}


def rules_for(resource_type: str, settings: AcceleratorSettings) -> Tuple[Transform, ...]:
    """Every rule that applies to a resource type under the given settings."""
    rules = PARTITION_RULES[settings.partition].for_type(resource_type)
    rules += tuple(GLOBAL_RULES.get(resource_type, ()))
    if settings.use_existing_roles:
        rules += tuple(EXISTING_ROLE_RULES.get(resource_type, ()))
    return rules
