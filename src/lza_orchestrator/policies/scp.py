"""Organization policy deployment.

This module provides the ScpEngine class which materializes policy
templates, validates per-target policy counts, creates or updates
policies and attaches them to organizational units and accounts.

All validation happens before the first mutating call: a ceiling
violation or an unresolvable lookup aborts the run with nothing applied.
"""

import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
import yaml
from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.config import AcceleratorSettings, PolicyConfig
from ..core.partition import EnvironmentPartition, get_global_region
from ..core.results import Failure
from ..core.throttle import throttling_backoff
from .replacements import (
    AccountDirectory,
    NetworkDirectory,
    PolicyValidationError,
    policy_replacements,
)


FULL_AWS_ACCESS_POLICY_ID = "p-FullAWSAccess"
MAX_POLICY_SIZE = 5120
POLICY_TYPE_POLL_ATTEMPTS = 30


class PolicyCountExceededError(PolicyValidationError):
    """Raised when a target would carry more policies than allowed."""
    pass


@dataclass(frozen=True)
class ScpItem:
    name: str
    id: str
    type: str = "SERVICE_CONTROL_POLICY"


@dataclass
class ScpResult:
    """Created policies plus isolated attachment failures."""

    items: List[ScpItem] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def policy_ids(self) -> Dict[str, str]:
        return {item.name: item.id for item in self.items}


class ScpEngine:
    """Manages AWS Organizations policies for the landing zone.

    The engine is configuration driven: each policy names a template on
    disk and the units and accounts it must be attached to. Policies the
    engine created but which the configuration no longer assigns to a
    target are detached from it.
    """

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                 sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        """Initialize the policy engine.

        Args:
            aws_client: AWS client manager instance
            settings: Accelerator runtime settings
            sleep: Wait function used while a policy type is enabling
            logger: Execution-scoped logger
        """
        self.aws_client = aws_client
        self.settings = settings
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self._organizations_client = None

    @property
    def organizations_client(self):
        """Get Organizations client with lazy initialization."""
        if self._organizations_client is None:
            self._organizations_client = self.aws_client.get_client(
                'organizations', get_global_region(self.settings.partition)
            )
        return self._organizations_client

    def _call(self, operation: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        return throttling_backoff(operation, self.settings.retry)

    def load_template(self, policy: PolicyConfig) -> str:
        """Read a policy template from disk as JSON text.

        YAML templates are converted to JSON before substitution.

        Raises:
            PolicyValidationError: When the file cannot be read or parsed
        """
        path = Path(self.settings.policy_root) / policy.policy
        try:
            text = path.read_text(encoding="utf-8")
        except IOError as e:
            raise PolicyValidationError(f"Unable to read policy template {path}: {e}")
        if path.suffix in ('.yaml', '.yml'):
            try:
                return json.dumps(yaml.safe_load(text))
            except yaml.YAMLError as e:
                raise PolicyValidationError(f"Invalid YAML in policy template {path}: {e}")
        return text

    def materialize(self, policy: PolicyConfig, accounts: Optional[AccountDirectory] = None,
                    network: Optional[NetworkDirectory] = None) -> str:
        """Produce the final policy document for one policy.

        Returns:
            Minified JSON document

        Raises:
            PolicyValidationError: When substitution fails or the result is
                not valid JSON or is too large
        """
        content = policy_replacements(
            content=self.load_template(policy),
            accelerator_prefix=self.settings.prefix,
            management_account_access_role=self.settings.management_account_access_role,
            partition=self.settings.partition.arn_name,
            accelerator_name=self.settings.accelerator_name,
            additional_replacements=self.settings.additional_replacements,
            accounts=accounts,
            network=network,
        )
        try:
            document = json.loads(content)
        except ValueError as e:
            raise PolicyValidationError(f"Policy {policy.name} is not valid JSON after substitution: {e}")
        if not isinstance(document, dict) or 'Statement' not in document:
            raise PolicyValidationError(f"Policy {policy.name} has no Statement")

        minified = json.dumps(document, separators=(',', ':'))
        if len(minified) > MAX_POLICY_SIZE:
            raise PolicyValidationError(
                f"Policy {policy.name} is {len(minified)} characters, "
                f"exceeding the {MAX_POLICY_SIZE} character limit"
            )
        return minified

    def validate_policy_counts(self, policies: List[PolicyConfig]) -> Dict[Tuple[str, str, str], int]:
        """Check that no target would exceed its policy type ceiling.

        Args:
            policies: Configured policies

        Returns:
            Count per (policy type, target kind, target name)

        Raises:
            PolicyCountExceededError: Naming the first target over its ceiling
        """
        assigned: Dict[Tuple[str, str, str], List[str]] = defaultdict(list)
        for policy in policies:
            for ou in policy.deployment_targets.organizational_units:
                assigned[(policy.type, 'organizational unit', ou)].append(policy.name)
            for account in policy.deployment_targets.accounts:
                assigned[(policy.type, 'account', account)].append(policy.name)

        for (policy_type, kind, target), names in sorted(assigned.items()):
            ceiling = self.settings.ceiling_for(policy_type)
            if len(names) > ceiling:
                raise PolicyCountExceededError(
                    f"{kind.capitalize()} '{target}' would have {len(names)} {policy_type} "
                    f"policies attached, exceeding the ceiling of {ceiling}: {', '.join(names)}"
                )
        return {key: len(names) for key, names in assigned.items()}

    def _resolve_targets(self, policy: PolicyConfig, ou_ids: Dict[str, str],
                         account_ids: Dict[str, str]) -> List[Tuple[str, str]]:
        """Map a policy's configured targets to (label, target id)."""
        targets = []
        for ou in policy.deployment_targets.organizational_units:
            if ou not in ou_ids:
                raise PolicyValidationError(
                    f"Policy {policy.name} targets unknown organizational unit '{ou}'"
                )
            targets.append((f"ou:{ou}", ou_ids[ou]))
        for account in policy.deployment_targets.accounts:
            if account not in account_ids:
                raise PolicyValidationError(
                    f"Policy {policy.name} targets account '{account}' which has no id"
                )
            targets.append((f"account:{account}", account_ids[account]))
        return targets

    def enable_policy_type(self, policy_type: str = "SERVICE_CONTROL_POLICY") -> None:
        """Enable a policy type on the root and wait until it is enabled.

        Raises:
            PolicyValidationError: When the policy type never becomes enabled
        """
        client = self.organizations_client
        for attempt in range(POLICY_TYPE_POLL_ATTEMPTS):
            root = self._call(lambda: client.list_roots())['Roots'][0]
            status = {p['Type']: p['Status'] for p in root.get('PolicyTypes', [])}.get(policy_type)
            if status == 'ENABLED':
                return
            if status is None and attempt == 0:
                self.logger.info("Enabling policy type %s on %s", policy_type, root['Id'])
                try:
                    self._call(lambda: client.enable_policy_type(
                        RootId=root['Id'], PolicyType=policy_type
                    ))
                except ClientError as e:
                    if e.response['Error']['Code'] != 'PolicyTypeAlreadyEnabledException':
                        raise
            self.sleep(2)
        raise PolicyValidationError(f"Policy type {policy_type} did not become enabled")

    def find_policy_id(self, name: str, policy_type: str = "SERVICE_CONTROL_POLICY") -> Optional[str]:
        """Find an existing policy id by name."""
        client = self.organizations_client
        next_token = None
        while True:
            kwargs = {'Filter': policy_type}
            if next_token:
                kwargs['NextToken'] = next_token
            response = self._call(lambda: client.list_policies(**kwargs))
            for policy in response.get('Policies', []):
                if policy['Name'] == name:
                    return policy['Id']
            next_token = response.get('NextToken')
            if not next_token:
                return None

    def create_or_update_policy(self, policy: PolicyConfig, document: str) -> str:
        """Create the policy or update the existing one with the same name.

        Returns:
            Policy id
        """
        client = self.organizations_client
        policy_id = self.find_policy_id(policy.name, policy.type)
        if policy_id:
            self._call(lambda: client.update_policy(
                PolicyId=policy_id, Content=document, Description=policy.description
            ))
            self.logger.info("Updated policy %s (%s)", policy.name, policy_id)
            return policy_id

        response = self._call(lambda: client.create_policy(
            Content=document,
            Description=policy.description,
            Name=policy.name,
            Type=policy.type,
            Tags=[{'Key': 'Accelerator', 'Value': self.settings.prefix}],
        ))
        policy_id = response['Policy']['PolicySummary']['Id']
        self.logger.info("Created policy %s (%s)", policy.name, policy_id)
        return policy_id

    def attach_policy(self, policy_id: str, target_id: str) -> None:
        client = self.organizations_client
        try:
            self._call(lambda: client.attach_policy(PolicyId=policy_id, TargetId=target_id))
        except ClientError as e:
            if e.response['Error']['Code'] != 'DuplicatePolicyAttachmentException':
                raise

    def detach_policy(self, policy_id: str, target_id: str) -> None:
        client = self.organizations_client
        try:
            self._call(lambda: client.detach_policy(PolicyId=policy_id, TargetId=target_id))
        except ClientError as e:
            if e.response['Error']['Code'] != 'PolicyNotAttachedException':
                raise

    def list_policies_for_target(self, target_id: str,
                                 policy_type: str = "SERVICE_CONTROL_POLICY") -> List[Dict[str, Any]]:
        client = self.organizations_client
        policies: List[Dict[str, Any]] = []
        next_token = None
        while True:
            kwargs = {'TargetId': target_id, 'Filter': policy_type}
            if next_token:
                kwargs['NextToken'] = next_token
            response = self._call(lambda: client.list_policies_for_target(**kwargs))
            policies.extend(response.get('Policies', []))
            next_token = response.get('NextToken')
            if not next_token:
                return policies

    def create_and_attach_scps(
        self,
        policies: List[PolicyConfig],
        ou_ids: Dict[str, str],
        accounts: AccountDirectory,
        network: Optional[NetworkDirectory] = None,
    ) -> ScpResult:
        """Deploy every configured policy to its targets.

        Args:
            policies: Configured policies
            ou_ids: Unit path to id
            accounts: Account directory used for targets and lookups
            network: Network directory used for VPC lookups

        Returns:
            ScpResult with created policies and per-attachment failures

        Raises:
            PolicyValidationError: When validation fails; nothing is applied
        """
        result = ScpResult()
        if self.settings.partition == EnvironmentPartition.CHINA or not self.settings.organizations_enabled:
            self.logger.info("Organization policies are not supported here, skipping")
            result.skipped = True
            return result

        self.validate_policy_counts(policies)
        plan = []
        for policy in policies:
            targets = self._resolve_targets(policy, ou_ids, accounts.account_ids)
            plan.append((policy, self.materialize(policy, accounts, network), targets))

        for policy_type in sorted({p.type for p in policies}):
            self.enable_policy_type(policy_type)

        desired: Dict[Tuple[str, str], Dict[str, str]] = defaultdict(dict)
        allow_list_targets = set()
        for policy, document, targets in plan:
            # Targets count as assigned even when the update below fails
            for label, target_id in targets:
                desired[(policy.type, target_id)][policy.name] = label
            try:
                policy_id = self.create_or_update_policy(policy, document)
            except ClientError as e:
                self.logger.error("Failed to create policy %s: %s", policy.name, e)
                result.failures.append(Failure(policy.name, 'create-policy', str(e)))
                continue
            result.items.append(ScpItem(policy.name, policy_id, policy.type))

            for label, target_id in targets:
                try:
                    self.attach_policy(policy_id, target_id)
                except ClientError as e:
                    self.logger.error("Failed to attach %s to %s: %s", policy.name, label, e)
                    result.failures.append(Failure(f"{policy.name} -> {label}", 'attach-policy', str(e)))
                    continue
                # FullAWSAccess only comes off once the allow-list is in place
                if policy.strategy == 'allow-list':
                    allow_list_targets.add(target_id)

        self._detach_stale(policies, desired, allow_list_targets, result)

        print(f"✅ Deployed {len(result.items)} organization policies")
        return result

    def _detach_stale(self, policies: List[PolicyConfig],
                      desired: Dict[Tuple[str, str], Dict[str, str]],
                      allow_list_targets: set, result: ScpResult) -> None:
        """Detach managed policies no longer assigned to a target."""
        managed = {p.name for p in policies} - {self.settings.quarantine_policy_name}
        for (policy_type, target_id), assigned in desired.items():
            try:
                attached = self.list_policies_for_target(target_id, policy_type)
                for existing in attached:
                    stale = existing['Name'] in managed and existing['Name'] not in assigned
                    full_access = (
                        existing['Id'] == FULL_AWS_ACCESS_POLICY_ID and target_id in allow_list_targets
                    )
                    if stale or full_access:
                        self.detach_policy(existing['Id'], target_id)
                        self.logger.info("Detached %s from %s", existing['Name'], target_id)
            except ClientError as e:
                label = next(iter(assigned.values()))
                result.failures.append(Failure(label, 'detach-policy', str(e)))
