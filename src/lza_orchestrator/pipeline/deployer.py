"""CloudFormation stack deployment for planned units.

This module provides the StackDeployer used by the plan executor. It
assumes the management access role in the unit's account, creates or
updates the stack and waits for it to settle. A stack left in
ROLLBACK_COMPLETE by a failed first create is deleted and created again.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.config import AcceleratorSettings
from ..core.credentials import CredentialResolver
from ..core.throttle import throttling_backoff
from .planner import StackDeploymentUnit
from .stages import STAGE_DEFINITIONS


class StackDeploymentError(Exception):
    """Raised when a stack cannot be deployed."""
    pass


class TemplateSynthesizer:
    """Loads a stage's template from a directory of synthesized output.

    Templates are looked up as ``<StageStackName>.json``; a stage without
    a template deploys an empty placeholder stack.
    """

    def __init__(self, template_dir: str) -> None:
        self.template_dir = Path(template_dir)

    def __call__(self, unit: StackDeploymentUnit) -> Dict[str, Any]:
        path = self.template_dir / f"{STAGE_DEFINITIONS[unit.stage].stack_name}.json"
        if not path.exists():
            return {
                "Resources": {
                    "Placeholder": {"Type": "AWS::CloudFormation::WaitConditionHandle"}
                }
            }
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)


class StackDeployer:
    """Creates or updates one CloudFormation stack per unit."""

    POLLING_INTERVAL_SECONDS = 15
    DEFAULT_TIMEOUT_SECONDS = 3600

    TERMINAL_SUCCESS = ('CREATE_COMPLETE', 'UPDATE_COMPLETE', 'IMPORT_COMPLETE')
    TERMINAL_FAILURE = (
        'CREATE_FAILED', 'ROLLBACK_COMPLETE', 'ROLLBACK_FAILED', 'DELETE_COMPLETE',
        'DELETE_FAILED', 'UPDATE_ROLLBACK_COMPLETE', 'UPDATE_ROLLBACK_FAILED',
        'UPDATE_FAILED', 'IMPORT_ROLLBACK_COMPLETE', 'IMPORT_ROLLBACK_FAILED',
    )

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                 resolver: Optional[CredentialResolver] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        self.aws_client = aws_client
        self.settings = settings
        self.resolver = resolver or CredentialResolver(aws_client, settings.retry, logger)
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def __call__(self, unit: StackDeploymentUnit, template: Dict[str, Any]) -> bool:
        return self.deploy(unit, template)

    def deploy(self, unit: StackDeploymentUnit, template: Dict[str, Any]) -> bool:
        """Deploy a unit's template and wait for the stack to settle.

        Args:
            unit: Planned unit
            template: Template after aspects were applied

        Returns:
            True when the stack reached a successful terminal state

        Raises:
            CredentialResolutionError: When the account role cannot be assumed
        """
        credentials = self.resolver.get_credentials(
            unit.account_id, unit.region, self.settings.partition,
            self.settings.management_account_access_role,
        )
        cfn = self.aws_client.get_client_for_account('cloudformation', unit.region, credentials)
        body = json.dumps(template)
        params = {
            'StackName': unit.stack_name,
            'TemplateBody': body,
            'Capabilities': ['CAPABILITY_IAM', 'CAPABILITY_NAMED_IAM', 'CAPABILITY_AUTO_EXPAND'],
            'Tags': [{'Key': 'Accelerator', 'Value': self.settings.prefix}],
        }

        status = self._stack_status(cfn, unit.stack_name)
        if status == 'ROLLBACK_COMPLETE':
            # A stack whose first create rolled back can only be deleted
            self._delete_stack(cfn, unit.stack_name)
            status = None

        try:
            if status is not None and status != 'REVIEW_IN_PROGRESS':
                throttling_backoff(lambda: cfn.update_stack(**params), self.settings.retry)
            else:
                throttling_backoff(
                    lambda: cfn.create_stack(TerminationProtection=True, **params), self.settings.retry
                )
        except ClientError as e:
            message = e.response['Error'].get('Message', '')
            if 'No updates are to be performed' in message:
                self.logger.info("Stack %s is up to date", unit.stack_name)
                return True
            raise StackDeploymentError(f"Failed to submit stack {unit.stack_name}: {e}")

        return self._wait(cfn, unit.stack_name)

    def _stack_status(self, cfn, stack_name: str) -> Optional[str]:
        """Current stack status, or None when the stack does not exist."""
        try:
            stacks = throttling_backoff(
                lambda: cfn.describe_stacks(StackName=stack_name), self.settings.retry
            )['Stacks']
        except ClientError as e:
            if 'does not exist' in e.response['Error'].get('Message', ''):
                return None
            raise
        return stacks[0]['StackStatus'] if stacks else None

    def _delete_stack(self, cfn, stack_name: str) -> None:
        """Delete a rolled-back stack so it can be created again.

        Raises:
            StackDeploymentError: When the stack cannot be deleted
        """
        self.logger.warning("Stack %s is in ROLLBACK_COMPLETE, deleting before recreating", stack_name)
        try:
            throttling_backoff(lambda: cfn.update_termination_protection(
                EnableTerminationProtection=False, StackName=stack_name
            ), self.settings.retry)
            throttling_backoff(lambda: cfn.delete_stack(StackName=stack_name), self.settings.retry)
        except ClientError as e:
            raise StackDeploymentError(f"Failed to delete rolled back stack {stack_name}: {e}")

        elapsed = 0
        while elapsed < self.DEFAULT_TIMEOUT_SECONDS:
            status = self._stack_status(cfn, stack_name)
            if status is None or status == 'DELETE_COMPLETE':
                self.logger.info("Deleted stack %s", stack_name)
                return
            if status == 'DELETE_FAILED':
                raise StackDeploymentError(f"Failed to delete rolled back stack {stack_name}")
            self.sleep(self.POLLING_INTERVAL_SECONDS)
            elapsed += self.POLLING_INTERVAL_SECONDS
        raise StackDeploymentError(f"Timed out deleting stack {stack_name}")

    def _wait(self, cfn, stack_name: str) -> bool:
        elapsed = 0
        while elapsed < self.DEFAULT_TIMEOUT_SECONDS:
            stack = throttling_backoff(
                lambda: cfn.describe_stacks(StackName=stack_name), self.settings.retry
            )['Stacks'][0]
            status = stack['StackStatus']
            if status in self.TERMINAL_SUCCESS:
                self.logger.info("Stack %s: %s", stack_name, status)
                return True
            if status in self.TERMINAL_FAILURE:
                self.logger.error("Stack %s: %s (%s)", stack_name, status,
                                  stack.get('StackStatusReason', 'no reason given'))
                return False
            self.sleep(self.POLLING_INTERVAL_SECONDS)
            elapsed += self.POLLING_INTERVAL_SECONDS
        raise StackDeploymentError(f"Timed out waiting for stack {stack_name}")
