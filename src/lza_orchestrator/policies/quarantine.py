"""Quarantine policy wiring for newly created accounts.

An EventBridge rule forwards Organizations account-creation events to a
handler that attaches the quarantine SCP to the new account. This runs
independently of the provisioning state machine and is best effort:
there is a window between an account becoming usable and the policy
landing on it.
"""

import json
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.config import AcceleratorSettings
from ..core.partition import EnvironmentPartition, get_global_region
from ..core.throttle import throttling_backoff


STATUS_POLL_ATTEMPTS = 60


class QuarantineError(Exception):
    """Raised when the quarantine policy cannot be attached."""
    pass


def quarantine_event_patterns(include_govcloud: bool) -> Dict[str, Dict[str, Any]]:
    """EventBridge patterns keyed by rule suffix.

    Args:
        include_govcloud: Also match ``CreateGovCloudAccount`` calls

    Returns:
        Rule suffix to event pattern
    """
    patterns = {
        'CreateAccount': {
            'source': ['aws.organizations'],
            'detail-type': ['AWS Service Event via CloudTrail'],
            'detail': {'eventName': ['CreateAccountResult']},
        },
    }
    if include_govcloud:
        patterns['CreateGovCloudAccount'] = {
            'source': ['aws.organizations'],
            'detail-type': ['AWS API Call via CloudTrail'],
            'detail': {'eventName': ['CreateGovCloudAccount']},
        }
    return patterns


class QuarantineRuleInstaller:
    """Creates the EventBridge rules that trigger the quarantine handler."""

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                 logger: Optional[logging.Logger] = None) -> None:
        self.aws_client = aws_client
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)

    def install(self, function_arn: str, include_govcloud: bool) -> List[str]:
        """Create or update the rules and point them at the handler.

        Quarantine is only wired in the commercial partition.

        Args:
            function_arn: ARN of the deployed handler function
            include_govcloud: Whether GovCloud accounts are configured

        Returns:
            Names of the rules installed
        """
        if self.settings.partition != EnvironmentPartition.STANDARD:
            self.logger.info("Quarantine rules are only installed in the commercial partition")
            return []
        if not self.settings.quarantine_policy_name:
            return []

        events = self.aws_client.get_client('events', get_global_region(self.settings.partition))
        installed = []
        for suffix, pattern in quarantine_event_patterns(include_govcloud).items():
            rule_name = f"{self.settings.prefix}-Quarantine{suffix}"
            throttling_backoff(lambda: events.put_rule(
                Name=rule_name,
                EventPattern=json.dumps(pattern),
                State='ENABLED',
                Description=f"Attach {self.settings.quarantine_policy_name} to new accounts",
            ), self.settings.retry)
            throttling_backoff(lambda: events.put_targets(
                Rule=rule_name,
                Targets=[{
                    'Id': 'QuarantineHandler',
                    'Arn': function_arn,
                }],
            ), self.settings.retry)
            installed.append(rule_name)
            self.logger.info("Installed quarantine rule %s", rule_name)
        return installed


class QuarantineHandler:
    """Attaches the quarantine policy to an account named by an event.

    Args:
        aws_client: AWS client manager instance
        settings: Accelerator runtime settings
        policy_name: Name of the quarantine SCP (the ``SCP_POLICY_NAME``
            environment of the deployed handler)
        sleep: Wait function used while creation completes
    """

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                 policy_name: str, sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        self.aws_client = aws_client
        self.settings = settings
        self.policy_name = policy_name
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self._org_client = None

    def _get_client(self):
        if self._org_client is None:
            self._org_client = self.aws_client.get_client(
                'organizations', get_global_region(self.settings.partition)
            )
        return self._org_client

    def account_id_from_event(self, event: Dict[str, Any]) -> Optional[str]:
        """Extract the new account id, waiting for creation if needed.

        Returns:
            Account id, or None when the creation did not succeed
        """
        detail = event.get('detail', {})
        event_name = detail.get('eventName')

        if event_name == 'CreateAccountResult':
            status = detail.get('serviceEventDetails', {}).get('createAccountStatus', {})
            if status.get('state') != 'SUCCEEDED':
                return None
            return status.get('accountId')

        if event_name == 'CreateGovCloudAccount':
            request_id = detail.get('responseElements', {}).get('createAccountStatus', {}).get('id')
            if not request_id:
                return None
            return self._wait_for_account(request_id)

        self.logger.warning("Ignoring unexpected event %s", event_name)
        return None

    def _wait_for_account(self, request_id: str) -> Optional[str]:
        client = self._get_client()
        for _ in range(STATUS_POLL_ATTEMPTS):
            response = throttling_backoff(
                lambda: client.describe_create_account_status(CreateAccountRequestId=request_id),
                self.settings.retry,
            )
            status = response['CreateAccountStatus']
            if status['State'] == 'SUCCEEDED':
                return status['AccountId']
            if status['State'] == 'FAILED':
                self.logger.warning("Account request %s failed: %s", request_id,
                                    status.get('FailureReason'))
                return None
            self.sleep(5)
        raise QuarantineError(f"Account request {request_id} did not complete")

    def handle(self, event: Dict[str, Any]) -> Optional[str]:
        """Quarantine the account created by an event.

        Args:
            event: EventBridge event

        Returns:
            The quarantined account id, or None when nothing was done

        Raises:
            QuarantineError: When the policy is missing or cannot be attached
        """
        account_id = self.account_id_from_event(event)
        if not account_id:
            return None

        client = self._get_client()
        policy_id = None
        next_token = None
        while policy_id is None:
            kwargs = {'Filter': 'SERVICE_CONTROL_POLICY'}
            if next_token:
                kwargs['NextToken'] = next_token
            response = throttling_backoff(lambda: client.list_policies(**kwargs), self.settings.retry)
            policy_id = next(
                (p['Id'] for p in response.get('Policies', []) if p['Name'] == self.policy_name), None
            )
            next_token = response.get('NextToken')
            if not next_token:
                break
        if policy_id is None:
            raise QuarantineError(f"Quarantine policy {self.policy_name} not found")

        try:
            throttling_backoff(
                lambda: client.attach_policy(PolicyId=policy_id, TargetId=account_id),
                self.settings.retry,
            )
        except ClientError as e:
            if e.response['Error']['Code'] != 'DuplicatePolicyAttachmentException':
                raise QuarantineError(f"Failed to quarantine account {account_id}: {e}")
        self.logger.info("Attached %s to account %s", self.policy_name, account_id)
        return account_id


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Optional[str]]:
    """Entry point of the deployed quarantine function."""
    policy_name = os.environ['SCP_POLICY_NAME']
    settings = AcceleratorSettings(
        prefix=os.environ.get('ACCELERATOR_PREFIX', 'AWSAccelerator'),
        quarantine_policy_name=policy_name,
    )
    handler = QuarantineHandler(AWSClientManager(), settings, policy_name)
    return {'accountId': handler.handle(event)}
