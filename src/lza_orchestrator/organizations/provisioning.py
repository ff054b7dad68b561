"""Account provisioning state machine.

Desired accounts move through ``NotRequested -> Queued -> Creating ->
Succeeded | Failed``. The transition function is pure; the
:class:`AccountProvisioner` scheduler owns submission, polling cadence and
persistence. Every transition is written to the provisioning table before
the next AWS call so a re-run resumes instead of re-creating accounts.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.config import AccountConfig, AcceleratorSettings
from ..core.partition import get_global_region
from ..core.results import Failure
from ..core.throttle import throttling_backoff
from .models import AccountRecord, ProvisioningState
from .table import GovCloudMappingTable, ProvisioningTable
from .topology import ROOT_NAME, OrganizationTopology


ACCOUNT_FACTORY_PRODUCT = "AWS Control Tower Account Factory"


class AccountProvisioningError(Exception):
    """Raised when provisioning cannot proceed for the batch as a whole."""
    pass


class InvalidTransitionError(AccountProvisioningError):
    """Raised when an event does not apply to an account's current state."""
    pass


class ProvisioningEvent(Enum):
    """Observations that drive the state machine."""

    QUEUE = "queue"
    FOUND = "found"
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS = {
    (ProvisioningState.NOT_REQUESTED, ProvisioningEvent.QUEUE): ProvisioningState.QUEUED,
    (ProvisioningState.NOT_REQUESTED, ProvisioningEvent.FOUND): ProvisioningState.SUCCEEDED,
    (ProvisioningState.QUEUED, ProvisioningEvent.QUEUE): ProvisioningState.QUEUED,
    (ProvisioningState.QUEUED, ProvisioningEvent.FOUND): ProvisioningState.SUCCEEDED,
    (ProvisioningState.QUEUED, ProvisioningEvent.SUBMITTED): ProvisioningState.CREATING,
    (ProvisioningState.QUEUED, ProvisioningEvent.FAILED): ProvisioningState.FAILED,
    # Only reached when a creating record lost its request id
    (ProvisioningState.CREATING, ProvisioningEvent.QUEUE): ProvisioningState.QUEUED,
    (ProvisioningState.CREATING, ProvisioningEvent.FOUND): ProvisioningState.SUCCEEDED,
    (ProvisioningState.CREATING, ProvisioningEvent.IN_PROGRESS): ProvisioningState.CREATING,
    (ProvisioningState.CREATING, ProvisioningEvent.SUCCEEDED): ProvisioningState.SUCCEEDED,
    (ProvisioningState.CREATING, ProvisioningEvent.FAILED): ProvisioningState.FAILED,
    (ProvisioningState.FAILED, ProvisioningEvent.QUEUE): ProvisioningState.QUEUED,
    (ProvisioningState.FAILED, ProvisioningEvent.FOUND): ProvisioningState.SUCCEEDED,
    (ProvisioningState.SUCCEEDED, ProvisioningEvent.FOUND): ProvisioningState.SUCCEEDED,
}


def transition(state: ProvisioningState, event: ProvisioningEvent) -> ProvisioningState:
    """Compute the next provisioning state.

    ``Succeeded`` only accepts ``found``: nothing can send a created
    account back into the creation path.

    Args:
        state: Current state
        event: Observed event

    Returns:
        Next state

    Raises:
        InvalidTransitionError: When the event is not valid in this state
    """
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Event '{event.value}' is not valid for an account in state '{state.value}'"
        )


@dataclass(frozen=True)
class PollOutcome:
    """Result of asking AWS about one in-flight creation request."""

    event: ProvisioningEvent
    account_id: Optional[str] = None
    govcloud_account_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ProvisioningReport:
    """Aggregate result of one provisioning run."""

    records: List[AccountRecord] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)
    tolerated_failures: int = 0

    @property
    def account_failures(self) -> List[AccountRecord]:
        return [r for r in self.records if r.state == ProvisioningState.FAILED]

    @property
    def complete(self) -> bool:
        """Every account reached a terminal state."""
        return all(r.is_terminal for r in self.records)

    @property
    def succeeded(self) -> bool:
        return self.complete and len(self.account_failures) <= self.tolerated_failures

    def account_ids(self) -> Dict[str, str]:
        return {r.name: r.account_id for r in self.records if r.account_id}


class OrganizationsAccountCreator:
    """Creates accounts with AWS Organizations ``CreateAccount``.

    Requests are independent, so the whole queue is submitted at once.
    When GovCloud is enabled ``CreateGovCloudAccount`` is used and AWS
    creates the commercial and GovCloud accounts as a linked pair.
    """

    max_concurrent: Optional[int] = None

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings) -> None:
        self.aws_client = aws_client
        self.settings = settings
        self._org_client = None

    def _get_client(self):
        if self._org_client is None:
            self._org_client = self.aws_client.get_client(
                'organizations', get_global_region(self.settings.partition)
            )
        return self._org_client

    def submit(self, record: AccountRecord) -> str:
        """Submit a creation request.

        Returns:
            Create account request id

        Raises:
            ClientError: When AWS rejects the request
        """
        client = self._get_client()
        operation = client.create_gov_cloud_account if self.settings.enable_govcloud else client.create_account
        response = throttling_backoff(
            lambda: operation(
                Email=record.email,
                AccountName=record.name,
                RoleName=self.settings.management_account_access_role,
            ),
            self.settings.retry,
        )
        return response['CreateAccountStatus']['Id']

    def poll(self, record: AccountRecord) -> PollOutcome:
        client = self._get_client()
        response = throttling_backoff(
            lambda: client.describe_create_account_status(
                CreateAccountRequestId=record.create_request_id
            ),
            self.settings.retry,
        )
        status = response['CreateAccountStatus']
        state = status.get('State')
        if state == 'SUCCEEDED':
            return PollOutcome(
                ProvisioningEvent.SUCCEEDED,
                account_id=status.get('AccountId'),
                govcloud_account_id=status.get('GovCloudAccountId'),
            )
        if state == 'FAILED':
            return PollOutcome(ProvisioningEvent.FAILED, reason=status.get('FailureReason', 'UNKNOWN'))
        return PollOutcome(ProvisioningEvent.IN_PROGRESS)


class ControlTowerAccountCreator:
    """Creates accounts through the Control Tower Account Factory product.

    Control Tower provisions one account at a time, so only a single
    request is kept in flight.
    """

    max_concurrent: Optional[int] = 1

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                 ou_ids: Dict[str, str], sso_users: Optional[Dict[str, AccountConfig]] = None) -> None:
        self.aws_client = aws_client
        self.settings = settings
        self.ou_ids = ou_ids
        self.sso_users = sso_users or {}
        self._sc_client = None
        self._product: Optional[Dict[str, str]] = None

    def _get_client(self):
        if self._sc_client is None:
            self._sc_client = self.aws_client.get_client('servicecatalog', self.settings.home_region)
        return self._sc_client

    def _call(self, operation: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        return throttling_backoff(operation, self.settings.retry)

    def _get_product(self) -> Dict[str, str]:
        """Find the Account Factory product and its active artifact.

        Raises:
            AccountProvisioningError: When the product is missing or ambiguous
        """
        if self._product is not None:
            return self._product

        client = self._get_client()
        response = self._call(lambda: client.search_products(
            Filters={'FullTextSearch': [ACCOUNT_FACTORY_PRODUCT]}
        ))
        products = [
            p for p in response.get('ProductViewSummaries', [])
            if p.get('Name') == ACCOUNT_FACTORY_PRODUCT
        ]
        if len(products) != 1:
            raise AccountProvisioningError(
                f"Expected exactly one '{ACCOUNT_FACTORY_PRODUCT}' product, found {len(products)}"
            )
        product_id = products[0]['ProductId']

        artifacts = self._call(lambda: client.list_provisioning_artifacts(ProductId=product_id))
        active = [a for a in artifacts.get('ProvisioningArtifactDetails', []) if a.get('Active')]
        if not active:
            raise AccountProvisioningError(
                f"No active provisioning artifact for product {product_id}"
            )
        self._product = {'ProductId': product_id, 'ProvisioningArtifactId': active[-1]['Id']}
        return self._product

    def submit(self, record: AccountRecord) -> str:
        """Provision the Account Factory product for one account.

        Returns:
            Service Catalog record id

        Raises:
            AccountProvisioningError: When the target OU id is unknown
            ClientError: When Service Catalog rejects the request
        """
        ou_id = self.ou_ids.get(record.organizational_unit)
        if ou_id is None:
            raise AccountProvisioningError(
                f"Organizational unit '{record.organizational_unit}' has no id"
            )
        ou_leaf = record.organizational_unit.rsplit('/', 1)[-1]
        sso = self.sso_users.get(record.email)
        product = self._get_product()
        parameters = {
            'AccountName': record.name,
            'AccountEmail': record.email,
            'ManagedOrganizationalUnit': f"{ou_leaf} ({ou_id})",
            'SSOUserEmail': (sso.sso_user_email if sso and sso.sso_user_email else record.email),
            'SSOUserFirstName': sso.sso_user_first_name if sso else 'Admin',
            'SSOUserLastName': sso.sso_user_last_name if sso else 'User',
        }
        client = self._get_client()
        response = self._call(lambda: client.provision_product(
            ProductId=product['ProductId'],
            ProvisioningArtifactId=product['ProvisioningArtifactId'],
            ProvisionedProductName=record.name.replace(' ', '-'),
            ProvisionToken=str(uuid.uuid4()),
            ProvisioningParameters=[{'Key': k, 'Value': v} for k, v in parameters.items()],
        ))
        return response['RecordDetail']['RecordId']

    def poll(self, record: AccountRecord) -> PollOutcome:
        client = self._get_client()
        response = self._call(lambda: client.describe_record(Id=record.create_request_id))
        detail = response.get('RecordDetail', {})
        status = detail.get('Status')
        if status == 'SUCCEEDED':
            outputs = {o['OutputKey']: o['OutputValue'] for o in response.get('RecordOutputs', [])}
            return PollOutcome(ProvisioningEvent.SUCCEEDED, account_id=outputs.get('AccountId'))
        if status == 'FAILED':
            errors = [e.get('Description', '') for e in detail.get('RecordErrors', [])]
            return PollOutcome(ProvisioningEvent.FAILED, reason='; '.join(errors) or 'FAILED')
        return PollOutcome(ProvisioningEvent.IN_PROGRESS)


class AccountProvisioner:
    """Drives desired accounts to a terminal provisioning state.

    The provisioner never submits a creation request for an email whose
    persisted record is ``Succeeded``. Failed accounts are reported and
    left for the next execution; they do not stop their siblings.
    """

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                 table: ProvisioningTable, topology: OrganizationTopology,
                 mapping_table: Optional[GovCloudMappingTable] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        """Initialize account provisioner.

        Args:
            aws_client: Configured AWS client manager
            settings: Accelerator runtime settings
            table: Provisioning table holding account records
            topology: Organization topology reader
            mapping_table: GovCloud account mapping table
            sleep: Wait function used between polls
            logger: Execution-scoped logger
        """
        self.aws_client = aws_client
        self.settings = settings
        self.table = table
        self.topology = topology
        self.mapping_table = mapping_table
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def build_creator(self, accounts: List[AccountConfig], ou_ids: Dict[str, str]):
        """Choose the creation backend configured for this landing zone."""
        if self.settings.control_tower_enabled:
            return ControlTowerAccountCreator(
                self.aws_client, self.settings, ou_ids,
                sso_users={a.email.lower(): a for a in accounts},
            )
        return OrganizationsAccountCreator(self.aws_client, self.settings)

    def _apply(self, record: AccountRecord, event: ProvisioningEvent) -> None:
        record.state = transition(record.state, event)
        self.table.put_record(record)

    def reconcile(self, accounts: List[AccountConfig]) -> List[AccountRecord]:
        """Load records and queue accounts missing from the organization.

        Args:
            accounts: Desired accounts from configuration

        Returns:
            One record per desired account
        """
        existing = {a['Email'].lower(): a for a in self.topology.list_accounts()}
        records = []

        for account in accounts:
            record = self.table.get_record(account.data_type, account.email)
            if record is None:
                record = AccountRecord.from_config(account)
            record.name = account.name
            record.organizational_unit = account.organizational_unit

            if record.state == ProvisioningState.SUCCEEDED:
                self.logger.info("Account %s already provisioned, skipping", record.email)
            elif record.email in existing:
                if record.state == ProvisioningState.NOT_REQUESTED:
                    record.pre_existing = True
                record.account_id = existing[record.email]['Id']
                record.failure_reason = None
                self._apply(record, ProvisioningEvent.FOUND)
                self.logger.info("Account %s exists as %s", record.email, record.account_id)
            elif record.state == ProvisioningState.CREATING and record.create_request_id:
                self.logger.info("Resuming creation of %s (%s)", record.email, record.create_request_id)
            else:
                record.failure_reason = None
                record.create_request_id = None
                self._apply(record, ProvisioningEvent.QUEUE)

            records.append(record)

        return records

    def provision(self, accounts: List[AccountConfig], ou_ids: Dict[str, str],
                  max_polls: Optional[int] = None,
                  records: Optional[List[AccountRecord]] = None) -> ProvisioningReport:
        """Create missing accounts and wait for them to settle.

        Args:
            accounts: Desired accounts from configuration
            ou_ids: Organizational unit path to id, including ``Root``
            max_polls: Optional poll budget; accounts still creating when it
                runs out stay ``Creating`` and are resumed next run
            records: Records already reconciled in this run; loaded and
                reconciled here when omitted

        Returns:
            ProvisioningReport with every record and isolated failures
        """
        report = ProvisioningReport(tolerated_failures=self.settings.tolerated_account_failures)
        report.records = records if records is not None else self.reconcile(accounts)
        creator = self.build_creator(accounts, ou_ids)

        queued = [r for r in report.records if r.state == ProvisioningState.QUEUED]
        creating = [r for r in report.records if r.state == ProvisioningState.CREATING]
        polls = 0

        while queued or creating:
            while queued and (creator.max_concurrent is None or len(creating) < creator.max_concurrent):
                record = queued.pop(0)
                if self._submit(creator, record, report):
                    creating.append(record)

            if not creating:
                break
            if max_polls is not None and polls >= max_polls:
                self.logger.warning(
                    "Poll budget exhausted with %d account(s) still creating", len(creating)
                )
                break

            self.sleep(self.settings.poll_interval_seconds)
            polls += 1
            for record in list(creating):
                if self._poll(creator, record, ou_ids, report):
                    creating.remove(record)

        for record in report.account_failures:
            self.logger.error("Account %s failed: %s", record.email, record.failure_reason)
        if len(report.account_failures) > report.tolerated_failures:
            print(f"❌ {len(report.account_failures)} account(s) failed to provision")
        return report

    def _submit(self, creator, record: AccountRecord, report: ProvisioningReport) -> bool:
        try:
            record.create_request_id = creator.submit(record)
        except (ClientError, AccountProvisioningError) as e:
            record.failure_reason = str(e)
            self._apply(record, ProvisioningEvent.FAILED)
            report.failures.append(Failure(record.email, 'create-account', str(e)))
            return False
        self._apply(record, ProvisioningEvent.SUBMITTED)
        self.logger.info("Submitted creation of %s (%s)", record.email, record.create_request_id)
        return True

    def _poll(self, creator, record: AccountRecord, ou_ids: Dict[str, str],
              report: ProvisioningReport) -> bool:
        """Poll one request; returns True once the account is terminal."""
        try:
            outcome = creator.poll(record)
        except ClientError as e:
            outcome = PollOutcome(ProvisioningEvent.FAILED, reason=str(e))

        if outcome.event == ProvisioningEvent.IN_PROGRESS:
            return False

        if outcome.event == ProvisioningEvent.FAILED:
            record.failure_reason = outcome.reason
            self._apply(record, ProvisioningEvent.FAILED)
            report.failures.append(Failure(record.email, 'create-account', outcome.reason or ''))
            return True

        record.account_id = outcome.account_id
        record.govcloud_account_id = outcome.govcloud_account_id
        self._apply(record, ProvisioningEvent.SUCCEEDED)
        print(f"✓ Created account: {record.name} ({record.account_id})")

        if outcome.govcloud_account_id and self.mapping_table is not None:
            self.mapping_table.put_mapping(record.account_id, outcome.govcloud_account_id, record.name)
        if isinstance(creator, OrganizationsAccountCreator):
            self._move_from_root(record, ou_ids, report)
        return True

    def _move_from_root(self, record: AccountRecord, ou_ids: Dict[str, str],
                        report: ProvisioningReport) -> None:
        """Place a freshly created account in its configured unit."""
        target = ou_ids.get(record.organizational_unit)
        if record.organizational_unit == ROOT_NAME:
            return
        if target is None:
            report.failures.append(Failure(
                record.email, 'move-account',
                f"Organizational unit '{record.organizational_unit}' has no id",
            ))
            return
        client = self.aws_client.get_client('organizations', get_global_region(self.settings.partition))
        try:
            throttling_backoff(
                lambda: client.move_account(
                    AccountId=record.account_id,
                    SourceParentId=ou_ids[ROOT_NAME],
                    DestinationParentId=target,
                ),
                self.settings.retry,
            )
        except ClientError as e:
            if e.response['Error']['Code'] != 'DuplicateAccountException':
                self.logger.error("Failed to move %s to %s: %s", record.email, target, e)
                report.failures.append(Failure(record.email, 'move-account', str(e)))
