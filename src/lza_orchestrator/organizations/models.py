"""Data model for organizational units and account provisioning records."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..core.config import AccountConfig


class ProvisioningState(Enum):
    """Lifecycle of a desired account through creation."""

    NOT_REQUESTED = "NotRequested"
    QUEUED = "Queued"
    CREATING = "Creating"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class AccountStatus(Enum):
    PENDING = "Pending"
    CREATED = "Created"
    FAILED = "Failed"
    EXISTS = "Exists"


@dataclass(frozen=True)
class OrganizationalUnitNode:
    """An organizational unit with its slash-joined path as name."""

    name: str
    id: str
    arn: str
    parent_id: str
    level: int = 1


@dataclass
class AccountRecord:
    """Provisioning state for one account, keyed by its email.

    The provisioning table is the only durable store for these records;
    the state machine is their single writer.
    """

    name: str
    email: str
    organizational_unit: str
    data_type: str
    state: ProvisioningState = ProvisioningState.NOT_REQUESTED
    account_id: Optional[str] = None
    govcloud_account_id: Optional[str] = None
    create_request_id: Optional[str] = None
    failure_reason: Optional[str] = None
    pre_existing: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, account: AccountConfig) -> "AccountRecord":
        return cls(
            name=account.name,
            email=account.email.lower(),
            organizational_unit=account.organizational_unit,
            data_type=account.data_type,
        )

    @property
    def status(self) -> AccountStatus:
        """Operator-facing summary of the provisioning state."""
        if self.pre_existing:
            return AccountStatus.EXISTS
        if self.state == ProvisioningState.SUCCEEDED:
            return AccountStatus.CREATED
        if self.state == ProvisioningState.FAILED:
            return AccountStatus.FAILED
        return AccountStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.state in (ProvisioningState.SUCCEEDED, ProvisioningState.FAILED)
