"""Cross-account credential resolution through STS AssumeRole."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from botocore.exceptions import ClientError

from .partition import EnvironmentPartition, get_sts_endpoint
from .throttle import RetrySettings, throttling_backoff

if TYPE_CHECKING:
    from .aws_client import AWSClientManager


SESSION_NAME = "AcceleratorAssumeRole"
SESSION_DURATION_SECONDS = 3600


class CredentialResolutionError(Exception):
    """Raised when a role in a target account cannot be assumed."""
    pass


@dataclass(frozen=True)
class Credentials:
    """Short-lived credentials for one account."""

    account_id: str
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: Optional[datetime] = None


class CredentialResolver:
    """Produces credentials for acting in another account.

    When the caller already runs in the target account no role is
    assumed and ``None`` is returned, meaning "use the default identity".
    Assume-role failures are never retried or swallowed: the caller must
    not continue without the permissions it asked for.
    """

    def __init__(self, aws_client: "AWSClientManager",
                 retry: Optional[RetrySettings] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self.aws_client = aws_client
        self.retry = retry or RetrySettings()
        self.logger = logger or logging.getLogger(__name__)

    def get_credentials(self, account_id: str, region: str,
                        partition: EnvironmentPartition,
                        role_name: str) -> Optional[Credentials]:
        """Resolve credentials for a role in the target account.

        Args:
            account_id: Target AWS account id
            region: Region used for the regional STS endpoint
            partition: Partition of the target account
            role_name: Role to assume in the target account

        Returns:
            Credentials, or None when the caller is already in the account

        Raises:
            CredentialResolutionError: When AssumeRole fails
        """
        if self.aws_client.get_account_id() == account_id:
            self.logger.debug("Already in account %s, using default identity", account_id)
            return None

        role_arn = f"arn:{partition.arn_name}:iam::{account_id}:role/{role_name}"
        sts_client = self.aws_client.get_client(
            "sts", region, endpoint_url=get_sts_endpoint(partition, region)
        )

        try:
            response = throttling_backoff(
                lambda: sts_client.assume_role(
                    RoleArn=role_arn,
                    RoleSessionName=SESSION_NAME,
                    DurationSeconds=SESSION_DURATION_SECONDS,
                ),
                self.retry,
            )
        except ClientError as e:
            raise CredentialResolutionError(f"Failed to assume role {role_arn}: {e}")

        creds = response.get("Credentials")
        if not creds:
            raise CredentialResolutionError(f"AssumeRole returned no credentials for {role_arn}")

        self.logger.info("Assumed role %s", role_arn)
        return Credentials(
            account_id=account_id,
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=creds.get("Expiration"),
        )
