"""Centralized AWS client management with session handling.

This module provides a centralized way to manage AWS clients across
regions and, given resolved cross-account credentials, across accounts,
while keeping one boto3 session per orchestrator run.
"""

from typing import Any, Dict, Optional, Tuple
import boto3
from botocore.config import Config
from botocore.exceptions import (
    NoCredentialsError,
    ClientError,
    ProfileNotFound,
)

from .credentials import Credentials


# Retries are owned by throttling_backoff; botocore's own loop is reduced
# to a single attempt so delays do not compound.
CLIENT_CONFIG = Config(retries={"max_attempts": 1, "mode": "standard"})


class AWSClientManager:
    """Centralized AWS client management with session handling.

    Clients for the caller's own identity are cached per service and
    region. Clients built from assumed-role credentials are cached per
    account and replaced whenever the credentials change.
    """

    def __init__(self, profile_name: Optional[str] = None) -> None:
        """Initialize AWS client manager.

        Args:
            profile_name: Optional AWS profile name for credentials

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._account_clients: Dict[str, Tuple[str, Any]] = {}
        self._profile_name = profile_name
        self._identity: Optional[Dict[str, Any]] = None
        self._validate_credentials()

    def _validate_credentials(self) -> None:
        """Validate AWS credentials are available and working.

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        try:
            session = self._get_session()
            self._identity = session.client("sts").get_caller_identity()
        except NoCredentialsError:
            raise NoCredentialsError()
        except ProfileNotFound:
            raise ProfileNotFound(profile=self._profile_name)
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidUserID.NotFound":
                raise NoCredentialsError(
                    "AWS credentials are invalid or expired. "
                    "Please update your credentials."
                )
            raise

    def _get_session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        if self._session is None:
            if self._profile_name:
                self._session = boto3.Session(profile_name=self._profile_name)
            else:
                self._session = boto3.Session()
        return self._session

    def get_client(self, service_name: str, region_name: str,
                   endpoint_url: Optional[str] = None) -> Any:
        """Get AWS service client for specified region.

        Args:
            service_name: AWS service name (e.g., 'organizations', 'sts')
            region_name: AWS region name (e.g., 'us-east-1')
            endpoint_url: Optional partition-specific endpoint

        Returns:
            Configured boto3 client for the service and region
        """
        client_key = f"{service_name}_{region_name}_{endpoint_url or ''}"

        if client_key not in self._clients:
            session = self._get_session()
            self._clients[client_key] = session.client(
                service_name,
                region_name=region_name,
                endpoint_url=endpoint_url,
                config=CLIENT_CONFIG,
            )

        return self._clients[client_key]

    def get_client_for_account(self, service_name: str, region_name: str,
                               credentials: Optional[Credentials]) -> Any:
        """Get a client acting with resolved cross-account credentials.

        Args:
            service_name: AWS service name
            region_name: AWS region name
            credentials: Assumed-role credentials, or None to use the
                caller's own identity

        Returns:
            Configured boto3 client
        """
        if credentials is None:
            return self.get_client(service_name, region_name)

        client_key = f"{service_name}_{region_name}_{credentials.account_id}"
        cached = self._account_clients.get(client_key)
        if cached is None or cached[0] != credentials.session_token:
            # Fresh credentials replace the client holding the previous session
            client = boto3.client(
                service_name,
                region_name=region_name,
                aws_access_key_id=credentials.access_key_id,
                aws_secret_access_key=credentials.secret_access_key,
                aws_session_token=credentials.session_token,
                config=CLIENT_CONFIG,
            )
            self._account_clients[client_key] = (credentials.session_token, client)
        return self._account_clients[client_key][1]

    def get_current_region(self) -> str:
        """Get current AWS region from session.

        Returns:
            Current AWS region name
        """
        session = self._get_session()
        return session.region_name or "us-east-1"

    def get_account_id(self) -> str:
        """Get current AWS account ID.

        Returns:
            Current AWS account ID

        Raises:
            ClientError: When unable to get account information
        """
        if self._identity is None:
            sts_client = self.get_client("sts", self.get_current_region())
            self._identity = sts_client.get_caller_identity()
        return self._identity["Account"]

    def clear_cache(self) -> None:
        """Clear cached clients to force recreation."""
        self._clients.clear()
        self._account_clients.clear()
