"""Named parameters handed from the orchestration stages to later stacks."""

import logging
import re
from typing import Dict, Optional

from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.config import AcceleratorSettings
from ..core.throttle import throttling_backoff


PARAMETER_ROOT = "/accelerator/organization"


class OutputParameters:
    """Account, organizational unit and policy ids keyed by parameter name."""

    def __init__(self) -> None:
        self.values: Dict[str, str] = {}

    @staticmethod
    def _segment(name: str) -> str:
        return re.sub(r"[^a-zA-Z0-9_.\-/]", "-", name)

    def add_accounts(self, account_ids: Dict[str, str]) -> None:
        for name, account_id in account_ids.items():
            self.values[f"{PARAMETER_ROOT}/accounts/{self._segment(name)}/id"] = account_id

    def add_organizational_units(self, ou_ids: Dict[str, str]) -> None:
        for path, ou_id in ou_ids.items():
            self.values[f"{PARAMETER_ROOT}/ous/{self._segment(path)}/id"] = ou_id

    def add_policies(self, policy_ids: Dict[str, str]) -> None:
        for name, policy_id in policy_ids.items():
            self.values[f"{PARAMETER_ROOT}/policies/{self._segment(name)}/id"] = policy_id

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)

    def publish(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                logger: Optional[logging.Logger] = None) -> int:
        """Write every parameter to SSM Parameter Store in the home region.

        Returns:
            Number of parameters written

        Raises:
            ClientError: When a parameter cannot be written
        """
        logger = logger or logging.getLogger(__name__)
        ssm = aws_client.get_client('ssm', settings.home_region)
        for name, value in sorted(self.values.items()):
            try:
                throttling_backoff(lambda: ssm.put_parameter(
                    Name=name, Value=value, Type='String', Overwrite=True
                ), settings.retry)
            except ClientError as e:
                logger.error("Failed to publish parameter %s: %s", name, e)
                raise
        logger.info("Published %d output parameters", len(self.values))
        return len(self.values)
