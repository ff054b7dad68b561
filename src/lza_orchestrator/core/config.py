"""Configuration management for the landing zone orchestrator.

This module handles YAML configuration loading, validation, and
environment variable overrides. Environment variables are consulted
exactly once, while loading; components receive the resulting
:class:`AcceleratorSettings` through their constructors.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import yaml

from .. import __version__
from .partition import EnvironmentPartition
from .throttle import RetrySettings, DEFAULT_BASE_DELAY_MS, DEFAULT_DELAY_INCREMENT_MS


EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

MANDATORY_ACCOUNT = "mandatoryAccount"
WORKLOAD_ACCOUNT = "workloadAccount"

POLICY_TYPES = ("SERVICE_CONTROL_POLICY", "TAG_POLICY", "BACKUP_POLICY")
POLICY_STRATEGIES = ("deny-list", "allow-list")


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


@dataclass(frozen=True)
class AccountConfig:
    """A desired account as declared in configuration."""

    name: str
    email: str
    organizational_unit: str
    data_type: str = WORKLOAD_ACCOUNT
    sso_user_email: Optional[str] = None
    sso_user_first_name: str = "Admin"
    sso_user_last_name: str = "User"


@dataclass(frozen=True)
class DeploymentTargets:
    organizational_units: Tuple[str, ...] = ()
    accounts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyConfig:
    """An organization policy and the targets it attaches to."""

    name: str
    description: str
    policy: str
    type: str = "SERVICE_CONTROL_POLICY"
    strategy: str = "deny-list"
    deployment_targets: DeploymentTargets = field(default_factory=DeploymentTargets)


@dataclass(frozen=True)
class VpcConfig:
    name: str
    account: str
    vpc_id: str
    endpoint_ids: Tuple[str, ...] = ()


DEFAULT_SOLUTION_ID = f"AwsSolution/SO0199/{__version__}"


@dataclass(frozen=True)
class AcceleratorSettings:
    """Immutable runtime settings threaded through every component.

    Built once by :meth:`Configuration.to_settings` so that retry,
    credential and naming behaviour never depends on process state read
    deep inside a call path.
    """

    prefix: str = "AWSAccelerator"
    accelerator_name: str = "AWSAccelerator"
    partition: EnvironmentPartition = EnvironmentPartition.STANDARD
    home_region: str = "us-east-1"
    enabled_regions: Tuple[str, ...] = ("us-east-1",)
    management_account_access_role: str = "AWSControlTowerExecution"
    retry: RetrySettings = field(default_factory=RetrySettings)
    lambda_memory_floor: int = 512
    use_existing_roles: bool = False
    existing_roles: Dict[str, str] = field(default_factory=dict)
    scp_ceiling: int = 20
    policy_ceilings: Dict[str, int] = field(
        default_factory=lambda: {"TAG_POLICY": 10, "BACKUP_POLICY": 10}
    )
    tolerated_account_failures: int = 0
    control_tower_enabled: bool = False
    enable_govcloud: bool = False
    organizations_enabled: bool = True
    quarantine_policy_name: Optional[str] = None
    provisioning_table: str = "AWSAccelerator-config"
    govcloud_mapping_table: str = "AWSAccelerator-govcloud-account-mapping"
    poll_interval_seconds: int = 30
    move_chunk_size: int = 5
    policy_root: str = "."
    additional_replacements: Dict[str, Any] = field(default_factory=dict)
    solution_id: str = DEFAULT_SOLUTION_ID

    def ceiling_for(self, policy_type: str) -> int:
        """Maximum attached policies of a type per target."""
        if policy_type == "SERVICE_CONTROL_POLICY":
            return self.scp_ceiling
        return self.policy_ceilings.get(policy_type, self.scp_ceiling)


class Configuration:
    """Configuration management with YAML loading and validation.

    This class handles loading configuration from YAML files,
    validating the structure, and supporting environment variable
    overrides for the accelerator prefix, region, profile and retry budget.
    """

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        If None, auto-detects config.yaml in current directory.

        Raises:
            ConfigurationError: When configuration file is invalid
        """
        self._config: Dict[str, Any] = {}
        self._config_path = self._resolve_config_path(config_path)
        self._load_configuration()
        self._apply_environment_overrides()
        self._validate_configuration()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path.

        Args:
            config_path: Optional path to configuration file

        Returns:
            Resolved Path object to configuration file

        Raises:
            ConfigurationError: When configuration file not found
        """
        if config_path:
            path = Path(config_path)
        else:
            path = Path("config.yaml")
            if not path.exists():
                path = Path("config/accelerator.yaml")

        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}. "
                "Please create a configuration file or specify a valid path."
            )

        return path

    def _load_configuration(self) -> None:
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: When YAML file is invalid
        """
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file {self._config_path}: {e}"
            )
        except IOError as e:
            raise ConfigurationError(
                f"Unable to read configuration file {self._config_path}: {e}"
            )

    def _validate_configuration(self) -> None:
        """Validate configuration has required fields.

        Raises:
            ConfigurationError: When required fields are missing or inconsistent
        """
        if 'aws' not in self._config:
            raise ConfigurationError("Required configuration section 'aws' is missing")

        aws_config = self._config['aws']
        if 'home_region' not in aws_config:
            raise ConfigurationError("Required field 'aws.home_region' is missing")

        home_region = aws_config["home_region"]
        if not isinstance(home_region, str) or not home_region:
            raise ConfigurationError("Field 'aws.home_region' must be a non-empty string")

        if 'governed_regions' in aws_config:
            governed_regions = aws_config["governed_regions"]
            if not isinstance(governed_regions, list):
                raise ConfigurationError("Field 'aws.governed_regions' must be a list")
            if home_region not in governed_regions:
                governed_regions.insert(0, home_region)

        try:
            EnvironmentPartition.from_name(self.get("aws.partition", "aws"))
        except ValueError as e:
            raise ConfigurationError(str(e))

        ou_paths = set(self.get_organizational_units())
        seen_emails = set()
        for account in self.get_accounts():
            if not EMAIL_PATTERN.match(account.email):
                raise ConfigurationError(
                    f"Invalid email format for account '{account.name}': {account.email}"
                )
            if account.email.lower() in seen_emails:
                raise ConfigurationError(f"Duplicate account email: {account.email}")
            seen_emails.add(account.email.lower())
            if account.organizational_unit != "Root" and account.organizational_unit not in ou_paths:
                raise ConfigurationError(
                    f"Account '{account.name}' targets unknown organizational unit "
                    f"'{account.organizational_unit}'"
                )

        for policy in self.get_policies():
            if policy.type not in POLICY_TYPES:
                raise ConfigurationError(f"Invalid policy type '{policy.type}' for {policy.name}")
            if policy.strategy not in POLICY_STRATEGIES:
                raise ConfigurationError(
                    f"Invalid strategy '{policy.strategy}' for {policy.name}. "
                    f"Valid strategies: {list(POLICY_STRATEGIES)}"
                )

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if "AWS_REGION" in os.environ:
            self._set_nested_value("aws.home_region", os.environ["AWS_REGION"])

        if "AWS_PROFILE" in os.environ:
            self._set_nested_value("aws.profile_name", os.environ["AWS_PROFILE"])

        if "ACCELERATOR_PREFIX" in os.environ:
            self._set_nested_value("accelerator.prefix", os.environ["ACCELERATOR_PREFIX"])

        if "ACCELERATOR_SDK_MAX_ATTEMPTS" in os.environ:
            try:
                attempts = int(os.environ["ACCELERATOR_SDK_MAX_ATTEMPTS"])
            except ValueError:
                raise ConfigurationError("ACCELERATOR_SDK_MAX_ATTEMPTS must be an integer")
            self._set_nested_value("accelerator.retry.max_attempts", attempts)

    def _set_nested_value(self, key_path: str, value: Any) -> None:
        """Set nested configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.home_region')
            value: Value to set
        """
        keys = key_path.split(".")
        current = self._config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.home_region')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        current = self._config

        try:
            for key in keys:
                current = current[key]
            return current
        except (KeyError, TypeError):
            return default

    def get_home_region(self) -> str:
        return self.get("aws.home_region")

    def get_governed_regions(self) -> List[str]:
        """Get list of governed regions.

        Returns:
            List of AWS region strings, home region first
        """
        regions = self.get("aws.governed_regions", [])
        if not regions:
            regions = [self.get_home_region()]
        return regions

    def get_organizational_units(self) -> List[str]:
        """Configured organizational unit paths (e.g. ``Workloads/Prod``)."""
        return [
            ou["name"] if isinstance(ou, dict) else str(ou)
            for ou in self.get("organization.organizational_units", []) or []
        ]

    def get_accounts(self) -> List[AccountConfig]:
        """Get mandatory then workload accounts in configuration order.

        Returns:
            List of account configurations
        """
        accounts = []
        for section, data_type in (("mandatory", MANDATORY_ACCOUNT), ("workload", WORKLOAD_ACCOUNT)):
            for entry in self.get(f"accounts.{section}", []) or []:
                try:
                    accounts.append(AccountConfig(
                        name=entry["name"],
                        email=entry["email"],
                        organizational_unit=entry.get("organizational_unit", "Root"),
                        data_type=data_type,
                        sso_user_email=entry.get("sso_user_email"),
                        sso_user_first_name=entry.get("sso_user_first_name", "Admin"),
                        sso_user_last_name=entry.get("sso_user_last_name", "User"),
                    ))
                except KeyError as e:
                    raise ConfigurationError(f"Account entry in 'accounts.{section}' is missing {e}")
        return accounts

    def get_policies(self) -> List[PolicyConfig]:
        """Get configured organization policies.

        Returns:
            List of policy configurations
        """
        policies = []
        for entry in self.get("service_control_policies", []) or []:
            targets = entry.get("deployment_targets", {}) or {}
            try:
                policies.append(PolicyConfig(
                    name=entry["name"],
                    description=entry.get("description", entry["name"]),
                    policy=entry["policy"],
                    type=entry.get("type", "SERVICE_CONTROL_POLICY"),
                    strategy=entry.get("strategy", "deny-list"),
                    deployment_targets=DeploymentTargets(
                        organizational_units=tuple(targets.get("organizational_units", [])),
                        accounts=tuple(targets.get("accounts", [])),
                    ),
                ))
            except KeyError as e:
                raise ConfigurationError(f"Policy entry is missing {e}")
        return policies

    def get_vpcs(self) -> Optional[List[VpcConfig]]:
        """Get configured VPCs, or None when no network section exists."""
        if "network" not in self._config:
            return None
        return [
            VpcConfig(
                name=vpc["name"],
                account=vpc["account"],
                vpc_id=vpc["vpc_id"],
                endpoint_ids=tuple(vpc.get("endpoint_ids", [])),
            )
            for vpc in self.get("network.vpcs", []) or []
        ]

    def to_settings(self) -> AcceleratorSettings:
        """Build the immutable runtime settings.

        Returns:
            AcceleratorSettings populated from the loaded configuration
        """
        prefix = self.get("accelerator.prefix", "AWSAccelerator")
        home_region = self.get_home_region()
        quarantine_name = None
        if self.get("quarantine.enabled", False):
            quarantine_name = self.get("quarantine.policy_name", f"{prefix}-Quarantine")

        return AcceleratorSettings(
            prefix=prefix,
            accelerator_name=self.get("accelerator.name", prefix),
            partition=EnvironmentPartition.from_name(self.get("aws.partition", "aws")),
            home_region=home_region,
            enabled_regions=tuple(self.get_governed_regions()),
            management_account_access_role=self.get(
                "accelerator.management_account_access_role", "AWSControlTowerExecution"
            ),
            retry=RetrySettings(
                max_attempts=int(self.get("accelerator.retry.max_attempts", 800)),
                base_delay_ms=int(self.get("accelerator.retry.base_delay_ms", DEFAULT_BASE_DELAY_MS)),
                delay_increment_ms=int(
                    self.get("accelerator.retry.delay_increment_ms", DEFAULT_DELAY_INCREMENT_MS)
                ),
            ),
            lambda_memory_floor=int(self.get("accelerator.lambda_memory_floor", 512)),
            use_existing_roles=bool(self.get("accelerator.use_existing_roles", False)),
            existing_roles=dict(self.get("accelerator.existing_roles", {}) or {}),
            scp_ceiling=int(self.get("accelerator.scp_ceiling", 20)),
            policy_ceilings=dict(
                self.get("accelerator.policy_ceilings", {"TAG_POLICY": 10, "BACKUP_POLICY": 10})
            ),
            tolerated_account_failures=int(self.get("accelerator.tolerated_account_failures", 0)),
            control_tower_enabled=bool(self.get("accelerator.control_tower_enabled", False)),
            enable_govcloud=bool(self.get("accelerator.enable_govcloud", False)),
            organizations_enabled=bool(self.get("organization.enable", True)),
            quarantine_policy_name=quarantine_name,
            provisioning_table=self.get("accelerator.provisioning_table", f"{prefix}-config"),
            govcloud_mapping_table=self.get(
                "accelerator.govcloud_mapping_table", f"{prefix}-govcloud-account-mapping"
            ),
            poll_interval_seconds=int(self.get("accelerator.poll_interval_seconds", 30)),
            move_chunk_size=int(self.get("accelerator.move_chunk_size", 5)),
            policy_root=str(self.get("accelerator.policy_root", self._config_path.parent)),
            additional_replacements=dict(self.get("policy_replacements", {}) or {}),
            solution_id=self.get("accelerator.solution_id", DEFAULT_SOLUTION_ID),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Get complete configuration as dictionary.

        Returns:
            Complete configuration dictionary
        """
        return self._config.copy()
